"""Watch-mode serve: policy, dependency linking, process lifecycle and the serve loop."""

from buildserve.serve.dependencies import DependencySetCalculator
from buildserve.serve.orchestrator import WatchOrchestrator
from buildserve.serve.policy import build_server_env, resolve_build_target_policy
from buildserve.serve.process_control import ProcessLifecycleManager
from buildserve.serve.snapshot import DependencySnapshotSynchronizer

__all__ = [
    "DependencySetCalculator",
    "DependencySnapshotSynchronizer",
    "ProcessLifecycleManager",
    "WatchOrchestrator",
    "build_server_env",
    "resolve_build_target_policy",
]
