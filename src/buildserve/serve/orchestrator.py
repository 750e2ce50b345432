"""Watch-mode serve loop: one build event in, one synchronized restart, one event out.

Cycle for each build event (strictly sequential, never overlapping):

    idle -> [resolving, first event only] -> syncing -> stopping -> starting -> idle

A dependency that is not available, or a dependency graph that cannot be read
after resolution, fails the cycle before anything is stopped, so the previous
server keeps running. Only an unreadable build target at resolution ends the
session. Every event is re-emitted downstream, whatever happened in its cycle.
"""

from __future__ import annotations

from collections.abc import AsyncIterable, AsyncIterator, Mapping
from pathlib import Path

from buildserve.errors import (
    ConfigurationMissingError,
    DependencyUnavailableError,
    ProcessSpawnError,
    UpstreamStreamError,
)
from buildserve.logging import ServeLogComponent, get_logger
from buildserve.models import (
    BuildEvent,
    BuildTargetPolicy,
    CycleState,
    Environment,
    ServeOptions,
    TargetOptionsReader,
    TargetRef,
    WorkspaceGraph,
)
from buildserve.serve.dependencies import DependencySetCalculator
from buildserve.serve.policy import (
    build_server_env,
    read_build_options,
    resolve_build_target_policy,
)
from buildserve.serve.process_control import ProcessLifecycleManager
from buildserve.serve.snapshot import (
    DependencySnapshotSynchronizer,
    default_snapshot_dir,
)

logger = get_logger(ServeLogComponent.SERVE)


class WatchOrchestrator:
    """Keeps one server process in step with the latest successful build."""

    def __init__(
        self,
        events: AsyncIterable[BuildEvent],
        build_target: TargetRef,
        serve_options: ServeOptions,
        reader: TargetOptionsReader,
        graph: WorkspaceGraph,
        *,
        processes: ProcessLifecycleManager | None = None,
        snapshot_dir: Path | None = None,
        workspace_root: Path | None = None,
        base_env: Mapping[str, str] | None = None,
    ) -> None:
        self._events = events
        self._build_target = build_target
        self._options = serve_options
        self._reader = reader
        self._workspace_root = workspace_root or Path.cwd()
        self._base_env = base_env
        self._snapshot_dir = snapshot_dir

        self._calculator = DependencySetCalculator(graph)
        self._synchronizer = DependencySnapshotSynchronizer(
            reader, workspace_root=self._workspace_root
        )
        self.processes = processes or ProcessLifecycleManager(
            serve_options.runtime,
            inspect=serve_options.inspect,
            kill_timeout=serve_options.kill_timeout,
        )

        self._policy: BuildTargetPolicy | None = None
        self._env: Environment | None = None
        self._state = CycleState.IDLE
        self._started = False
        self.cycles = 0

    @property
    def state(self) -> CycleState:
        return self._state

    @property
    def policy(self) -> BuildTargetPolicy | None:
        return self._policy

    def _transition(self, state: CycleState) -> None:
        logger.debug(f"{self._state.value} -> {state.value}")
        self._state = state

    def _resolve(self) -> None:
        """Resolve policy, environment and snapshot location once per session."""
        self._transition(CycleState.RESOLVING)
        self._policy = resolve_build_target_policy(
            self._build_target,
            self._reader,
            experimental_node_resolution=self._options.experimental_node_resolution,
        )
        self._env = build_server_env(
            self._policy,
            self._options,
            base_env=self._base_env,
            workspace_root=self._workspace_root,
        )
        if self._snapshot_dir is None:
            self._snapshot_dir = default_snapshot_dir(
                read_build_options(self._build_target, self._reader),
                workspace_root=self._workspace_root,
                override=self._options.linked_dependencies_dir,
                build_target=self._build_target,
            )

    def _output_file(self, event: BuildEvent) -> Path:
        if event.output_file.is_absolute():
            return event.output_file
        return self._workspace_root / event.output_file

    async def _run_cycle(self, event: BuildEvent) -> None:
        if self._policy is None:
            self._resolve()
        assert self._policy is not None and self._env is not None
        assert self._snapshot_dir is not None

        self._transition(CycleState.SYNCING)
        try:
            dependencies = self._calculator.compute(
                self._build_target.project,
                self._policy.is_bundled,
                self._policy.external,
            )
        except ConfigurationMissingError as e:
            logger.error(f"{e}; keeping the current server until the next build")
            self._transition(CycleState.FAILED)
            return

        try:
            self._synchronizer.sync(
                dependencies, self._snapshot_dir, self._build_target
            )
        except DependencyUnavailableError as e:
            logger.error(f"{e}; keeping the current server until the next build")
            self._transition(CycleState.FAILED)
            return

        self._transition(CycleState.STOPPING)
        await self.processes.stop_current()

        if not event.success:
            logger.warning("Build failed, no server started until the next build")
            self._transition(CycleState.IDLE)
            return

        self._transition(CycleState.STARTING)
        try:
            await self.processes.start_new(self._output_file(event), self._env)
        except ProcessSpawnError as e:
            logger.error(f"{e}; waiting for the next build")
            self._transition(CycleState.FAILED)
            return

        self._transition(CycleState.IDLE)

    async def run(self) -> AsyncIterator[BuildEvent]:
        """Process build events one at a time and re-emit each after its cycle.

        The stream can only be consumed once. When it ends, the current server
        is left running; call ``stop`` to shut it down.
        """
        if self._started:
            raise RuntimeError("WatchOrchestrator.run() can only be iterated once")
        self._started = True

        events = aiter(self._events)
        while True:
            if self._state != CycleState.IDLE:
                self._transition(CycleState.IDLE)
            try:
                event = await anext(events)
            except StopAsyncIteration:
                logger.debug("Build event stream ended")
                return
            except Exception as e:
                raise UpstreamStreamError(f"Build event stream failed: {e}") from e

            self.cycles += 1
            logger.debug(
                f"Cycle {self.cycles}: build "
                f"{'succeeded' if event.success else 'failed'} ({event.output_file})"
            )
            await self._run_cycle(event)
            yield event

    async def stop(self) -> None:
        """Stop the current server, if any."""
        await self.processes.stop_current()
