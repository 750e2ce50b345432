"""Shared fixtures and in-memory collaborators for buildserve tests."""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any

import pytest

from buildserve.errors import ConfigurationMissingError, ProcessSpawnError
from buildserve.models import Environment, TargetRef, WorkspaceDependencyEdge


class DictTargetReader:
    """Target options keyed by ``project:target``."""

    def __init__(self, targets: dict[str, dict[str, Any]]) -> None:
        self.targets = targets
        self.calls: list[TargetRef] = []

    def read_target_options(self, target: TargetRef) -> dict[str, Any]:
        self.calls.append(target)
        key = f"{target.project}:{target.target}"
        if key not in self.targets:
            raise ConfigurationMissingError(key)
        return dict(self.targets[key])


class FakeGraph:
    """Dependency edges per project; counts queries."""

    def __init__(self, edges: dict[str, list[WorkspaceDependencyEdge]] | None = None):
        self.edges = edges or {}
        self.calls = 0

    def resolve_dependencies(self, project_id: str) -> list[WorkspaceDependencyEdge]:
        self.calls += 1
        return list(self.edges.get(project_id, []))


class RecordingProcesses:
    """Stand-in for ProcessLifecycleManager that records stop/start calls."""

    def __init__(self, *, fail_spawn: bool = False) -> None:
        self.fail_spawn = fail_spawn
        self.current: Path | None = None
        self.log: list[tuple[str, Path | None]] = []
        self.envs: list[Environment] = []

    async def stop_current(self) -> None:
        if self.current is not None:
            self.log.append(("stop", self.current))
            self.current = None

    async def start_new(self, output_file: Path, env: Environment) -> Path:
        assert self.current is None, "start_new called while a process is current"
        if self.fail_spawn:
            raise ProcessSpawnError(["node", str(output_file)], OSError("refused"))
        self.log.append(("start", output_file))
        self.envs.append(env)
        self.current = output_file
        return output_file


def edge(dependency: str, import_key: str | None = None, project: str = "api"):
    return WorkspaceDependencyEdge(
        dependent_project=project,
        dependency_project=dependency,
        import_key=import_key or dependency,
    )


@pytest.fixture
def server_script(tmp_path: Path) -> Path:
    """A long-running 'server' that exits on SIGTERM."""
    script = tmp_path / "server.py"
    script.write_text("import time\nwhile True:\n    time.sleep(0.05)\n")
    return script


@pytest.fixture
def python_runtime() -> list[str]:
    return [sys.executable]


@pytest.fixture
def write_workspace(tmp_path: Path):
    """Write a workspace.json into tmp_path and return the root."""

    def _write(projects: dict[str, Any]) -> Path:
        (tmp_path / "workspace.json").write_text(json.dumps({"projects": projects}))
        return tmp_path

    return _write


@pytest.fixture
def sample_projects() -> dict[str, Any]:
    """An api app depending on two libraries and an npm package."""
    return {
        "api": {
            "root": "apps/api",
            "dependencies": ["util", "data", "npm:express"],
            "targets": {
                "build": {
                    "options": {
                        "format": ["cjs"],
                        "bundle": False,
                        "outputPath": "dist/apps/api",
                    },
                    "configurations": {"production": {"bundle": True}},
                },
                "serve": {"options": {"buildTarget": "api:build"}},
            },
        },
        "util": {
            "root": "libs/util",
            "importKey": "@acme/util",
            "targets": {"build": {"options": {"outputPath": "dist/libs/util"}}},
        },
        "data": {
            "root": "libs/data",
            "importKey": "@acme/data",
            "targets": {"build": {"options": {}}},
        },
    }
