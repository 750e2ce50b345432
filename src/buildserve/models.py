"""Centralized Pydantic models, enums, protocols and type aliases for buildserve."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, ClassVar, Protocol, TypeAlias

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from buildserve.constants import DEFAULT_KILL_TIMEOUT, DEFAULT_RUNTIME
from buildserve.errors import InvalidTargetStringError


# === Type Aliases ===

Environment: TypeAlias = dict[str, str]


# === Enums ===


class ModuleFormat(str, Enum):
    """Output module formats a build target can produce."""

    esm = "esm"
    cjs = "cjs"
    iife = "iife"


class CycleState(str, Enum):
    """States of the watch orchestrator's per-event cycle."""

    IDLE = "idle"
    RESOLVING = "resolving"
    SYNCING = "syncing"
    STOPPING = "stopping"
    STARTING = "starting"
    FAILED = "failed"


# === Target References ===


class TargetRef(BaseModel):
    """A reference to a target of a project, optionally with a configuration."""

    project: str
    target: str
    configuration: str | None = None

    model_config: ClassVar[ConfigDict] = ConfigDict(frozen=True)

    def with_project(self, project: str) -> TargetRef:
        """Same target and configuration on another project."""
        return TargetRef(
            project=project, target=self.target, configuration=self.configuration
        )

    def __str__(self) -> str:
        parts = [self.project, self.target]
        if self.configuration:
            parts.append(self.configuration)
        return ":".join(parts)


def parse_target_string(value: str, default_project: str | None = None) -> TargetRef:
    """Parse ``project:target[:configuration]``.

    A bare ``target`` is resolved against ``default_project`` when given.
    """
    parts = value.split(":")
    if any(not part for part in parts) or len(parts) > 3:
        raise InvalidTargetStringError(f"Invalid target string: '{value}'")

    if len(parts) == 1:
        if default_project is None:
            raise InvalidTargetStringError(
                f"Target '{value}' has no project and no default project was given"
            )
        return TargetRef(project=default_project, target=parts[0])

    configuration = parts[2] if len(parts) == 3 else None
    return TargetRef(project=parts[0], target=parts[1], configuration=configuration)


# === Build Events ===


class BuildEvent(BaseModel):
    """One reported outcome of a build running in watch mode."""

    success: bool
    output_file: Path = Field(validation_alias=AliasChoices("outfile", "outputFile"))

    model_config: ClassVar[ConfigDict] = ConfigDict(
        frozen=True, populate_by_name=True
    )


# === Target Options ===


class BuildTargetOptions(BaseModel):
    """Options of a bundling build target (the subset buildserve reads)."""

    format: list[str] = Field(default_factory=lambda: [ModuleFormat.esm.value])
    bundle: bool = True
    external: list[str] | None = None
    output_path: str | None = Field(default=None, alias="outputPath")
    output_file: str | None = Field(default=None, alias="outputFile")
    command: str | list[str] | None = None
    watch_paths: list[str] = Field(default_factory=list, alias="watchPaths")

    model_config: ClassVar[ConfigDict] = ConfigDict(
        populate_by_name=True, extra="allow"
    )


class ServeOptions(BaseModel):
    """Options of the serve target.

    This is the single source of truth for serve defaults; CLI overrides are
    applied on top with ``model_copy(update=...)``.
    """

    build_target: str = Field(alias="buildTarget")
    experimental_node_resolution: bool = Field(
        default=False, alias="experimentalNodeResolution"
    )
    inspect: bool | str = False
    runtime: list[str] = Field(default_factory=lambda: list(DEFAULT_RUNTIME))
    env_file: str | None = Field(default=None, alias="envFile")
    linked_dependencies_dir: str | None = Field(
        default=None, alias="linkedDependenciesDir"
    )
    kill_timeout: float = Field(default=DEFAULT_KILL_TIMEOUT, alias="killTimeout")

    model_config: ClassVar[ConfigDict] = ConfigDict(
        populate_by_name=True, extra="allow"
    )


# === Resolved Policy & Dependencies ===


class BuildTargetPolicy(BaseModel):
    """Bundling policy derived once per watch session from the build target."""

    has_esm: bool
    is_bundled: bool
    external: frozenset[str] | None = None

    model_config: ClassVar[ConfigDict] = ConfigDict(frozen=True)

    @property
    def is_partially_bundled(self) -> bool:
        return not self.is_bundled or bool(self.external)


class WorkspaceDependencyEdge(BaseModel):
    """An edge from a project to a workspace library it depends on."""

    dependent_project: str
    dependency_project: str
    import_key: str
    output_path: Path | None = None

    model_config: ClassVar[ConfigDict] = ConfigDict(frozen=True)


DependencySet: TypeAlias = list[WorkspaceDependencyEdge]


# === Runtime State ===


class TrackedProcess(BaseModel):
    """A process we started and are allowed to manage.

    create_time protects against PID reuse when inspecting the process later.
    """

    pid: int | None = None
    create_time: float | None = None

    model_config: ClassVar[ConfigDict] = ConfigDict(frozen=True)


@dataclass
class ManagedProcess:
    """The server process currently owned by the lifecycle manager."""

    handle: asyncio.subprocess.Process
    output_file: Path
    env: Environment
    command: list[str] = field(default_factory=list)
    tracked: TrackedProcess | None = None
    exit_watcher: asyncio.Task[None] | None = None
    stop_requested: bool = False

    @property
    def pid(self) -> int:
        return self.handle.pid

    @property
    def returncode(self) -> int | None:
        return self.handle.returncode


# === External Collaborators ===


class WorkspaceGraph(Protocol):
    """Resolves a project's workspace-internal dependency edges.

    Implementations must reflect the current on-disk state on every call.
    """

    def resolve_dependencies(self, project_id: str) -> list[WorkspaceDependencyEdge]: ...


class TargetOptionsReader(Protocol):
    """Reads the configured options of a target.

    Raises ConfigurationMissingError when the target is not configured.
    """

    def read_target_options(self, target: TargetRef) -> dict[str, Any]: ...  # pyright: ignore[reportExplicitAny]
