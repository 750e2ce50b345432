"""File-backed workspace: project targets and inter-project dependency edges.

``workspace.json`` is re-read on every query so that the graph reflects the
current state of the workspace, never a cached copy.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from buildserve.constants import (
    DEFAULT_BUILD_TARGET,
    EXTERNAL_DEPENDENCY_PREFIX,
    WORKSPACE_FILE_NAME,
)
from buildserve.errors import ConfigurationMissingError
from buildserve.logging import ServeLogComponent, get_logger
from buildserve.models import TargetRef, WorkspaceDependencyEdge

logger = get_logger(ServeLogComponent.WORKSPACE)


class TargetConfig(BaseModel):
    """A target entry of a project."""

    options: dict[str, Any] = Field(default_factory=dict)  # pyright: ignore[reportExplicitAny]
    configurations: dict[str, dict[str, Any]] = Field(default_factory=dict)  # pyright: ignore[reportExplicitAny]


class ProjectConfig(BaseModel):
    """A project entry of workspace.json."""

    root: str
    import_key: str | None = Field(default=None, alias="importKey")
    dependencies: list[str] = Field(default_factory=list)
    targets: dict[str, TargetConfig] = Field(default_factory=dict)

    model_config: ClassVar[ConfigDict] = ConfigDict(populate_by_name=True)


class WorkspaceConfig(BaseModel):
    """Contents of workspace.json."""

    projects: dict[str, ProjectConfig] = Field(default_factory=dict)


def find_workspace_root(start: Path) -> Path | None:
    """Walk up from ``start`` to the first directory containing workspace.json."""
    start = start.resolve()
    for directory in (start, *start.parents):
        if (directory / WORKSPACE_FILE_NAME).exists():
            return directory
    return None


def read_workspace_config(file_path: Path) -> WorkspaceConfig:
    """Read workspace config from file.

    Args:
        file_path: Path to workspace.json

    Returns:
        WorkspaceConfig instance
    """
    if not file_path.exists():
        raise FileNotFoundError(f"Workspace config not found at {file_path}")

    data: dict[str, Any] = json.loads(  # pyright: ignore[reportExplicitAny]
        file_path.read_text()
    )
    return WorkspaceConfig.model_validate(data)


class FileWorkspace:
    """Workspace graph and target options reader backed by ``workspace.json``."""

    def __init__(
        self, root: Path, *, output_target: str = DEFAULT_BUILD_TARGET
    ) -> None:
        self.root = root
        self.config_path = root / WORKSPACE_FILE_NAME
        self._output_target = output_target

    def load(self) -> WorkspaceConfig:
        try:
            return read_workspace_config(self.config_path)
        except (OSError, ValueError, ValidationError) as e:
            raise ConfigurationMissingError(str(self.config_path), str(e)) from e

    def project(self, name: str) -> ProjectConfig:
        projects = self.load().projects
        if name not in projects:
            raise ConfigurationMissingError(name, "no such project in the workspace")
        return projects[name]

    def read_target_options(self, target: TargetRef) -> dict[str, Any]:  # pyright: ignore[reportExplicitAny]
        """Target options, overlaid with the selected configuration."""
        project = self.project(target.project)
        target_config = project.targets.get(target.target)
        if target_config is None:
            raise ConfigurationMissingError(
                str(target), f"project '{target.project}' has no '{target.target}' target"
            )

        options = dict(target_config.options)
        if target.configuration:
            if target.configuration not in target_config.configurations:
                raise ConfigurationMissingError(
                    str(target), f"no configuration named '{target.configuration}'"
                )
            options.update(target_config.configurations[target.configuration])
        return options

    def _output_path(self, project: ProjectConfig) -> Path | None:
        target_config = project.targets.get(self._output_target)
        if target_config is None:
            return None
        output_path = target_config.options.get("outputPath")
        return self.root / output_path if output_path else None

    def resolve_dependencies(self, project_id: str) -> list[WorkspaceDependencyEdge]:
        """Direct workspace-internal dependencies of ``project_id``, in declared order."""
        config = self.load()
        if project_id not in config.projects:
            raise ConfigurationMissingError(
                project_id, "no such project in the workspace"
            )

        edges: list[WorkspaceDependencyEdge] = []
        for name in config.projects[project_id].dependencies:
            if name.startswith(EXTERNAL_DEPENDENCY_PREFIX):
                continue
            dependency = config.projects.get(name)
            if dependency is None:
                logger.debug(f"{project_id}: '{name}' is not a workspace project, skipping")
                continue
            edges.append(
                WorkspaceDependencyEdge(
                    dependent_project=project_id,
                    dependency_project=name,
                    import_key=dependency.import_key or name,
                    output_path=self._output_path(dependency),
                )
            )
        return edges
