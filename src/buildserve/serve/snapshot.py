"""Symlink snapshot of the served project's linked workspace dependencies.

Each dependency in the current set gets an entry ``<snapshot_dir>/<import_key>``
pointing at the dependency's build output. Entries are recreated on every
cycle and links for dependencies no longer in the set are pruned.
A dependency without a configured or existing output aborts the cycle, so a
server is never started against a dependency that is not there.
"""

from __future__ import annotations

import os
import shutil
import uuid
from pathlib import Path

from buildserve.constants import LINKED_DEPENDENCIES_DIR_NAME
from buildserve.errors import ConfigurationMissingError, DependencyUnavailableError
from buildserve.logging import ServeLogComponent, get_logger
from buildserve.models import (
    BuildTargetOptions,
    DependencySet,
    TargetOptionsReader,
    TargetRef,
    WorkspaceDependencyEdge,
)
from buildserve.serve.policy import read_build_options
from buildserve.utils import ensure_dir

logger = get_logger(ServeLogComponent.SNAPSHOT)


def default_snapshot_dir(
    build_options: BuildTargetOptions,
    *,
    workspace_root: Path,
    override: str | None = None,
    build_target: TargetRef | None = None,
) -> Path:
    """Snapshot directory for linked dependencies.

    ``override`` if set, else ``<outputPath>/node_modules``, else
    ``node_modules`` next to ``outputFile``.
    """
    if override:
        path = Path(override)
    elif build_options.output_path:
        path = Path(build_options.output_path) / LINKED_DEPENDENCIES_DIR_NAME
    elif build_options.output_file:
        path = Path(build_options.output_file).parent / LINKED_DEPENDENCIES_DIR_NAME
    else:
        raise ConfigurationMissingError(
            str(build_target) if build_target is not None else "build",
            "the build target has neither outputPath nor outputFile to place "
            "linked dependencies next to",
        )
    return path if path.is_absolute() else workspace_root / path


def _remove_entry(path: Path) -> None:
    """Remove whatever is at ``path``; a missing entry is fine."""
    if path.is_symlink() or path.is_file():
        path.unlink(missing_ok=True)
    elif path.is_dir():
        shutil.rmtree(path, ignore_errors=True)


def replace_symlink(link: Path, target: Path) -> None:
    """Point ``link`` at ``target``, replacing any existing entry.

    The new link is created under a temporary name and renamed over the old
    one, so an existing symlink is swapped atomically.
    """
    ensure_dir(link.parent)
    if link.exists() and not link.is_symlink():
        # os.replace cannot rename over a real directory
        _remove_entry(link)

    tmp_link = link.with_name(f".{link.name}.{uuid.uuid4().hex[:8]}.tmp")
    tmp_link.symlink_to(target, target_is_directory=target.is_dir())
    try:
        os.replace(tmp_link, link)
    except OSError:
        tmp_link.unlink(missing_ok=True)
        raise


def _prune_stale_links(snapshot_dir: Path, keep: set[Path]) -> None:
    """Remove symlinks (including ``@scope/`` ones) that are not in ``keep``.

    Real files and directories are left alone.
    """
    for entry in list(snapshot_dir.iterdir()):
        if entry.is_symlink():
            if entry not in keep:
                logger.debug(f"Removing stale link {entry.name}")
                entry.unlink(missing_ok=True)
        elif entry.is_dir() and entry.name.startswith("@"):
            for scoped in list(entry.iterdir()):
                if scoped.is_symlink() and scoped not in keep:
                    logger.debug(f"Removing stale link {entry.name}/{scoped.name}")
                    scoped.unlink(missing_ok=True)
            if not any(entry.iterdir()):
                logger.debug(f"Removing empty scope {entry.name}")
                entry.rmdir()


class DependencySnapshotSynchronizer:
    """Mirrors a dependency set into a directory of symlinks."""

    def __init__(
        self, reader: TargetOptionsReader, *, workspace_root: Path | None = None
    ) -> None:
        self._reader = reader
        self._workspace_root = workspace_root

    def declared_output_path(
        self, edge: WorkspaceDependencyEdge, build_target: TargetRef
    ) -> Path | None:
        """Output path configured on the dependency's counterpart of ``build_target``.

        The dependency is built by the target of the same name (and
        configuration) as the served project's build target.
        """
        dependency_target = build_target.with_project(edge.dependency_project)
        try:
            options = read_build_options(dependency_target, self._reader)
        except ConfigurationMissingError:
            return None
        if not options.output_path:
            return None

        output_path = Path(options.output_path)
        if self._workspace_root is not None and not output_path.is_absolute():
            output_path = self._workspace_root / output_path
        return output_path

    def _output_path(
        self, edge: WorkspaceDependencyEdge, build_target: TargetRef
    ) -> Path:
        dependency_target = build_target.with_project(edge.dependency_project)
        output_path = self.declared_output_path(edge, build_target)

        if output_path is None:
            logger.error(
                f"{edge.import_key} has no output, please build "
                f"{dependency_target} first"
            )
            raise DependencyUnavailableError(
                edge.dependency_project, f"{dependency_target} declares no outputPath"
            )

        if not output_path.exists():
            logger.error(
                f"{edge.import_key} has no output at {output_path}, please build "
                f"{dependency_target} first"
            )
            raise DependencyUnavailableError(
                edge.dependency_project, f"{output_path} does not exist"
            )
        return output_path

    def sync(
        self,
        dependencies: DependencySet,
        snapshot_dir: Path,
        build_target: TargetRef,
    ) -> list[Path]:
        """Link every dependency into ``snapshot_dir``, in order.

        Returns the created link paths. Raises DependencyUnavailableError at the
        first dependency without usable output.
        """
        ensure_dir(snapshot_dir)

        links: list[Path] = []
        for edge in dependencies:
            output_path = self._output_path(edge, build_target)
            link = snapshot_dir / edge.import_key
            logger.info(f"{edge.import_key} will be linked to {output_path}")
            replace_symlink(link, output_path)
            links.append(link)

        _prune_stale_links(snapshot_dir, set(links))
        return links
