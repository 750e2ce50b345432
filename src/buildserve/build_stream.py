"""Build events from a build target's command, re-run on every source change."""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator
from pathlib import Path

import watchfiles

from buildserve.constants import DEFAULT_OUTPUT_FILE_NAME
from buildserve.errors import ConfigurationMissingError, UpstreamStreamError
from buildserve.logging import ServeLogComponent, get_logger
from buildserve.models import BuildEvent, BuildTargetOptions, TargetRef
from buildserve.serve.policy import read_build_options
from buildserve.utils import format_elapsed_ms
from buildserve.workspace import FileWorkspace

logger = get_logger(ServeLogComponent.BUILD)


def resolve_output_file(options: BuildTargetOptions) -> Path:
    """``outputFile`` if configured, else ``<outputPath>/main.js``."""
    if options.output_file:
        return Path(options.output_file)
    if options.output_path:
        return Path(options.output_path) / DEFAULT_OUTPUT_FILE_NAME
    raise ConfigurationMissingError(
        "outputFile", "the build target declares neither outputFile nor outputPath"
    )


class CommandBuildStream:
    """Runs the build once, then again after each batch of file changes.

    Yields one BuildEvent per build. The stream can be iterated only once.
    """

    def __init__(
        self,
        workspace: FileWorkspace,
        build_target: TargetRef,
        *,
        watch: bool = True,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        self._workspace = workspace
        self._build_target = build_target
        self._watch = watch
        self._stop_event = stop_event
        self._consumed = False

    def __aiter__(self) -> AsyncIterator[BuildEvent]:
        if self._consumed:
            raise RuntimeError("CommandBuildStream can only be iterated once")
        self._consumed = True
        return self._events()

    def _watch_paths(self, options: BuildTargetOptions) -> list[Path]:
        root = self._workspace.root
        if options.watch_paths:
            return [root / path for path in options.watch_paths]
        project = self._workspace.project(self._build_target.project)
        return [root / project.root]

    async def _run_build(self, command: str | list[str], output_file: Path) -> BuildEvent:
        start = time.perf_counter()
        logger.info(f"Building {self._build_target}")
        try:
            if isinstance(command, str):
                process = await asyncio.create_subprocess_shell(
                    command, cwd=self._workspace.root
                )
            else:
                process = await asyncio.create_subprocess_exec(
                    *command, cwd=self._workspace.root
                )
        except OSError as e:
            raise UpstreamStreamError(
                f"Failed to run build command for {self._build_target}: {e}"
            ) from e

        returncode = await process.wait()
        if returncode == 0:
            logger.info(
                f"Build of {self._build_target} succeeded ({format_elapsed_ms(start)})"
            )
        else:
            logger.error(
                f"Build of {self._build_target} failed with exit code {returncode}"
            )
        return BuildEvent(success=returncode == 0, output_file=output_file)

    async def _wait_for_changes(self, paths: list[Path], ignore: list[Path]) -> bool:
        """Wait for the next batch of changes; False if watching was stopped."""
        watch_filter = watchfiles.DefaultFilter(ignore_paths=ignore)
        async for changes in watchfiles.awatch(
            *paths, watch_filter=watch_filter, stop_event=self._stop_event
        ):
            file_paths = sorted({str(Path(path).name) for _, path in changes})
            logger.info(f"Detected file changes, rebuilding: {', '.join(file_paths)}")
            return True
        return False

    async def _events(self) -> AsyncIterator[BuildEvent]:
        options = read_build_options(self._build_target, self._workspace)
        if options.command is None:
            raise ConfigurationMissingError(
                str(self._build_target), "no build command configured"
            )

        output_file = resolve_output_file(options)
        watch_paths = self._watch_paths(options)
        ignore = (
            [self._workspace.root / options.output_path] if options.output_path else []
        )

        while True:
            yield await self._run_build(options.command, output_file)
            if not self._watch:
                return
            if not await self._wait_for_changes(watch_paths, ignore):
                return
