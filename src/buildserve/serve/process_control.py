"""Ownership of the single server process of a watch session.

Design goals:
- At most one server process is current at any time.
- Stopping waits for the exit notification before returning, so the next
  server never races the previous one for its listening port.
- Escalate to SIGKILL when the process ignores SIGTERM for too long.
- Only touch processes we started (tracked by pid + create_time).
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from pathlib import Path

import psutil

from buildserve.constants import DEFAULT_KILL_TIMEOUT, DEFAULT_RUNTIME, INSPECT_FLAG
from buildserve.errors import ProcessSpawnError
from buildserve.logging import ServeLogComponent, get_logger
from buildserve.models import Environment, ManagedProcess, TrackedProcess

logger = get_logger(ServeLogComponent.PROCESS)


def track_process(pid: int) -> TrackedProcess | None:
    """Create a TrackedProcess for a running PID, recording its create_time."""
    try:
        proc = psutil.Process(pid)
        return TrackedProcess(pid=pid, create_time=float(proc.create_time()))
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return None


def validate_tracked(tp: TrackedProcess) -> psutil.Process | None:
    """Return a psutil.Process only if PID matches create_time (prevents PID reuse bugs)."""
    if tp.pid is None or tp.create_time is None:
        return None
    try:
        proc = psutil.Process(tp.pid)
        if abs(float(proc.create_time()) - float(tp.create_time)) > 0.001:
            return None
        return proc
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return None


def list_descendants(tp: TrackedProcess) -> list[psutil.Process]:
    proc = validate_tracked(tp)
    if proc is None:
        return []
    try:
        return proc.children(recursive=True)
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return []


def terminate_processes(procs: list[psutil.Process], timeout: float) -> None:
    """Terminate leftover processes (best-effort), killing the ones that linger."""
    alive_before = [p for p in procs if p.is_running()]
    if not alive_before:
        return

    for p in alive_before:
        try:
            p.terminate()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass

    _, alive = psutil.wait_procs(alive_before, timeout=timeout)
    for p in alive:
        try:
            p.kill()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass
    if alive:
        psutil.wait_procs(alive, timeout=max(0.5, timeout / 2))


def inspect_args(inspect: bool | str) -> list[str]:
    """Runtime arguments enabling the debugger/inspector."""
    if inspect is True:
        return [INSPECT_FLAG]
    if isinstance(inspect, str) and inspect:
        return [f"{INSPECT_FLAG}={inspect}"]
    return []


class ProcessLifecycleManager:
    """Owns at most one running server process.

    The exit watcher registered by ``start_new`` clears the slot whenever the
    process exits, including when it crashes on its own.
    """

    def __init__(
        self,
        runtime: Sequence[str] = DEFAULT_RUNTIME,
        *,
        inspect: bool | str = False,
        kill_timeout: float = DEFAULT_KILL_TIMEOUT,
    ) -> None:
        self._runtime: list[str] = list(runtime)
        self._inspect = inspect
        self._kill_timeout = kill_timeout
        self._current: ManagedProcess | None = None

    @property
    def current(self) -> ManagedProcess | None:
        return self._current

    @property
    def is_running(self) -> bool:
        return self._current is not None

    def command_for(self, output_file: Path) -> list[str]:
        return [*self._runtime, *inspect_args(self._inspect), str(output_file)]

    async def _watch_exit(self, managed: ManagedProcess) -> None:
        returncode = await managed.handle.wait()
        if managed.stop_requested:
            logger.debug(f"Server process {managed.pid} stopped (code {returncode})")
        elif returncode == 0:
            logger.info(f"Server process {managed.pid} exited")
        else:
            logger.warning(
                f"Server process {managed.pid} exited with code {returncode}"
            )
        if self._current is managed:
            self._current = None

    async def start_new(self, output_file: Path, env: Environment) -> ManagedProcess:
        """Spawn the server for ``output_file``; only valid when none is current."""
        if self._current is not None:
            raise RuntimeError(
                f"Server process {self._current.pid} is still running, stop it first"
            )

        command = self.command_for(output_file)
        try:
            # stdio is inherited from the orchestrator
            handle = await asyncio.create_subprocess_exec(*command, env=env)
        except OSError as e:
            logger.error(f"Failed to start server process: {e}")
            raise ProcessSpawnError(command, e) from e

        managed = ManagedProcess(
            handle=handle,
            output_file=output_file,
            env=env,
            command=command,
            tracked=track_process(handle.pid),
        )
        managed.exit_watcher = asyncio.create_task(self._watch_exit(managed))
        self._current = managed
        logger.info(f"Started server process {handle.pid}: {' '.join(command)}")
        return managed

    async def _wait_for_exit(self, managed: ManagedProcess, timeout: float) -> bool:
        assert managed.exit_watcher is not None
        try:
            await asyncio.wait_for(asyncio.shield(managed.exit_watcher), timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def stop_current(self) -> None:
        """Terminate the current process and wait until it has exited."""
        managed = self._current
        if managed is None:
            return

        if managed.returncode is None:
            managed.stop_requested = True
            descendants = list_descendants(managed.tracked) if managed.tracked else []
            logger.info(f"Stopping server process {managed.pid}")
            try:
                managed.handle.terminate()
            except ProcessLookupError:
                pass

            if not await self._wait_for_exit(managed, self._kill_timeout):
                logger.warning(
                    f"Server process {managed.pid} did not exit within "
                    f"{self._kill_timeout}s, killing it"
                )
                try:
                    managed.handle.kill()
                except ProcessLookupError:
                    pass
                assert managed.exit_watcher is not None
                await asyncio.shield(managed.exit_watcher)

            if descendants:
                await asyncio.to_thread(
                    terminate_processes, descendants, self._kill_timeout
                )
        elif managed.exit_watcher is not None:
            await managed.exit_watcher

        if self._current is managed:
            self._current = None
