"""Exception types raised by buildserve.

Session-fatal errors end the watch session; cycle-local errors abort only the
cycle that raised them and the session keeps waiting for the next build event.
"""

from __future__ import annotations


class BuildServeError(Exception):
    """Base class for all buildserve errors."""


class InvalidTargetStringError(BuildServeError, ValueError):
    """A target string could not be parsed into project/target/configuration."""


class ConfigurationMissingError(BuildServeError):
    """A referenced target's options could not be read (session-fatal)."""

    def __init__(self, target: str, reason: str | None = None) -> None:
        self.target = target
        self.reason = reason
        message = f"Cannot read options for target '{target}'"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class DependencyUnavailableError(BuildServeError):
    """A dependency has no declared output or has not been built yet (cycle-local)."""

    def __init__(self, project: str, reason: str) -> None:
        self.project = project
        self.reason = reason
        super().__init__(f"Dependency '{project}' is unavailable: {reason}")


class ProcessSpawnError(BuildServeError):
    """The operating system refused to start the server process (cycle-local)."""

    def __init__(self, command: list[str], cause: OSError) -> None:
        self.command = command
        super().__init__(f"Failed to start {' '.join(command)}: {cause}")


class UpstreamStreamError(BuildServeError):
    """The build-event source failed (session-fatal)."""
