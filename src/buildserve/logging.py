"""Centralized logging for `buildserve` (component loggers and CLI formatting)."""

from __future__ import annotations

import logging
from enum import Enum

from buildserve.utils import PrefixedLogHandler

ROOT_LOGGER_NAME = "buildserve"


class ServeLogComponent(str, Enum):
    """Where a log originated (used for the CLI prefix and fine-grained filtering)."""

    SERVE = "serve"
    POLICY = "policy"
    DEPS = "deps"
    SNAPSHOT = "snapshot"
    PROCESS = "process"
    BUILD = "build"
    WORKSPACE = "workspace"


_COMPONENT_COLOR: dict[ServeLogComponent, str] = {
    ServeLogComponent.SERVE: "bright_blue",
    ServeLogComponent.POLICY: "bright_blue",
    ServeLogComponent.DEPS: "cyan",
    ServeLogComponent.SNAPSHOT: "cyan",
    ServeLogComponent.PROCESS: "green",
    ServeLogComponent.BUILD: "magenta",
    ServeLogComponent.WORKSPACE: "cyan",
}

_configured = False


def configure_logging(*, verbose: bool = False) -> None:
    """Attach prefixed console handlers to every component logger."""
    global _configured

    level = logging.DEBUG if verbose else logging.INFO
    for component in ServeLogComponent:
        logger = logging.getLogger(f"{ROOT_LOGGER_NAME}.{component.value}")
        logger.setLevel(level)
        logger.handlers.clear()
        handler = PrefixedLogHandler(
            f"[{component.value}]", _COMPONENT_COLOR.get(component, "white")
        )
        handler.setFormatter(logging.Formatter("%(message)s"))
        logger.addHandler(handler)
        logger.propagate = False

    _configured = True


def get_logger(component: ServeLogComponent) -> logging.Logger:
    """Get the logger for a component (do not call stdlib logging directly)."""
    logger = logging.getLogger(f"{ROOT_LOGGER_NAME}.{component.value}")
    if not _configured and not logger.handlers:
        # Avoid "No handlers could be found" warnings when used as a library.
        logger.addHandler(logging.NullHandler())
    return logger
