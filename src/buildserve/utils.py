import logging
import time
from pathlib import Path

from rich.console import Console
from rich.markup import escape
from typing_extensions import override

# legacy_windows=False enables the UTF-8 capable Windows console APIs
console = Console(legacy_windows=False)

_LEVEL_COLORS: dict[int, str] = {logging.ERROR: "red", logging.WARNING: "yellow"}


def format_elapsed_ms(start_time_perf: float) -> str:
    """Format time elapsed since a ``time.perf_counter()`` reading, e.g. ``850ms`` or ``2s 40ms``."""
    elapsed_seconds = time.perf_counter() - start_time_perf
    if elapsed_seconds < 1:
        return f"{int(elapsed_seconds * 1000)}ms"
    seconds = int(elapsed_seconds)
    return f"{seconds}s {int((elapsed_seconds - seconds) * 1000)}ms"


def format_timestamp(created: float) -> str:
    """``YYYY-MM-DD HH:MM:SS.mmm`` in local time."""
    base = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(created))
    return f"{base}.{int((created % 1) * 1000):03d}"


def print_with_prefix(
    prefix: str,
    text: str,
    color: str,
    width: int = 12,
    created: float | None = None,
) -> None:
    """Print each line of ``text`` as ``timestamp | prefix | line``.

    Args:
        prefix: Label shown in the second column, padded to ``width``
        text: Message, possibly spanning several lines
        color: Rich color of the prefix
        width: Column width of the prefix
        created: Epoch timestamp of the message (defaults to now)
    """
    timestamp = format_timestamp(time.time() if created is None else created)
    label = escape(prefix).ljust(width)
    for line in text.splitlines() or [""]:
        console.print(f"{timestamp} | [{color}]{label}[/] | {escape(line)}")


class PrefixedLogHandler(logging.Handler):
    """Renders log records through the shared console under a colored prefix.

    Warnings and errors replace the prefix color with yellow and red.
    """

    def __init__(self, prefix: str, color: str, width: int = 12):
        super().__init__()
        self.prefix: str = prefix
        self.color: str = color
        self.width: int = width

    def color_for(self, levelno: int) -> str:
        for threshold in sorted(_LEVEL_COLORS, reverse=True):
            if levelno >= threshold:
                return _LEVEL_COLORS[threshold]
        return self.color

    @override
    def emit(self, record: logging.LogRecord) -> None:
        try:
            print_with_prefix(
                self.prefix,
                self.format(record),
                self.color_for(record.levelno),
                width=self.width,
                created=record.created,
            )
        except Exception:
            self.handleError(record)


def ensure_dir(path: Path) -> None:
    """Create directory if it doesn't exist."""
    path.mkdir(parents=True, exist_ok=True)
