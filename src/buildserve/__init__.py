"""Watch-mode build-and-serve orchestrator."""

__version__ = "0.1.0"
