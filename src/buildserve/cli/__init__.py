"""Command line interface for buildserve."""
