"""Logging, a resizable worker pool, metrics and message pipes for streaming database changes."""

__version__ = "1.0.0"

__all__ = [
    "logger",
    "pool",
    "metrics",
    "pipe",
    "local",
    "header",
    "fileproducer",
    "filepipe",
]