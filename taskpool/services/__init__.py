"""Scheduling services."""

from .concurrency import ConcurrencyManager
from .lifecycle import ProcessCleanupRegistry, process_cleanup
from .manager import BackgroundManager
from .opencode_client import OpencodeClient

__all__ = [
    "BackgroundManager",
    "ConcurrencyManager",
    "OpencodeClient",
    "ProcessCleanupRegistry",
    "process_cleanup",
]
