"""Domain models."""

from .task import (
    BackgroundTask,
    LaunchInput,
    MessageSnapshot,
    ModelRef,
    PruneResult,
    ResumeInput,
    TaskProgress,
    TrackTaskInput,
)

__all__ = [
    "BackgroundTask",
    "LaunchInput",
    "MessageSnapshot",
    "ModelRef",
    "PruneResult",
    "ResumeInput",
    "TaskProgress",
    "TrackTaskInput",
]
