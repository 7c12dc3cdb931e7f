"""Data models for the batch engine"""

from batch_engine.models.task import (
    Task,
    TaskAttempt,
    AttemptOutcome,
    ErrorKind,
    ErrorDescriptor,
    BatchResult,
    ProgressSnapshot,
    BatchReport,
)

__all__ = [
    "Task",
    "TaskAttempt",
    "AttemptOutcome",
    "ErrorKind",
    "ErrorDescriptor",
    "BatchResult",
    "ProgressSnapshot",
    "BatchReport",
]
