"""
Error taxonomy for the batch engine

- Configuration errors are raised synchronously, before any dispatch
- Engine invariant violations are raised to the caller
- Task errors are never raised; they are classified and captured into
  the task's BatchResult
"""
import asyncio
from typing import Optional

from batch_engine.models.task import ErrorKind


class BatchEngineError(Exception):
    """Base class for errors raised by the batch engine"""


class ConfigurationError(BatchEngineError, ValueError):
    """Invalid engine configuration or batch submission"""


class EngineInvariantError(BatchEngineError, RuntimeError):
    """Internal bookkeeping corruption (e.g. a task finalized twice)"""


class InvalidTransitionError(EngineInvariantError):
    """A task lifecycle was asked to make an illegal state transition"""


class TaskTimeoutError(BatchEngineError, TimeoutError):
    """An attempt did not settle within the per-task timeout"""

    def __init__(self, task_id: str, timeout_ms: float):
        super().__init__(f"Task {task_id} timeout after {timeout_ms:.0f}ms")
        self.task_id = task_id
        self.timeout_ms = timeout_ms


class NonRetryableError(BatchEngineError):
    """
    Raised by a work function to mark a permanent failure

    The engine finalizes the task immediately instead of spending the
    retry budget on it (e.g. a malformed payload).
    """


def default_retryable(error: BaseException) -> bool:
    """Every failure is retryable unless it is marked NonRetryableError"""
    return not isinstance(error, NonRetryableError)


def classify_error(error: BaseException, retryable: Optional[bool] = None) -> ErrorKind:
    """
    Classify a task failure

    Args:
        error: The exception raised by the attempt
        retryable: Result of the retry predicate, if already evaluated

    Returns:
        ErrorKind for the failure
    """
    if isinstance(error, (TaskTimeoutError, asyncio.TimeoutError)):
        return ErrorKind.TIMEOUT

    if retryable is None:
        retryable = default_retryable(error)

    if not retryable:
        return ErrorKind.TERMINAL

    return ErrorKind.TRANSIENT
