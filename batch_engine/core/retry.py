"""
Retry Controller - Retry decisions, backoff and the per-task lifecycle

Attempt numbers are zero-based: attempt 0 is the first dispatch, and the
backoff before retrying after attempt n is
base_delay_ms * backoff_multiplier ** n, jittered by +/- jitter_ratio.
"""
from __future__ import annotations
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Tuple

from batch_engine.core.errors import (
    ConfigurationError,
    InvalidTransitionError,
    default_retryable,
)

RetryPredicate = Callable[[BaseException], bool]


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry configuration for one batch

    max_attempts is the number of retries allowed after the first dispatch,
    so a task is dispatched at most max_attempts + 1 times.
    """

    max_attempts: int = 3
    base_delay_ms: float = 1000.0
    backoff_multiplier: float = 2.0
    jitter_ratio: float = 0.1
    per_task_timeout_ms: float = 60000.0
    retryable: RetryPredicate = field(default=default_retryable, compare=False)

    def __post_init__(self):
        if self.max_attempts < 0:
            raise ConfigurationError(f"max_attempts must be >= 0, got {self.max_attempts}")
        if self.base_delay_ms < 0:
            raise ConfigurationError(f"base_delay_ms must be >= 0, got {self.base_delay_ms}")
        if self.backoff_multiplier < 1:
            raise ConfigurationError(
                f"backoff_multiplier must be >= 1, got {self.backoff_multiplier}"
            )
        if not 0 <= self.jitter_ratio <= 1:
            raise ConfigurationError(
                f"jitter_ratio must be within [0, 1], got {self.jitter_ratio}"
            )
        if self.per_task_timeout_ms <= 0:
            raise ConfigurationError(
                f"per_task_timeout_ms must be > 0, got {self.per_task_timeout_ms}"
            )


class RetryController:
    """Decides whether a failed attempt is retried and how long to wait"""

    def __init__(self, rng: Optional[random.Random] = None):
        """
        Args:
            rng: Random source for jitter (a private Random if omitted)
        """
        self.rng = rng or random.Random()

    def should_retry(self, attempt_number: int, policy: RetryPolicy) -> bool:
        """
        Check if the task may be dispatched again

        Args:
            attempt_number: Zero-based number of the attempt that just failed
            policy: Retry policy

        Returns:
            False once attempt_number >= policy.max_attempts
        """
        return attempt_number < policy.max_attempts

    def is_retryable(self, error: BaseException, policy: RetryPolicy) -> bool:
        """Apply the policy's retry predicate to a failure"""
        return bool(policy.retryable(error))

    def base_delay(self, attempt_number: int, policy: RetryPolicy) -> float:
        """Un-jittered backoff in milliseconds"""
        return policy.base_delay_ms * (policy.backoff_multiplier ** attempt_number)

    def next_delay(self, attempt_number: int, policy: RetryPolicy) -> float:
        """
        Compute the backoff before the next attempt

        Args:
            attempt_number: Zero-based number of the attempt that just failed
            policy: Retry policy

        Returns:
            Delay in milliseconds, never negative and within
            +/- jitter_ratio of the base value
        """
        base = self.base_delay(attempt_number, policy)
        if policy.jitter_ratio == 0 or base == 0:
            return base

        jitter = self.rng.uniform(-policy.jitter_ratio, policy.jitter_ratio) * base
        return max(0.0, base + jitter)


class TaskState(str, Enum):
    """Lifecycle states of a task inside the engine"""

    PENDING = "pending"
    ATTEMPTING = "attempting"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({TaskState.SUCCEEDED, TaskState.FAILED, TaskState.CANCELLED})

ALLOWED_TRANSITIONS = {
    TaskState.PENDING: {TaskState.ATTEMPTING, TaskState.CANCELLED},
    TaskState.ATTEMPTING: {TaskState.SUCCEEDED, TaskState.RETRYING, TaskState.FAILED},
    TaskState.RETRYING: {TaskState.ATTEMPTING, TaskState.FAILED},
    TaskState.SUCCEEDED: set(),
    TaskState.FAILED: set(),
    TaskState.CANCELLED: set(),
}


class TaskLifecycle:
    """
    Explicit per-task state machine

    Pending -> Attempting -> (Succeeded | Retrying -> Attempting | Failed)
    Pending -> Cancelled

    Retrying -> Failed covers a batch cancelled during backoff.
    """

    def __init__(self, task_id: str):
        self.task_id = task_id
        self.state = TaskState.PENDING
        self.attempts_started = 0
        self.history: List[Tuple[TaskState, TaskState]] = []

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def current_attempt(self) -> int:
        """Zero-based number of the current (or last) attempt"""
        return max(0, self.attempts_started - 1)

    @property
    def retries_used(self) -> int:
        return max(0, self.attempts_started - 1)

    def transition(self, new_state: TaskState) -> None:
        if new_state not in ALLOWED_TRANSITIONS[self.state]:
            raise InvalidTransitionError(
                f"Task {self.task_id}: illegal transition {self.state.value} -> {new_state.value}"
            )
        self.history.append((self.state, new_state))
        self.state = new_state

    def begin_attempt(self) -> int:
        """Move to ATTEMPTING and return the zero-based attempt number"""
        self.transition(TaskState.ATTEMPTING)
        self.attempts_started += 1
        return self.attempts_started - 1

    def succeed(self) -> None:
        self.transition(TaskState.SUCCEEDED)

    def schedule_retry(self) -> None:
        self.transition(TaskState.RETRYING)

    def fail(self) -> None:
        self.transition(TaskState.FAILED)

    def cancel(self) -> None:
        self.transition(TaskState.CANCELLED)
