"""
Immutable data models for the batch engine

These records flow between the engine, the trackers and the caller:
- Task: one unit of work submitted to a batch
- TaskAttempt: one dispatch of a task (consumed by the performance tracker)
- BatchResult: the terminal outcome of one task
- ProgressSnapshot: read-only progress view published after each completion
- BatchReport: aggregated report for a finished batch
"""
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from enum import Enum


class AttemptOutcome(str, Enum):
    """Outcome of a single dispatch"""

    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"


class ErrorKind(str, Enum):
    """How a task failure is classified"""

    TRANSIENT = "transient"  # Network/provider hiccup, retry-eligible
    TIMEOUT = "timeout"  # Attempt exceeded the per-task timeout
    TERMINAL = "terminal"  # Marked non-retryable by the work function or policy
    CANCELLED = "cancelled"  # Never dispatched because the batch was cancelled


@dataclass(frozen=True)
class Task:
    """
    Immutable unit of work

    Higher priority values are dispatched first. The id must be unique
    within a batch.
    """

    id: str
    payload: Any = None
    priority: int = 0


@dataclass(frozen=True)
class TaskAttempt:
    """Record of one dispatch of a task (attempt_number is zero-based)"""

    task_id: str
    attempt_number: int
    started_at: float
    finished_at: float
    outcome: AttemptOutcome

    @property
    def duration_ms(self) -> float:
        return (self.finished_at - self.started_at) * 1000.0


@dataclass(frozen=True)
class ErrorDescriptor:
    """Serializable description of the error that ended a task"""

    error_type: str
    message: str
    kind: ErrorKind
    attempt_number: int = 0
    retryable: bool = True

    @classmethod
    def from_exception(
        cls,
        error: BaseException,
        kind: ErrorKind,
        attempt_number: int = 0,
        retryable: bool = True,
    ) -> ErrorDescriptor:
        return cls(
            error_type=type(error).__name__,
            message=str(error),
            kind=kind,
            attempt_number=attempt_number,
            retryable=retryable,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_type": self.error_type,
            "message": self.message,
            "kind": self.kind.value,
            "attempt_number": self.attempt_number,
            "retryable": self.retryable,
        }


@dataclass(frozen=True)
class BatchResult:
    """
    Terminal outcome of one submitted task

    Exactly one BatchResult exists per task in a batch. duration_ms covers
    the time from the first dispatch to the final outcome, backoff included.
    """

    task_id: str
    succeeded: bool
    value: Any = None
    error: Optional[ErrorDescriptor] = None
    duration_ms: int = 0
    retries_used: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "succeeded": self.succeeded,
            "value": self.value,
            "error": self.error.to_dict() if self.error else None,
            "duration_ms": self.duration_ms,
            "retries_used": self.retries_used,
        }


@dataclass(frozen=True)
class ProgressSnapshot:
    """
    Progress view published after each task completion

    completed counts finalized tasks (success or final failure); failed is
    the subset that failed. Rates are fractions in [0, 1].
    """

    completed: int
    failed: int
    total: int
    elapsed_ms: float = 0.0
    average_duration_ms: float = 0.0
    throughput_per_sec: float = 0.0
    success_rate: float = 0.0
    retry_rate: float = 0.0
    error_rate: float = 0.0

    @property
    def succeeded(self) -> int:
        return self.completed - self.failed

    @property
    def remaining(self) -> int:
        return max(0, self.total - self.completed)

    @property
    def percentage(self) -> float:
        return (self.completed / self.total * 100) if self.total > 0 else 0.0


@dataclass(frozen=True)
class BatchReport:
    """
    Final aggregated report for a batch

    to_dict() uses the field names of the persisted JSON snapshot.
    """

    total_duration_ms: float
    throughput_per_sec: float
    success_rate: float
    retry_rate: float
    p50: float
    p95: float
    p99: float
    cumulative_cost: float
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "totalDurationMs": self.total_duration_ms,
            "throughputPerSec": self.throughput_per_sec,
            "successRate": self.success_rate,
            "retryRate": self.retry_rate,
            "p50": self.p50,
            "p95": self.p95,
            "p99": self.p99,
            "cumulativeCost": self.cumulative_cost,
        }
        if self.metadata:
            data["metadata"] = dict(self.metadata)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> BatchReport:
        return cls(
            total_duration_ms=data["totalDurationMs"],
            throughput_per_sec=data["throughputPerSec"],
            success_rate=data["successRate"],
            retry_rate=data["retryRate"],
            p50=data["p50"],
            p95=data["p95"],
            p99=data["p99"],
            cumulative_cost=data["cumulativeCost"],
            metadata=dict(data.get("metadata") or {}),
        )
