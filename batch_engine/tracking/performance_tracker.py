"""
Performance Tracker - Timing samples, throughput and latency percentiles

Records one sample per finalized task and computes metrics on demand.
Percentiles use the nearest-rank method over the full sample set:
index = ceil(p / 100 * n) - 1 on the sorted durations.
"""
from __future__ import annotations
import math
import time
import logging
import threading
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence

from batch_engine.models.task import AttemptOutcome, TaskAttempt

logger = logging.getLogger(__name__)


def nearest_rank_percentile(values: Sequence[float], percentile: float) -> float:
    """
    Nearest-rank percentile of a sample set

    Args:
        values: Samples (need not be sorted; never mutated)
        percentile: Percentile in (0, 100]

    Returns:
        The sample at the nearest rank, or 0.0 for an empty set
    """
    if not values:
        return 0.0
    ordered = sorted(values)
    index = math.ceil((percentile / 100.0) * len(ordered)) - 1
    return float(ordered[max(0, min(index, len(ordered) - 1))])


@dataclass(frozen=True)
class PerformanceMetrics:
    """Aggregated metrics for a batch (rates are fractions in [0, 1])"""

    batch_size: int
    concurrency: int
    total_duration_ms: float
    average_duration_ms: float
    throughput_per_sec: float
    success_rate: float
    retry_rate: float
    error_rate: float
    p50: float
    p95: float
    p99: float
    completed: int = 0
    failed: int = 0
    timeouts: int = 0
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict:
        data = asdict(self)
        data['timestamp'] = self.timestamp.isoformat()
        return data


@dataclass(frozen=True)
class BenchmarkResult:
    """Comparison of an optimized run against an optional baseline"""

    name: str
    optimized: PerformanceMetrics
    baseline: Optional[PerformanceMetrics] = None
    speedup: float = 1.0
    throughput_increase: float = 0.0  # percentage
    duration_reduction: float = 0.0  # percentage


class PerformanceTracker:
    """
    Tracks per-task timing and outcomes for one or more batches

    Writes are synchronized; reads work on copies so computing metrics
    never mutates the recorded samples.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        """
        Initialize performance tracker

        Args:
            clock: Monotonic time source in seconds
        """
        self.clock = clock
        self._lock = threading.Lock()
        self._durations: List[float] = []
        self._errors = 0
        self._retries = 0
        self._attempts = 0
        self._timeouts = 0
        self._start_time = clock()
        self.benchmark_history: List[BenchmarkResult] = []

    def start_batch(self) -> None:
        """Reset samples and start the batch clock"""
        with self._lock:
            self._durations = []
            self._errors = 0
            self._retries = 0
            self._attempts = 0
            self._timeouts = 0
            self._start_time = self.clock()

    def record_task(self, duration_ms: float, retries_used: int = 0, failed: bool = False) -> None:
        """
        Record a finalized task

        Args:
            duration_ms: Task duration in milliseconds
            retries_used: Retries the task consumed
            failed: Whether the task ended in failure
        """
        with self._lock:
            self._durations.append(float(duration_ms))
            self._retries += retries_used
            if failed:
                self._errors += 1

    def record_attempt(self, attempt: TaskAttempt) -> None:
        """Record a single dispatch (counts attempts and timeouts)"""
        with self._lock:
            self._attempts += 1
            if attempt.outcome == AttemptOutcome.TIMEOUT:
                self._timeouts += 1

    @property
    def sample_count(self) -> int:
        with self._lock:
            return len(self._durations)

    @property
    def attempt_count(self) -> int:
        with self._lock:
            return self._attempts

    def get_samples(self) -> List[float]:
        """Copy of recorded durations in recording order"""
        with self._lock:
            return list(self._durations)

    def get_percentile(self, percentile: float) -> float:
        return nearest_rank_percentile(self.get_samples(), percentile)

    def elapsed_ms(self) -> float:
        return (self.clock() - self._start_time) * 1000.0

    def get_metrics(self, total_expected: int, concurrency: int) -> PerformanceMetrics:
        """
        Compute current metrics

        Args:
            total_expected: Number of tasks in the batch
            concurrency: Worker count used for the batch

        Returns:
            PerformanceMetrics snapshot
        """
        with self._lock:
            durations = list(self._durations)
            errors = self._errors
            retries = self._retries
            timeouts = self._timeouts
            start_time = self._start_time

        total_duration_ms = (self.clock() - start_time) * 1000.0
        completed = len(durations)
        average = math.fsum(durations) / completed if completed > 0 else 0.0
        throughput = completed / (total_duration_ms / 1000.0) if total_duration_ms > 0 else 0.0

        success_rate = (completed - errors) / total_expected if total_expected > 0 else 0.0
        error_rate = errors / total_expected if total_expected > 0 else 0.0
        retry_rate = retries / completed if completed > 0 else 0.0

        ordered = sorted(durations)
        return PerformanceMetrics(
            batch_size=total_expected,
            concurrency=concurrency,
            total_duration_ms=total_duration_ms,
            average_duration_ms=average,
            throughput_per_sec=throughput,
            success_rate=success_rate,
            retry_rate=retry_rate,
            error_rate=error_rate,
            p50=nearest_rank_percentile(ordered, 50),
            p95=nearest_rank_percentile(ordered, 95),
            p99=nearest_rank_percentile(ordered, 99),
            completed=completed,
            failed=errors,
            timeouts=timeouts,
        )

    def create_benchmark(
        self,
        name: str,
        optimized: PerformanceMetrics,
        baseline: Optional[PerformanceMetrics] = None,
    ) -> BenchmarkResult:
        """
        Compare a run against a baseline and keep it in the history

        Args:
            name: Benchmark label
            optimized: Metrics of the run being evaluated
            baseline: Metrics of the reference run

        Returns:
            BenchmarkResult with speedup and percentage changes
        """
        speedup, throughput_increase, duration_reduction = 1.0, 0.0, 0.0

        if baseline is not None:
            if optimized.average_duration_ms > 0:
                speedup = baseline.average_duration_ms / optimized.average_duration_ms
            if baseline.throughput_per_sec > 0:
                throughput_increase = (
                    (optimized.throughput_per_sec - baseline.throughput_per_sec)
                    / baseline.throughput_per_sec * 100
                )
            if baseline.total_duration_ms > 0:
                duration_reduction = (
                    (baseline.total_duration_ms - optimized.total_duration_ms)
                    / baseline.total_duration_ms * 100
                )

        benchmark = BenchmarkResult(
            name=name,
            optimized=optimized,
            baseline=baseline,
            speedup=speedup,
            throughput_increase=throughput_increase,
            duration_reduction=duration_reduction,
        )
        self.benchmark_history.append(benchmark)
        return benchmark

    def generate_report(self, metrics: PerformanceMetrics) -> str:
        """Plain-text performance report"""
        lines = [
            "=" * 80,
            "PERFORMANCE REPORT",
            "=" * 80,
            "",
            f"Timestamp:        {metrics.timestamp.isoformat()}",
            f"Batch Size:       {metrics.batch_size}",
            f"Concurrency:      {metrics.concurrency}",
            "",
            "Duration Metrics:",
            f"  Total:          {metrics.total_duration_ms / 1000:.2f}s",
            f"  Average/Task:   {metrics.average_duration_ms:.0f}ms",
            f"  P50 (median):   {metrics.p50:.0f}ms",
            f"  P95:            {metrics.p95:.0f}ms",
            f"  P99:            {metrics.p99:.0f}ms",
            "",
            "Throughput:",
            f"  Tasks/second:   {metrics.throughput_per_sec:.2f}",
            "",
            "Quality Metrics:",
            f"  Success Rate:   {metrics.success_rate * 100:.1f}%",
            f"  Error Rate:     {metrics.error_rate * 100:.1f}%",
            f"  Avg Retries:    {metrics.retry_rate:.2f}",
            "",
        ]

        if self.benchmark_history:
            lines.append("Benchmark Comparisons:")
            for bench in self.benchmark_history:
                lines.append(f"  {bench.name}:")
                lines.append(f"    Speedup:      {bench.speedup:.2f}x")
                lines.append(f"    Throughput:   {bench.throughput_increase:+.1f}%")
                lines.append(f"    Duration:     {-bench.duration_reduction:+.1f}%")
            lines.append("")

        lines.append("=" * 80)
        return "\n".join(lines)

    def log_progress(self, completed: int, total: int, metrics: PerformanceMetrics) -> None:
        """Log a progress line with an ETA estimate"""
        percent = (completed / total * 100) if total > 0 else 0.0
        if metrics.throughput_per_sec > 0:
            eta = f"{(total - completed) / metrics.throughput_per_sec:.0f}s"
        else:
            eta = "N/A"

        logger.info(
            f"Batch progress: {completed}/{total} ({percent:.1f}%), "
            f"{metrics.throughput_per_sec:.2f} tasks/s, ETA {eta}, "
            f"success {metrics.success_rate * 100:.1f}%"
        )
