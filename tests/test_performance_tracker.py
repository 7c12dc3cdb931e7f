"""
Tests for PerformanceTracker
"""
import logging
import random

import pytest

from batch_engine.models.task import AttemptOutcome, TaskAttempt
from batch_engine.tracking.performance_tracker import PerformanceTracker, nearest_rank_percentile


class ManualClock:
    def __init__(self):
        self.time = 0.0

    def __call__(self) -> float:
        return self.time


class TestNearestRankPercentile:
    """Tests for the percentile method"""

    def test_empty(self):
        assert nearest_rank_percentile([], 50) == 0.0

    def test_known_values(self):
        values = [float(v) for v in range(1, 101)]
        assert nearest_rank_percentile(values, 50) == 50.0
        assert nearest_rank_percentile(values, 95) == 95.0
        assert nearest_rank_percentile(values, 99) == 99.0

    def test_small_sample(self):
        # ceil(0.5 * 4) - 1 = 1 -> second smallest
        assert nearest_rank_percentile([40, 10, 30, 20], 50) == 20.0
        assert nearest_rank_percentile([40, 10, 30, 20], 99) == 40.0

    def test_does_not_mutate_input(self):
        values = [3.0, 1.0, 2.0]
        nearest_rank_percentile(values, 50)
        assert values == [3.0, 1.0, 2.0]

    def test_percentiles_are_ordered(self):
        rng = random.Random(3)
        for _ in range(50):
            values = [rng.uniform(1, 5000) for _ in range(rng.randint(1, 40))]
            p50 = nearest_rank_percentile(values, 50)
            p95 = nearest_rank_percentile(values, 95)
            p99 = nearest_rank_percentile(values, 99)
            assert p50 <= p95 <= p99


class TestPerformanceTracker:
    """Tests for metric computation"""

    def test_metrics_for_finished_batch(self):
        clock = ManualClock()
        tracker = PerformanceTracker(clock=clock)
        for duration in (100, 200, 300, 400):
            tracker.record_task(duration)
        tracker.record_task(500, retries_used=2, failed=True)
        clock.time = 2.0

        metrics = tracker.get_metrics(total_expected=5, concurrency=2)

        assert metrics.completed == 5
        assert metrics.failed == 1
        assert metrics.total_duration_ms == pytest.approx(2000.0)
        assert metrics.average_duration_ms == pytest.approx(300.0)
        assert metrics.throughput_per_sec == pytest.approx(2.5)
        assert metrics.success_rate == pytest.approx(0.8)
        assert metrics.error_rate == pytest.approx(0.2)
        assert metrics.retry_rate == pytest.approx(0.4)
        assert metrics.p50 == 300.0
        assert metrics.p99 == 500.0

    def test_rates_use_expected_total(self):
        """Unfinished tasks count against the success rate"""
        tracker = PerformanceTracker(clock=ManualClock())
        tracker.record_task(100)
        metrics = tracker.get_metrics(total_expected=4, concurrency=1)

        assert metrics.success_rate == pytest.approx(0.25)

    def test_empty_tracker(self):
        metrics = PerformanceTracker(clock=ManualClock()).get_metrics(0, 1)

        assert metrics.completed == 0
        assert metrics.throughput_per_sec == 0.0
        assert metrics.success_rate == 0.0
        assert metrics.p50 == 0.0

    def test_get_metrics_is_idempotent(self):
        clock = ManualClock()
        tracker = PerformanceTracker(clock=clock)
        for duration in (50, 10, 30):
            tracker.record_task(duration)
        clock.time = 1.0

        assert tracker.get_metrics(3, 1).p50 == tracker.get_metrics(3, 1).p50
        assert tracker.get_samples() == [50.0, 10.0, 30.0]

    def test_records_attempts_and_timeouts(self):
        tracker = PerformanceTracker(clock=ManualClock())
        tracker.record_attempt(TaskAttempt("t1", 0, 0.0, 1.0, AttemptOutcome.TIMEOUT))
        tracker.record_attempt(TaskAttempt("t1", 1, 1.0, 1.5, AttemptOutcome.SUCCESS))
        tracker.record_task(1500, retries_used=1)

        assert tracker.attempt_count == 2
        assert tracker.get_metrics(1, 1).timeouts == 1

    def test_start_batch_resets(self):
        tracker = PerformanceTracker(clock=ManualClock())
        tracker.record_task(100, failed=True)
        tracker.start_batch()

        assert tracker.sample_count == 0
        assert tracker.get_metrics(1, 1).failed == 0


class TestBenchmarkAndReport:
    """Tests for benchmarking and text reports"""

    def _metrics(self, duration_ms: float, avg_ms: float, throughput: float):
        clock = ManualClock()
        tracker = PerformanceTracker(clock=clock)
        tracker.record_task(avg_ms)
        clock.time = duration_ms / 1000
        metrics = tracker.get_metrics(1, 1)
        assert metrics.throughput_per_sec == pytest.approx(throughput)
        return metrics

    def test_benchmark_against_baseline(self):
        tracker = PerformanceTracker(clock=ManualClock())
        baseline = self._metrics(4000, 4000, 0.25)
        optimized = self._metrics(1000, 1000, 1.0)

        bench = tracker.create_benchmark("parallel", optimized, baseline)

        assert bench.speedup == pytest.approx(4.0)
        assert bench.throughput_increase == pytest.approx(300.0)
        assert bench.duration_reduction == pytest.approx(75.0)
        assert tracker.benchmark_history == [bench]

    def test_generate_report_mentions_key_metrics(self):
        tracker = PerformanceTracker(clock=ManualClock())
        metrics = self._metrics(2000, 500, 0.5)
        tracker.create_benchmark("run", metrics)

        report = tracker.generate_report(metrics)

        assert "PERFORMANCE REPORT" in report
        assert "P95:" in report
        assert "Benchmark Comparisons:" in report

    def test_log_progress_with_eta(self, caplog):
        clock = ManualClock()
        tracker = PerformanceTracker(clock=clock)
        tracker.record_task(100)
        tracker.record_task(100)
        clock.time = 1.0
        metrics = tracker.get_metrics(4, 2)

        with caplog.at_level(logging.INFO, logger="batch_engine.tracking.performance_tracker"):
            tracker.log_progress(2, 4, metrics)

        assert "2/4 (50.0%)" in caplog.text
        assert "ETA 1s" in caplog.text
