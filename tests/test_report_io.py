"""
Tests for report persistence
"""
import json

import pytest

from batch_engine.models.task import BatchReport, BatchResult, ErrorDescriptor, ErrorKind
from batch_engine.utils.report_io import dumps_report, load_report, save_report, save_results


@pytest.fixture
def report():
    return BatchReport(
        total_duration_ms=1234.5,
        throughput_per_sec=8.1,
        success_rate=0.9,
        retry_rate=0.2,
        p50=110.0,
        p95=340.0,
        p99=512.0,
        cumulative_cost=0.0123,
        metadata={'total': 10, 'failed': 1},
    )


class TestReportPersistence:
    """Tests for save_report / load_report"""

    def test_field_names(self, report):
        data = json.loads(dumps_report(report))

        assert set(data) == {
            "totalDurationMs", "throughputPerSec", "successRate", "retryRate",
            "p50", "p95", "p99", "cumulativeCost", "metadata",
        }

    def test_saving_twice_is_byte_identical(self, report, tmp_path):
        first = save_report(report, tmp_path / "a.json").read_bytes()
        second = save_report(report, tmp_path / "b.json").read_bytes()

        assert first == second
        assert first.endswith(b"\n")

    def test_round_trip(self, report, tmp_path):
        path = save_report(report, tmp_path / "nested" / "report.json")
        assert load_report(path) == report

    def test_no_metadata_key_when_empty(self):
        report = BatchReport(0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0)
        assert "metadata" not in json.loads(dumps_report(report))

    def test_load_missing(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_report(tmp_path / "missing.json")

    def test_load_invalid_json(self, tmp_path):
        path = tmp_path / "report.json"
        path.write_text("{not json")

        with pytest.raises(ValueError):
            load_report(path)

    def test_load_wrong_shape(self, tmp_path):
        path = tmp_path / "report.json"
        path.write_text('{"p50": 1}')

        with pytest.raises(ValueError, match="not a batch report"):
            load_report(path)


class TestResultPersistence:
    """Tests for save_results"""

    def test_results_saved_in_order(self, tmp_path):
        results = [
            BatchResult("a", True, value={'label': 'cat'}, duration_ms=120),
            BatchResult(
                "b", False,
                error=ErrorDescriptor("ConnectionError", "reset", ErrorKind.TRANSIENT, 2),
                duration_ms=900, retries_used=2,
            ),
        ]

        path = save_results(results, tmp_path / "results.json")
        data = json.loads(path.read_text())

        assert [item['task_id'] for item in data] == ["a", "b"]
        assert data[1]['error']['kind'] == "transient"
