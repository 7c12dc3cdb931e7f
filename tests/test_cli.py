"""
Tests for the batch-engine CLI

Tests all CLI commands: run, estimate, size, report
"""
import json
import textwrap
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from batch_engine import __version__
from batch_engine.core.errors import ConfigurationError
from batch_engine.interfaces.cli import cli, load_tasks, resolve_work_function
from batch_engine.models.task import BatchReport
from batch_engine.utils.cli_helpers import DEFAULT_ICON, label_icon
from batch_engine.utils.report_io import dumps_report, load_report, save_report

WORK_MODULE = textwrap.dedent('''
    from batch_engine.core.errors import NonRetryableError


    def label(payload):
        return {"label": f"item-{payload}", "usage": {"input_tokens": 100, "output_tokens": 20}}


    def reject(payload):
        raise NonRetryableError(f"cannot label {payload}")
''')


@pytest.fixture(autouse=True)
def quiet_logging():
    """Keep the CLI from reconfiguring the root logger during tests"""
    with patch("batch_engine.interfaces.cli.setup_logging") as mock_setup:
        yield mock_setup


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def workspace(tmp_path, monkeypatch):
    """Directory with a work module, a task file and a fast engine config"""
    monkeypatch.chdir(tmp_path)
    (tmp_path / "cli_work_funcs.py").write_text(WORK_MODULE)
    (tmp_path / "tasks.yaml").write_text("- id: a\n  payload: 1\n- id: b\n  payload: 2\n  priority: 3\n")
    (tmp_path / "engine.yaml").write_text("concurrency: 2\nretry_attempts: 1\nretry_delay_ms: 0\nrate_limit_delay_ms: 0\n")
    return tmp_path


class TestCLIHelp:
    """Tests for CLI help output"""

    def test_main_help(self, runner):
        result = runner.invoke(cli, ["--help"])
        assert result.exit_code == 0
        for command in ("run", "estimate", "size", "report"):
            assert command in result.output

    def test_version(self, runner):
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_verbose_enables_debug_logging(self, runner, quiet_logging):
        runner.invoke(cli, ["-v", "size", "3", "--min", "5", "--max", "100", "--optimal", "20"])
        assert quiet_logging.call_args.kwargs["level"] == "DEBUG"


class TestRunCommand:
    """Tests for the run command"""

    def test_run_success_writes_report(self, runner, workspace):
        result = runner.invoke(cli, [
            "run", "tasks.yaml",
            "--work", "cli_work_funcs:label",
            "--config", "engine.yaml",
            "--report", "out/report.json",
            "--results", "out/results.json",
            "--no-display",
        ])

        assert result.exit_code == 0, result.output
        assert "All 2 tasks succeeded" in result.output

        report = load_report(workspace / "out" / "report.json")
        assert report.success_rate == 1.0
        assert report.cumulative_cost > 0

        results = json.loads((workspace / "out" / "results.json").read_text())
        assert [item["task_id"] for item in results] == ["a", "b"]

    def test_run_with_failures_exits_nonzero(self, runner, workspace):
        result = runner.invoke(cli, [
            "run", "tasks.yaml",
            "--work", "cli_work_funcs:reject",
            "--config", "engine.yaml",
            "--no-display",
        ])

        assert result.exit_code == 1
        assert "2 task(s) did not succeed" in result.output
        assert "cannot label" in result.output

    def test_run_rejects_bad_work_reference(self, runner, workspace):
        result = runner.invoke(cli, ["run", "tasks.yaml", "--work", "no_colon_here", "--no-display"])
        assert result.exit_code == 2

    def test_run_rejects_invalid_config(self, runner, workspace):
        (workspace / "bad.yaml").write_text("concurrency: 0\n")
        result = runner.invoke(cli, [
            "run", "tasks.yaml", "--work", "cli_work_funcs:label", "--config", "bad.yaml", "--no-display",
        ])
        assert result.exit_code == 2


class TestEstimateCommand:
    """Tests for the estimate command"""

    def test_estimate(self, runner):
        result = runner.invoke(cli, [
            "estimate", "100",
            "--input-units", "1000",
            "--output-units", "500",
            "--model", "claude-3-haiku-20240307",
        ])

        assert result.exit_code == 0
        # 100 * (1000 * 0.25 + 500 * 1.25) / 1M
        assert "$0.0875" in result.output

    def test_estimate_with_price_table(self, runner, tmp_path):
        table = tmp_path / "prices.yaml"
        table.write_text("my-model:\n  input: 10.0\n  output: 10.0\n")

        result = runner.invoke(cli, [
            "estimate", "10", "--input-units", "1000", "--output-units", "1000",
            "--model", "my-model", "--price-table", str(table),
        ])

        assert result.exit_code == 0
        assert "$0.2000" in result.output


class TestSizeCommand:
    """Tests for the size command"""

    @pytest.mark.parametrize("available,expected", [("3", "3"), ("200", "20"), ("50", "20")])
    def test_size(self, runner, available, expected):
        result = runner.invoke(cli, ["size", available, "--min", "5", "--max", "100", "--optimal", "20"])

        assert result.exit_code == 0
        assert result.output.strip() == expected

    def test_size_inverted_bounds(self, runner):
        result = runner.invoke(cli, ["size", "50", "--min", "100", "--max", "5", "--optimal", "20"])
        assert result.exit_code == 2


class TestReportCommand:
    """Tests for the report command"""

    @pytest.fixture
    def report_file(self, tmp_path):
        report = BatchReport(2500.0, 4.0, 0.9, 0.1, 100.0, 300.0, 450.0, 0.42, {'total': 10})
        return save_report(report, tmp_path / "report.json")

    def test_report_summary(self, runner, report_file):
        result = runner.invoke(cli, ["report", str(report_file)])

        assert result.exit_code == 0
        assert "Batch Report" in result.output
        assert "90.0%" in result.output
        assert "$0.4200" in result.output

    def test_report_json_is_canonical(self, runner, report_file):
        result = runner.invoke(cli, ["report", str(report_file), "--json"])

        assert result.exit_code == 0
        assert result.output == dumps_report(load_report(report_file))

    def test_report_invalid_file(self, runner, tmp_path):
        path = tmp_path / "broken.json"
        path.write_text("[]")

        result = runner.invoke(cli, ["report", str(path)])
        assert result.exit_code == 2


class TestHelpers:
    """Tests for task loading and work function resolution"""

    def test_load_tasks_from_json_mapping(self, tmp_path):
        path = tmp_path / "tasks.json"
        path.write_text(json.dumps({"tasks": [{"id": 1, "payload": "x"}]}))

        tasks = load_tasks(path)

        assert tasks[0].id == "1"
        assert tasks[0].payload == "x"

    def test_load_tasks_rejects_scalars(self, tmp_path):
        path = tmp_path / "tasks.yaml"
        path.write_text("just text\n")

        with pytest.raises(ConfigurationError):
            load_tasks(path)

    def test_resolve_work_function(self):
        assert resolve_work_function("json:dumps") is json.dumps

    def test_resolve_missing_attribute(self):
        with pytest.raises(ConfigurationError):
            resolve_work_function("json:not_there")


class TestLabelIcons:
    """Tests for info-line icons"""

    @pytest.mark.parametrize("label", [
        "Input", "Output", "Per task", "Throughput", "Latency", "Success rate", "Retry rate", "Results",
        "Total cost",
    ])
    def test_cli_labels_have_icons(self, label):
        assert label_icon(label) != DEFAULT_ICON

    def test_keyword_fallback(self):
        assert label_icon("Estimated cost") == "💰"
        assert label_icon("Something else") == DEFAULT_ICON
