"""
CLI interface for the batch engine

Commands:
- run: execute a task file against a work function
- estimate: project the cost of a batch before running it
- size: pick a batch size for the available work
- report: show a saved batch report
"""
import importlib
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Callable, List, Optional

import click
import yaml

from batch_engine import __version__
from batch_engine.core.batch_sizer import choose_batch_size
from batch_engine.core.engine import BatchExecutionEngine, coerce_task
from batch_engine.core.errors import BatchEngineError, ConfigurationError
from batch_engine.models.task import Task
from batch_engine.schemas.config import EngineConfig, load_engine_config
from batch_engine.tracking.cost_ledger import CostLedger
from batch_engine.tracking.progress_display import BatchProgressDisplay
from batch_engine.utils.cli_helpers import (
    print_error,
    print_header,
    print_info,
    print_section,
    print_success,
    print_warning,
)
from batch_engine.utils.logging_config import setup_logging
from batch_engine.utils.report_io import dumps_report, load_report, save_report, save_results
from batch_engine.utils.unit_pricing import DEFAULT_MODEL, load_price_table


def load_tasks(path: Path) -> List[Task]:
    """
    Load tasks from a YAML or JSON file

    The file holds a list of {id, payload, priority?} mappings, or a
    mapping with a `tasks` key holding that list.
    """
    with open(path, 'r', encoding='utf-8') as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid task file {path}: {e}") from e

    if isinstance(data, dict):
        data = data.get('tasks')
    if not isinstance(data, list):
        raise ConfigurationError(f"Task file {path} must contain a list of tasks")

    return [coerce_task(item) for item in data]


def resolve_work_function(target: str) -> Callable[[Any], Any]:
    """Import a work function from a 'module:function' reference"""
    module_name, sep, attr = target.partition(':')
    if not sep or not module_name or not attr:
        raise ConfigurationError(f"Work function must be given as module:function, got '{target}'")

    # Console scripts don't put the working directory on sys.path
    cwd = os.getcwd()
    if cwd not in sys.path:
        sys.path.insert(0, cwd)

    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigurationError(f"Cannot import module '{module_name}': {e}") from e

    work_fn = module
    for part in attr.split('.'):
        work_fn = getattr(work_fn, part, None)
        if work_fn is None:
            raise ConfigurationError(f"Module '{module_name}' has no attribute '{attr}'")

    if not callable(work_fn):
        raise ConfigurationError(f"'{target}' is not callable")
    return work_fn


@click.group()
@click.version_option(version=__version__)
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose logging")
@click.option(
    "--log-format",
    type=click.Choice(["colored", "json", "simple"]),
    default="simple",
    help="Log output format",
)
@click.option("--log-file", type=click.Path(dir_okay=False), help="Also write DEBUG-level JSON logs to this file")
def cli(verbose: bool, log_format: str, log_file: Optional[str]) -> None:
    """
    Batch Engine - Adaptive parallel execution for bulk AI annotation

    Examples:

        # Run a batch
        batch-engine run tasks.yaml --work annotate:describe_image

        # Estimate cost
        batch-engine estimate 500 --input-units 1200 --output-units 300

        # Pick a batch size
        batch-engine size 37 --min 5 --max 50 --optimal 20
    """
    setup_logging(
        level="DEBUG" if verbose else "WARNING",
        format_type=log_format,
        log_file=Path(log_file) if log_file else None,
        enable_file_logging=log_file is not None,
    )


@cli.command()
@click.argument("tasks_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--work", "work", required=True, help="Work function as module:function")
@click.option("--config", "config_path", type=click.Path(exists=True, dir_okay=False), help="Engine config YAML")
@click.option("--concurrency", type=int, help="Override configured concurrency")
@click.option("--model", default=DEFAULT_MODEL, show_default=True, help="Model used for cost estimates")
@click.option("--report", "report_path", type=click.Path(dir_okay=False), help="Write the batch report JSON here")
@click.option("--results", "results_path", type=click.Path(dir_okay=False), help="Write per-task results JSON here")
@click.option("--no-display", is_flag=True, help="Print plain progress lines instead of the live display")
def run(
    tasks_file: str,
    work: str,
    config_path: Optional[str],
    concurrency: Optional[int],
    model: str,
    report_path: Optional[str],
    results_path: Optional[str],
    no_display: bool,
) -> None:
    """
    Run a batch of tasks

    TASKS_FILE: YAML or JSON list of {id, payload, priority}
    """
    print_header(f"Batch Engine ({__version__})")

    try:
        tasks = load_tasks(Path(tasks_file))
        work_fn = resolve_work_function(work)

        overrides = {'concurrency': concurrency} if concurrency is not None else {}
        if config_path:
            config = load_engine_config(Path(config_path), **overrides)
        else:
            config = EngineConfig.from_env(**overrides)
    except (ConfigurationError, FileNotFoundError) as e:
        print_error(str(e))
        sys.exit(2)

    print_info("Tasks", f"{len(tasks)} from {tasks_file}")
    print_info("Work function", work)
    print_info("Concurrency", str(config.concurrency), "yellow")
    print_info("Retries", str(config.retry_attempts), "yellow")

    ledger = CostLedger(model=model)
    display = BatchProgressDisplay(total=len(tasks), name=Path(tasks_file).stem, ledger=ledger, use_rich=not no_display)
    engine = BatchExecutionEngine(config)

    display.start()
    try:
        results = engine.run_batch(tasks, work_fn, ledger=ledger, observers=[display])
    except BatchEngineError as e:
        print_error("Batch aborted", details=str(e))
        sys.exit(2)
    finally:
        display.stop()

    report = engine.build_report()
    if report_path:
        save_report(report, report_path)
        print_info("Report", report_path, "blue")
    if results_path:
        save_results(results, results_path)
        print_info("Results", results_path, "blue")

    print_info("Total cost", CostLedger.format_cost(report.cumulative_cost))
    for tip in ledger.get_optimization_tips():
        print_warning(tip)

    failed = [r for r in results if not r.succeeded]
    if failed:
        print_section(f"{len(failed)} task(s) did not succeed:")
        for result in failed[:20]:
            click.echo(f"  ✗ {result.task_id}: {result.error.error_type}: {result.error.message}")
        if len(failed) > 20:
            click.echo(f"  ... and {len(failed) - 20} more")
        sys.exit(1)

    print_success(f"All {len(results)} tasks succeeded")


@cli.command()
@click.argument("count", type=click.IntRange(min=0))
@click.option("--input-units", type=click.IntRange(min=0), required=True, help="Average input units per task")
@click.option("--output-units", type=click.IntRange(min=0), required=True, help="Average output units per task")
@click.option("--auxiliary-units", type=click.IntRange(min=0), default=0, help="Average auxiliary units per task")
@click.option("--model", default=DEFAULT_MODEL, show_default=True, help="Model to price against")
@click.option("--price-table", type=click.Path(exists=True, dir_okay=False), help="Custom price table YAML")
def estimate(
    count: int,
    input_units: int,
    output_units: int,
    auxiliary_units: int,
    model: str,
    price_table: Optional[str],
) -> None:
    """
    Estimate the cost of a batch

    COUNT: Number of tasks in the batch
    """
    try:
        table = load_price_table(Path(price_table)) if price_table else None
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        print_error("Invalid price table", details=str(e))
        sys.exit(2)

    ledger = CostLedger(model=model, price_table=table)
    breakdown = ledger.estimate_batch_cost(count, input_units, output_units, auxiliary_units)

    print_header("Cost Estimate", subtitle=f"{count} tasks on {model}")
    print_info("Input", CostLedger.format_cost(breakdown.input_cost))
    print_info("Output", CostLedger.format_cost(breakdown.output_cost))
    if auxiliary_units:
        print_info("Auxiliary", CostLedger.format_cost(breakdown.auxiliary_cost))
    print_info("Total cost", CostLedger.format_cost(breakdown.total_cost), "yellow")
    if count > 0:
        print_info("Per task", CostLedger.format_cost(breakdown.total_cost / count))


@cli.command()
@click.argument("available", type=int)
@click.option("--min", "minimum", type=int, required=True, help="Minimum batch size")
@click.option("--max", "maximum", type=int, required=True, help="Maximum batch size")
@click.option("--optimal", type=int, required=True, help="Preferred batch size")
def size(available: int, minimum: int, maximum: int, optimal: int) -> None:
    """
    Choose a batch size

    AVAILABLE: Number of items waiting to be processed
    """
    try:
        chosen = choose_batch_size(available, minimum, maximum, optimal)
    except ConfigurationError as e:
        print_error(str(e))
        sys.exit(2)

    click.echo(str(chosen))


@cli.command()
@click.argument("report_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--json", "as_json", is_flag=True, help="Print the canonical JSON")
def report(report_file: str, as_json: bool) -> None:
    """
    Show a saved batch report

    REPORT_FILE: JSON file written by `run --report`
    """
    try:
        batch_report = load_report(Path(report_file))
    except ValueError as e:
        print_error(str(e))
        sys.exit(2)

    if as_json:
        click.echo(dumps_report(batch_report), nl=False)
        return

    print_header("Batch Report", subtitle=report_file)
    print_info("Duration", f"{batch_report.total_duration_ms / 1000:.2f}s")
    print_info("Throughput", f"{batch_report.throughput_per_sec:.2f} tasks/s")
    print_info("Success rate", f"{batch_report.success_rate * 100:.1f}%")
    print_info("Retry rate", f"{batch_report.retry_rate:.2f}")
    print_info("Latency", f"p50 {batch_report.p50:.0f}ms, p95 {batch_report.p95:.0f}ms, p99 {batch_report.p99:.0f}ms")
    print_info("Total cost", CostLedger.format_cost(batch_report.cumulative_cost), "yellow")

    if batch_report.metadata:
        print_section("Details")
        click.echo(json.dumps(batch_report.metadata, indent=2, sort_keys=True))


def main() -> None:
    """Entry point for CLI"""
    cli()


if __name__ == "__main__":
    main()
