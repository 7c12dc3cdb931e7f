"""
Report persistence for the batch engine

Serializes BatchReport (and per-task results) to JSON. Output is
deterministic: keys are sorted and the layout is fixed, so saving the
same report twice yields byte-identical files.
"""
from __future__ import annotations
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Sequence, Union

from batch_engine.models.task import BatchReport, BatchResult

logger = logging.getLogger(__name__)


def dumps_report(report: BatchReport) -> str:
    """Canonical JSON text for a report"""
    return json.dumps(report.to_dict(), indent=2, sort_keys=True) + "\n"


def save_report(report: BatchReport, path: Union[str, Path]) -> Path:
    """
    Save a report snapshot to a JSON file

    Args:
        report: Report to save
        path: Destination file (parent directories are created)

    Returns:
        Path written
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, 'w', encoding='utf-8', newline='\n') as f:
        f.write(dumps_report(report))

    logger.debug(f"Saved report to {path}")
    return path


def load_report(path: Union[str, Path]) -> BatchReport:
    """
    Load a report snapshot from a JSON file

    Raises:
        FileNotFoundError: If file doesn't exist
        ValueError: If the file is not a valid report
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"File not found: {path}")

    with open(path, 'r', encoding='utf-8') as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in {path}: {e}") from e

    try:
        return BatchReport.from_dict(data)
    except (KeyError, TypeError) as e:
        raise ValueError(f"{path} is not a batch report: missing {e}") from e


def save_results(results: Sequence[BatchResult], path: Union[str, Path]) -> Path:
    """
    Save per-task results (submission order) to a JSON file

    Values that are not JSON-serializable are written as their repr.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    payload: List[Dict[str, Any]] = [result.to_dict() for result in results]
    with open(path, 'w', encoding='utf-8', newline='\n') as f:
        json.dump(payload, f, indent=2, sort_keys=True, default=repr)
        f.write("\n")

    logger.debug(f"Saved {len(payload)} results to {path}")
    return path
