"""
Structured logging for the batch engine

Every record emitted while a batch runs carries the batch id, and records
emitted by a worker also carry the task id and attempt number. Consoles get
colored (or plain, or JSON) lines; log files are always JSON, one object per
line, rotated by size.
"""
import json
import logging
import logging.handlers
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Tuple

current_batch_id: ContextVar[Optional[str]] = ContextVar('current_batch_id', default=None)
current_task_id: ContextVar[Optional[str]] = ContextVar('current_task_id', default=None)
current_attempt: ContextVar[Optional[int]] = ContextVar('current_attempt', default=None)

# (record attribute, console label, context variable)
CONTEXT_FIELDS: Tuple[Tuple[str, str, ContextVar], ...] = (
    ('batch_id', 'batch', current_batch_id),
    ('task_id', 'task', current_task_id),
    ('attempt', 'attempt', current_attempt),
)

# Structured values attached through `extra=`, e.g. by log_cost()
EXTRA_FIELDS = ('cost', 'units')

LINE_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'
DEFAULT_LOG_FILE = Path("logs/batch-engine.log")
MAX_LOG_BYTES = 10 * 1024 * 1024
LOG_BACKUPS = 5


def _context_items(record: logging.LogRecord) -> List[Tuple[str, str, object]]:
    items = []
    for attr, label, _ in CONTEXT_FIELDS:
        value = getattr(record, attr, None)
        if value is not None and value != '':
            items.append((attr, label, value))
    return items


class ContextFilter(logging.Filter):
    """Copies the current batch/task/attempt context onto each record"""

    def filter(self, record: logging.LogRecord) -> bool:
        for attr, _, var in CONTEXT_FIELDS:
            setattr(record, attr, var.get())
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per record, for files and log shippers"""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            'timestamp': datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }
        for attr, _, value in _context_items(record):
            entry[attr] = value
        for attr in EXTRA_FIELDS:
            if hasattr(record, attr):
                entry[attr] = getattr(record, attr)
        if record.exc_info:
            entry['exception'] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


class ColoredFormatter(logging.Formatter):
    """Console formatter: colored level name, context appended in brackets"""

    RESET = '\033[0m'
    LEVEL_COLORS = {
        'DEBUG': '\033[36m',
        'INFO': '\033[32m',
        'WARNING': '\033[33m',
        'ERROR': '\033[31m',
        'CRITICAL': '\033[35m',
    }

    def format(self, record: logging.LogRecord) -> str:
        original = record.levelname
        color = self.LEVEL_COLORS.get(original)
        if color:
            record.levelname = f"{color}{original}{self.RESET}"
        try:
            line = super().format(record)
        finally:
            record.levelname = original

        context = _context_items(record)
        if not context:
            return line
        suffix = ', '.join(f"{label}={value}" for _, label, value in context)
        return f"{line} [{suffix}]"


def _console_formatter(format_type: str) -> logging.Formatter:
    if format_type == "json":
        return JSONFormatter()
    if format_type == "colored":
        return ColoredFormatter(fmt=LINE_FORMAT, datefmt=DATE_FORMAT)
    return logging.Formatter(fmt=LINE_FORMAT, datefmt=DATE_FORMAT)


def setup_logging(
    level: str = "INFO",
    format_type: str = "colored",
    log_file: Optional[Path] = None,
    enable_file_logging: bool = False,
) -> None:
    """
    Configure the root logger for a batch run

    Replaces any handlers already on the root logger.

    Args:
        level: Console level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format_type: Console format, one of "colored", "json" or "simple"
        log_file: Log file path (defaults to logs/batch-engine.log)
        enable_file_logging: Also write DEBUG-level JSON lines to log_file
    """
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        raise ValueError(f"Unknown log level: {level}")

    root = logging.getLogger()
    # Handlers filter by level; the root must pass DEBUG through for the file
    root.setLevel(logging.DEBUG if enable_file_logging else numeric_level)
    root.handlers.clear()
    context_filter = ContextFilter()

    # stderr keeps stdout free for command output
    console = logging.StreamHandler(sys.stderr)
    console.setLevel(numeric_level)
    console.addFilter(context_filter)
    console.setFormatter(_console_formatter(format_type))
    root.addHandler(console)

    if not enable_file_logging:
        return

    path = Path(log_file) if log_file is not None else DEFAULT_LOG_FILE
    path.parent.mkdir(parents=True, exist_ok=True)
    file_handler = logging.handlers.RotatingFileHandler(
        path, maxBytes=MAX_LOG_BYTES, backupCount=LOG_BACKUPS,
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.addFilter(context_filter)
    file_handler.setFormatter(JSONFormatter())
    root.addHandler(file_handler)


def set_context(
    batch_id: Optional[str] = None,
    task_id: Optional[str] = None,
    attempt: Optional[int] = None,
) -> None:
    """
    Update the logging context; arguments left as None are unchanged

    asyncio tasks run in a copy of the context, so values set inside a
    worker stay local to that worker.
    """
    for value, (_, _, var) in zip((batch_id, task_id, attempt), CONTEXT_FIELDS):
        if value is not None:
            var.set(value)


def clear_context() -> None:
    for _, _, var in CONTEXT_FIELDS:
        var.set(None)


def log_cost(
    logger: logging.Logger,
    model: str,
    input_units: int,
    output_units: int,
    cost: float,
) -> None:
    """Log accumulated usage and cost with structured `units`/`cost` fields"""
    logger.info(
        f"Usage: {model} ({input_units} in, {output_units} out) = ${cost:.4f}",
        extra={
            'units': {'input': input_units, 'output': output_units, 'total': input_units + output_units},
            'cost': cost,
        },
    )
