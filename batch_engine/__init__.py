"""
Batch Engine - Adaptive parallel batch execution for bulk AI annotation

Runs large batches of independent, expensive, failure-prone tasks:
- Bounded concurrency with a shared dispatch rate limit
- Jittered exponential backoff per task
- Latency percentiles, throughput and running cost
- Observer-based progress reporting and reproducible JSON reports
"""

__version__ = "1.0.0"

from batch_engine.core.batch_sizer import choose_batch_size
from batch_engine.core.engine import BatchExecutionEngine
from batch_engine.core.errors import (
    BatchEngineError,
    ConfigurationError,
    EngineInvariantError,
    NonRetryableError,
    TaskTimeoutError,
)
from batch_engine.core.events import (
    BatchEventType,
    CallbackObserver,
    EventBus,
    ProgressChannel,
    ProgressObserver,
    QueueProgressObserver,
)
from batch_engine.core.rate_limiter import RateLimiter
from batch_engine.core.retry import RetryController, RetryPolicy
from batch_engine.models.task import (
    BatchReport,
    BatchResult,
    ErrorDescriptor,
    ErrorKind,
    ProgressSnapshot,
    Task,
)
from batch_engine.schemas.config import EngineConfig, load_engine_config
from batch_engine.tracking.cost_ledger import CostLedger, UnitUsage
from batch_engine.tracking.performance_tracker import PerformanceTracker
from batch_engine.utils.report_io import load_report, save_report

__all__ = [
    "__version__",
    # Engine
    "BatchExecutionEngine",
    "EngineConfig",
    "load_engine_config",
    "choose_batch_size",
    # Components
    "RateLimiter",
    "RetryController",
    "RetryPolicy",
    "PerformanceTracker",
    "CostLedger",
    "UnitUsage",
    # Progress
    "ProgressObserver",
    "CallbackObserver",
    "QueueProgressObserver",
    "ProgressChannel",
    "EventBus",
    "BatchEventType",
    # Models
    "Task",
    "BatchResult",
    "BatchReport",
    "ErrorDescriptor",
    "ErrorKind",
    "ProgressSnapshot",
    # Errors
    "BatchEngineError",
    "ConfigurationError",
    "EngineInvariantError",
    "NonRetryableError",
    "TaskTimeoutError",
    # Reports
    "save_report",
    "load_report",
]
