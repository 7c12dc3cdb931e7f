"""
Engine configuration schema

Explicit, validated configuration for BatchExecutionEngine. Every field
has a documented default; invalid values are rejected at construction.
"""
import os
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union

import yaml
from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, Field, ValidationError

from batch_engine.core.errors import ConfigurationError, default_retryable
from batch_engine.core.retry import RetryPolicy
from batch_engine.models.task import ProgressSnapshot


class EngineConfig(BaseModel):
    """
    Configuration for one process_batch call

    Example config.yaml:
        concurrency: 4
        retry_attempts: 3
        retry_delay_ms: 1000
        task_timeout_ms: 60000
        rate_limit_delay_ms: 200
    """

    concurrency: int = Field(
        default=4,
        description="Maximum number of simultaneously in-flight tasks",
        gt=0,
    )

    retry_attempts: int = Field(
        default=3,
        description="Retries allowed per task after the first dispatch",
        ge=0,
    )

    retry_delay_ms: float = Field(
        default=1000.0,
        description="Base backoff delay in milliseconds",
        ge=0,
    )

    backoff_multiplier: float = Field(
        default=2.0,
        description="Backoff growth factor per attempt",
        ge=1,
    )

    jitter_ratio: float = Field(
        default=0.1,
        description="Maximum relative jitter applied to each backoff",
        ge=0,
        le=1,
    )

    task_timeout_ms: float = Field(
        default=60000.0,
        description="Per-attempt timeout in milliseconds",
        gt=0,
    )

    rate_limit_delay_ms: float = Field(
        default=200.0,
        description="Minimum spacing between dispatch starts in milliseconds",
        ge=0,
    )

    on_progress: Optional[Callable[[ProgressSnapshot], Any]] = Field(
        default=None,
        description="Called with a ProgressSnapshot after each task completion",
        exclude=True,
    )

    retry_on: Optional[Callable[[BaseException], bool]] = Field(
        default=None,
        description="Predicate deciding whether an error is retryable",
        exclude=True,
    )

    model_config = {
        "extra": "forbid",
    }

    def retry_policy(self) -> RetryPolicy:
        """Derive the RetryPolicy for this configuration"""
        return RetryPolicy(
            max_attempts=self.retry_attempts,
            base_delay_ms=self.retry_delay_ms,
            backoff_multiplier=self.backoff_multiplier,
            jitter_ratio=self.jitter_ratio,
            per_task_timeout_ms=self.task_timeout_ms,
            retryable=self.retry_on or default_retryable,
        )

    @classmethod
    def from_env(cls, prefix: str = "BATCH_ENGINE_", **overrides) -> "EngineConfig":
        """
        Build a config from environment variables

        Reads PREFIX + upper-cased field name (e.g. BATCH_ENGINE_CONCURRENCY).
        A .env file in the working directory is loaded first. Keyword
        overrides win over the environment.
        """
        load_dotenv(find_dotenv(usecwd=True))

        values: Dict[str, Any] = {}
        for name in ('concurrency', 'retry_attempts', 'retry_delay_ms', 'backoff_multiplier',
                     'jitter_ratio', 'task_timeout_ms', 'rate_limit_delay_ms'):
            raw = os.environ.get(f"{prefix}{name.upper()}")
            if raw is not None and raw.strip():
                values[name] = raw.strip()

        values.update(overrides)
        return build_config(values)


def build_config(config: Union[EngineConfig, Dict[str, Any], None] = None, **overrides) -> EngineConfig:
    """
    Normalize and validate engine configuration

    Args:
        config: EngineConfig, plain dict, or None for defaults
        **overrides: Field values applied on top

    Returns:
        Validated EngineConfig

    Raises:
        ConfigurationError: If any value is invalid
    """
    try:
        if config is None:
            return EngineConfig(**overrides)
        if isinstance(config, EngineConfig):
            if not overrides:
                return config
            return EngineConfig(**{**_field_values(config), **overrides})
        if isinstance(config, dict):
            return EngineConfig(**{**config, **overrides})
    except ValidationError as e:
        raise ConfigurationError(_format_validation_error(e)) from e

    raise ConfigurationError(f"Unsupported config type: {type(config).__name__}")


def load_engine_config(path: Path, **overrides) -> EngineConfig:
    """
    Load and validate engine configuration from a YAML file

    Raises:
        FileNotFoundError: If file doesn't exist
        ConfigurationError: If YAML is malformed or values are invalid
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"File not found: {path}")

    with open(path, 'r') as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {path} must contain a mapping")

    return build_config(data, **overrides)


def _field_values(config: EngineConfig) -> Dict[str, Any]:
    # model_dump() drops the excluded callables
    return {name: getattr(config, name) for name in EngineConfig.model_fields}


def _format_validation_error(error: ValidationError) -> str:
    parts = []
    for err in error.errors():
        location = ".".join(str(loc) for loc in err['loc']) or "config"
        parts.append(f"{location}: {err['msg']}")
    return "Invalid engine configuration: " + "; ".join(parts)
