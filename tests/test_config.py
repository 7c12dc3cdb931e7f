"""
Tests for EngineConfig loading and validation
"""
import pytest

from batch_engine.core.errors import ConfigurationError, NonRetryableError
from batch_engine.schemas.config import EngineConfig, build_config, load_engine_config


class TestEngineConfig:
    """Tests for config defaults and validation"""

    def test_defaults(self):
        config = EngineConfig()
        assert config.concurrency == 4
        assert config.retry_attempts == 3
        assert config.retry_delay_ms == 1000
        assert config.task_timeout_ms == 60000
        assert config.rate_limit_delay_ms == 200
        assert config.on_progress is None

    @pytest.mark.parametrize("overrides", [
        {"concurrency": 0},
        {"concurrency": -2},
        {"retry_attempts": -1},
        {"retry_delay_ms": -1},
        {"rate_limit_delay_ms": -0.5},
        {"task_timeout_ms": 0},
        {"jitter_ratio": 2},
        {"unknown_option": True},
    ])
    def test_invalid_values_raise_configuration_error(self, overrides):
        with pytest.raises(ConfigurationError):
            build_config(overrides)

    def test_error_message_names_field(self):
        with pytest.raises(ConfigurationError, match="concurrency"):
            build_config({"concurrency": 0})

    def test_overrides_keep_callables(self):
        callback = lambda snapshot: None
        config = EngineConfig(on_progress=callback)
        updated = build_config(config, concurrency=8)

        assert updated.concurrency == 8
        assert updated.on_progress is callback

    def test_build_config_passes_instances_through(self):
        config = EngineConfig(concurrency=2)
        assert build_config(config) is config

    def test_unsupported_type(self):
        with pytest.raises(ConfigurationError):
            build_config(["concurrency", 2])

    def test_retry_policy(self):
        config = EngineConfig(retry_attempts=2, retry_delay_ms=50, task_timeout_ms=500)
        policy = config.retry_policy()

        assert policy.max_attempts == 2
        assert policy.base_delay_ms == 50
        assert policy.per_task_timeout_ms == 500
        assert not policy.retryable(NonRetryableError("bad"))

    def test_retry_on_predicate(self):
        config = EngineConfig(retry_on=lambda e: isinstance(e, ConnectionError))
        policy = config.retry_policy()

        assert policy.retryable(ConnectionError())
        assert not policy.retryable(KeyError())

    def test_callables_excluded_from_dump(self):
        data = EngineConfig(on_progress=print).model_dump()
        assert "on_progress" not in data
        assert data["concurrency"] == 4


class TestConfigSources:
    """Tests for YAML and environment sources"""

    def test_load_yaml(self, tmp_path):
        path = tmp_path / "engine.yaml"
        path.write_text("concurrency: 8\nretry_attempts: 1\nrate_limit_delay_ms: 0\n")

        config = load_engine_config(path)

        assert config.concurrency == 8
        assert config.retry_attempts == 1
        assert config.rate_limit_delay_ms == 0

    def test_load_yaml_with_override(self, tmp_path):
        path = tmp_path / "engine.yaml"
        path.write_text("concurrency: 8\n")

        assert load_engine_config(path, concurrency=2).concurrency == 2

    def test_load_empty_yaml_uses_defaults(self, tmp_path):
        path = tmp_path / "engine.yaml"
        path.write_text("")

        assert load_engine_config(path) == EngineConfig()

    def test_load_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_engine_config(tmp_path / "missing.yaml")

    def test_load_invalid_yaml(self, tmp_path):
        path = tmp_path / "engine.yaml"
        path.write_text("concurrency: [1, 2\n")

        with pytest.raises(ConfigurationError):
            load_engine_config(path)

    def test_load_non_mapping(self, tmp_path):
        path = tmp_path / "engine.yaml"
        path.write_text("- 1\n- 2\n")

        with pytest.raises(ConfigurationError):
            load_engine_config(path)

    def test_from_env(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("BATCH_ENGINE_CONCURRENCY", "6")
        monkeypatch.setenv("BATCH_ENGINE_TASK_TIMEOUT_MS", "2500")

        config = EngineConfig.from_env()

        assert config.concurrency == 6
        assert config.task_timeout_ms == 2500

    def test_from_env_overrides_win(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("BATCH_ENGINE_CONCURRENCY", "6")

        assert EngineConfig.from_env(concurrency=3).concurrency == 3

    def test_from_env_invalid_value(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("BATCH_ENGINE_CONCURRENCY", "zero")

        with pytest.raises(ConfigurationError):
            EngineConfig.from_env()
