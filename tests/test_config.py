"""Tests for engine configuration loading."""

import pytest

from flowengine.core.config import (
    CONFIG_DIR,
    CONFIG_FILE,
    EngineConfig,
    RetrySettings,
    load_engine_config,
    load_project_config,
)
from flowengine.core.errors import ValidationError


class TestEngineConfig:
    def test_defaults(self):
        config = EngineConfig()

        assert config.max_iterations == 1000
        assert config.run_timeout_seconds is None
        assert config.remote_retry.max_attempts == 3

    def test_retry_settings_to_policy(self):
        policy = RetrySettings(max_attempts=5, initial_delay=0.5).to_policy()

        assert policy.max_attempts == 5
        assert policy.initial_delay == 0.5
        assert policy.backoff_multiplier == 2.0


class TestLoadEngineConfig:
    def test_nested_under_engine_key(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(
            "engine:\n"
            "  max_iterations: 50\n"
            "  run_timeout_seconds: 2.5\n"
            "  remote_retry:\n"
            "    max_attempts: 4\n"
        )

        config = load_engine_config(path)

        assert config.max_iterations == 50
        assert config.run_timeout_seconds == 2.5
        assert config.remote_retry.max_attempts == 4

    def test_top_level_keys(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("max_iterations: 7\n")
        assert load_engine_config(path).max_iterations == 7

    def test_empty_file_gives_defaults(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("")
        assert load_engine_config(path) == EngineConfig()

    def test_rejects_non_positive_limit(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("max_iterations: 0\n")

        with pytest.raises(ValidationError, match="Invalid config file"):
            load_engine_config(path)

    def test_rejects_unknown_keys(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("engine:\n  max_iterashuns: 5\n")

        with pytest.raises(ValidationError, match="Invalid config file"):
            load_engine_config(path)

    def test_rejects_invalid_yaml(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("engine: [unclosed\n")

        with pytest.raises(ValidationError, match="Invalid YAML in config file"):
            load_engine_config(path)

    def test_rejects_non_mapping(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("- a\n- b\n")

        with pytest.raises(ValidationError, match="must contain a mapping"):
            load_engine_config(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(ValidationError, match="Cannot read config file"):
            load_engine_config(tmp_path / "nope.yaml")


class TestLoadProjectConfig:
    def test_absent_config_gives_defaults(self, tmp_path):
        assert load_project_config(tmp_path) == EngineConfig()

    def test_reads_project_file(self, tmp_path):
        config_dir = tmp_path / CONFIG_DIR
        config_dir.mkdir()
        (config_dir / CONFIG_FILE).write_text("engine:\n  max_iterations: 12\n")

        assert load_project_config(tmp_path).max_iterations == 12
