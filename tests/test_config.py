"""Tests for configuration loading."""

import pytest

from scriptflow.config import DEFAULTS, Config, ConfigError, load_config, merge_config


class TestMergeConfig:
    """Tests for merge_config validation."""

    def test_empty_is_defaults(self):
        assert merge_config({}) == DEFAULTS

    def test_overrides_layer_over_defaults(self):
        merged = merge_config({"scheduler": {"max_schedules": 5}, "performance": {"max_memory_mb": 50}})
        assert merged["scheduler"]["max_schedules"] == 5
        assert merged["scheduler"]["max_history"] == 100
        assert merged["performance"]["max_memory_mb"] == 50.0

    def test_null_section_ignored(self):
        assert merge_config({"matcher": None}) == DEFAULTS

    def test_zero_allowed_for_rate_limits(self):
        merged = merge_config({"performance": {"max_executions_per_hour": 0}, "executor": {"default_max_retries": 0}})
        assert merged["performance"]["max_executions_per_hour"] == 0
        assert merged["executor"]["default_max_retries"] == 0

    @pytest.mark.parametrize("data,message", [
        ({"plugins": {}}, "unknown config section"),
        ({"matcher": ["x"]}, "must be a mapping"),
        ({"matcher": {"size": 1}}, "unknown config key"),
        ({"matcher": {"cache_size": "big"}}, "must be an integer"),
        ({"matcher": {"cache_size": True}}, "must be an integer"),
        ({"matcher": {"cache_size": -1}}, "cannot be negative"),
        ({"matcher": {"cache_size": 0}}, "at least 1"),
        ({"context": {"max_total_contexts": 0}}, "at least 1"),
        ({"scheduler": {"max_history": 0}}, "at least 1"),
        ({"performance": {"max_memory_mb": "lots"}}, "must be a number"),
        ({"host": {"command": []}}, "non-empty list of strings"),
        ({"paths": {"store": 3}}, "must be a string path"),
    ])
    def test_rejects(self, data, message):
        with pytest.raises(ConfigError, match=message):
            merge_config(data)


class TestLoadConfig:
    """Tests for load_config."""

    def test_missing_default_file_uses_defaults(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SCRIPTFLOW_HOME", str(tmp_path))
        config = load_config()
        assert config.source is None
        assert config.store_path == tmp_path / "store"
        assert config.events_path == tmp_path / "events.jsonl"

    def test_default_file_is_read(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SCRIPTFLOW_HOME", str(tmp_path))
        (tmp_path / "config.yaml").write_text("executor:\n  attempt_timeout_ms: 5000\n")
        config = load_config()
        assert config.source == tmp_path / "config.yaml"
        assert config.section("executor")["attempt_timeout_ms"] == 5000

    def test_explicit_path(self, tmp_path):
        path = tmp_path / "custom.yaml"
        path.write_text(
            "paths:\n"
            f"  store: {tmp_path / 'data'}\n"
            "context:\n"
            "  idle_delay_ms: 0\n"
            "scheduler:\n"
            "  max_consecutive_failures: 2\n"
        )
        config = load_config(str(path))
        assert config.store_path == tmp_path / "data"
        assert config.context_limits().idle_delay_ms == 0
        assert config.scheduling_limits().max_consecutive_failures == 2

    def test_explicit_missing_path(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(str(tmp_path / "nope.yaml"))

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("matcher: [unclosed")
        with pytest.raises(ConfigError, match="invalid YAML"):
            load_config(str(path))

    def test_non_mapping(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigError, match="must contain a YAML mapping"):
            load_config(str(path))

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert load_config(str(path)).to_dict() == Config().to_dict()
