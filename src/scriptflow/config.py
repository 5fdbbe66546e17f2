# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Configuration loading.

config.yaml is read with PyYAML and layered over built-in defaults. Every
section mirrors a limits object in the engine or scheduler; unknown keys and
wrongly typed values are rejected.
"""

import copy
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from scriptflow.engine.context import ContextLimits
from scriptflow.engine.performance import PerformanceLimits
from scriptflow.event_client import scriptflow_home
from scriptflow.scheduling.validation import SchedulingLimits


class ConfigError(Exception):
    """Raised when the configuration file is invalid."""

    pass


DEFAULTS: Dict[str, Dict[str, Any]] = {
    "matcher": {"cache_size": 1000, "max_pattern_length": 2000},
    "context": asdict(ContextLimits()),
    "performance": asdict(PerformanceLimits()),
    "errors": {"max_errors": 10000, "retention_ms": 24 * 3600 * 1000},
    "executor": {"history_limit": 10000, "attempt_timeout_ms": 30000, "default_max_retries": 3},
    "scheduler": asdict(SchedulingLimits()),
    "host": {"command": ["node", "-e"]},
    "paths": {"store": None, "events": None},
}


def default_config_path() -> Path:
    return scriptflow_home() / "config.yaml"


@dataclass
class Config:
    """Validated configuration, one dict per section."""

    sections: Dict[str, Dict[str, Any]] = field(default_factory=lambda: copy.deepcopy(DEFAULTS))
    source: Optional[Path] = None

    def section(self, name: str) -> Dict[str, Any]:
        return dict(self.sections[name])

    def context_limits(self) -> ContextLimits:
        return ContextLimits(**self.sections["context"])

    def performance_limits(self) -> PerformanceLimits:
        return PerformanceLimits(**self.sections["performance"])

    def scheduling_limits(self) -> SchedulingLimits:
        return SchedulingLimits(**self.sections["scheduler"])

    @property
    def store_path(self) -> Path:
        path = self.sections["paths"]["store"]
        return Path(path).expanduser() if path else scriptflow_home() / "store"

    @property
    def events_path(self) -> Path:
        path = self.sections["paths"]["events"]
        return Path(path).expanduser() if path else scriptflow_home() / "events.jsonl"

    def to_dict(self) -> Dict[str, Dict[str, Any]]:
        return copy.deepcopy(self.sections)


# Cache and history capacities.
_AT_LEAST_ONE = {
    ("matcher", "cache_size"),
    ("matcher", "max_pattern_length"),
    ("context", "max_contexts_per_tab"),
    ("context", "max_total_contexts"),
    ("performance", "max_metrics"),
    ("performance", "max_warnings"),
    ("errors", "max_errors"),
    ("executor", "history_limit"),
    ("scheduler", "max_history"),
}


def _check_value(section: str, key: str, value: Any, default: Any) -> Any:
    if default is None:
        if value is not None and not isinstance(value, str):
            raise ConfigError(f"{section}.{key} must be a string path")
        return value
    if isinstance(default, bool):
        if not isinstance(value, bool):
            raise ConfigError(f"{section}.{key} must be true or false, got: {value!r}")
        return value
    if isinstance(default, int):
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigError(f"{section}.{key} must be an integer, got: {value!r}")
        if value < 0:
            raise ConfigError(f"{section}.{key} cannot be negative, got: {value}")
        if value < 1 and (section, key) in _AT_LEAST_ONE:
            raise ConfigError(f"{section}.{key} must be at least 1, got: {value}")
        return value
    if isinstance(default, float):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ConfigError(f"{section}.{key} must be a number, got: {value!r}")
        return float(value)
    if isinstance(default, list):
        if not isinstance(value, list) or not value or not all(isinstance(v, str) for v in value):
            raise ConfigError(f"{section}.{key} must be a non-empty list of strings")
        return list(value)
    return value


def merge_config(data: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    """Layer a parsed config mapping over the defaults.

    Raises:
        ConfigError: On unknown sections or keys, or badly typed values.
    """
    merged = copy.deepcopy(DEFAULTS)
    for section, values in data.items():
        if section not in DEFAULTS:
            raise ConfigError(f"unknown config section: {section}")
        if values is None:
            continue
        if not isinstance(values, dict):
            raise ConfigError(f"config section {section} must be a mapping")
        for key, value in values.items():
            if key not in DEFAULTS[section]:
                raise ConfigError(f"unknown config key: {section}.{key}")
            merged[section][key] = _check_value(section, key, value, DEFAULTS[section][key])
    return merged


def load_config(config_path: Optional[str] = None) -> Config:
    """Load configuration.

    Args:
        config_path: Explicit path (--config). When omitted the default
            location is used, and a missing default file means defaults.

    Returns:
        Validated Config.

    Raises:
        FileNotFoundError: If an explicit config path does not exist.
        ConfigError: If the file is not valid YAML or fails validation.
    """
    if config_path:
        path = Path(config_path).expanduser()
        if not path.exists():
            raise FileNotFoundError(f"config file not found: {path}")
    else:
        path = default_config_path()
        if not path.exists():
            return Config()

    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML in {path}: {e}")

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"config file {path} must contain a YAML mapping")

    return Config(sections=merge_config(data), source=path)
