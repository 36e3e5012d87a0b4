"""Shared adaptflow configuration utilities.

Centralises reading of ~/.adaptflow/configuration.json so that the executor
and the monitoring services share one implementation. The path can be
overridden with the ADAPTFLOW_CONFIG environment variable.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

ADAPTFLOW_CONFIG_FILE = Path.home() / ".adaptflow" / "configuration.json"

DEFAULT_MAX_NODE_VISITS = 1
DEFAULT_MAX_STEPS = 100
DEFAULT_ANOMALY_THRESHOLD = 2.0
DEFAULT_RETENTION_LIMIT = 100
DEFAULT_TREND_WINDOW = 10
DEFAULT_MAX_BACKOFF_SECONDS = 60.0


def get_config_path() -> Path:
    """Return the configuration file path, honouring ADAPTFLOW_CONFIG."""
    override = os.environ.get("ADAPTFLOW_CONFIG")
    if override:
        return Path(override).expanduser()
    return ADAPTFLOW_CONFIG_FILE


def get_adaptflow_config() -> dict[str, Any]:
    """Load adaptflow configuration. Missing or unreadable files yield {}."""
    config_path = get_config_path()
    if not config_path.exists():
        return {}
    try:
        with open(config_path, encoding="utf-8-sig") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError):
        return {}
    return data if isinstance(data, dict) else {}


# ---------------------------------------------------------------------------
# Derived helpers
# ---------------------------------------------------------------------------


def _engine_setting(key: str, default: Any) -> Any:
    engine = get_adaptflow_config().get("engine", {})
    if not isinstance(engine, dict):
        return default
    return engine.get(key, default)


def get_max_node_visits() -> int:
    """Return how many times a node may run per execution (0 = unlimited)."""
    return int(_engine_setting("max_node_visits", DEFAULT_MAX_NODE_VISITS))


def get_max_steps() -> int:
    return int(_engine_setting("max_steps", DEFAULT_MAX_STEPS))


def get_anomaly_threshold() -> float:
    """Return the number of standard deviations that counts as an anomaly."""
    return float(_engine_setting("anomaly_threshold", DEFAULT_ANOMALY_THRESHOLD))


def get_retention_limit() -> int:
    return int(_engine_setting("retention_limit", DEFAULT_RETENTION_LIMIT))


def get_trend_window() -> int:
    return int(_engine_setting("trend_window", DEFAULT_TREND_WINDOW))


def get_max_backoff_seconds() -> float:
    return float(_engine_setting("max_backoff_seconds", DEFAULT_MAX_BACKOFF_SECONDS))


def get_checkpoint_dir() -> Path | None:
    """Return the directory checkpoints are written to, if configured."""
    value = _engine_setting("checkpoint_dir", None)
    return Path(value).expanduser() if value else None


# ---------------------------------------------------------------------------
# EngineConfig – shared by the executor and the monitoring services
# ---------------------------------------------------------------------------


@dataclass
class EngineConfig:
    """Engine configuration loaded from the ``engine`` section of the config file."""

    max_node_visits: int = field(default_factory=get_max_node_visits)
    max_steps: int = field(default_factory=get_max_steps)
    anomaly_threshold: float = field(default_factory=get_anomaly_threshold)
    retention_limit: int = field(default_factory=get_retention_limit)
    trend_window: int = field(default_factory=get_trend_window)
    max_backoff_seconds: float = field(default_factory=get_max_backoff_seconds)
    checkpoint_dir: Path | None = field(default_factory=get_checkpoint_dir)
