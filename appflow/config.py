"""Shared engine configuration.

Reads ~/.appflow/configuration.json (or the file named by APPFLOW_CONFIG)
once per call, then lets APPFLOW_* environment variables override the
``engine`` section.
"""

import json
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

APPFLOW_CONFIG_FILE = Path.home() / ".appflow" / "configuration.json"


def get_config_path() -> Path:
    override = os.environ.get("APPFLOW_CONFIG")
    return Path(override) if override else APPFLOW_CONFIG_FILE


def get_appflow_config() -> dict[str, Any]:
    """Load the configuration file, returning {} when missing or unreadable."""
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
# EngineConfig
# ---------------------------------------------------------------------------


def _coerce(value: Any, target: type) -> Any:
    if target is bool and isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return target(value)


@dataclass
class EngineConfig:
    """Runtime knobs for the flow engine."""

    max_concurrent_executions: int = 10
    node_timeout_seconds: float = 300.0
    node_max_retries: int = 0
    retry_backoff_seconds: float = 1.0
    execution_history_limit: int = 50
    log_level: str = "INFO"
    log_format: str = "auto"
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def load(cls) -> "EngineConfig":
        """Build a config from the configuration file and environment."""
        section = get_appflow_config().get("engine", {})
        if not isinstance(section, dict):
            section = {}

        values: dict[str, Any] = {}
        extra: dict[str, Any] = {}
        known = {f.name: f for f in fields(cls) if f.name != "extra"}
        for key, value in section.items():
            if key in known:
                values[key] = value
            else:
                extra[key] = value

        for name, f in known.items():
            env_value = os.environ.get(f"APPFLOW_{name.upper()}")
            if env_value is not None:
                values[name] = env_value

        for name, value in list(values.items()):
            target = type(getattr(cls, name))
            try:
                values[name] = _coerce(value, target)
            except (TypeError, ValueError):
                values.pop(name)

        return cls(**values, extra=extra)
