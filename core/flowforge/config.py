"""Shared flowforge configuration utilities.

Centralises reading of ~/.flowforge/configuration.json so that the runtime,
the CLI and embedding applications share one implementation.

Example file:
    {
        "execution": {"checkpoint_interval": 3, "retry_policy": {"max_attempts": 5}},
        "runtime": {"retention_seconds": 120, "checkpoint_dir": "~/.flowforge/checkpoints"},
        "logging": {"level": "DEBUG"}
    }
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from flowforge.graph.execution_config import ExecutionConfig

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

FLOWFORGE_CONFIG_FILE = Path.home() / ".flowforge" / "configuration.json"
CONFIG_PATH_ENV_VAR = "FLOWFORGE_CONFIG"


def get_config_path() -> Path:
    """Config file location, honouring FLOWFORGE_CONFIG."""
    override = os.environ.get(CONFIG_PATH_ENV_VAR)
    return Path(override).expanduser() if override else FLOWFORGE_CONFIG_FILE


def get_flowforge_config() -> dict[str, Any]:
    """Load configuration, or {} if the file is missing or unreadable."""
    path = get_config_path()
    if not path.exists():
        return {}
    try:
        with open(path, encoding="utf-8-sig") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError):
        return {}
    return data if isinstance(data, dict) else {}


# ---------------------------------------------------------------------------
# Derived helpers
# ---------------------------------------------------------------------------


def get_default_execution_config() -> ExecutionConfig:
    """ExecutionConfig defaults with the file's "execution" section merged over them."""
    overrides = get_flowforge_config().get("execution", {})
    try:
        return ExecutionConfig.model_validate(overrides)
    except ValidationError as e:
        logger.warning(f"Ignoring invalid execution settings in {get_config_path()}: {e}")
        return ExecutionConfig()


def _runtime_setting(key: str, default: Any) -> Any:
    return get_flowforge_config().get("runtime", {}).get(key, default)


def get_retention_seconds() -> float:
    return float(_runtime_setting("retention_seconds", 60.0))


def get_max_history() -> int:
    return int(_runtime_setting("max_history", 1000))


def get_checkpoint_dir() -> Path | None:
    """Directory for file-based checkpoints, or None to keep them in memory."""
    value = _runtime_setting("checkpoint_dir", None)
    return Path(value).expanduser() if value else None


def get_log_level() -> str:
    return get_flowforge_config().get("logging", {}).get("level", "INFO")


# ---------------------------------------------------------------------------
# RuntimeConfig – settings for WorkflowRuntime and the CLI
# ---------------------------------------------------------------------------


@dataclass
class RuntimeConfig:
    """Runtime configuration loaded from ~/.flowforge/configuration.json."""

    retention_seconds: float = field(default_factory=get_retention_seconds)
    max_history: int = field(default_factory=get_max_history)
    checkpoint_dir: Path | None = field(default_factory=get_checkpoint_dir)
    log_level: str = field(default_factory=get_log_level)
