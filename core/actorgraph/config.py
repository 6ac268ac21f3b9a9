"""Engine configuration.

Defaults come from ``~/.actorgraph/configuration.json`` when present, then
environment variables, then explicit keyword arguments:

    {
      "engine": {"recursion_limit": 50, "default_timeout": 10,
                 "conflict_policy": "first_wins"},
      "retry": {"max_attempts": 3, "base_delay": 0.5, "max_delay": 8},
      "checkpoint": {"enabled": true, "save_attempts": 3, "keep_last": null},
      "storage_path": "~/.actorgraph/storage",
      "logging": {"level": "INFO", "format": "auto"}
    }
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from actorgraph.graph.checkpoint_config import CheckpointConfig
from actorgraph.graph.node import RetryPolicy
from actorgraph.graph.reducers import ConflictPolicy
from actorgraph.observability import configure_logging

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

ACTORGRAPH_CONFIG_FILE = Path.home() / ".actorgraph" / "configuration.json"

DEFAULT_RECURSION_LIMIT = 25
DEFAULT_NODE_TIMEOUT = 30.0


def get_actorgraph_config(path: Path | None = None) -> dict[str, Any]:
    """Load the JSON configuration file. Missing or unreadable means ``{}``."""
    config_file = Path(path) if path else ACTORGRAPH_CONFIG_FILE
    if not config_file.exists():
        return {}
    try:
        with open(config_file, encoding="utf-8-sig") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        logger.warning(f"Ignoring unreadable config file {config_file}: {e}")
        return {}
    return data if isinstance(data, dict) else {}


# ---------------------------------------------------------------------------
# Derived helpers
# ---------------------------------------------------------------------------


def _env_int(name: str) -> int | None:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return None
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Ignoring non-integer {name}={raw!r}")
        return None


def get_recursion_limit(raw: dict[str, Any] | None = None) -> int:
    env = _env_int("ACTORGRAPH_RECURSION_LIMIT")
    if env is not None:
        return env
    raw = get_actorgraph_config() if raw is None else raw
    return int(raw.get("engine", {}).get("recursion_limit", DEFAULT_RECURSION_LIMIT))


def get_storage_path(raw: dict[str, Any] | None = None) -> Path | None:
    value = os.environ.get("ACTORGRAPH_STORAGE_PATH")
    if not value:
        raw = get_actorgraph_config() if raw is None else raw
        value = raw.get("storage_path")
    return Path(value).expanduser() if value else None


def get_log_level(raw: dict[str, Any] | None = None) -> str:
    value = os.environ.get("ACTORGRAPH_LOG_LEVEL")
    if value:
        return value.upper()
    raw = get_actorgraph_config() if raw is None else raw
    return str(raw.get("logging", {}).get("level", "INFO")).upper()


def get_log_format(raw: dict[str, Any] | None = None) -> str:
    value = os.environ.get("LOG_FORMAT")
    if value:
        return value.lower()
    raw = get_actorgraph_config() if raw is None else raw
    return str(raw.get("logging", {}).get("format", "auto")).lower()


# ---------------------------------------------------------------------------
# EngineConfig
# ---------------------------------------------------------------------------


@dataclass
class EngineConfig:
    """Run-time settings for the scheduler and run manager."""

    recursion_limit: int = field(default_factory=get_recursion_limit)
    default_timeout: float | None = DEFAULT_NODE_TIMEOUT
    default_retry: RetryPolicy = field(default_factory=RetryPolicy)
    conflict_policy: ConflictPolicy = ConflictPolicy.FIRST_WINS
    checkpoint: CheckpointConfig = field(default_factory=CheckpointConfig)
    storage_path: Path | None = field(default_factory=get_storage_path)
    log_level: str = field(default_factory=get_log_level)
    log_format: str = field(default_factory=get_log_format)
    stream_queue_size: int = 1000

    # Static breakpoints (node names)
    interrupt_before: frozenset[str] = frozenset()
    interrupt_after: frozenset[str] = frozenset()

    def __post_init__(self) -> None:
        if self.recursion_limit < 1:
            raise ValueError(f"recursion_limit must be >= 1, got {self.recursion_limit}")
        self.conflict_policy = ConflictPolicy(self.conflict_policy)
        self.interrupt_before = frozenset(self.interrupt_before)
        self.interrupt_after = frozenset(self.interrupt_after)

    def apply_logging(self) -> None:
        """Install the root log handler with this config's level and format."""
        configure_logging(level=self.log_level, format=self.log_format)


def get_engine_config(path: Path | None = None, **overrides: Any) -> EngineConfig:
    """
    Build an EngineConfig from the config file and environment.

    Keyword overrides win over both.
    """
    raw = get_actorgraph_config(path)
    engine = raw.get("engine", {})
    retry = raw.get("retry", {})
    checkpoint = raw.get("checkpoint", {})

    kwargs: dict[str, Any] = {
        "recursion_limit": get_recursion_limit(raw),
        "storage_path": get_storage_path(raw),
        "log_level": get_log_level(raw),
        "log_format": get_log_format(raw),
    }
    if "default_timeout" in engine:
        kwargs["default_timeout"] = engine["default_timeout"]
    if "conflict_policy" in engine:
        kwargs["conflict_policy"] = ConflictPolicy(engine["conflict_policy"])
    if "stream_queue_size" in engine:
        kwargs["stream_queue_size"] = int(engine["stream_queue_size"])
    if retry:
        kwargs["default_retry"] = RetryPolicy(
            max_attempts=int(retry.get("max_attempts", 3)),
            base_delay=float(retry.get("base_delay", 0.5)),
            max_delay=float(retry.get("max_delay", 8.0)),
        )
    if checkpoint:
        kwargs["checkpoint"] = CheckpointConfig(
            enabled=bool(checkpoint.get("enabled", True)),
            save_attempts=int(checkpoint.get("save_attempts", 3)),
            save_retry_delay=float(checkpoint.get("save_retry_delay", 0.1)),
            keep_last=checkpoint.get("keep_last"),
        )

    kwargs.update(overrides)
    return EngineConfig(**kwargs)
