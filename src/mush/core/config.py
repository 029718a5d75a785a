"""Configuration loading.

Reads ``config.json``/``config.jsonc`` from the user config directory,
substitutes ``{env:VAR}`` references and applies environment overrides.
The harness never reads files itself; it is handed a ``HarnessSettings``.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Literal, Optional

import commentjson
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .global_paths import GlobalPath
from ..util.log import Log

log = Log.create({"service": "config"})

DEFAULT_API_URL = "https://api.musher.dev"
CONFIG_FILES = ("config.jsonc", "config.json")


class ConfigError(Exception):
    """Configuration error."""

    def __init__(self, path: str, message: str):
        self.path = path
        super().__init__(f"Config error in {path}: {message}")


class ApiConfig(BaseModel):
    url: str = DEFAULT_API_URL
    key: Optional[str] = None

    model_config = ConfigDict(extra="forbid")


class WorkerConfig(BaseModel):
    """Intervals and timeouts, all in seconds."""
    poll_interval: float = Field(30, alias="pollInterval", gt=0)
    heartbeat_interval: float = Field(30, alias="heartbeatInterval", gt=0)
    execution_timeout: float = Field(600, alias="executionTimeout", gt=0)
    shutdown_grace: float = Field(3, alias="shutdownGrace", gt=0)

    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class HistoryConfig(BaseModel):
    enabled: bool = True
    scrollback_lines: int = Field(10000, alias="scrollbackLines", gt=0)
    dir: Optional[str] = None

    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: Optional[str] = None
    format: Optional[Literal["kv", "json", "pretty"]] = None
    console: Optional[bool] = None
    file: Optional[bool] = None
    dev_file: Optional[bool] = Field(None, alias="devFile")

    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class Config(BaseModel):
    """Root configuration schema."""
    api: ApiConfig = Field(default_factory=ApiConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    history: HistoryConfig = Field(default_factory=HistoryConfig)
    logging: Optional[LoggingConfig] = None

    model_config = ConfigDict(extra="ignore", populate_by_name=True)


@dataclass(frozen=True)
class HarnessSettings:
    """Already-resolved values the harness runs with."""
    poll_interval: float = 30.0
    heartbeat_interval: float = 30.0
    execution_timeout: float = 600.0
    shutdown_grace: float = 3.0
    history_enabled: bool = True
    history_dir: str = ""
    history_lines: int = 10000

    @classmethod
    def from_config(cls, config: Config) -> "HarnessSettings":
        return cls(
            poll_interval=config.worker.poll_interval,
            heartbeat_interval=config.worker.heartbeat_interval,
            execution_timeout=config.worker.execution_timeout,
            shutdown_grace=config.worker.shutdown_grace,
            history_enabled=config.history.enabled,
            history_dir=config.history.dir or GlobalPath.history(),
            history_lines=config.history.scrollback_lines,
        )


def substitute_env_vars(text: str) -> str:
    """Replace ``{env:VAR}`` patterns with environment variable values."""
    return re.sub(r"\{env:([^}]+)\}", lambda m: os.environ.get(m.group(1), ""), text)


def _find_config_file() -> Optional[Path]:
    root = Path(GlobalPath.config())
    for name in CONFIG_FILES:
        candidate = root / name
        if candidate.is_file():
            return candidate
    return None


def _read(path: Path) -> Dict[str, Any]:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(str(path), str(e)) from e
    try:
        data = commentjson.loads(substitute_env_vars(text))
    except (ValueError, commentjson.JSONLibraryException) as e:
        raise ConfigError(str(path), f"invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(str(path), "top-level value must be an object")
    return data


def load_config(path: Optional[str] = None) -> Config:
    """Load configuration from ``path`` or the user config directory."""
    source = Path(path) if path else _find_config_file()
    data: Dict[str, Any] = {}
    if source is not None:
        data = _read(source)
        log.info("loaded config", {"path": str(source)})

    try:
        config = Config.model_validate(data)
    except ValidationError as e:
        raise ConfigError(str(source or "<defaults>"), str(e)) from e

    url = os.environ.get("MUSH_API_URL")
    key = os.environ.get("MUSH_API_KEY")
    if url or key:
        api = config.api.model_copy(update={k: v for k, v in {"url": url, "key": key}.items() if v})
        config = config.model_copy(update={"api": api})
    return config
