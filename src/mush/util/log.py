"""Structured logging with tagged loggers and file output.

The harness owns stdout/stderr while the terminal is in raw mode, so the
default sink is a log file; console output is opt-in.
"""

import json
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, TextIO

from ..core.global_paths import GlobalPath

KEEP_LOG_FILES = 10


class LogLevel(str, Enum):
    """Log severity levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"

    @classmethod
    def parse(cls, value: str | None) -> "LogLevel":
        if value is None:
            return cls.INFO
        text = value.strip().lower()
        aliases = {
            "debug": cls.DEBUG,
            "info": cls.INFO,
            "warn": cls.WARN,
            "warning": cls.WARN,
            "error": cls.ERROR,
        }
        if text not in aliases:
            raise ValueError(f"invalid log level: {value}")
        return aliases[text]


class LogFormat(str, Enum):
    """Log line format."""

    KV = "kv"
    JSON = "json"
    PRETTY = "pretty"

    @classmethod
    def parse(cls, value: str | None) -> "LogFormat":
        if value is None:
            return cls.KV
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise ValueError(f"invalid log format: {value}") from None


_PRIORITY = {
    LogLevel.DEBUG: 0,
    LogLevel.INFO: 1,
    LogLevel.WARN: 2,
    LogLevel.ERROR: 3,
}


@dataclass
class _Sinks:
    level: LogLevel = LogLevel.INFO
    format: LogFormat = LogFormat.KV
    console: bool = False
    path: Optional[str] = None
    handle: Optional[TextIO] = None


_sinks = _Sinks()
_last = time.time()


@dataclass
class LogTimer:
    """Logs a completion line with the elapsed duration on ``stop()``."""
    logger: "Logger"
    message: str
    extra: Dict[str, Any]
    started: float = field(default_factory=time.monotonic)

    def stop(self) -> None:
        elapsed = int((time.monotonic() - self.started) * 1000)
        self.logger.info(self.message, {**self.extra, "status": "completed", "duration": elapsed})

    def __enter__(self) -> "LogTimer":
        return self

    def __exit__(self, *args) -> None:
        self.stop()


def _describe(error: BaseException, depth: int = 0) -> str:
    text = f"{type(error).__name__}: {error}"
    cause = error.__cause__
    if cause is not None and depth < 10:
        text += " caused by " + _describe(cause, depth + 1)
    return text


def _scalar(value: Any) -> Any:
    if isinstance(value, BaseException):
        return _describe(value)
    if value is None or isinstance(value, (bool, int, float, dict, list, tuple)):
        return value
    return str(value)


def _kv(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, ensure_ascii=False, separators=(",", ":"))
    text = str(value)
    if not text or "=" in text or any(ch.isspace() for ch in text):
        return json.dumps(text, ensure_ascii=False)
    return text


class Logger:
    """Tagged structured logger."""

    def __init__(self, tags: Optional[Dict[str, Any]] = None):
        self.tags = dict(tags or {})

    def _line(self, level: LogLevel, message: Any, extra: Optional[Dict[str, Any]]) -> str:
        global _last

        now = time.time()
        delta = int((now - _last) * 1000)
        _last = now

        fields = {k: _scalar(v) for k, v in {**self.tags, **(extra or {})}.items() if v is not None}
        stamp = datetime.now(timezone.utc).isoformat(timespec="seconds")

        if _sinks.format == LogFormat.JSON:
            payload = {"time": stamp, "delta_ms": delta, "level": level.value.lower(), "msg": _scalar(message), **fields}
            return json.dumps(payload, ensure_ascii=False, separators=(",", ":")) + "\n"

        pairs = " ".join(f"{k}={_kv(v)}" for k, v in fields.items())
        if _sinks.format == LogFormat.PRETTY:
            suffix = f" ({pairs})" if pairs else ""
            return f"{stamp} {level.value} {message}{suffix} +{delta}ms\n"

        parts = [stamp, f"+{delta}ms", f"level={level.value.lower()}", f"msg={_kv(message)}", pairs]
        return " ".join(part for part in parts if part) + "\n"

    def _emit(self, level: LogLevel, message: Any, extra: Optional[Dict[str, Any]]) -> None:
        if _PRIORITY[level] < _PRIORITY[_sinks.level]:
            return
        line = self._line(level, message, extra)
        if _sinks.console:
            sys.stderr.write(line)
            sys.stderr.flush()
        if _sinks.handle is not None:
            _sinks.handle.write(line)
            _sinks.handle.flush()

    def debug(self, message: Any = None, extra: Optional[Dict[str, Any]] = None) -> None:
        self._emit(LogLevel.DEBUG, message, extra)

    def info(self, message: Any = None, extra: Optional[Dict[str, Any]] = None) -> None:
        self._emit(LogLevel.INFO, message, extra)

    def warn(self, message: Any = None, extra: Optional[Dict[str, Any]] = None) -> None:
        self._emit(LogLevel.WARN, message, extra)

    warning = warn

    def error(self, message: Any = None, extra: Optional[Dict[str, Any]] = None) -> None:
        self._emit(LogLevel.ERROR, message, extra)

    def tag(self, key: str, value: Any) -> "Logger":
        """Add a tag to this logger instance."""
        self.tags[key] = value
        return self

    def time(self, message: str, extra: Optional[Dict[str, Any]] = None) -> LogTimer:
        """Log a start line now and a completion line when the timer stops."""
        extra = extra or {}
        self.info(message, {**extra, "status": "started"})
        return LogTimer(logger=self, message=message, extra=extra)


class Log:
    """Logger factory and global sink configuration."""

    _loggers: Dict[str, Logger] = {}

    @classmethod
    def create(cls, tags: Optional[Dict[str, Any]] = None) -> Logger:
        """Create a logger; loggers with a ``service`` tag are cached by it."""
        tags = tags or {}
        service = tags.get("service")
        if not isinstance(service, str) or not service:
            return Logger(tags=tags)
        if service not in cls._loggers:
            cls._loggers[service] = Logger(tags=tags)
        return cls._loggers[service]

    @classmethod
    def configure(
        cls,
        *,
        level: LogLevel | None = None,
        format: LogFormat | None = None,
        console: bool | None = None,
        file: bool = True,
        dev: bool = False,
    ) -> None:
        """Configure sinks. A new file is opened under ``GlobalPath.log()``."""
        if level is not None:
            _sinks.level = level
        if format is not None:
            _sinks.format = format
        if console is not None:
            _sinks.console = console

        cls.close()
        if not file:
            return

        directory = Path(GlobalPath.log())
        directory.mkdir(parents=True, exist_ok=True)
        cls._prune(directory)
        if dev:
            path = directory / "dev.log"
        else:
            path = directory / (datetime.now().strftime("%Y-%m-%dT%H%M%S") + ".log")
        _sinks.path = str(path)
        _sinks.handle = path.open("a" if dev else "w", encoding="utf-8")

    @classmethod
    def file(cls) -> str:
        """Current log file path, empty when file logging is off."""
        return _sinks.path or ""

    @classmethod
    def _prune(cls, directory: Path) -> None:
        stamped = sorted(directory.glob("????-??-??T??????.log"), key=lambda p: p.stat().st_mtime)
        for stale in stamped[:-KEEP_LOG_FILES]:
            stale.unlink(missing_ok=True)

    @classmethod
    def close(cls) -> None:
        if _sinks.handle is not None:
            _sinks.handle.close()
        _sinks.handle = None
        _sinks.path = None
