"""Runtime logging bootstrap helpers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from ..core.config import Config
from ..util.log import Log, LogFormat, LogLevel


@dataclass(frozen=True)
class LogSettings:
    level: LogLevel
    format: LogFormat
    console: bool
    file: bool
    dev_file: bool


def resolve_log_settings(
    config: Config,
    *,
    level: Optional[str] = None,
    format: Optional[str] = None,
    console: Optional[bool] = None,
    file: Optional[bool] = None,
    dev_file: Optional[bool] = None,
) -> LogSettings:
    """Merge CLI overrides over the ``logging`` config section.

    Console output defaults to off: the harness terminal is in raw mode
    and stray writes to stderr would corrupt the screen.
    """
    section = config.logging

    def pick(override, name: str, default):
        if override is not None:
            return override
        value = getattr(section, name) if section else None
        return default if value is None else value

    return LogSettings(
        level=LogLevel.parse(pick(level, "level", None)),
        format=LogFormat.parse(pick(format, "format", None)),
        console=pick(console, "console", False),
        file=pick(file, "file", True),
        dev_file=pick(dev_file, "dev_file", False),
    )


def bootstrap_logging(config: Config, **overrides: Optional[object]) -> LogSettings:
    """Resolve settings and initialize the process logger."""
    settings = resolve_log_settings(config, **overrides)  # type: ignore[arg-type]
    Log.configure(
        level=settings.level,
        format=settings.format,
        console=settings.console,
        file=settings.file,
        dev=settings.dev_file,
    )
    return settings
