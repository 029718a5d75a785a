"""Utility modules."""

from .log import Log
from .error import CLIError, format_error, format_unknown_error

__all__ = ["CLIError", "Log", "format_error", "format_unknown_error"]
