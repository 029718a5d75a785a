"""CLI error type, exit codes and user-facing error formatting."""

from __future__ import annotations

import json
import traceback
from typing import Any

EXIT_SUCCESS = 0
EXIT_GENERAL = 1
EXIT_AUTH = 2
EXIT_NETWORK = 3
EXIT_CONFIG = 4
EXIT_TIMEOUT = 5
EXIT_EXECUTION = 6
EXIT_USAGE = 64


class CLIError(Exception):
    """An error that terminates a command with a specific exit code."""

    def __init__(
        self,
        message: str,
        code: int = EXIT_GENERAL,
        *,
        hint: str | None = None,
        cause: BaseException | None = None,
    ) -> None:
        self.message = message
        self.code = code
        self.hint = hint
        self.cause = cause
        super().__init__(message)
        if cause is not None:
            self.__cause__ = cause

    def __str__(self) -> str:
        if self.cause is not None:
            return f"{self.message}: {self.cause}"
        return self.message


def not_authenticated() -> CLIError:
    return CLIError(
        "Not authenticated",
        EXIT_AUTH,
        hint="Set MUSH_API_KEY to a runner API key",
    )


def not_a_terminal() -> CLIError:
    return CLIError(
        "The harness requires an interactive terminal (TTY)",
        EXIT_USAGE,
        hint="Run mush from a terminal session; there is no headless mode",
    )


def harness_unavailable(name: str, cause: BaseException | None = None) -> CLIError:
    return CLIError(
        f"Harness '{name}' could not be started",
        EXIT_USAGE,
        hint=f"Check that the '{name}' CLI is installed and on PATH",
        cause=cause,
    )


def format_error(error: Any) -> str | None:
    """Format known application errors into user-friendly messages.

    Returns None if the error type is not recognized, allowing
    fallback to format_unknown_error.
    """
    from ..api_client import ApiClientError

    if isinstance(error, CLIError):
        text = str(error)
        if error.hint:
            text += f"\nHint: {error.hint}"
        return text
    if isinstance(error, ApiClientError):
        text = f"API request failed ({error.status_code}): {error}"
        if error.needs_auth:
            text += "\nHint: the API key is missing runner permissions or has expired"
        return text
    return None


def format_unknown_error(error: Any) -> str:
    """Format any error into a string representation."""
    if isinstance(error, BaseException):
        if error.__traceback__ is not None:
            return "".join(traceback.format_exception(type(error), error, error.__traceback__))
        return f"{error.__class__.__name__}: {error}"

    if isinstance(error, (dict, list)):
        try:
            return json.dumps(error, indent=2)
        except (TypeError, ValueError):
            return "Unexpected error (unserializable)"

    return str(error)


def exit_code_for(error: BaseException) -> int:
    """Map an exception to the process exit code."""
    from ..api_client import ApiClientError

    if isinstance(error, CLIError):
        return error.code
    if isinstance(error, ApiClientError):
        return EXIT_AUTH if error.needs_auth else EXIT_NETWORK
    return EXIT_GENERAL
