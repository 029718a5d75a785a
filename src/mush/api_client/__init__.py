"""Typed API client for the runner endpoints."""

from .client import ApiClientError, InvalidPayloadError, RunnerClient
from .types import ExecutionConfig, Job, RunnerConfig

__all__ = ["ApiClientError", "ExecutionConfig", "InvalidPayloadError", "Job", "RunnerClient", "RunnerConfig"]
