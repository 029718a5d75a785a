"""Interactive execution harness: job loop, backends and the terminal overlay."""

from .app import Harness
from .executor import ExecError, ExecResult, Executor, Registry, default_registry
from .jobloop import JobLoop
from .state import BundleSummary, ConnectionStatus, Snapshot, SnapshotStore

__all__ = [
    "BundleSummary",
    "ConnectionStatus",
    "ExecError",
    "ExecResult",
    "Executor",
    "Harness",
    "JobLoop",
    "Registry",
    "Snapshot",
    "SnapshotStore",
    "default_registry",
]
