"""Per-user directory locations for Mush.

Directories follow platform conventions via platformdirs and can be
redirected wholesale with ``MUSH_HOME`` (used by tests and sandboxes).
"""

import os
from pathlib import Path

from platformdirs import user_config_dir, user_data_dir, user_state_dir

APP_NAME = "mush"


def _override(kind: str) -> str | None:
    root = os.environ.get("MUSH_HOME")
    if not root:
        return None
    return str(Path(root) / kind)


class GlobalPath:
    """Resolved application directories."""

    @classmethod
    def data(cls) -> str:
        """Application data directory."""
        return _override("data") or user_data_dir(APP_NAME)

    @classmethod
    def config(cls) -> str:
        """Configuration directory."""
        return _override("config") or user_config_dir(APP_NAME)

    @classmethod
    def state(cls) -> str:
        """State directory (transcripts, run markers)."""
        return _override("state") or user_state_dir(APP_NAME)

    @classmethod
    def log(cls) -> str:
        """Log file directory."""
        return str(Path(cls.data()) / "log")

    @classmethod
    def history(cls) -> str:
        """Default transcript history directory."""
        return str(Path(cls.state()) / "history")
