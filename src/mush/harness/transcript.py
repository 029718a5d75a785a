"""Append-only transcript of everything a backend printed."""

from __future__ import annotations

import base64
import gzip
import json
import re
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from ..core.global_paths import GlobalPath

DEFAULT_LINES = 10000
EVENTS_FILE = "events.jsonl.gz"
LIVE_EVENTS_FILE = "events.live.jsonl"
META_FILE = "meta.json"

_SESSION_ID = re.compile(r"^[A-Za-z0-9_.-]+$")


class TranscriptError(Exception):
    pass


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class TranscriptStore:
    """Records output chunks as JSON lines.

    Events go to a gzip archive and to an uncompressed live file that is
    flushed on every append so other processes can follow it.
    """

    def __init__(self, session_id: str, directory: Optional[Path] = None, max_lines: int = DEFAULT_LINES) -> None:
        if not session_id or not _SESSION_ID.match(session_id) or session_id in (".", ".."):
            raise TranscriptError(f"invalid session id: {session_id!r}")

        self.session_id = session_id
        self.dir = Path(directory or GlobalPath.history()) / session_id
        self.max_lines = max_lines if max_lines > 0 else DEFAULT_LINES
        self.started_at = _now()
        self.seq = 0
        self.closed = False

        self._lines: deque[str] = deque(maxlen=self.max_lines)
        self._partial = ""

        try:
            self.dir.mkdir(parents=True, exist_ok=True, mode=0o700)
            self._archive = gzip.open(self.dir / EVENTS_FILE, "ab")
            self._live = open(self.dir / LIVE_EVENTS_FILE, "ab")
        except OSError as e:
            raise TranscriptError(f"open transcript: {e}") from e
        self._write_meta({"sessionId": session_id, "startedAt": self.started_at})

    def _write_meta(self, meta: dict[str, Any]) -> None:
        (self.dir / META_FILE).write_text(json.dumps(meta), encoding="utf-8")

    def append(self, stream: str, data: bytes) -> None:
        if not data:
            return
        if self.closed:
            raise TranscriptError("transcript store is closed")

        text = data.decode("utf-8", errors="replace")
        self.seq += 1
        event = {
            "sessionId": self.session_id,
            "seq": self.seq,
            "ts": _now(),
            "stream": stream,
            "rawBase64": base64.b64encode(data).decode("ascii"),
            "text": text,
        }
        line = (json.dumps(event) + "\n").encode("utf-8")
        self._archive.write(line)
        self._live.write(line)
        self._live.flush()
        self._push_text(text)

    def _push_text(self, text: str) -> None:
        parts = (self._partial + text).split("\n")
        for part in parts[:-1]:
            self._lines.append(part.rstrip("\r"))
        self._partial = parts[-1]

    def lines(self) -> list[str]:
        """The most recent complete lines, plus any unterminated tail."""
        out = list(self._lines)
        if self._partial:
            out.append(self._partial)
        return out[-self.max_lines:]

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            self._archive.close()
        finally:
            self._live.close()
        self._write_meta({"sessionId": self.session_id, "startedAt": self.started_at, "closedAt": _now()})
