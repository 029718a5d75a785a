"""Left/right margin (DECLRMM) capability probe.

The sidebar needs DECSLRM so the backend pane can scroll independently of
the sidebar columns. Support is checked both by DECRQM and behaviourally:
with margins set, a carriage return must land on the left margin.
"""

from __future__ import annotations

import os
import re
import select
import time
from typing import Callable

PROBE_TIMEOUT = 0.25
DRAIN_TIMEOUT = 0.03
MAX_ACCUMULATED = 512

_DECRQM_69 = re.compile(rb"\x1b\[\?69;[0-4]\$y")
_CPR = re.compile(rb"\x1b\[(\d+);(\d+)R")


def supports_lr_margins(term_name: str | None) -> bool:
    name = (term_name or "").strip().lower()
    return name not in ("", "dumb")


def parse_decrqm_69(data: bytes) -> tuple[bool, bool]:
    """Return ``(supported, decided)`` from a DECRQM mode 69 reply."""
    for state in (b"1", b"2", b"3"):
        if b"?69;" + state + b"$y" in data:
            return True, True
    for state in (b"0", b"4"):
        if b"?69;" + state + b"$y" in data:
            return False, True
    return False, False


def parse_cpr_column(data: bytes) -> int | None:
    """Column of the most recent cursor position report, if any."""
    matches = list(_CPR.finditer(data))
    if not matches:
        return None
    return int(matches[-1].group(2))


def strip_terminal_responses(data: bytes) -> bytes:
    """Drop DECRQM/CPR replies, keeping anything the user typed."""
    return _CPR.sub(b"", _DECRQM_69.sub(b"", data))


def probe_sequence(left: int, right: int) -> str:
    return f"\x1b[?69$p\x1b[?69h\x1b[{left};{right}s\x1b[1;{right}H\r\x1b[6n"


def probe_margins(width: int) -> tuple[int, int]:
    left = max(2, width // 4)
    return left, max(left + 2, width // 2)


def _read_available(fd: int, wait: float) -> bytes:
    ready, _, _ = select.select([fd], [], [], max(wait, 0))
    if not ready:
        return b""
    try:
        return os.read(fd, 256)
    except BlockingIOError:
        return b""


def probe(
    stdin_fd: int,
    write: Callable[[str], None],
    width: int,
    timeout: float = PROBE_TIMEOUT,
) -> tuple[bool, bytes]:
    """Probe the terminal on ``stdin_fd``; return ``(supported, user_input)``.

    The terminal must already be in raw mode. Keystrokes typed during the
    probe window come back in ``user_input`` for replay to the backend.
    """
    left, right = probe_margins(width)
    write("\x1b7")
    try:
        write(probe_sequence(left, right))
        was_blocking = os.get_blocking(stdin_fd)
        os.set_blocking(stdin_fd, False)
        try:
            accum = b""
            supported = decided = False
            result = False
            deadline = time.monotonic() + timeout
            while (remaining := deadline - time.monotonic()) > 0:
                chunk = _read_available(stdin_fd, min(remaining, 0.01))
                if not chunk:
                    continue
                accum = (accum + chunk)[-MAX_ACCUMULATED:]
                if not decided:
                    supported, decided = parse_decrqm_69(accum)
                    if decided and not supported:
                        break
                column = parse_cpr_column(accum)
                if column is not None:
                    result = column == left and (supported or not decided)
                    break

            drain_deadline = time.monotonic() + DRAIN_TIMEOUT
            while (remaining := drain_deadline - time.monotonic()) > 0:
                accum += _read_available(stdin_fd, min(remaining, 0.005))
        finally:
            os.set_blocking(stdin_fd, was_blocking)
    finally:
        write("\x1b8\x1b[?69l")

    return result, strip_terminal_responses(accum)
