"""ANSI control sequences and cell-width aware text helpers."""

from __future__ import annotations

import re
import unicodedata

from wcwidth import wcwidth

ESC = "\x1b"

CLEAR_SCREEN = "\x1b[2J"
CLEAR_LINE = "\x1b[2K"
SAVE_CURSOR = "\x1b7"
RESTORE_CURSOR = "\x1b8"
RESET_SCROLL = "\x1b[r"
RESET = "\x1b[0m"
SHOW_CURSOR = "\x1b[?25h"
HIDE_CURSOR = "\x1b[?25l"
ENABLE_LR_MODE = "\x1b[?69h"
DISABLE_LR_MODE = "\x1b[?69l"

# SGR attribute-off codes; used inside styled rows instead of a full reset.
BOLD_OFF = "\x1b[22m"

_ANSI = re.compile(
    r"""
    \x1b\[[0-?]*[ -/]*[@-~]              # CSI
    | \x1b\][^\x07\x1b]*(?:\x07|\x1b\\)  # OSC, BEL or ST terminated
    | \x1b[PX^_].*?\x1b\\                # DCS / SOS / PM / APC
    | \x1b[ -/]+[0-~]                    # nF escapes
    | \x1b[@-Z\\-~]                      # two-byte Fe / Fp escapes
    """,
    re.VERBOSE | re.DOTALL,
)


def move(row: int, col: int) -> str:
    """Cursor position, 1-indexed."""
    return f"\x1b[{row};{col}H"


def scroll_region(top: int, bottom: int) -> str:
    return f"\x1b[{top};{bottom}r"


def lr_margins(left: int, right: int) -> str:
    return f"\x1b[{left};{right}s"


def strip(text: str) -> str:
    """Remove escape sequences from terminal output."""
    return _ANSI.sub("", text)


def sanitize(text: str) -> str:
    """Plain printable text: escape sequences and control characters removed."""
    return "".join(ch for ch in strip(text) if unicodedata.category(ch) != "Cc")


def char_width(ch: str) -> int:
    """Terminal cells occupied by one character (0 for combining/control)."""
    width = wcwidth(ch)
    return width if width > 0 else 0


def visible_width(text: str) -> int:
    """Cell width of ``text`` ignoring escape sequences."""
    return sum(char_width(ch) for ch in strip(text))


def clip(text: str, cells: int) -> str:
    """Truncate plain ``text`` to at most ``cells`` columns.

    A double-width character that would straddle the limit is dropped
    rather than split.
    """
    if cells <= 0:
        return ""
    out = []
    used = 0
    for ch in text:
        w = char_width(ch)
        if used + w > cells:
            break
        out.append(ch)
        used += w
    return "".join(out)


def pad(text: str, cells: int) -> str:
    """Right-pad ``text`` with spaces to ``cells`` visible columns."""
    gap = cells - visible_width(text)
    return text + " " * gap if gap > 0 else text


def clip_styled(text: str, cells: int) -> str:
    """Like :func:`clip`, for text with embedded escape sequences.

    Sequences are kept whole and take no cells.
    """
    out = []
    used = 0
    pos = 0
    while pos < len(text):
        match = _ANSI.match(text, pos)
        if match:
            out.append(match.group())
            pos = match.end()
            continue
        w = char_width(text[pos])
        if used + w > cells:
            break
        out.append(text[pos])
        used += w
        pos += 1
    return "".join(out)
