"""Status bar and sidebar rendering.

``render`` is a pure function of the snapshot: it reads no clock and no
terminal state, so identical snapshots always produce identical output.
Styled rows switch attributes off individually and end with exactly one
full reset, keeping the row background intact up to the last cell.
"""

from __future__ import annotations

from . import ansi
from .state import Snapshot

BAR_STYLE = "\x1b[48;5;236m\x1b[38;5;252m"
BAR_FG = "\x1b[38;5;252m"
SIDEBAR_STYLE = "\x1b[48;5;238m\x1b[38;5;252m"
SEPARATOR = "\x1b[48;5;236m\x1b[38;5;244m│"

MAX_LIST_ITEMS = 4
ERROR_DISPLAY_SECONDS = 30.0
MAX_ERROR_CHARS = 30

_STATUS_STYLES = {
    "Starting...": ("\x1b[33m", "Starting"),
    "Ready": ("\x1b[32m", "Ready"),
    "Connected": ("\x1b[32m", "Connected"),
    "Processing": ("\x1b[33m", "Processing"),
    "Error": ("\x1b[31m", "Error"),
}


def render(snapshot: Snapshot) -> str:
    """Draw the top bar and, when visible, the sidebar."""
    out = [ansi.SAVE_CURSOR, ansi.move(1, 1), ansi.CLEAR_LINE, top_bar_line(snapshot)]

    if snapshot.sidebar_visible:
        rows = snapshot.height - 1
        for i, line in enumerate(sidebar_lines(snapshot, rows)):
            out.append(ansi.move(2 + i, 1))
            out.append(sidebar_row(line, snapshot.sidebar_width))

    out.append(ansi.RESTORE_CURSOR)
    return "".join(out)


def _bold(text: str) -> str:
    return f"\x1b[1m{text}{ansi.BOLD_OFF}"


def style_status(label: str) -> str:
    style = _STATUS_STYLES.get(label)
    if style is None:
        return label
    color, text = style
    return f"{color}{_bold(text)}{BAR_FG}"


def top_bar_line(snapshot: Snapshot) -> str:
    mode = "\x1b[33mCOPY" if snapshot.copy_mode else "\x1b[32mLIVE"
    parts = [
        _bold("MUSH"),
        f"Status: {style_status(snapshot.status)}",
        f"Mode: {mode}{BAR_FG}",
    ]
    line = BAR_STYLE + " " + f" \x1b[90m|{BAR_FG} ".join(parts)
    cells = snapshot.width - 1
    return ansi.pad(ansi.clip_styled(line, cells), cells) + " " + ansi.RESET


def truncate(text: str, chars: int) -> str:
    return text[:chars] if chars > 0 else ""


def _name_list(title: str, names: tuple[str, ...]) -> list[str]:
    if not names:
        return []
    names = tuple(sorted(names))
    lines = ["", title]
    lines.extend(f"  - {name}" for name in names[:MAX_LIST_ITEMS])
    if len(names) > MAX_LIST_ITEMS:
        lines.append(f"  +{len(names) - MAX_LIST_ITEMS} more")
    return lines


def _mcp_flags(loaded: bool, authenticated: bool, expired: bool) -> str:
    flags = ["loaded" if loaded else "off"]
    if authenticated:
        flags.append("auth")
    elif expired:
        flags.append("expired")
    else:
        flags.append("no-auth")
    return ",".join(flags)


def sidebar_lines(snapshot: Snapshot, rows: int) -> list[str]:
    """Plain sidebar content, padded or cut to exactly ``rows`` lines."""
    bundle = snapshot.bundle
    lines = ["Bundle"]
    if not bundle.name:
        lines.append("  none loaded")
    else:
        label = bundle.name + (f" v{bundle.version}" if bundle.version else "")
        lines += [
            f"  {label}",
            f"  layers: {bundle.total_layers}",
            f"  agents: {len(bundle.agents)}",
            f"  skills: {len(bundle.skills)}",
            f"  tools: {len(bundle.tools)}",
        ]
        if bundle.other:
            lines.append(f"  other: {len(bundle.other)}")

    lines += _name_list("Agents", bundle.agents)
    lines += _name_list("Skills", bundle.skills)
    lines += _name_list("Tools", bundle.tools)

    lines += ["", "MCP"]
    if not snapshot.mcp_servers:
        lines.append("  none")
    for server in snapshot.mcp_servers:
        flags = _mcp_flags(server.loaded, server.authenticated, server.expired)
        lines.append(f"  {server.name} ({flags})")

    lines += ["", "Session"]
    if snapshot.habitat_id:
        lines.append(f"  habitat: {snapshot.habitat_id}")
    if snapshot.queue_id:
        lines.append(f"  queue: {snapshot.queue_id}")
    if snapshot.supported_harnesses:
        lines.append("  harness: " + ", ".join(snapshot.supported_harnesses))
    if snapshot.job_id:
        lines.append(f"  job: {snapshot.job_id}")
    lines.append(f"  jobs: {snapshot.completed} ok, {snapshot.failed} failed")

    if (
        snapshot.last_error
        and snapshot.last_error_time is not None
        and snapshot.now - snapshot.last_error_time < ERROR_DISPLAY_SECONDS
    ):
        message = ansi.sanitize(snapshot.last_error)
        if len(message) > MAX_ERROR_CHARS:
            message = truncate(message, MAX_ERROR_CHARS - 3) + "..."
        lines.append(f"  err: {message}")

    if len(lines) < rows:
        lines += [""] * (rows - len(lines))
    return lines[:max(rows, 0)]


def sidebar_row(content: str, sidebar_width: int) -> str:
    body = " " + ansi.clip(ansi.sanitize(content), max(sidebar_width - 2, 0))
    return SIDEBAR_STYLE + ansi.pad(body, sidebar_width) + SEPARATOR + ansi.RESET
