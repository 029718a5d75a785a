"""Screen geometry: top bar, optional sidebar, and the backend pane."""

from __future__ import annotations

from dataclasses import dataclass

from . import ansi

TOP_BAR_HEIGHT = 1

DEFAULT_SIDEBAR_WIDTH = 36
MIN_SIDEBAR_WIDTH = 24
MIN_PANE_WIDTH = 40
MIN_WIDTH = 20


@dataclass(frozen=True)
class Frame:
    width: int
    height: int
    content_top: int
    sidebar_visible: bool = False
    sidebar_width: int = 0
    pane_x_start: int = 1
    pane_width: int = 0

    @property
    def pty_rows(self) -> int:
        return pty_rows_for_height(self.height)


def clamp_size(width: int, height: int) -> tuple[int, int]:
    return max(width, MIN_WIDTH), max(height, TOP_BAR_HEIGHT + 1)


def compute_frame(width: int, height: int, allow_sidebar: bool) -> Frame:
    """Lay out the screen; the sidebar only appears when both columns fit."""
    width, height = clamp_size(width, height)
    plain = Frame(width=width, height=height, content_top=TOP_BAR_HEIGHT + 1, pane_width=width)

    if not allow_sidebar or width < MIN_PANE_WIDTH + MIN_SIDEBAR_WIDTH + 1:
        return plain

    sidebar = min(DEFAULT_SIDEBAR_WIDTH, width - MIN_PANE_WIDTH - 1)
    if sidebar < MIN_SIDEBAR_WIDTH:
        return plain

    return Frame(
        width=width,
        height=height,
        content_top=TOP_BAR_HEIGHT + 1,
        sidebar_visible=True,
        sidebar_width=sidebar,
        pane_x_start=sidebar + 2,  # one separator column
        pane_width=width - sidebar - 1,
    )


def pty_rows_for_height(height: int) -> int:
    return max(height - TOP_BAR_HEIGHT, 1)


def resize_sequence(frame: Frame, use_lr_margins: bool, move_cursor: bool = True) -> str:
    """Install margins and the scroll region for ``frame``."""
    if use_lr_margins and frame.sidebar_visible:
        seq = ansi.ENABLE_LR_MODE + ansi.lr_margins(frame.pane_x_start, frame.width)
    else:
        seq = ansi.DISABLE_LR_MODE
    seq += ansi.scroll_region(frame.content_top, frame.height)
    if move_cursor:
        seq += ansi.move(frame.content_top, frame.pane_x_start)
    return seq


def setup_sequence(frame: Frame, use_lr_margins: bool) -> str:
    return ansi.CLEAR_SCREEN + resize_sequence(frame, use_lr_margins)


def clear_columns(columns: int, height: int, width: int) -> str:
    """Blank the leftmost ``columns`` cells below the top bar."""
    columns = min(columns, width)
    rows = height - TOP_BAR_HEIGHT
    if columns <= 0 or rows < 1:
        return ""
    blank = " " * columns
    return "".join(ansi.move(TOP_BAR_HEIGHT + 1 + i, 1) + blank for i in range(rows))
