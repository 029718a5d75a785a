"""Terminal controller: raw mode, screen layout, and backend passthrough.

Backend output is written to the real terminal unmodified apart from the
cursor save/restore rewrite needed while left/right margins are active.
The same bytes are inspected for sequences that take over the screen
(resets, margin changes, alternate screen) so the layout can step aside.
"""

from __future__ import annotations

import asyncio
import atexit
import os
import signal
import sys
import termios
import tty
from enum import Enum
from typing import Callable, Iterable, Optional, Protocol

from ..util.error import not_a_terminal
from ..util.log import Log
from . import ansi, layout, lrmargin
from .layout import Frame

log = Log.create({"service": "harness.terminal"})

RESIZE_POLL_INTERVAL = 0.25
MAX_SEQ_TAIL_BYTES = 16


class TerminalEvent(Enum):
    RESET = "reset"
    SOFT_RESET = "soft_reset"
    SCROLL_RESET = "scroll_reset"
    DISABLE_LR = "disable_lr"
    ALT_ENTER = "alt_enter"
    ALT_EXIT = "alt_exit"


_SIDEBAR_BREAKERS = {
    TerminalEvent.RESET,
    TerminalEvent.SOFT_RESET,
    TerminalEvent.SCROLL_RESET,
    TerminalEvent.DISABLE_LR,
}


def event_from_csi(params: str, final: str) -> Optional[TerminalEvent]:
    if final == "p" and params == "!":
        return TerminalEvent.SOFT_RESET
    if final == "r" and params == "":
        return TerminalEvent.SCROLL_RESET
    if final == "l" and params == "?69":
        return TerminalEvent.DISABLE_LR
    if final == "s" and params:
        # DECSLRM: the backend is taking over margin control.
        return TerminalEvent.DISABLE_LR
    if final in ("h", "l") and params in ("?47", "?1047", "?1049"):
        return TerminalEvent.ALT_ENTER if final == "h" else TerminalEvent.ALT_EXIT
    return None


def parse_terminal_events(tail: bytes, chunk: bytes) -> tuple[list[TerminalEvent], bytes]:
    """Scan ``tail + chunk`` for layout-relevant sequences.

    Returns the events and the unterminated remainder (at most 16 bytes)
    to prepend to the next chunk.
    """
    data = tail + chunk
    events: list[TerminalEvent] = []
    i = 0
    n = len(data)
    while i < n:
        if data[i] != 0x1B:
            i += 1
            continue
        if i + 1 >= n:
            break
        nxt = data[i + 1]
        if nxt == ord("c"):
            events.append(TerminalEvent.RESET)
            i += 2
            continue
        if nxt != ord("["):
            i += 2
            continue
        j = i + 2
        while j < n and not 0x40 <= data[j] <= 0x7E:
            j += 1
        if j >= n:
            break
        event = event_from_csi(data[i + 2:j].decode("latin-1"), chr(data[j]))
        if event is not None:
            events.append(event)
        i = j + 1
    return events, data[i:][-MAX_SEQ_TAIL_BYTES:]


class CursorRewriter:
    """Rewrite bare ``CSI s``/``CSI u`` to ``ESC 7``/``ESC 8``.

    With DECLRMM enabled ``CSI s`` means DECSLRM, so the SCO save/restore
    forms must become the unambiguous DEC ones. A trailing ``ESC`` or
    ``ESC [`` is held until the next chunk.
    """

    def __init__(self, active: Callable[[], bool]) -> None:
        self._active = active
        self._tail = b""

    def rewrite(self, chunk: bytes) -> bytes:
        data = self._tail + chunk
        self._tail = b""
        if not self._active() or b"\x1b" not in data:
            return data

        out = bytearray()
        i = 0
        n = len(data)
        while i < n:
            byte = data[i]
            if byte != 0x1B:
                out.append(byte)
                i += 1
                continue
            if i + 1 >= n:
                self._tail = data[i:]
                break
            if data[i + 1] != ord("["):
                out += data[i:i + 2]
                i += 2
                continue
            if i + 2 >= n:
                self._tail = data[i:]
                break
            third = data[i + 2]
            if third == ord("s"):
                out += b"\x1b7"
                i += 3
            elif third == ord("u"):
                out += b"\x1b8"
                i += 3
            else:
                out += data[i:i + 2]
                i += 2
        return bytes(out)


class Resizable(Protocol):
    def resize(self, rows: int, cols: int) -> None: ...


def _write_all(fd: int, data: bytes) -> None:
    view = memoryview(data)
    while view:
        try:
            written = os.write(fd, view)
        except BlockingIOError:
            continue
        view = view[written:]


class TerminalController:
    """Owns the real terminal for the lifetime of the harness.

    Everything runs on the event loop thread, so writes are serialized by
    construction. ``on_layout`` is told about every geometry change; it is
    expected to post a status update which in turn redraws the bar.
    """

    def __init__(
        self,
        *,
        stdin_fd: int | None = None,
        stdout_fd: int | None = None,
        force_sidebar: bool = False,
        term_name: str | None = None,
        on_layout: Callable[[Frame, bool], None] | None = None,
        on_error: Callable[[str], None] | None = None,
    ) -> None:
        self.stdin_fd = sys.stdin.fileno() if stdin_fd is None else stdin_fd
        self.stdout_fd = sys.stdout.fileno() if stdout_fd is None else stdout_fd
        self.force_sidebar = force_sidebar
        self.term_name = os.environ.get("TERM", "") if term_name is None else term_name
        self.on_layout = on_layout
        self.on_error = on_error

        self.width = 80
        self.height = 24
        self.lr_supported = False
        self.forced_off = False
        self.user_off = False
        self.alt_screen = False

        self._old_attrs: list | None = None
        self._restored = False
        self._seq_tail = b""
        self._probe_input = b""
        self._rewriter = CursorRewriter(lambda: self.sidebar_enabled)
        self._targets: list[Resizable] = []
        self._probe_blocked: Callable[[], bool] = lambda: False

    # -- State --

    @property
    def sidebar_enabled(self) -> bool:
        return self.lr_supported and not self.forced_off and not self.user_off

    @property
    def sidebar_available(self) -> bool:
        return self.lr_supported and not self.forced_off

    def frame(self, allow_sidebar: bool | None = None) -> Frame:
        allow = self.sidebar_enabled if allow_sidebar is None else allow_sidebar
        return layout.compute_frame(self.width, self.height, allow)

    def attach(self, targets: Iterable[Resizable], probe_blocked: Callable[[], bool] | None = None) -> None:
        """Register executors that follow pane resizes.

        ``probe_blocked`` reports when a re-probe would corrupt a live
        backend's input.
        """
        self._targets = list(targets)
        if probe_blocked is not None:
            self._probe_blocked = probe_blocked

    def take_probe_input(self) -> bytes:
        data, self._probe_input = self._probe_input, b""
        return data

    # -- Lifecycle --

    def ensure_interactive(self) -> None:
        if not (os.isatty(self.stdin_fd) and os.isatty(self.stdout_fd)):
            raise not_a_terminal()

    def read_size(self) -> tuple[int, int]:
        size = os.get_terminal_size(self.stdout_fd)
        return layout.clamp_size(size.columns, size.lines)

    def start(self) -> Frame:
        """Enter raw mode, probe margin support and draw the initial layout."""
        self.ensure_interactive()
        self.width, self.height = self.read_size()

        self._old_attrs = termios.tcgetattr(self.stdin_fd)
        atexit.register(self.restore)
        tty.setraw(self.stdin_fd)

        if self.force_sidebar:
            self.lr_supported = True
        else:
            self.lr_supported = self.detect_lr_support()
        log.info("terminal ready", {
            "width": self.width,
            "height": self.height,
            "lr_margins": self.lr_supported,
            "forced": self.force_sidebar,
        })

        frame = self.frame()
        self.write(layout.setup_sequence(frame, self.sidebar_enabled))
        self._layout_changed(frame)
        return frame

    def detect_lr_support(self) -> bool:
        if not lrmargin.supports_lr_margins(self.term_name):
            return False
        try:
            supported, leftover = lrmargin.probe(self.stdin_fd, self.write, self.width)
        except OSError as e:
            log.warn("margin probe failed", {"error": e})
            return False
        self._probe_input = leftover
        return supported

    def restore(self) -> None:
        """Put the terminal back the way it was. Runs at most once."""
        if self._restored:
            return
        self._restored = True
        seq = (
            ansi.RESET_SCROLL
            + ansi.DISABLE_LR_MODE
            + ansi.SHOW_CURSOR
            + ansi.RESET
            + ansi.move(self.height, 1)
            + "\n"
        )
        try:
            self.write(seq)
        except OSError as e:
            log.warn("terminal restore write failed", {"error": e})
        if self._old_attrs is not None:
            try:
                termios.tcsetattr(self.stdin_fd, termios.TCSADRAIN, self._old_attrs)
            except termios.error as e:
                log.warn("termios restore failed", {"error": e})
        atexit.unregister(self.restore)

    # -- Output --

    def write(self, data: str | bytes) -> None:
        if isinstance(data, str):
            data = data.encode("utf-8")
        if data:
            _write_all(self.stdout_fd, data)

    def write_output(self, chunk: bytes) -> None:
        """Pass backend output through to the screen."""
        self.write(self._rewriter.rewrite(chunk))
        self.inspect(chunk)

    def inspect(self, chunk: bytes) -> None:
        if not chunk:
            return
        events, self._seq_tail = parse_terminal_events(self._seq_tail, chunk)
        for event in events:
            self.handle_event(event)

    def handle_event(self, event: TerminalEvent) -> None:
        if event is TerminalEvent.ALT_ENTER:
            self.alt_screen = True
        elif event is TerminalEvent.ALT_EXIT:
            if self.alt_screen:
                self.alt_screen = False
                frame = self.frame()
                self.write(layout.resize_sequence(frame, self.sidebar_enabled, move_cursor=False))
                self._layout_changed(frame)
        elif event in _SIDEBAR_BREAKERS:
            self.disable_sidebar()

    # -- Sidebar --

    def disable_sidebar(self) -> None:
        """Turn the sidebar off for good; the backend wants the margins."""
        if not self.sidebar_enabled:
            return
        old = self.frame()
        self.forced_off = True
        new = self.frame()
        log.info("sidebar disabled by backend output")
        if not old.sidebar_visible:
            return
        self.write(layout.resize_sequence(new, self.sidebar_enabled, move_cursor=False))
        self.write(layout.clear_columns(old.sidebar_width + 1, old.height, self.width))
        self._resize_targets(new)
        self._layout_changed(new)

    def toggle_sidebar(self) -> None:
        if self.forced_off or self.alt_screen:
            return
        if not self.lr_supported:
            self.reprobe()
            return
        old = self.frame()
        self.user_off = not self.user_off
        new = self.frame()
        self.write(layout.resize_sequence(new, self.sidebar_enabled))
        if old.sidebar_visible and not new.sidebar_visible:
            self.write(layout.clear_columns(old.sidebar_width + 1, old.height, self.width))
        self._resize_targets(new)
        self._layout_changed(new)

    def reprobe(self) -> bool:
        """Probe again and enable the sidebar when margins now work."""
        if self._probe_blocked():
            return False
        if not self.detect_lr_support():
            return False
        self.lr_supported = True
        self.user_off = False
        frame = self.frame()
        self.write(layout.resize_sequence(frame, self.sidebar_enabled))
        self._resize_targets(frame)
        self._layout_changed(frame)
        return True

    # -- Resize --

    def handle_resize(self, width: int, height: int) -> None:
        width, height = layout.clamp_size(width, height)

        if self.alt_screen:
            self.width, self.height = width, height
            self._resize_targets(self.frame(allow_sidebar=False))
            return

        if (width, height) == (self.width, self.height):
            return

        old = self.frame()
        self.width, self.height = width, height
        new = self.frame()
        self.write(layout.resize_sequence(new, self.sidebar_enabled, move_cursor=False))

        if old.sidebar_visible and not new.sidebar_visible:
            self.write(layout.clear_columns(old.sidebar_width + 1, height, width))
        elif old.sidebar_visible and new.sidebar_visible and old.sidebar_width != new.sidebar_width:
            columns = max(old.sidebar_width, new.sidebar_width) + 1
            self.write(layout.clear_columns(columns, height, width))

        self._resize_targets(new)
        self._layout_changed(new)

    def refresh_size(self) -> None:
        try:
            width, height = self.read_size()
        except OSError as e:
            if self.on_error is not None:
                self.on_error(f"Terminal resize read failed: {e}")
            return
        self.handle_resize(width, height)

    async def resize_loop(self, stop: asyncio.Event) -> None:
        """Follow SIGWINCH, with a slow poll for terminals that drop it."""
        loop = asyncio.get_running_loop()
        winch = asyncio.Event()
        loop.add_signal_handler(signal.SIGWINCH, winch.set)
        try:
            self.refresh_size()
            while not stop.is_set():
                try:
                    await asyncio.wait_for(winch.wait(), timeout=RESIZE_POLL_INTERVAL)
                except asyncio.TimeoutError:
                    pass
                winch.clear()
                self.refresh_size()
        finally:
            loop.remove_signal_handler(signal.SIGWINCH)

    def _resize_targets(self, frame: Frame) -> None:
        for target in self._targets:
            target.resize(frame.pty_rows, frame.pane_width)

    def _layout_changed(self, frame: Frame) -> None:
        if self.on_layout is not None:
            self.on_layout(frame, self.sidebar_available)
