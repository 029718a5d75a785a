"""Keyboard routing: harness chords first, everything else to the backend.

Chords:
    Ctrl+Q  quit immediately
    Ctrl+C  interrupt the running interactive job; a second press within
            the exit window (or any press while idle) quits
    Ctrl+S  toggle copy mode; input is held back from the backend while
            it is on and a lone Esc turns it off again
    Ctrl+G  toggle the sidebar, re-probing the terminal if needed
"""

from __future__ import annotations

import asyncio
import os
import time
from typing import Callable, Optional

from ..util.log import Log
from .executor import Executor
from .state import SnapshotStore

log = Log.create({"service": "harness.input"})

CTRL_C = 0x03
CTRL_G = 0x07
CTRL_Q = 0x11
CTRL_S = 0x13
ESC = 0x1B

EXIT_WINDOW = 2.0
READ_SIZE = 256


class InputRouter:
    def __init__(
        self,
        store: SnapshotStore,
        *,
        foreground: Callable[[], Optional[Executor]],
        interactive_job_active: Callable[[], bool],
        on_quit: Callable[[str], None],
        toggle_sidebar: Callable[[], None] = lambda: None,
        info: Callable[[str], None] = lambda message: None,
        clock: Callable[[], float] = time.monotonic,
        exit_window: float = EXIT_WINDOW,
    ) -> None:
        self.store = store
        self.foreground = foreground
        self.interactive_job_active = interactive_job_active
        self.on_quit = on_quit
        self.toggle_sidebar = toggle_sidebar
        self.info = info
        self.clock = clock
        self.exit_window = exit_window

        self.copy_mode = False
        self._esc_pending = False
        self._last_interrupt: Optional[float] = None
        self.stopped = False

    def set_copy_mode(self, enabled: bool) -> None:
        if enabled == self.copy_mode:
            return
        self.copy_mode = enabled
        self._esc_pending = False
        self.store.update(copy_mode=enabled)

    def feed(self, data: bytes) -> bytes:
        """Handle one read; returns the bytes forwarded to the backend."""
        if self.stopped:
            return b""
        out = bytearray()
        n = len(data)
        for i, byte in enumerate(data):
            if self.copy_mode and self._esc_pending:
                self._esc_pending = False
                if byte in (ord("["), ord("O")):
                    continue
                self.set_copy_mode(False)

            if byte == CTRL_Q:
                self._stop("quit")
                break
            if byte == CTRL_C:
                if self._interrupt():
                    break
                continue
            if byte == CTRL_S:
                self.set_copy_mode(not self.copy_mode)
                continue
            if byte == CTRL_G:
                self.toggle_sidebar()
                continue
            if self.copy_mode:
                if byte == ESC and not (i + 1 < n and data[i + 1] in (ord("["), ord("O"))):
                    self._esc_pending = True
                continue
            out.append(byte)

        forwarded = bytes(out)
        if forwarded:
            executor = self.foreground()
            if executor is None or not executor.write_input(forwarded):
                return b""
        return forwarded

    def _interrupt(self) -> bool:
        """Returns True when the press ends the harness."""
        executor = self.foreground()
        if not self.interactive_job_active() or executor is None or not executor.is_running():
            self._stop("interrupt")
            return True

        now = self.clock()
        last = self._last_interrupt
        if last is not None and now - last <= self.exit_window:
            self._last_interrupt = None
            self.info("Second Ctrl+C received: exiting.")
            self._stop("double interrupt")
            return True

        self._last_interrupt = now
        executor.interrupt()
        self.info(f"Interrupt sent to Claude. Press Ctrl+C again within {self.exit_window:g}s to exit.")
        return False

    def _stop(self, reason: str) -> None:
        self.stopped = True
        log.info("shutdown requested from keyboard", {"reason": reason})
        self.on_quit(reason)

    async def run(self, fd: int, stop: asyncio.Event) -> None:
        """Read ``fd`` until ``stop`` is set or a quit chord arrives."""
        loop = asyncio.get_running_loop()

        def on_readable() -> None:
            try:
                data = os.read(fd, READ_SIZE)
            except BlockingIOError:
                return
            except OSError as e:
                log.warn("terminal read failed", {"error": e})
                loop.remove_reader(fd)
                return
            if not data:
                loop.remove_reader(fd)
                return
            self.feed(data)

        loop.add_reader(fd, on_readable)
        try:
            await stop.wait()
        finally:
            loop.remove_reader(fd)
