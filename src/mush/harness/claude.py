"""Interactive backend: a Claude Code session inside a pseudo-terminal.

The session persists across jobs. A prompt is typed into the PTY, and the
turn is considered finished when the Stop hook touches the marker file in
the signal directory; the marker is polled rather than inferred from the
TUI output.
"""

from __future__ import annotations

import asyncio
import errno
import fcntl
import os
import pty as pty_mod
import struct
import subprocess
import termios
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from ..api_client import Job, RunnerConfig
from ..util.log import Log
from . import ansi, mcp
from .executor import ExecError, ExecResult, Executor, SetupOptions, resolve_prompt, terminate_process_group
from .hooks import SIGNAL_FILE_NAME, install_stop_hook

log = Log.create({"service": "harness.claude"})

PROMPT_BYTES = "❯ ".encode("utf-8")
PROMPT_DEBOUNCE = 1.0
READY_TIMEOUT = 15.0
BYPASS_READY_EXTRA = 2.0
BYPASS_DIALOG_MARKER = b"Esc to cancel"

SIGNAL_POLL_INTERVAL = 0.2
CURRENT_JOB_FILE = "current-job"

WRITE_CHUNK_SIZE = 4096
CHUNK_DELAY = 0.01
PASTE_SETTLE_DELAY = 0.5
POST_WRITE_DELAY = 0.05
CLEAR_DELAY = 0.5
RESET_PROMPT_TIMEOUT = 10.0
RESET_SETTLE = 1.0
READ_SIZE = 4096


class SpawnError(RuntimeError):
    pass


def describe_spawn_error(error: OSError, binary: str) -> str:
    if isinstance(error, FileNotFoundError):
        return f"{binary} not found in PATH"
    if error.errno == errno.EACCES:
        return f"permission denied executing {binary}"
    if error.errno == errno.EPERM:
        return (
            f"{error} (EPERM during PTY start for {binary!r}; likely session/exec policy issue. "
            "Check executable permissions, filesystem noexec, and macOS quarantine attributes)"
        )
    return f"failed to start {binary}: {error}"


def set_winsize(fd: int, rows: int, cols: int) -> None:
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", max(rows, 1), max(cols, 1), 0, 0))


class ClaudeExecutor(Executor):
    name = "claude"
    interactive = True

    def __init__(self, provider=None) -> None:
        super().__init__(provider)
        self.master_fd: Optional[int] = None
        self.process: Optional[subprocess.Popen[bytes]] = None
        self.signal_dir = ""

        self._capture = bytearray()
        self._capturing = False
        self._prompt_tail = b""
        self._prompt_event = asyncio.Event()
        self._confirm_handle: Optional[asyncio.TimerHandle] = None
        self._dialog = bytearray()
        self.bypass_accepted = False
        self._stopped = False

        self._restore_hooks = None
        self._mcp_file: Optional[mcp.MCPConfigFile] = None
        self._tasks: set[asyncio.Task] = set()

    @property
    def binary(self) -> str:
        return (self.provider.binary if self.provider else "") or "claude"

    @property
    def signal_path(self) -> Path:
        return Path(self.signal_dir) / SIGNAL_FILE_NAME

    @property
    def current_job_path(self) -> Path:
        return Path(self.signal_dir) / CURRENT_JOB_FILE

    @property
    def loaded_mcp_names(self) -> tuple[str, ...]:
        return self._mcp_file.names if self._mcp_file else ()

    # -- Lifecycle --

    async def setup(self, opts: SetupOptions) -> None:
        self.opts = opts
        self.signal_dir = opts.signal_dir
        if self.signal_dir:
            self._restore_hooks = install_stop_hook(self.signal_dir)

        if opts.runner_config is not None:
            try:
                self._apply_runner_config(opts.runner_config)
            except OSError as e:
                log.warn("mcp config disabled", {"error": e})
                opts.write(f"MCP config disabled: {e}\r\n".encode())

        self._start()
        await self.wait_for_ready()
        if opts.on_ready is not None:
            opts.on_ready()

    def command_args(self) -> list[str]:
        args = ["--dangerously-skip-permissions"]
        if self.provider is not None:
            args += self.provider.bundle_args(self.opts.bundle_dir)
            flag = self.provider.cli.mcp_config if self.provider.cli else ""
            if self._mcp_file is not None and self._mcp_file.path and flag:
                args += [flag, self._mcp_file.path]
        return args

    def _start(self) -> None:
        args = self.command_args()
        env = {
            **os.environ,
            "TERM": "xterm-256color",
            "FORCE_COLOR": "1",
            "MUSH_SIGNAL_DIR": self.signal_dir,
        }
        log.info("starting pty", {"binary": self.binary, "args": args})

        master, slave = pty_mod.openpty()
        set_winsize(master, self.opts.rows, self.opts.cols)
        try:
            process = subprocess.Popen(
                [self.binary, *args],
                stdin=slave,
                stdout=slave,
                stderr=slave,
                env=env,
                start_new_session=True,
            )
        except OSError as e:
            os.close(master)
            raise SpawnError(describe_spawn_error(e, self.binary)) from e
        finally:
            os.close(slave)

        self.master_fd = master
        self.process = process
        self._prompt_tail = b""
        loop = asyncio.get_running_loop()
        loop.add_reader(master, self._on_read)
        self._spawn(self._watch_exit(process))

    async def _watch_exit(self, process: subprocess.Popen[bytes]) -> None:
        loop = asyncio.get_running_loop()
        code = await loop.run_in_executor(None, process.wait)
        if process is not self.process or self._stopped:
            return
        log.warn("claude exited", {"exit_code": code})
        self._detach_reader()
        if self.opts.on_exit is not None:
            self.opts.on_exit()

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def teardown(self) -> None:
        self._stopped = True
        await self._close_pty()
        for task in list(self._tasks):
            task.cancel()
        if self._mcp_file is not None:
            self._mcp_file.cleanup()
            self._mcp_file = None
        if self._restore_hooks is not None:
            try:
                self._restore_hooks()
            except OSError as e:
                log.warn("stop hook restore failed", {"error": e})
            self._restore_hooks = None

    async def _close_pty(self) -> None:
        process = self.process
        self.process = None
        self._detach_reader()
        if process is None:
            return
        log.debug("stopping pty", {"pid": process.pid})
        await terminate_process_group(process, self.opts.grace)

    def _detach_reader(self) -> None:
        fd = self.master_fd
        self.master_fd = None
        if fd is None:
            return
        try:
            asyncio.get_running_loop().remove_reader(fd)
        except RuntimeError:
            pass
        try:
            os.close(fd)
        except OSError:
            pass

    # -- Output --

    def _on_read(self) -> None:
        fd = self.master_fd
        if fd is None:
            return
        try:
            data = os.read(fd, READ_SIZE)
        except OSError:
            # EIO once the child side has closed.
            self._detach_reader()
            return
        if not data:
            self._detach_reader()
            return

        self.opts.write(data)
        self.opts.record("pty", data)

        if not self.bypass_accepted:
            self._dialog += data
            if BYPASS_DIALOG_MARKER in self._dialog:
                self.bypass_accepted = True
                self._dialog.clear()
                self._spawn(self._accept_bypass_dialog())
            elif len(self._dialog) > 64 * 1024:
                del self._dialog[:-len(BYPASS_DIALOG_MARKER)]

        if self._capturing:
            self._capture += data

        window = self._prompt_tail + data
        if PROMPT_BYTES in window:
            self._prompt_seen()
        self._prompt_tail = window[-(len(PROMPT_BYTES) - 1):]

    async def _accept_bypass_dialog(self) -> None:
        await asyncio.sleep(0.3)
        self._write(b"\x1b[B")
        await asyncio.sleep(0.1)
        self._write(b"\r")

    def _prompt_seen(self) -> None:
        if self._confirm_handle is not None:
            self._confirm_handle.cancel()
        loop = asyncio.get_running_loop()
        self._confirm_handle = loop.call_later(PROMPT_DEBOUNCE, self._prompt_confirmed)

    def _prompt_confirmed(self) -> None:
        self._confirm_handle = None
        self._prompt_event.set()

    async def wait_for_ready(self, timeout: float = READY_TIMEOUT) -> bool:
        """Wait for a settled prompt; False when the fallback timer fired."""
        self._prompt_event.clear()
        try:
            await asyncio.wait_for(self._prompt_event.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            log.warn("prompt not detected, continuing", {"timeout": timeout})
            if self.bypass_accepted:
                await asyncio.sleep(BYPASS_READY_EXTRA)
            return False

    # -- Input --

    def _write(self, data: bytes) -> bool:
        fd = self.master_fd
        if fd is None:
            return False
        try:
            os.write(fd, data)
        except OSError as e:
            log.warn("pty write failed", {"error": e})
            return False
        return True

    def write_input(self, data: bytes) -> bool:
        return self._write(data)

    def interrupt(self) -> bool:
        return self._write(b"\x03")

    def is_running(self) -> bool:
        return self.process is not None and self.process.poll() is None

    def resize(self, rows: int, cols: int) -> None:
        super().resize(rows, cols)
        if self.master_fd is not None:
            try:
                set_winsize(self.master_fd, rows, cols)
            except OSError as e:
                log.debug("pty resize failed", {"error": e})

    async def inject(self, prompt: str) -> None:
        data = prompt.encode("utf-8")
        for offset in range(0, len(data), WRITE_CHUNK_SIZE):
            if offset:
                await asyncio.sleep(CHUNK_DELAY)
            self._write(data[offset:offset + WRITE_CHUNK_SIZE])
        await asyncio.sleep(PASTE_SETTLE_DELAY)
        self._write(b"\r")

    # -- Jobs --

    async def execute(self, job: Job, timeout: float) -> ExecResult:
        prompt = resolve_prompt(job)
        if self.signal_dir:
            self.signal_path.unlink(missing_ok=True)
            self.current_job_path.write_text(job.id)
            self.current_job_path.chmod(0o600)

        self._capture.clear()
        self._capturing = True
        started = time.monotonic()
        try:
            await self.inject(prompt)
            output = await asyncio.wait_for(self._wait_for_marker(), timeout=timeout)
        except asyncio.TimeoutError:
            raise ExecError("timeout", f"claude did not finish within {timeout:g}s") from None
        finally:
            self._capturing = False

        return ExecResult(output={
            "success": True,
            "output": output,
            "durationMs": int((time.monotonic() - started) * 1000),
        })

    async def _wait_for_marker(self) -> str:
        while True:
            if self._stopped or self.process is None:
                raise ExecError("execution_error", "harness stopped")
            if self.signal_dir and self.signal_path.exists():
                self.signal_path.unlink(missing_ok=True)
                output = ansi.strip(self._capture.decode("utf-8", errors="replace"))
                self._capture.clear()
                return output
            await asyncio.sleep(SIGNAL_POLL_INTERVAL)

    async def reset(self) -> None:
        """Clear the conversation so the next job starts fresh."""
        if self.signal_dir:
            self.current_job_path.unlink(missing_ok=True)
            self.signal_path.unlink(missing_ok=True)
        if self.master_fd is None:
            return
        await asyncio.sleep(CLEAR_DELAY)
        self._prompt_event.clear()
        self._write(b"/clear")
        await asyncio.sleep(POST_WRITE_DELAY)
        self._write(b"\r")
        try:
            await asyncio.wait_for(self._prompt_event.wait(), timeout=RESET_PROMPT_TIMEOUT)
        except asyncio.TimeoutError:
            log.warn("prompt not seen after /clear")
        await asyncio.sleep(RESET_SETTLE)

    # -- MCP --

    def _apply_runner_config(self, config: RunnerConfig) -> None:
        fmt = self.provider.mcp.format if self.provider and self.provider.mcp else "json"
        new = mcp.create_config_file(config, datetime.now(timezone.utc), fmt)
        old, self._mcp_file = self._mcp_file, new
        if old is not None:
            old.cleanup()
        log.info("mcp config applied", {"servers": list(new.names)})

    def needs_refresh(self, runner_config: RunnerConfig) -> bool:
        specs = mcp.build_provider_specs(runner_config, datetime.now(timezone.utc))
        current = self._mcp_file.signature if self._mcp_file else ""
        return mcp.signature(specs) != current

    async def apply_refresh(self, runner_config: RunnerConfig) -> None:
        """Rewrite the MCP config and restart the session to load it."""
        old_names = self.loaded_mcp_names
        self._apply_runner_config(runner_config)
        await self._close_pty()
        self._start()
        await self.wait_for_ready()
        names = self.loaded_mcp_names
        if names != old_names:
            summary = ", ".join(names) if names else "none"
            self.opts.write(f"MCP servers reloaded: {summary}\r\n".encode())
        log.info("mcp servers reloaded", {"servers": list(names)})
