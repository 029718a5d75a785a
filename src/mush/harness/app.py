"""Harness wiring and the shutdown coordinator.

``Harness.run`` owns every long-lived resource: the raw terminal, the
transcript, the signal directory, the worker link and the executors. All
concurrent tasks share one stop event; teardown runs in reverse order and
every step after the first is best effort.
"""

from __future__ import annotations

import asyncio
import shutil
import signal
import tempfile
import time
import uuid
from typing import Awaitable, Optional

import httpx

from ..api_client import ApiClientError, RunnerClient
from ..core.config import HarnessSettings
from ..util.error import CLIError, EXIT_EXECUTION, exit_code_for, harness_unavailable
from ..util.log import Log
from .executor import ExecError, Executor, Registry, SetupOptions
from .heartbeat import Heartbeat
from .hooks import HookError
from .input import InputRouter
from .jobloop import JobLoop
from .layout import Frame
from .render import render
from .state import BundleSummary, ConnectionStatus, Snapshot, SnapshotStore
from .terminal import TerminalController
from .transcript import TranscriptError, TranscriptStore

log = Log.create({"service": "harness.app"})

TICK_INTERVAL = 1.0
SIGNAL_DIR_PREFIX = "mush-signals-"
STOP_SIGNALS = (signal.SIGTERM, signal.SIGHUP, signal.SIGINT)


class Harness:
    def __init__(
        self,
        settings: HarnessSettings,
        client: RunnerClient,
        registry: Registry,
        *,
        harnesses: tuple[str, ...] = (),
        habitat_id: str = "",
        queue_id: str = "",
        bundle: Optional[BundleSummary] = None,
        bundle_dir: str = "",
        force_sidebar: bool = False,
        terminal: Optional[TerminalController] = None,
        session_id: Optional[str] = None,
    ) -> None:
        self.settings = settings
        self.client = client
        self.registry = registry
        self.harnesses = harnesses or tuple(registry.available_names())
        self.habitat_id = habitat_id
        self.queue_id = queue_id
        self.bundle = bundle or BundleSummary()
        self.bundle_dir = bundle_dir
        self.session_id = session_id or uuid.uuid4().hex

        self.terminal = terminal or TerminalController(
            force_sidebar=force_sidebar,
            on_layout=self._on_layout,
            on_error=self._on_error,
        )
        if terminal is not None:
            terminal.on_layout = self._on_layout
            terminal.on_error = self._on_error

        self.stop = asyncio.Event()
        self.stop_reason = ""
        self.store = SnapshotStore(
            Snapshot(
                bundle=self.bundle,
                habitat_id=habitat_id,
                queue_id=queue_id,
                supported_harnesses=self.harnesses,
                status=ConnectionStatus.STARTING.value,
            ),
            on_change=self._redraw,
        )

        self.job_loop: Optional[JobLoop] = None
        self.heartbeat: Optional[Heartbeat] = None
        self.router: Optional[InputRouter] = None
        self.transcript: Optional[TranscriptStore] = None
        self.signal_dir = ""
        self.backend_exited = False

        self._store_task: Optional[asyncio.Task] = None
        self._tasks: list[asyncio.Task] = []
        self._signals: list[signal.Signals] = []

    # -- Callbacks --

    def _on_layout(self, frame: Frame, available: bool) -> None:
        self.store.update(
            width=frame.width,
            height=frame.height,
            sidebar_visible=frame.sidebar_visible,
            sidebar_available=available,
            sidebar_width=frame.sidebar_width,
            pane_x_start=frame.pane_x_start,
            pane_width=frame.pane_width,
        )

    def _on_error(self, message: str) -> None:
        self.store.report_error(message)

    def _redraw(self, snapshot: Snapshot) -> None:
        if self.terminal.alt_screen or self.stop.is_set():
            return
        try:
            self.terminal.write(render(snapshot))
        except OSError as e:
            log.warn("status redraw failed", {"error": e})

    def _record(self, stream: str, data: bytes) -> None:
        if self.transcript is None:
            return
        try:
            self.transcript.append(stream, data)
        except (TranscriptError, OSError) as e:
            log.warn("transcript disabled", {"error": e})
            self.store.report_error(f"Transcript write failed: {e}")
            self.transcript = None

    def _info(self, message: str) -> None:
        self.terminal.write(f"\r\n{message}\r\n")

    def _backend_exited(self) -> None:
        self.backend_exited = True
        self.store.report_error("Interactive backend exited")
        self.request_stop("backend exited")

    def request_stop(self, reason: str) -> None:
        if self.stop.is_set():
            return
        log.info("stopping harness", {"reason": reason})
        self.stop_reason = reason
        self.stop.set()

    # -- Lifecycle --

    async def run(self) -> None:
        """Run until stopped. Setup failures raise ``CLIError``."""
        self.terminal.ensure_interactive()
        self._store_task = asyncio.create_task(self.store.run())
        try:
            frame = self.terminal.start()
            self._open_transcript()
            self.signal_dir = tempfile.mkdtemp(prefix=SIGNAL_DIR_PREFIX)
            self._install_signal_handlers()

            self.job_loop = JobLoop(
                self.client,
                self.registry,
                self.store,
                supported=self.harnesses,
                habitat_id=self.habitat_id,
                queue_id=self.queue_id,
                poll_interval=self.settings.poll_interval,
                heartbeat_interval=self.settings.heartbeat_interval,
                execution_timeout=self.settings.execution_timeout,
            )
            self.heartbeat = Heartbeat(
                self.client,
                self.store,
                habitat_id=self.habitat_id,
                interval=self.settings.heartbeat_interval,
                current_job=self.job_loop.current_job_id,
            )

            self.store.update(status=ConnectionStatus.CONNECTING.value)
            try:
                await self.heartbeat.register()
            except (ApiClientError, httpx.HTTPError) as e:
                raise CLIError("Failed to register worker link", exit_code_for(e), cause=e) from e

            config = await self.job_loop.load_runner_config()
            self.store.update(mcp_servers=self.job_loop.mcp_statuses())
            await self._setup_executors(frame, config)

            self.router = InputRouter(
                self.store,
                foreground=self.job_loop.foreground,
                interactive_job_active=self.job_loop.interactive_job_active,
                on_quit=self.request_stop,
                toggle_sidebar=self.terminal.toggle_sidebar,
                info=self._info,
            )
            self.terminal.attach(self.job_loop.executors.values(), probe_blocked=self.job_loop.interactive_job_active)
            pending = self.terminal.take_probe_input()
            if pending:
                self.router.feed(pending)

            if not self.stop.is_set():
                await self._serve()
        finally:
            await self.shutdown()

        if self.backend_exited:
            raise CLIError("The interactive backend exited unexpectedly", EXIT_EXECUTION)

    def _open_transcript(self) -> None:
        if not self.settings.history_enabled:
            return
        try:
            self.transcript = TranscriptStore(
                self.session_id,
                self.settings.history_dir or None,
                self.settings.history_lines,
            )
        except TranscriptError as e:
            self.store.report_error(f"Transcript unavailable: {e}")

    async def _setup_executors(self, frame: Frame, config) -> None:
        for name, executor in self.job_loop.executors.items():
            self.store.update(status=ConnectionStatus.STARTING.value)
            opts = SetupOptions(
                write=self.terminal.write_output,
                record=self._record,
                rows=frame.pty_rows,
                cols=frame.pane_width,
                signal_dir=self.signal_dir,
                bundle_dir=self.bundle_dir,
                runner_config=config,
                grace=self.settings.shutdown_grace,
                on_ready=lambda: self.store.update(status=ConnectionStatus.READY.value),
                on_exit=self._backend_exited if executor.interactive else None,
            )
            try:
                await executor.setup(opts)
            except (ExecError, HookError, OSError, RuntimeError) as e:
                log.error("executor setup failed", {"harness": name, "error": e})
                raise harness_unavailable(name, e) from e
            log.info("executor ready", {"harness": name})

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in STOP_SIGNALS:
            loop.add_signal_handler(sig, self.request_stop, sig.name)
            self._signals.append(sig)

    def _remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in self._signals:
            loop.remove_signal_handler(sig)
        self._signals.clear()

    async def _serve(self) -> None:
        assert self.job_loop is not None and self.heartbeat is not None and self.router is not None
        self._spawn("job loop", self.job_loop.run(self.stop))
        self._spawn("runner config refresh", self.job_loop.refresh_loop(self.stop))
        self._spawn("heartbeat", self.heartbeat.run(self.stop))
        self._spawn("input", self.router.run(self.terminal.stdin_fd, self.stop))
        self._spawn("resize", self.terminal.resize_loop(self.stop))
        self._spawn("ticker", self._tick())
        await self.stop.wait()

    def _spawn(self, name: str, coro: Awaitable[None]) -> None:
        async def guarded() -> None:
            try:
                await coro
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.error("harness task crashed", {"task": name, "error": e})
                self.request_stop(f"{name} crashed")
                raise

        self._tasks.append(asyncio.create_task(guarded(), name=name))

    async def _tick(self) -> None:
        while not self.stop.is_set():
            self.store.update(now=time.time(), mcp_servers=self.job_loop.mcp_statuses())
            try:
                await asyncio.wait_for(self.stop.wait(), timeout=TICK_INTERVAL)
            except asyncio.TimeoutError:
                pass

    async def shutdown(self) -> None:
        """Tear everything down. Safe to call more than once."""
        self.request_stop(self.stop_reason or "shutdown")

        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        for result in await asyncio.gather(*tasks, return_exceptions=True):
            if isinstance(result, Exception):
                log.warn("task ended with error", {"error": result})

        if self.job_loop is not None:
            for name, executor in self.job_loop.executors.items():
                await self._teardown(name, executor)

        if self._signals:
            self._remove_signal_handlers()
        self.terminal.restore()

        if self.heartbeat is not None and self.job_loop is not None:
            await self.heartbeat.deregister(self.job_loop.completed, self.job_loop.failed)
            self.heartbeat.link_id = ""

        if self.transcript is not None:
            try:
                self.transcript.close()
            except OSError as e:
                log.warn("transcript close failed", {"error": e})
            self.transcript = None

        if self.signal_dir:
            shutil.rmtree(self.signal_dir, ignore_errors=True)
            self.signal_dir = ""

        if self._store_task is not None:
            self.store.close()
            await self._store_task
            self._store_task = None
        log.info("harness stopped", {"reason": self.stop_reason})

    async def _teardown(self, name: str, executor: Executor) -> None:
        try:
            await executor.teardown()
        except Exception as e:
            log.warn("executor teardown failed", {"harness": name, "error": e})
