"""Claim, execute and report jobs, one at a time."""

from __future__ import annotations

import asyncio
import contextlib
import math
import random
import time
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional

import httpx

from ..api_client import ApiClientError, InvalidPayloadError, Job, RunnerClient, RunnerConfig
from ..util.log import Log
from . import mcp
from .executor import ExecError, Executor, JSONDict, Registry
from .state import ConnectionStatus, SnapshotStore

log = Log.create({"service": "harness.jobloop"})

DEFAULT_EXECUTION_TIMEOUT = 600.0
CLAIM_BACKOFF = 5.0
REFRESH_BACKOFF = 2.0
POLL_JITTER = 0.1

API_ERRORS = (ApiClientError, httpx.HTTPError)


async def _sleep_unless(stop: asyncio.Event, seconds: float) -> bool:
    """Sleep up to ``seconds``; True if ``stop`` was set meanwhile."""
    try:
        await asyncio.wait_for(stop.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        return False
    return True


class JobLoop:
    """Owns the claimed job and the executors that run it.

    Executors are built from ``registry`` for each supported harness name.
    Claims are strictly sequential, so at most one job executes at a time.
    """

    def __init__(
        self,
        client: RunnerClient,
        registry: Registry,
        store: SnapshotStore,
        *,
        supported: Iterable[str],
        habitat_id: str = "",
        queue_id: str = "",
        poll_interval: float = 30,
        heartbeat_interval: float = 30,
        execution_timeout: float = DEFAULT_EXECUTION_TIMEOUT,
        claim_backoff: float = CLAIM_BACKOFF,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.client = client
        self.registry = registry
        self.store = store
        self.habitat_id = habitat_id
        self.queue_id = queue_id
        self.poll_interval = poll_interval
        self.heartbeat_interval = heartbeat_interval
        self.execution_timeout = execution_timeout
        self.claim_backoff = claim_backoff
        self.now = now

        self.supported = tuple(supported)
        self.executors: dict[str, Executor] = {}
        for name in self.supported:
            info = registry.lookup(name)
            if info is None:
                raise ValueError(f"unknown harness: {name}")
            self.executors[name] = info.factory()

        self.current_job: Optional[Job] = None
        self.current_executor: Optional[Executor] = None
        self.completed = 0
        self.failed = 0
        self.claims = 0
        self.executions = 0

        self.runner_config: Optional[RunnerConfig] = None
        self.refresh_interval = float(mcp.normalize_refresh_interval(0))
        self._pending_config: Optional[RunnerConfig] = None
        self._status = ConnectionStatus.CONNECTED

    # -- Queries --

    def current_job_id(self) -> str:
        return self.current_job.id if self.current_job else ""

    def interactive_job_active(self) -> bool:
        return self.current_executor is not None and self.current_executor.interactive

    def foreground(self) -> Optional[Executor]:
        """The executor keyboard input goes to."""
        if self.current_executor is not None:
            return self.current_executor
        for executor in self.executors.values():
            if executor.interactive:
                return executor
        return None

    def loaded_mcp_names(self) -> tuple[str, ...]:
        names: list[str] = []
        for executor in self.executors.values():
            names.extend(executor.loaded_mcp_names)
        return tuple(sorted(set(names)))

    def mcp_statuses(self):
        return mcp.server_statuses(self.runner_config, self.now(), self.loaded_mcp_names())

    def _set_status(self, status: ConnectionStatus) -> None:
        if status != self._status:
            self._status = status
            self.store.update(status=status.value)

    # -- Main loop --

    async def run(self, stop: asyncio.Event) -> None:
        """Poll until ``stop`` is set; a running job is cancelled with the loop."""
        worker = asyncio.create_task(self._loop(stop))
        waiter = asyncio.create_task(stop.wait())
        try:
            await asyncio.wait({worker, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (worker, waiter):
                task.cancel()
            await asyncio.gather(worker, waiter, return_exceptions=True)
        if worker.done() and not worker.cancelled() and worker.exception() is not None:
            raise worker.exception()

    async def _loop(self, stop: asyncio.Event) -> None:
        self._status = ConnectionStatus.CONNECTED
        self.store.update(status=self._status.value)

        while not stop.is_set():
            try:
                await self.maybe_refresh_executors()
            except Exception as e:
                log.error("executor refresh failed", {"error": e})
                self.store.report_error(f"Executor refresh failed: {e}")
                if await _sleep_unless(stop, REFRESH_BACKOFF):
                    return
                continue

            started = time.monotonic()
            try:
                job = await self.client.claim_job(
                    habitat_id=self.habitat_id,
                    queue_id=self.queue_id,
                    wait_timeout_seconds=max(1, math.ceil(self.poll_interval)),
                )
            except InvalidPayloadError as e:
                log.warn("malformed job payload", {"job_id": e.job_id, "error": e})
                self.store.report_error(f"Invalid job payload: {e}")
                if e.job_id:
                    self.claims += 1
                    await self._fail(e.job_id, "invalid_payload", str(e), retry=False)
                    continue
                if await _sleep_unless(stop, self.claim_backoff):
                    return
                continue
            except API_ERRORS as e:
                message = f"Claim failed: {e}"
                if isinstance(e, ApiClientError) and e.needs_auth:
                    message += " (check credentials)"
                log.warn("claim failed", {"error": e})
                self.store.report_error(message)
                self._set_status(ConnectionStatus.ERROR)
                if await _sleep_unless(stop, self.claim_backoff):
                    return
                continue

            self._set_status(ConnectionStatus.CONNECTED)
            if job is None:
                # The server may answer an empty long poll early.
                remaining = self.poll_interval - (time.monotonic() - started)
                if remaining > 0:
                    remaining += random.uniform(0, remaining * POLL_JITTER)
                    if await _sleep_unless(stop, remaining):
                        return
                continue
            self.claims += 1
            await self.process_job(job)

    async def process_job(self, job: Job) -> None:
        harness = job.harness_type
        executor = self.executors.get(harness) if harness in self.supported else None
        if executor is None:
            message = f"Unsupported harness type: {harness}" if harness else "Missing harness type in job execution config"
            log.warn("rejecting job", {"job_id": job.id, "harness": harness})
            self.store.report_error(message)
            await self._fail(job.id, "unsupported_harness", message, retry=False)
            return

        log.info("processing job", {"job_id": job.id, "harness": harness, "attempt": job.attempt_number})
        self.current_job = job
        self.current_executor = executor
        self._status = ConnectionStatus.PROCESSING
        self.store.update(status=self._status.value, job_id=job.id)
        heartbeat = asyncio.create_task(self._job_heartbeat(job.id))

        try:
            try:
                await self.client.start_job(job.id)
            except API_ERRORS as e:
                self.store.report_error(f"Start job failed: {e}")

            timeout = job.timeout_seconds or self.execution_timeout
            self.executions += 1
            try:
                result = await executor.execute(job, timeout)
            except ExecError as e:
                log.warn("job failed", {"job_id": job.id, "reason": e.reason, "error": e.message})
                await self._fail(job.id, e.reason, e.message, e.retry, e.output)
                return
            except Exception as e:
                log.error("executor crashed", {"job_id": job.id, "error": e})
                await self._fail(job.id, "execution_error", str(e), retry=True)
                return

            await self._complete(job, result.output)
            try:
                await executor.reset()
            except Exception as e:
                self.store.report_error(f"Executor reset failed: {e}")
        finally:
            heartbeat.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await heartbeat
            self.current_job = None
            self.current_executor = None
            self._status = ConnectionStatus.CONNECTED
            self.store.update(status=self._status.value, job_id="")

    async def _job_heartbeat(self, job_id: str) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await self.client.heartbeat_job(job_id)
            except API_ERRORS as e:
                self.store.report_error(f"Heartbeat failed: {e}")
                continue
            self.store.update(last_heartbeat=time.time())

    async def _complete(self, job: Job, output: JSONDict) -> None:
        try:
            await self.client.complete_job(job.id, output)
        except API_ERRORS as e:
            self.store.report_error(f"Complete failed: {e}")
            await self._fail(job.id, "completion_report_failed", str(e), retry=True)
            return
        log.info("job completed", {"job_id": job.id})
        self.completed += 1
        self.store.increment("completed")

    async def _fail(
        self,
        job_id: str,
        reason: str,
        message: str,
        retry: bool,
        details: Optional[JSONDict] = None,
    ) -> None:
        try:
            await self.client.fail_job(job_id, code=reason, message=message, should_retry=retry, details=details)
        except API_ERRORS as e:
            self.store.report_error(f"Fail report failed: {e}")
        self.failed += 1
        self.store.increment("failed")

    # -- Runner config --

    async def load_runner_config(self) -> Optional[RunnerConfig]:
        try:
            config = await self.client.get_runner_config()
        except API_ERRORS as e:
            log.warn("runner config unavailable", {"error": e})
            self.store.report_error(f"Runner config load failed: {e}")
            return None
        self.runner_config = config
        self.refresh_interval = float(mcp.normalize_refresh_interval(config.refresh_after_seconds))
        return config

    async def refresh_loop(self, stop: asyncio.Event) -> None:
        """Fetch the runner config periodically; executors pick it up between jobs."""
        while not await _sleep_unless(stop, self.refresh_interval):
            config = await self.load_runner_config()
            if config is None:
                continue
            if any(executor.needs_refresh(config) for executor in self.executors.values()):
                self._pending_config = config
            self.store.update(mcp_servers=self.mcp_statuses())

    async def maybe_refresh_executors(self) -> None:
        config = self._pending_config
        if config is None or self.current_job is not None:
            return
        for name, executor in self.executors.items():
            if executor.needs_refresh(config):
                log.info("refreshing executor", {"harness": name})
                await executor.apply_refresh(config)
        self._pending_config = None
        self.store.update(mcp_servers=self.mcp_statuses())
