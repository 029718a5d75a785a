"""Shared test helpers."""

from __future__ import annotations

import asyncio
from typing import Any, Optional

from mush.api_client import Job, RunnerConfig
from mush.harness.executor import ExecError, ExecResult, Executor, HarnessInfo, Registry
from mush.harness.state import Snapshot, SnapshotStore


def make_job(job_id: str = "job-1", harness: str = "bash", **execution: Any) -> Job:
    payload: dict[str, Any] = {"agentType": harness, **execution}
    input_data = payload.pop("inputData", {})
    return Job.model_validate({"id": job_id, "inputData": input_data, "execution": payload})


class FakeClient:
    """In-memory stand-in for ``RunnerClient`` that records every call."""

    def __init__(self, jobs: Optional[list[Job]] = None, config: Optional[RunnerConfig] = None) -> None:
        self.jobs = list(jobs or [])
        self.config = config or RunnerConfig()
        self.calls: list[tuple[str, Any]] = []
        self.completed: list[tuple[str, dict[str, Any]]] = []
        self.failed: list[dict[str, Any]] = []
        self.claim_error: Optional[Exception] = None
        self.register_error: Optional[Exception] = None
        self.deregistered: Optional[dict[str, Any]] = None
        self.drained = asyncio.Event()

    async def claim_job(self, *, habitat_id: str = "", queue_id: str = "", wait_timeout_seconds: int = 30) -> Optional[Job]:
        self.calls.append(("claim", queue_id or habitat_id))
        if self.claim_error is not None:
            raise self.claim_error
        if self.jobs:
            return self.jobs.pop(0)
        self.drained.set()
        await asyncio.sleep(0.01)
        return None

    async def start_job(self, job_id: str) -> None:
        self.calls.append(("start", job_id))

    async def heartbeat_job(self, job_id: str) -> None:
        self.calls.append(("heartbeat_job", job_id))

    async def complete_job(self, job_id: str, output: dict[str, Any]) -> None:
        self.calls.append(("complete", job_id))
        self.completed.append((job_id, output))

    async def fail_job(self, job_id: str, *, code: str, message: str, should_retry: bool, details=None) -> None:
        self.calls.append(("fail", job_id))
        self.failed.append({
            "id": job_id,
            "code": code,
            "message": message,
            "retry": should_retry,
            "details": details,
        })

    async def register_link(self, payload: dict[str, Any]) -> str:
        self.calls.append(("register", payload["habitatId"]))
        if self.register_error is not None:
            raise self.register_error
        return "link-1"

    async def heartbeat_link(self, link_id: str, current_job_id: str = "") -> None:
        self.calls.append(("heartbeat_link", current_job_id))

    async def deregister_link(self, link_id: str, *, completed: int, failed: int, reason: str = "graceful_shutdown", timeout=None) -> None:
        self.deregistered = {"link_id": link_id, "completed": completed, "failed": failed}

    async def get_runner_config(self) -> RunnerConfig:
        return self.config

    async def aclose(self) -> None:
        pass


class FakeExecutor(Executor):
    """Records jobs and returns canned results."""

    def __init__(self, name: str = "fake", interactive: bool = False, result: Any = None) -> None:
        super().__init__()
        self.name = name
        self.interactive = interactive
        self.result = result if result is not None else {"output": "ok"}
        self.executed: list[Job] = []
        self.resets = 0
        self.torn_down = False
        self.inputs: list[bytes] = []
        self.interrupts = 0
        self.running = False
        self.active: int = 0
        self.max_active: int = 0
        self.delay = 0.0

    async def execute(self, job: Job, timeout: float) -> ExecResult:
        self.executed.append(job)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        self.running = True
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if isinstance(self.result, ExecError):
                raise self.result
            return ExecResult(output=dict(self.result))
        finally:
            self.active -= 1
            self.running = False

    async def reset(self) -> None:
        self.resets += 1

    async def teardown(self) -> None:
        self.torn_down = True

    def write_input(self, data: bytes) -> bool:
        self.inputs.append(data)
        return True

    def interrupt(self) -> bool:
        self.interrupts += 1
        return True

    def is_running(self) -> bool:
        return self.running


def registry_of(*executors: Executor) -> Registry:
    return Registry(
        HarnessInfo(name=e.name, available=lambda: True, factory=lambda e=e: e)
        for e in executors
    )


def new_store(**fields: Any) -> SnapshotStore:
    return SnapshotStore(Snapshot(**fields))


FAKE_CLAUDE_PROMPT = "❯ "


def write_fake_claude(directory, on_line: str = 'touch "$MUSH_SIGNAL_DIR/complete"', traps: str = ""):
    """A ``/bin/sh`` stand-in for the claude CLI.

    It prints a prompt, runs ``on_line`` for every submitted line, and
    answers ``/clear`` with a fresh prompt.
    """
    script = directory / "claude"
    script.write_text(
        "#!/bin/sh\n"
        f"{traps}\n"
        f"printf 'Welcome\\r\\n{FAKE_CLAUDE_PROMPT}'\n"
        "while IFS= read -r line; do\n"
        '  case "$line" in\n'
        f"    /clear*) printf '\\r\\n{FAKE_CLAUDE_PROMPT}' ;;\n"
        f"    *) printf 'answer: %s\\r\\n{FAKE_CLAUDE_PROMPT}' \"$line\"; {on_line} ;;\n"
        "  esac\n"
        "done\n",
        encoding="utf-8",
    )
    script.chmod(0o755)
    return script
