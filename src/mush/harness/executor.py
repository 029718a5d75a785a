"""Execution backend contract and the harness registry."""

from __future__ import annotations

import asyncio
import os
import signal
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Callable, Iterable, Mapping, Optional

from ..api_client import Job, RunnerConfig
from ..util.log import Log
from .providers import ProviderSpec, load_providers

log = Log.create({"service": "harness.executor"})

JSONDict = dict[str, Any]

TERMINATE_GRACE = 3.0


class ExecError(Exception):
    """A job-scoped execution failure.

    ``reason`` becomes the reported error code; ``output`` optionally
    carries a partial report sent along as error details.
    """

    def __init__(
        self,
        reason: str,
        message: str,
        retry: bool = True,
        output: Optional[JSONDict] = None,
    ) -> None:
        super().__init__(message)
        self.reason = reason
        self.message = message
        self.retry = retry
        self.output = output


def resolve_prompt(job: Job) -> str:
    """Instruction text for conversational backends.

    Raises:
        ExecError: ``prompt_error`` when nothing usable is present.
    """
    if job.rendered_instruction:
        return job.rendered_instruction
    if job.execution_error:
        raise ExecError("prompt_error", f"server execution error: {job.execution_error}", retry=False)
    instruction = job.input_text("instruction")
    if instruction:
        return instruction
    title = job.input_text("title")
    if title:
        description = job.input_text("description")
        return f"{title}\n\n{description}" if description else title
    prompt = job.input_text("prompt")
    if prompt:
        return prompt
    raise ExecError("prompt_error", "no prompt found for job", retry=False)


@dataclass
class ExecResult:
    output: JSONDict


@dataclass
class SetupOptions:
    """Everything a backend needs from the harness.

    ``write`` passes raw output to the screen; ``record`` appends it to the
    transcript under a stream name.
    """
    write: Callable[[bytes], None] = lambda data: None
    record: Callable[[str, bytes], None] = lambda stream, data: None
    rows: int = 24
    cols: int = 80
    signal_dir: str = ""
    bundle_dir: str = ""
    runner_config: Optional[RunnerConfig] = None
    grace: float = TERMINATE_GRACE
    on_ready: Optional[Callable[[], None]] = None
    on_exit: Optional[Callable[[], None]] = None


class Executor:
    """Base class for execution backends.

    ``interactive`` backends own a long-lived pseudo-terminal that the
    operator types into; the others run one process per job.
    """

    name = ""
    interactive = False

    def __init__(self, provider: Optional[ProviderSpec] = None) -> None:
        self.provider = provider
        self.opts = SetupOptions()

    async def setup(self, opts: SetupOptions) -> None:
        self.opts = opts
        if opts.on_ready is not None:
            opts.on_ready()

    async def execute(self, job: Job, timeout: float) -> ExecResult:
        raise NotImplementedError

    async def reset(self) -> None:
        pass

    async def teardown(self) -> None:
        pass

    def resize(self, rows: int, cols: int) -> None:
        self.opts.rows, self.opts.cols = rows, cols

    def write_input(self, data: bytes) -> bool:
        """Forward operator keystrokes; False when nothing accepts input."""
        return False

    def interrupt(self) -> bool:
        return False

    def is_running(self) -> bool:
        return False

    @property
    def loaded_mcp_names(self) -> tuple[str, ...]:
        return ()

    def needs_refresh(self, runner_config: RunnerConfig) -> bool:
        return False

    async def apply_refresh(self, runner_config: RunnerConfig) -> None:
        pass


async def terminate_process_group(
    process: asyncio.subprocess.Process | Any,
    grace: float = TERMINATE_GRACE,
) -> None:
    """SIGTERM the process group, then SIGKILL after ``grace`` seconds."""
    pid = process.pid
    if _returncode(process) is not None:
        return
    try:
        pgid = os.getpgid(pid)
    except ProcessLookupError:
        return
    log.info("terminating process group", {"pid": pid, "pgid": pgid})
    try:
        os.killpg(pgid, signal.SIGTERM)
    except ProcessLookupError:
        return
    if await _wait_exit(process, grace):
        return
    log.warn("process ignored SIGTERM, killing", {"pid": pid, "grace": grace})
    try:
        os.killpg(pgid, signal.SIGKILL)
    except ProcessLookupError:
        return
    await _wait_exit(process, grace)


def _returncode(process: Any) -> Optional[int]:
    poll = getattr(process, "poll", None)
    return poll() if poll is not None else process.returncode


async def _wait_exit(process: Any, timeout: float) -> bool:
    wait = process.wait
    try:
        if asyncio.iscoroutinefunction(wait):
            await asyncio.wait_for(wait(), timeout=timeout)
        else:
            loop = asyncio.get_running_loop()
            await asyncio.wait_for(loop.run_in_executor(None, wait), timeout=timeout)
    except asyncio.TimeoutError:
        return False
    return True


# -- Registry --

@dataclass(frozen=True)
class HarnessInfo:
    name: str
    available: Callable[[], bool]
    factory: Callable[[], Executor]


class Registry:
    """Immutable name -> ``HarnessInfo`` mapping, built once and passed in."""

    def __init__(self, infos: Iterable[HarnessInfo]) -> None:
        entries: dict[str, HarnessInfo] = {}
        for info in infos:
            if info.name in entries:
                raise ValueError(f"duplicate harness registration for {info.name!r}")
            entries[info.name] = info
        self._entries: Mapping[str, HarnessInfo] = MappingProxyType(entries)

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def lookup(self, name: str) -> Optional[HarnessInfo]:
        return self._entries.get(name)

    def names(self) -> list[str]:
        return sorted(self._entries)

    def available_names(self) -> list[str]:
        return [name for name in self.names() if self._entries[name].available()]


def default_registry(providers: Mapping[str, ProviderSpec] | None = None) -> Registry:
    """Registry of the built-in backends, described by the shipped providers."""
    from .bash import BashExecutor
    from .claude import ClaudeExecutor
    from .codex import CodexExecutor

    providers = providers if providers is not None else load_providers()
    infos = []
    for cls in (BashExecutor, ClaudeExecutor, CodexExecutor):
        spec = providers.get(cls.name)
        if spec is None:
            continue
        infos.append(HarnessInfo(
            name=spec.name,
            available=spec.available,
            factory=lambda cls=cls, spec=spec: cls(spec),
        ))
    return Registry(infos)
