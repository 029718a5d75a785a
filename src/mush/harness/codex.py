"""Headless ``codex exec`` backend, one process per job."""

from __future__ import annotations

import asyncio
import os
import shutil
import tempfile
import time
from pathlib import Path
from typing import Optional

from ..api_client import Job
from ..util.log import Log
from . import ansi
from .bash import job_environment
from .executor import ExecError, ExecResult, Executor, resolve_prompt, terminate_process_group

log = Log.create({"service": "harness.codex"})


class CodexExecutor(Executor):
    name = "codex"

    def __init__(self, provider=None) -> None:
        super().__init__(provider)
        self._process: Optional[asyncio.subprocess.Process] = None

    @property
    def binary(self) -> str:
        return (self.provider.binary if self.provider else "") or "codex"

    def is_running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    def build_args(self, job: Job, output_path: str, prompt: str) -> list[str]:
        args = ["exec", "--dangerously-bypass-approvals-and-sandbox"]
        if job.execution is not None and job.execution.working_directory:
            args += ["-C", job.execution.working_directory]
        return args + ["-o", output_path, prompt]

    async def setup(self, opts) -> None:
        if shutil.which(self.binary) is None:
            raise ExecError("setup_error", f"{self.binary} CLI not found in PATH", retry=False)
        await super().setup(opts)

    async def execute(self, job: Job, timeout: float) -> ExecResult:
        prompt = resolve_prompt(job)
        fd, output_path = tempfile.mkstemp(prefix="mush-codex-output-", suffix=".txt")
        os.close(fd)
        try:
            return await self._run(job, timeout, prompt, output_path)
        finally:
            Path(output_path).unlink(missing_ok=True)

    async def _run(self, job: Job, timeout: float, prompt: str, output_path: str) -> ExecResult:
        started = time.monotonic()
        log.info("running codex job", {"job_id": job.id, "timeout": timeout})
        process = await asyncio.create_subprocess_exec(
            self.binary,
            *self.build_args(job, output_path, prompt),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            env=job_environment(job),
            start_new_session=True,
        )
        self._process = process
        try:
            await asyncio.wait_for(asyncio.gather(self._pump(process.stdout), process.wait()), timeout=timeout)
        except asyncio.TimeoutError:
            await terminate_process_group(process, self.opts.grace)
            raise ExecError("timeout", "codex execution timed out") from None
        except asyncio.CancelledError:
            await terminate_process_group(process, self.opts.grace)
            raise
        finally:
            self._process = None

        if process.returncode != 0:
            raise ExecError("codex_error", f"codex exited with code {process.returncode}")

        try:
            output = ansi.strip(Path(output_path).read_text(encoding="utf-8", errors="replace").strip())
        except OSError:
            output = ""
        return ExecResult(output={
            "success": True,
            "output": output,
            "durationMs": int((time.monotonic() - started) * 1000),
        })

    async def _pump(self, stream: Optional[asyncio.StreamReader]) -> None:
        if stream is None:
            return
        while chunk := await stream.read(64 * 1024):
            self.opts.write(chunk.replace(b"\n", b"\r\n"))
            self.opts.record("stdout", chunk)

    async def teardown(self) -> None:
        if self._process is not None:
            await terminate_process_group(self._process, self.opts.grace)
