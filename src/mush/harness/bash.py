"""Subprocess backend: one ``bash -c`` process per job."""

from __future__ import annotations

import asyncio
import os
import shutil
import time
from typing import Optional

from ..api_client import Job
from ..util.log import Log
from . import ansi
from .executor import ExecError, ExecResult, Executor, JSONDict, terminate_process_group

log = Log.create({"service": "harness.bash"})

READ_CHUNK = 64 * 1024


def resolve_command(job: Job) -> str:
    """Pick the command to run; the first non-empty source wins.

    Raises:
        ExecError: ``command_error`` when the job carries no usable command.
    """
    rendered = job.rendered_instruction
    if rendered:
        return rendered
    if job.execution_error:
        raise ExecError("command_error", f"server execution error: {job.execution_error}", retry=False)
    for key in ("command", "script"):
        value = job.input_text(key)
        if value:
            return value
    raise ExecError("command_error", "no bash command found for job", retry=False)


def job_environment(job: Job) -> dict[str, str]:
    env = dict(os.environ)
    if job.execution is not None:
        env.update(job.execution.environment)
    env["MUSH_JOB_ID"] = job.id
    env["MUSH_JOB_NAME"] = job.display_name
    env["MUSH_JOB_QUEUE"] = job.queue_id
    return env


class BashExecutor(Executor):
    name = "bash"

    def __init__(self, provider=None) -> None:
        super().__init__(provider)
        self._process: Optional[asyncio.subprocess.Process] = None

    @property
    def binary(self) -> str:
        return (self.provider.binary if self.provider else "") or "bash"

    def is_running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    async def execute(self, job: Job, timeout: float) -> ExecResult:
        command = resolve_command(job)
        if shutil.which(self.binary) is None:
            raise ExecError("bash_error", f"{self.binary} not found in PATH")

        cwd = None
        if job.execution is not None and job.execution.working_directory:
            cwd = job.execution.working_directory

        log.info("running bash job", {"job_id": job.id, "timeout": timeout, "cwd": cwd})
        started = time.monotonic()
        process = await asyncio.create_subprocess_exec(
            self.binary,
            "-c",
            command,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            env=job_environment(job),
            start_new_session=True,
        )
        self._process = process
        stdout = bytearray()
        stderr = bytearray()

        try:
            await asyncio.wait_for(
                asyncio.gather(
                    self._pump(process.stdout, "stdout", stdout),
                    self._pump(process.stderr, "stderr", stderr),
                    process.wait(),
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            await terminate_process_group(process, self.opts.grace)
            raise ExecError("timeout", f"bash execution timed out after {timeout:g}s") from None
        except asyncio.CancelledError:
            await terminate_process_group(process, self.opts.grace)
            raise
        finally:
            self._process = None

        duration_ms = int((time.monotonic() - started) * 1000)
        out_text = stdout.decode("utf-8", errors="replace")
        err_text = stderr.decode("utf-8", errors="replace")
        report: JSONDict = {
            "output": ansi.strip(out_text.strip()),
            "stdout": out_text,
            "stderr": err_text,
            "exitCode": process.returncode,
            "durationMs": duration_ms,
        }

        if process.returncode != 0:
            detail = err_text.strip() or f"exit status {process.returncode}"
            report["success"] = False
            raise ExecError(
                "bash_error",
                f"bash exited with code {process.returncode}: {detail}",
                output=report,
            )

        report["success"] = True
        return ExecResult(output=report)

    async def _pump(self, stream: Optional[asyncio.StreamReader], name: str, buffer: bytearray) -> None:
        if stream is None:
            return
        while True:
            chunk = await stream.read(READ_CHUNK)
            if not chunk:
                return
            buffer += chunk
            # Raw mode disables output post-processing.
            self.opts.write(chunk.replace(b"\n", b"\r\n"))
            self.opts.record(name, chunk)

    async def teardown(self) -> None:
        if self._process is not None:
            await terminate_process_group(self._process, self.opts.grace)
