from __future__ import annotations

import asyncio
import os
import pty
import termios
from pathlib import Path

import pytest

from mush.core.config import HarnessSettings
from mush.harness.app import Harness
from mush.harness.claude import ClaudeExecutor, set_winsize
from mush.harness.executor import HarnessInfo, Registry
from mush.harness.providers import ProviderSpec
from mush.harness.terminal import TerminalController
from mush.util.error import EXIT_AUTH, EXIT_USAGE, CLIError
from tests.helpers import FakeClient, FakeExecutor, make_job, registry_of, write_fake_claude


@pytest.fixture
def terminal_pair():
    master, slave = pty.openpty()
    set_winsize(master, 24, 80)
    yield master, slave
    for fd in (master, slave):
        try:
            os.close(fd)
        except OSError:
            pass


def _drain(master: int) -> None:
    def read() -> None:
        try:
            os.read(master, 65536)
        except OSError:
            asyncio.get_running_loop().remove_reader(master)

    asyncio.get_running_loop().add_reader(master, read)


def _settings(**kwargs) -> HarnessSettings:
    kwargs.setdefault("poll_interval", 1)
    kwargs.setdefault("history_enabled", False)
    return HarnessSettings(**kwargs)


async def _wait_for(predicate, timeout: float = 10.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.02)


@pytest.mark.anyio
async def test_quit_chord_while_awaiting_completion(fast_claude, tmp_path, terminal_pair) -> None:
    master, slave = terminal_pair
    before = termios.tcgetattr(slave)
    _drain(master)

    script = write_fake_claude(tmp_path, on_line=":", traps="trap '' HUP TERM")
    spec = ProviderSpec(name="claude", binary=str(script), interactive=True)
    executor = ClaudeExecutor(spec)
    registry = Registry([HarnessInfo(name="claude", available=lambda: True, factory=lambda: executor)])
    client = FakeClient([make_job("job-q", harness="claude", renderedInstruction="never finishes")])
    terminal = TerminalController(stdin_fd=slave, stdout_fd=slave, term_name="dumb")
    harness = Harness(
        _settings(shutdown_grace=0.3),
        client,
        registry,
        harnesses=("claude",),
        habitat_id="hab-1",
        terminal=terminal,
    )

    run = asyncio.create_task(harness.run())
    await _wait_for(lambda: executor._capturing)
    process = executor.process
    assert process is not None
    signal_dir = Path(harness.signal_dir)
    assert signal_dir.is_dir()

    os.write(master, b"\x11")
    await asyncio.wait_for(run, timeout=10)

    assert harness.stop_reason == "quit"
    assert process.poll() is not None
    assert not executor.is_running()
    assert client.deregistered == {"link_id": "link-1", "completed": 0, "failed": 0}
    assert termios.tcgetattr(slave) == before
    assert not signal_dir.exists()
    assert not (fast_claude / ".claude" / "settings.local.json").exists()


@pytest.mark.anyio
async def test_jobs_complete_then_quit(terminal_pair) -> None:
    master, slave = terminal_pair
    _drain(master)
    fake = FakeExecutor("bash")
    client = FakeClient([make_job("job-1"), make_job("job-2")])
    terminal = TerminalController(stdin_fd=slave, stdout_fd=slave, term_name="dumb")
    harness = Harness(_settings(), client, registry_of(fake), habitat_id="hab-1", terminal=terminal)

    run = asyncio.create_task(harness.run())
    await asyncio.wait_for(client.drained.wait(), timeout=5)
    await _wait_for(lambda: harness.store.current.completed == 2)
    os.write(master, b"\x03")
    await asyncio.wait_for(run, timeout=5)

    assert harness.stop_reason == "interrupt"
    assert [job.id for job in fake.executed] == ["job-1", "job-2"]
    assert fake.torn_down
    assert client.deregistered == {"link_id": "link-1", "completed": 2, "failed": 0}
    assert ("register", "hab-1") in client.calls


@pytest.mark.anyio
async def test_register_failure_restores_terminal(terminal_pair) -> None:
    from mush.api_client import ApiClientError

    master, slave = terminal_pair
    before = termios.tcgetattr(slave)
    _drain(master)
    fake = FakeExecutor("bash")
    client = FakeClient()
    client.register_error = ApiClientError(401, "unauthorized", None, "/api/v1/runner/links:register")
    terminal = TerminalController(stdin_fd=slave, stdout_fd=slave, term_name="dumb")
    harness = Harness(_settings(), client, registry_of(fake), habitat_id="hab-1", terminal=terminal)

    with pytest.raises(CLIError) as excinfo:
        await harness.run()

    assert excinfo.value.code == EXIT_AUTH
    assert termios.tcgetattr(slave) == before
    assert client.deregistered is None
    assert fake.torn_down


@pytest.mark.anyio
async def test_requires_a_terminal() -> None:
    read_fd, write_fd = os.pipe()
    try:
        terminal = TerminalController(stdin_fd=read_fd, stdout_fd=write_fd, term_name="dumb")
        harness = Harness(_settings(), FakeClient(), registry_of(FakeExecutor("bash")), terminal=terminal)
        with pytest.raises(CLIError) as excinfo:
            await harness.run()
        assert excinfo.value.code == EXIT_USAGE
    finally:
        os.close(read_fd)
        os.close(write_fd)
