from __future__ import annotations

from mush.harness.input import InputRouter
from tests.helpers import FakeExecutor, new_store


class _Clock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def _router(executor: FakeExecutor | None = None, active: bool = True, clock: _Clock | None = None):
    store = new_store()
    quits: list[str] = []
    messages: list[str] = []
    toggles: list[int] = []
    router = InputRouter(
        store,
        foreground=lambda: executor,
        interactive_job_active=lambda: active,
        on_quit=quits.append,
        toggle_sidebar=lambda: toggles.append(1),
        info=messages.append,
        clock=clock or _Clock(),
    )
    return router, store, quits, messages, toggles


def test_plain_bytes_forward_to_backend() -> None:
    executor = FakeExecutor(interactive=True)
    router, *_ = _router(executor)
    assert router.feed(b"ls -la\r") == b"ls -la\r"
    assert executor.inputs == [b"ls -la\r"]


def test_bytes_are_discarded_without_backend() -> None:
    router, *_ = _router(None)
    assert router.feed(b"abc") == b""


def test_ctrl_q_quits_immediately() -> None:
    executor = FakeExecutor(interactive=True)
    router, _, quits, _, _ = _router(executor)
    assert router.feed(b"ab\x11cd") == b"ab"
    assert quits == ["quit"]
    assert router.feed(b"more") == b""


def test_single_interrupt_only_signals_backend() -> None:
    executor = FakeExecutor(interactive=True)
    executor.running = True
    router, _, quits, messages, _ = _router(executor)

    router.feed(b"\x03")

    assert executor.interrupts == 1
    assert quits == []
    assert "Press Ctrl+C again within 2s to exit" in messages[-1]
    assert executor.inputs == []


def test_second_interrupt_within_window_quits() -> None:
    executor = FakeExecutor(interactive=True)
    executor.running = True
    clock = _Clock()
    router, _, quits, messages, _ = _router(executor, clock=clock)

    router.feed(b"\x03")
    clock.now += 1.5
    router.feed(b"\x03")

    assert executor.interrupts == 1
    assert quits == ["double interrupt"]
    assert messages[-1] == "Second Ctrl+C received: exiting."


def test_interrupts_outside_window_are_independent() -> None:
    executor = FakeExecutor(interactive=True)
    executor.running = True
    clock = _Clock()
    router, _, quits, _, _ = _router(executor, clock=clock)

    router.feed(b"\x03")
    clock.now += 2.5
    router.feed(b"\x03")

    assert executor.interrupts == 2
    assert quits == []


def test_interrupt_while_idle_quits() -> None:
    executor = FakeExecutor(interactive=True)
    router, _, quits, _, _ = _router(executor, active=False)
    router.feed(b"\x03")
    assert quits == ["interrupt"]
    assert executor.interrupts == 0


def test_copy_mode_holds_input_until_escape() -> None:
    executor = FakeExecutor(interactive=True)
    router, store, _, _, _ = _router(executor)

    assert router.feed(b"\x13") == b""
    assert router.copy_mode
    assert router.feed(b"\x1b[A\x1b[Bxyz") == b""
    assert router.copy_mode

    assert router.feed(b"\x1b") == b""
    assert router.copy_mode
    assert router.feed(b"q") == b"q"
    assert not router.copy_mode

    store.drain()
    assert store.current.copy_mode is False
    assert executor.inputs == [b"q"]


def test_ctrl_s_toggles_copy_mode_off() -> None:
    router, store, _, _, _ = _router(FakeExecutor(interactive=True))
    router.feed(b"\x13")
    store.drain()
    assert store.current.copy_mode
    router.feed(b"\x13")
    store.drain()
    assert not store.current.copy_mode


def test_ctrl_g_toggles_sidebar() -> None:
    router, _, _, _, toggles = _router(FakeExecutor(interactive=True))
    assert router.feed(b"a\x07b") == b"ab"
    assert toggles == [1]
