"""Harness status snapshot and its single owner.

Every task describes status changes as messages; ``SnapshotStore`` applies
them strictly in arrival order and publishes each resulting immutable
``Snapshot`` to the renderer. No other code mutates status.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import PurePosixPath
from typing import Any, Callable, Mapping, Optional

from ..util.log import Log

log = Log.create({"service": "harness.state"})


class ConnectionStatus(str, Enum):
    DISCONNECTED = "Disconnected"
    CONNECTING = "Connecting..."
    STARTING = "Starting..."
    READY = "Ready"
    CONNECTED = "Connected"
    PROCESSING = "Processing"
    ERROR = "Error"


@dataclass(frozen=True)
class MCPServerStatus:
    name: str
    loaded: bool = False
    authenticated: bool = False
    expired: bool = False


@dataclass(frozen=True)
class BundleSummary:
    """Read-only description of an installed asset bundle."""
    name: str = ""
    version: str = ""
    total_layers: int = 0
    agents: tuple[str, ...] = ()
    skills: tuple[str, ...] = ()
    tools: tuple[str, ...] = ()
    other: tuple[str, ...] = ()

    @classmethod
    def from_manifest(cls, manifest: Mapping[str, Any] | None) -> "BundleSummary":
        """Group manifest layers by asset type.

        Layers look like ``{"assetType": "skill", "logicalPath": "skills/x"}``.
        """
        if not manifest:
            return cls()
        groups: dict[str, list[str]] = {"agent_definition": [], "skill": [], "tool_config": [], "other": []}
        layers = manifest.get("layers") or []
        for layer in layers:
            path = str(layer.get("logicalPath") or "")
            name = PurePosixPath(path).name or path
            kind = layer.get("assetType")
            groups[kind if kind in groups else "other"].append(name)
        return cls(
            name=str(manifest.get("name") or ""),
            version=str(manifest.get("version") or ""),
            total_layers=len(layers),
            agents=tuple(sorted(groups["agent_definition"])),
            skills=tuple(sorted(groups["skill"])),
            tools=tuple(sorted(groups["tool_config"])),
            other=tuple(sorted(groups["other"])),
        )


@dataclass(frozen=True)
class Snapshot:
    """Immutable status view consumed by the renderer.

    Times are epoch seconds; ``now`` is advanced by the render ticker so
    rendering itself never reads the clock.
    """
    width: int = 80
    height: int = 24

    sidebar_visible: bool = False
    sidebar_available: bool = False
    sidebar_width: int = 0
    pane_x_start: int = 1
    pane_width: int = 80

    bundle: BundleSummary = field(default_factory=BundleSummary)

    habitat_id: str = ""
    queue_id: str = ""
    supported_harnesses: tuple[str, ...] = ()

    status: str = ConnectionStatus.STARTING.value
    copy_mode: bool = False
    job_id: str = ""

    last_heartbeat: Optional[float] = None
    completed: int = 0
    failed: int = 0

    last_error: str = ""
    last_error_time: Optional[float] = None

    mcp_servers: tuple[MCPServerStatus, ...] = ()

    now: float = 0.0


# -- Messages --

class Message:
    """A status change. ``apply`` must be pure."""

    def apply(self, snapshot: Snapshot) -> Snapshot:
        raise NotImplementedError


@dataclass(frozen=True)
class Update(Message):
    fields: Mapping[str, Any]

    def apply(self, snapshot: Snapshot) -> Snapshot:
        return replace(snapshot, **self.fields)


@dataclass(frozen=True)
class Increment(Message):
    name: str
    by: int = 1

    def apply(self, snapshot: Snapshot) -> Snapshot:
        return replace(snapshot, **{self.name: getattr(snapshot, self.name) + self.by})


@dataclass(frozen=True)
class ErrorReported(Message):
    message: str
    at: float

    def apply(self, snapshot: Snapshot) -> Snapshot:
        return replace(snapshot, last_error=self.message, last_error_time=self.at)


class SnapshotStore:
    """Single writer for ``Snapshot``.

    ``send`` is safe from any coroutine or loop callback; ``run`` drains the
    queue, applies messages in order and calls ``on_change`` once per batch.
    """

    def __init__(
        self,
        initial: Snapshot | None = None,
        on_change: Callable[[Snapshot], None] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._snapshot = initial or Snapshot()
        self._queue: asyncio.Queue[Message | None] = asyncio.Queue()
        self._on_change = on_change
        self._clock = clock
        self._closed = False

    @property
    def current(self) -> Snapshot:
        return self._snapshot

    def send(self, message: Message) -> None:
        self._queue.put_nowait(message)

    def update(self, **fields: Any) -> None:
        self.send(Update(fields))

    def increment(self, name: str, by: int = 1) -> None:
        self.send(Increment(name, by))

    def report_error(self, message: str) -> None:
        log.warn("harness error", {"error": message})
        self.send(ErrorReported(message, self._clock()))

    def apply(self, message: Message) -> Snapshot:
        try:
            self._snapshot = message.apply(self._snapshot)
        except (TypeError, AttributeError) as e:
            log.error("invalid status message", {"message": repr(message), "error": e})
        return self._snapshot

    def drain(self) -> int:
        """Apply every queued message without waiting; returns the count."""
        applied = 0
        while True:
            try:
                message = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return applied
            if message is None:
                self._closed = True
                return applied
            self.apply(message)
            applied += 1

    def close(self) -> None:
        self._queue.put_nowait(None)

    async def run(self) -> None:
        while not self._closed:
            message = await self._queue.get()
            if message is None:
                self._closed = True
                return
            self.apply(message)
            self.drain()
            if self._on_change is not None:
                self._on_change(self._snapshot)
