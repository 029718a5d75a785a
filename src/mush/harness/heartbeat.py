"""Worker link registration and the periodic liveness report."""

from __future__ import annotations

import asyncio
import platform
import socket
import time
import uuid
from typing import Callable, Optional

import httpx

from .. import __version__
from ..api_client import ApiClientError, RunnerClient
from ..api_client.types import RegisterLinkPayload
from ..util.log import Log
from .state import SnapshotStore

log = Log.create({"service": "harness.heartbeat"})

DEFAULT_INTERVAL = 30.0
DEREGISTER_TIMEOUT = 5.0


def link_payload(habitat_id: str, instance_id: Optional[str] = None) -> RegisterLinkPayload:
    hostname = socket.gethostname()
    return {
        "instanceId": instance_id or str(uuid.uuid4()),
        "habitatId": habitat_id,
        "name": hostname,
        "linkType": "agent",
        "clientVersion": __version__,
        "clientMetadata": {
            "hostname": hostname,
            "os": platform.system().lower(),
            "arch": platform.machine().lower(),
        },
    }


class Heartbeat:
    """Owns the link id for this harness instance.

    ``register`` failures are setup failures and propagate; heartbeat
    failures only surface as the last error.
    """

    def __init__(
        self,
        client: RunnerClient,
        store: SnapshotStore,
        *,
        habitat_id: str,
        interval: float = DEFAULT_INTERVAL,
        current_job: Callable[[], str] = lambda: "",
    ) -> None:
        self.client = client
        self.store = store
        self.habitat_id = habitat_id
        self.interval = interval if interval > 0 else DEFAULT_INTERVAL
        self.current_job = current_job
        self.link_id = ""

    async def register(self) -> str:
        self.link_id = await self.client.register_link(link_payload(self.habitat_id))
        log.info("link registered", {"link_id": self.link_id})
        return self.link_id

    async def beat(self) -> None:
        try:
            await self.client.heartbeat_link(self.link_id, self.current_job())
        except (ApiClientError, httpx.HTTPError) as e:
            log.warn("link heartbeat failed", {"error": e})
            self.store.report_error(f"Heartbeat failed: {e}")
            return
        self.store.update(last_heartbeat=time.time())

    async def run(self, stop: asyncio.Event) -> None:
        if not self.link_id:
            return
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.interval)
                return
            except asyncio.TimeoutError:
                pass
            await self.beat()

    async def deregister(self, completed: int, failed: int) -> None:
        """Best effort; never raises."""
        if not self.link_id:
            return
        try:
            await self.client.deregister_link(
                self.link_id,
                completed=completed,
                failed=failed,
                timeout=DEREGISTER_TIMEOUT,
            )
        except (ApiClientError, httpx.HTTPError) as e:
            log.warn("link deregister failed", {"error": e})
            return
        log.info("link deregistered", {"link_id": self.link_id, "completed": completed, "failed": failed})
