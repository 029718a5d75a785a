from __future__ import annotations

import asyncio
from dataclasses import FrozenInstanceError

import pytest

from mush.harness.state import (
    BundleSummary,
    ErrorReported,
    Increment,
    Snapshot,
    SnapshotStore,
    Update,
)


def test_messages_apply_in_arrival_order() -> None:
    store = SnapshotStore(Snapshot())
    store.update(status="Processing", job_id="a")
    store.increment("completed")
    store.update(status="Connected", job_id="")
    store.increment("completed")
    store.increment("failed", 2)

    assert store.drain() == 5
    snap = store.current
    assert snap.status == "Connected"
    assert snap.job_id == ""
    assert (snap.completed, snap.failed) == (2, 2)


def test_snapshot_is_immutable() -> None:
    snap = Snapshot()
    with pytest.raises(FrozenInstanceError):
        snap.status = "Error"  # type: ignore[misc]


def test_invalid_message_is_dropped() -> None:
    store = SnapshotStore(Snapshot(completed=4))
    store.apply(Update({"no_such_field": 1}))
    store.apply(Increment("completed"))
    assert store.current.completed == 5


def test_report_error_stamps_time() -> None:
    store = SnapshotStore(Snapshot(), clock=lambda: 123.0)
    store.report_error("boom")
    store.drain()
    assert store.current.last_error == "boom"
    assert store.current.last_error_time == 123.0
    assert ErrorReported("x", 1.0).apply(Snapshot()).last_error == "x"


@pytest.mark.anyio
async def test_run_notifies_once_per_batch() -> None:
    seen: list[Snapshot] = []
    store = SnapshotStore(Snapshot(), on_change=seen.append)
    store.update(width=100)
    store.update(height=40)
    store.increment("completed")

    task = asyncio.create_task(store.run())
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    assert len(seen) == 1
    assert (seen[0].width, seen[0].height, seen[0].completed) == (100, 40, 1)

    store.update(status="Ready")
    store.close()
    await asyncio.wait_for(task, 1)
    assert seen[-1].status == "Ready"
    assert store.current.status == "Ready"


def test_bundle_summary_groups_layers_by_asset_type() -> None:
    summary = BundleSummary.from_manifest({
        "name": "starter",
        "version": "2.0.1",
        "layers": [
            {"assetType": "agent_definition", "logicalPath": "agents/reviewer.md"},
            {"assetType": "skill", "logicalPath": "skills/pdf"},
            {"assetType": "skill", "logicalPath": "skills/csv"},
            {"assetType": "tool_config", "logicalPath": "tools/git.json"},
            {"assetType": "prompt", "logicalPath": "prompts/base.md"},
        ],
    })
    assert summary.name == "starter"
    assert summary.version == "2.0.1"
    assert summary.total_layers == 5
    assert summary.agents == ("reviewer.md",)
    assert summary.skills == ("csv", "pdf")
    assert summary.tools == ("git.json",)
    assert summary.other == ("base.md",)
    assert BundleSummary.from_manifest(None) == BundleSummary()
