import asyncio
import json

import pytest
from fastapi import HTTPException

from webpilot.broadcaster import SnapshotBroadcaster
from webpilot.db import Database
from webpilot.main import stream_snapshots


def decode(chunk) -> dict:
    line = chunk.decode("utf-8") if isinstance(chunk, (bytes, bytearray)) else chunk
    return json.loads(line.replace("data:", "").strip())


@pytest.mark.asyncio
async def test_snapshot_stream_starts_with_latest_persisted_frame(tmp_path):
    db = Database(str(tmp_path / "sse.db"))
    await db.init()
    await db.insert_run("run-sse", "task", {}, status="stopped")
    await db.add_snapshot("run-sse", "s1", "https://shop.test/", "Shop", "old frame")
    latest = await db.add_snapshot("run-sse", "s2", "https://shop.test/cart", "Cart", "new frame")
    broadcaster = SnapshotBroadcaster()

    response = await stream_snapshots("run-sse", db=db, broadcaster=broadcaster)
    chunk = await asyncio.wait_for(response.body_iterator.__anext__(), timeout=1)
    event = decode(chunk)
    assert event["type"] == "snapshot"
    assert event["snapshot"]["id"] == latest["id"]
    assert event["snapshot"]["url"] == "https://shop.test/cart"

    async def publish_later():
        await asyncio.sleep(0.01)
        await broadcaster.publish_status("run-sse", "running", reason="resume")

    task = asyncio.create_task(publish_later())
    chunk = await asyncio.wait_for(response.body_iterator.__anext__(), timeout=1)
    assert decode(chunk) == {"type": "status", "status": "running", "reason": "resume"}
    await task
    await response.body_iterator.aclose()
    assert broadcaster.subscribers == {}


@pytest.mark.asyncio
async def test_snapshot_stream_for_unknown_run_is_404(tmp_path):
    db = Database(str(tmp_path / "sse.db"))
    await db.init()
    with pytest.raises(HTTPException) as excinfo:
        await stream_snapshots("missing", db=db, broadcaster=SnapshotBroadcaster())
    assert excinfo.value.status_code == 404


@pytest.mark.asyncio
async def test_slow_subscribers_drop_oldest_frames():
    broadcaster = SnapshotBroadcaster(queue_size=2)
    queue = await broadcaster.subscribe("run-1")
    for frame in range(4):
        await broadcaster.publish("run-1", {"id": frame})
    received = [queue.get_nowait()["snapshot"]["id"] for _ in range(queue.qsize())]
    assert received == [2, 3]
    assert broadcaster.latest("run-1") == {"id": 3}
    late = await broadcaster.subscribe("run-1")
    assert late.get_nowait()["snapshot"]["id"] == 3


@pytest.mark.asyncio
async def test_terminal_status_drops_cached_frame_but_stream_reseeds_from_db(tmp_path):
    db = Database(str(tmp_path / "sse.db"))
    await db.init()
    await db.insert_run("run-done", "task", {}, status="completed")
    stored = await db.add_snapshot("run-done", "s1", "https://shop.test/", "Shop", "final frame")
    broadcaster = SnapshotBroadcaster()
    await broadcaster.publish("run-done", stored)
    await broadcaster.publish_status("run-done", "waiting_human")
    assert broadcaster.latest("run-done") == stored
    await broadcaster.publish_status("run-done", "completed")
    assert broadcaster.latest("run-done") is None

    response = await stream_snapshots("run-done", db=db, broadcaster=broadcaster)
    chunk = await asyncio.wait_for(response.body_iterator.__anext__(), timeout=1)
    assert decode(chunk)["snapshot"]["id"] == stored["id"]
    await response.body_iterator.aclose()
