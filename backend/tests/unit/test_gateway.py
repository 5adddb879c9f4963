"""
Unit Tests: StreamConnection (SSE gateway)
"""

from __future__ import annotations

import asyncio
import json
import uuid
from unittest.mock import AsyncMock

import pytest

from fileflow.realtime.gateway import StreamConnection, StreamState
from fileflow.realtime.notifier import ChangeNotifier
from fileflow.schemas.files import FileRecord, RecordUpdate
from fileflow.store.base import RecordStoreError


def _record(owner: uuid.UUID) -> FileRecord:
    return FileRecord(id=uuid.uuid4(), owner_id=owner, filename="a.txt", content_hash="a" * 64)


def _parse(frame: str) -> dict:
    assert frame.startswith("data: ") and frame.endswith("\n\n")
    return json.loads(frame[len("data: "):])


async def _collect(stream) -> list[str]:
    return [frame async for frame in stream]


async def _wait_subscribed(notifier: ChangeNotifier, count: int = 1) -> None:
    for _ in range(100):
        if notifier.active_subscriptions >= count:
            return
        await asyncio.sleep(0.01)
    raise AssertionError("stream never subscribed")


@pytest.mark.unit
class TestStreamConnection:

    async def test_unauthenticated_gets_single_error_event(self, memory_store):
        conn = StreamConnection(ChangeNotifier(memory_store), None)
        assert conn.state == StreamState.UNAUTHENTICATED

        frames = [frame async for frame in conn.events()]

        assert len(frames) == 1
        body = _parse(frames[0])
        assert body["eventType"] == "error"
        assert body["error"]["code"] == "AUTH_REQUIRED"
        assert conn.state == StreamState.CLOSED

    async def test_subscribe_failure_emits_error(self, memory_store, owner_id):
        notifier = ChangeNotifier(memory_store)
        notifier.subscribe = AsyncMock(side_effect=RecordStoreError("LISTEN failed"))
        conn = StreamConnection(notifier, owner_id)

        frames = [frame async for frame in conn.events()]
        assert _parse(frames[0])["error"]["code"] == "SUBSCRIBE_FAILED"
        assert conn.close_reason == "subscribe_failed"

    async def test_changes_are_framed_as_sse(self, memory_store, owner_id):
        notifier = ChangeNotifier(memory_store)
        conn = StreamConnection(notifier, owner_id, liveness_interval=60)
        stream = conn.events()

        first = asyncio.ensure_future(stream.__anext__())
        await _wait_subscribed(notifier)
        assert conn.state == StreamState.OPEN

        record = await memory_store.insert(_record(owner_id))
        changed = _parse(await asyncio.wait_for(first, 2))
        assert changed["eventType"] == "recordChanged"
        assert changed["record"]["id"] == str(record.id)
        assert "timestamp" in changed

        await memory_store.delete(owner_id, record.id)
        removed = _parse(await asyncio.wait_for(stream.__anext__(), 2))
        assert removed["eventType"] == "recordRemoved"
        assert removed["record"] == {"id": str(record.id)}

        await stream.aclose()
        assert conn.state == StreamState.CLOSED
        assert notifier.active_subscriptions == 0

    async def test_liveness_pulses(self, memory_store, owner_id):
        notifier = ChangeNotifier(memory_store)
        conn = StreamConnection(notifier, owner_id, liveness_interval=0.05)
        stream = conn.events()

        body = _parse(await asyncio.wait_for(stream.__anext__(), 2))
        assert body["eventType"] == "liveness"
        assert "record" not in body
        await stream.aclose()

    async def test_per_record_order_preserved(self, memory_store, owner_id):
        notifier = ChangeNotifier(memory_store)
        conn = StreamConnection(notifier, owner_id, liveness_interval=60)
        stream = conn.events()
        first = asyncio.ensure_future(stream.__anext__())
        await _wait_subscribed(notifier)

        record = await memory_store.insert(_record(owner_id))
        for progress in (10, 20, 30):
            await memory_store.update(record.id, RecordUpdate(progress=progress))

        frames = [await asyncio.wait_for(first, 2)]
        frames += [await asyncio.wait_for(stream.__anext__(), 2) for _ in range(3)]
        assert [_parse(f)["record"]["progress"] for f in frames] == [0, 10, 20, 30]
        await stream.aclose()

    async def test_backpressure_overflow_closes_stream(self, memory_store, owner_id):
        notifier = ChangeNotifier(memory_store)
        conn = StreamConnection(notifier, owner_id, liveness_interval=60, queue_size=2)
        collected = asyncio.ensure_future(_collect(conn.events()))
        await _wait_subscribed(notifier)

        # ten changes land in the feed before the pump gets to run
        record = await memory_store.insert(_record(owner_id))
        for progress in range(1, 10):
            await memory_store.update(record.id, RecordUpdate(progress=progress))

        frames = await asyncio.wait_for(collected, 5)

        assert len(frames) < 10
        assert conn.close_reason == "backpressure_overflow"
        assert conn.state == StreamState.CLOSED
        assert notifier.active_subscriptions == 0

    async def test_client_disconnect_detected(self, memory_store, owner_id):
        notifier = ChangeNotifier(memory_store)
        conn = StreamConnection(
            notifier, owner_id, liveness_interval=60,
            is_disconnected=AsyncMock(return_value=True),
        )

        frames = [frame async for frame in conn.events()]
        assert frames == []
        assert conn.close_reason == "client_disconnected"
        assert notifier.active_subscriptions == 0

    async def test_feed_failure_emits_stream_error(self, memory_store, owner_id):
        notifier = ChangeNotifier(memory_store)
        conn = StreamConnection(notifier, owner_id, liveness_interval=60)
        collected = asyncio.ensure_future(_collect(conn.events()))
        await _wait_subscribed(notifier)

        subscription = next(iter(notifier._active))
        subscription._feed._fail(RecordStoreError("listener connection lost"))

        frames = await asyncio.wait_for(collected, 5)
        assert len(frames) == 1
        body = _parse(frames[0])
        assert body["eventType"] == "error"
        assert body["error"]["code"] == "STREAM_ERROR"
        assert conn.close_reason == "feed_failed"
