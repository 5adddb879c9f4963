"""
Streaming Gateway: one long-lived SSE connection per client
══════════════════════════════════════════════════════════════

  UNAUTHENTICATED ──► emit `error`, close
  OPEN            ──► subscribed to the notifier, liveness timer armed
  CLOSING         ──► disconnect / send or serialize failure / backpressure
                      overflow: cancel timer, unsubscribe, finalize
  CLOSED

Every frame is `data: <json>\n\n` (StreamEvent.to_sse()).

Backpressure: a bounded outbound queue (STREAM_QUEUE_SIZE) sits between the
subscription pump and the socket. A liveness pulse that does not fit is
dropped; a data event that does not fit closes the connection so the client
reconnects and re-fetches instead of silently missing a change.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import AsyncGenerator, Awaitable, Callable
from uuid import UUID

from fileflow.core.config import settings
from fileflow.realtime.notifier import ChangeEvent, ChangeNotifier, Subscription
from fileflow.schemas.files import StreamEvent
from fileflow.store.base import ChangeOp

logger = logging.getLogger(__name__)

# How often the send loop wakes up to check for client disconnect
_DISCONNECT_POLL_SECONDS = 1.0

_CLOSE = object()


class StreamState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    OPEN            = "open"
    CLOSING         = "closing"
    CLOSED          = "closed"


def to_stream_event(change: ChangeEvent) -> StreamEvent:
    if change.op == ChangeOp.DELETE:
        return StreamEvent.record_removed(change.record_id)
    return StreamEvent.record_changed(change.record)


class StreamConnection:
    """
    Usage (FastAPI):
        conn = StreamConnection(notifier, owner_id, is_disconnected=request.is_disconnected)
        return StreamingResponse(conn.events(), media_type="text/event-stream")

    owner_id=None means no verified identity: the stream emits one error
    event and closes.
    """

    def __init__(
        self,
        notifier: ChangeNotifier,
        owner_id: UUID | None,
        liveness_interval: float | None = None,
        queue_size:        int | None = None,
        is_disconnected:   Callable[[], Awaitable[bool]] | None = None,
    ) -> None:
        self._notifier  = notifier
        self._owner_id  = owner_id
        self._interval  = liveness_interval or settings.stream_liveness_interval
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size or settings.stream_queue_size)
        self._is_disconnected = is_disconnected
        self._state = StreamState.UNAUTHENTICATED if owner_id is None else StreamState.CLOSED
        self.close_reason: str | None = None

    @property
    def state(self) -> StreamState:
        return self._state

    async def events(self) -> AsyncGenerator[str, None]:
        if self._owner_id is None:
            logger.info("Stream rejected | reason=unauthenticated")
            yield StreamEvent.failure("AUTH_REQUIRED", "Authentication required").to_sse()
            self._state = StreamState.CLOSED
            self.close_reason = "unauthenticated"
            return

        try:
            subscription = await self._notifier.subscribe(self._owner_id)
        except Exception as exc:
            logger.error("Stream subscribe failed | owner=%s error=%s", self._owner_id, exc)
            yield StreamEvent.failure("SUBSCRIBE_FAILED", "Could not subscribe to file updates").to_sse()
            self._state = StreamState.CLOSED
            self.close_reason = "subscribe_failed"
            return

        self._state = StreamState.OPEN
        logger.info("Stream open | owner=%s", self._owner_id)
        pump     = asyncio.create_task(self._pump(subscription), name=f"stream-pump:{self._owner_id}")
        liveness = asyncio.create_task(self._liveness(), name=f"stream-liveness:{self._owner_id}")

        try:
            while self._state == StreamState.OPEN:
                try:
                    item = await asyncio.wait_for(self._queue.get(), timeout=_DISCONNECT_POLL_SECONDS)
                except asyncio.TimeoutError:
                    if self._is_disconnected is not None and await self._is_disconnected():
                        self._begin_close("client_disconnected")
                    continue

                if item is _CLOSE:
                    break

                try:
                    frame = item.to_sse()
                except Exception as exc:
                    logger.error("Stream serialize failed | owner=%s error=%s", self._owner_id, exc)
                    self._begin_close("serialize_failed")
                    break

                yield frame
        finally:
            self._begin_close(self.close_reason or "client_disconnected")
            for task in (pump, liveness):
                task.cancel()
            await asyncio.gather(pump, liveness, return_exceptions=True)
            await subscription.close()
            self._state = StreamState.CLOSED
            logger.info("Stream closed | owner=%s reason=%s", self._owner_id, self.close_reason)

    # ------------------------------------------------------------------
    # Producers
    # ------------------------------------------------------------------

    async def _pump(self, subscription: Subscription) -> None:
        try:
            async for change in subscription:
                try:
                    self._queue.put_nowait(to_stream_event(change))
                except asyncio.QueueFull:
                    logger.warning(
                        "Stream backpressure overflow | owner=%s queue_size=%d",
                        self._owner_id, self._queue.maxsize,
                    )
                    self._shutdown("backpressure_overflow")
                    return
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("Stream feed failed | owner=%s error=%s", self._owner_id, exc)
            self._shutdown("feed_failed", StreamEvent.failure("STREAM_ERROR", "File update feed interrupted"))
            return
        self._shutdown("feed_closed")

    async def _liveness(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                self._queue.put_nowait(StreamEvent.liveness())
            except asyncio.QueueFull:
                logger.debug("Liveness pulse dropped | owner=%s", self._owner_id)

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------

    def _begin_close(self, reason: str) -> None:
        if self._state == StreamState.OPEN:
            self._state = StreamState.CLOSING
            self.close_reason = reason

    def _shutdown(self, reason: str, final_event: StreamEvent | None = None) -> None:
        """Wake the send loop with a close marker, discarding queued events if it is full."""
        if self.close_reason is None:
            self.close_reason = reason
        maxsize = self._queue.maxsize
        needed = 2 if final_event is not None else 1
        if maxsize and maxsize - self._queue.qsize() < needed:
            while not self._queue.empty():
                self._queue.get_nowait()
        if final_event is not None and (not maxsize or maxsize >= 2):
            self._queue.put_nowait(final_event)
        self._queue.put_nowait(_CLOSE)
