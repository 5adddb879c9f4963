"""
Client State Cache
══════════════════

Reactive mirror of the current owner's file records.

  files       Observable[list[FileRecord]]  newest first
  in_flight   Derived: pending | processing
  ready       Derived: ready
  failed      Derived: failed
  error       Observable[str | None]        decoupled from the data

Connection lifecycle is reference counted: the first observer of `files`
(directly or through a derived view) opens the event stream and fetches the
full list; the last one to leave closes it. The actual open/close is
reconciled against the current observer count under a lock, so a final
unsubscribe racing a new subscribe never leaves a stray connection.

Reconnects back off 1s, 2s, 4s, 8s, 16s. When the budget is spent the
"Connection lost" error stays up until a refresh() re-arms the stream or a
reconnect succeeds. Every successful (re)connect re-fetches the list once so
changes made while disconnected are picked up; records the stream touched
while that fetch was in flight keep their streamed state.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime

from fileflow.client.api import FilesApiClient
from fileflow.client.observable import Derived, Observable
from fileflow.core.config import settings
from fileflow.processing.extractor import classify_file_type, compute_fingerprint, get_extension
from fileflow.schemas.files import FileRecord, FileStatus, StreamEvent, StreamEventType, utcnow

logger = logging.getLogger(__name__)

CONNECTION_LOST = "Connection lost. Please refresh."

# Placeholder owner for optimistic entries when the cache is not told its owner
_UNKNOWN_OWNER = uuid.UUID(int=0)


def _replace_or_insert(records: list[FileRecord], record: FileRecord) -> list[FileRecord]:
    for index, existing in enumerate(records):
        if existing.id == record.id:
            updated = list(records)
            updated[index] = record
            return updated
    return [record, *records]


def _without(records: list[FileRecord], record_id: uuid.UUID) -> list[FileRecord]:
    return [r for r in records if r.id != record_id]


class ClientStateCache:

    def __init__(
        self,
        api:      FilesApiClient,
        owner_id: uuid.UUID | None = None,
        reconnect_base_delay:   float | None = None,
        reconnect_max_attempts: int | None = None,
        error_display_seconds:  float | None = None,
    ) -> None:
        self._api      = api
        self._owner_id = owner_id or _UNKNOWN_OWNER
        self._base_delay   = settings.reconnect_base_delay if reconnect_base_delay is None else reconnect_base_delay
        self._max_attempts = reconnect_max_attempts or settings.reconnect_max_attempts
        self._error_seconds = (
            settings.error_display_seconds if error_display_seconds is None else error_display_seconds
        )

        self.files: Observable[list[FileRecord]] = Observable(
            [], on_subscribe=self._acquire, on_unsubscribe=self._release,
        )
        self.error: Observable[str | None] = Observable(None)

        self.in_flight = self._view(lambda rs: [r for r in rs if r.is_in_flight])
        self.ready     = self._view(lambda rs: [r for r in rs if r.status == FileStatus.READY])
        self.failed    = self._view(lambda rs: [r for r in rs if r.status == FileStatus.FAILED])

        self.last_alive_at: datetime | None = None

        self._observers = 0
        self._lock = asyncio.Lock()
        self._stream_task: asyncio.Task | None = None
        self._reconnect_attempts = 0
        self._exhausted = False
        self._temp_ids: set[uuid.UUID] = set()
        self._background: set[asyncio.Task] = set()
        self._error_timer: asyncio.TimerHandle | None = None
        # ids touched by stream events while a refresh is fetching
        self._refresh_watchers: list[set[uuid.UUID]] = []

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def observers(self) -> int:
        return self._observers

    @property
    def connected(self) -> bool:
        return self._stream_task is not None and not self._stream_task.done()

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    # ------------------------------------------------------------------
    # Reference counting
    # ------------------------------------------------------------------

    def _view(self, transform) -> Derived[list[FileRecord]]:
        return Derived(self.files, transform, on_subscribe=self._acquire, on_unsubscribe=self._release)

    def _acquire(self) -> None:
        self._observers += 1
        self._spawn(self._sync_connection())

    def _release(self) -> None:
        self._observers = max(0, self._observers - 1)
        self._spawn(self._sync_connection())

    async def _sync_connection(self) -> None:
        async with self._lock:
            running = self.connected
            if self._observers > 0 and not running and not self._exhausted:
                logger.info("Opening file stream")
                self._stream_task = asyncio.create_task(self._run_stream(), name="files-stream")
            elif self._observers == 0 and running:
                logger.info("Closing file stream | reason=no_observers")
                task, self._stream_task = self._stream_task, None
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
                self._reconnect_attempts = 0

    # ------------------------------------------------------------------
    # Stream loop
    # ------------------------------------------------------------------

    async def _run_stream(self) -> None:
        while True:
            try:
                async for event in self._api.stream_events(on_open=self._on_open):
                    self.apply_event(event)
                logger.info("File stream ended by server")
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("File stream error | attempt=%d error=%s", self._reconnect_attempts, exc)

            if self._observers == 0:
                return

            self._reconnect_attempts += 1
            if self._reconnect_attempts > self._max_attempts:
                logger.error("File stream reconnect budget exhausted | attempts=%d", self._max_attempts)
                self._exhausted = True
                self._signal_error(CONNECTION_LOST, persistent=True)
                return

            delay = self._base_delay * (2 ** (self._reconnect_attempts - 1))
            logger.info(
                "Reconnecting file stream in %.1fs | attempt=%d/%d",
                delay, self._reconnect_attempts, self._max_attempts,
            )
            await asyncio.sleep(delay)

    def _on_open(self) -> None:
        logger.info("File stream connected")
        self._reconnect_attempts = 0
        self._exhausted = False
        if self.error.value == CONNECTION_LOST:
            self._clear_error()
        self._spawn(self.refresh())

    def apply_event(self, event: StreamEvent) -> None:
        """Apply one stream event. Idempotent for recordChanged."""
        if event.event_type == StreamEventType.RECORD_CHANGED:
            record = event.snapshot()
            if record is not None:
                self._touch(record.id)
                self.files.update(lambda rs: _replace_or_insert(rs, record))
        elif event.event_type == StreamEventType.RECORD_REMOVED:
            record_id = event.removed_id()
            if record_id is not None:
                self._touch(record_id)
                self.files.update(lambda rs: _without(rs, record_id))
        elif event.event_type == StreamEventType.LIVENESS:
            self.last_alive_at = event.timestamp
        elif event.event_type == StreamEventType.ERROR and event.error is not None:
            logger.warning("Stream error event | code=%s", event.error.code)
            self._signal_error(event.error.message)

    def _touch(self, record_id: uuid.UUID) -> None:
        for touched in self._refresh_watchers:
            touched.add(record_id)

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    async def refresh(self) -> None:
        """Full re-fetch. Never raises; keeps the current list on failure."""
        if self._exhausted:
            logger.info("Re-arming file stream after manual refresh")
            self._exhausted = False
            self._reconnect_attempts = 0
            self._spawn(self._sync_connection())

        touched: set[uuid.UUID] = set()
        self._refresh_watchers.append(touched)
        try:
            records = await self._api.list_files()
        except Exception as exc:
            logger.warning("Refresh failed | error=%s", exc)
            self._signal_error(f"Refresh failed: {exc}")
            return
        finally:
            self._refresh_watchers.remove(touched)

        self.files.set(self._merge_fetched(records, touched))
        if self.error.value == CONNECTION_LOST:
            self._clear_error()

    def _merge_fetched(self, fetched: list[FileRecord], touched: set[uuid.UUID]) -> list[FileRecord]:
        """
        The fetched list wins except for records the stream changed or
        removed while the fetch was in flight: for those the local entry
        (or its absence) is newer than the snapshot.
        """
        current = {r.id: r for r in self.files.value}
        fetched_ids = {r.id for r in fetched}

        merged: list[FileRecord] = []
        for record in fetched:
            if record.id not in touched:
                merged.append(record)
            elif record.id in current:
                merged.append(current[record.id])

        pending_uploads = [r for r in self.files.value if r.id in self._temp_ids]
        streamed_new = [
            r for r in self.files.value
            if r.id in touched and r.id not in fetched_ids and r.id not in self._temp_ids
        ]
        return pending_uploads + streamed_new + merged

    async def upload(
        self,
        data:         bytes,
        filename:     str,
        content_type: str = "application/octet-stream",
    ) -> uuid.UUID:
        temp = FileRecord(
            id=uuid.uuid4(),
            owner_id=self._owner_id,
            filename=filename,
            file_type=classify_file_type(get_extension(filename)),
            content_hash=compute_fingerprint(data),
            status=FileStatus.PENDING,
        )
        self._temp_ids.add(temp.id)
        self.files.update(lambda rs: [temp, *rs])

        try:
            response = await self._api.upload(data, filename, content_type)
        except Exception as exc:
            self.files.update(lambda rs: _without(rs, temp.id))
            self._signal_error(f"Upload failed: {exc}")
            raise
        finally:
            self._temp_ids.discard(temp.id)

        server_entry = temp.model_copy(update={
            "id":           response.id,
            "file_type":    response.file_type,
            "status":       response.status,
            "content_hash": response.checksum,
            "created_at":   response.created_at,
            "updated_at":   response.created_at,
        })

        def reconcile(records: list[FileRecord]) -> list[FileRecord]:
            if any(r.id == response.id for r in records):
                # the stream got there first
                return _without(records, temp.id)
            return [server_entry if r.id == temp.id else r for r in records]

        self.files.update(reconcile)
        return response.id

    async def remove(self, record_id: uuid.UUID) -> None:
        current = self.files.value
        index = next((i for i, r in enumerate(current) if r.id == record_id), None)
        removed = current[index] if index is not None else None
        self.files.update(lambda rs: _without(rs, record_id))

        try:
            await self._api.delete(record_id)
        except Exception as exc:
            if removed is not None:
                def restore(records: list[FileRecord]) -> list[FileRecord]:
                    if any(r.id == record_id for r in records):
                        return records
                    at = min(index, len(records))
                    return [*records[:at], removed, *records[at:]]
                self.files.update(restore)
            self._signal_error(f"Delete failed: {exc}")
            raise

    # ------------------------------------------------------------------
    # Occasional lookups
    # ------------------------------------------------------------------

    def get(self, record_id: uuid.UUID) -> FileRecord | None:
        return next((r for r in self.files.value if r.id == record_id), None)

    def get_by_name(self, filename: str) -> FileRecord | None:
        return next((r for r in self.files.value if r.filename == filename), None)

    def is_processing(self, record_id: uuid.UUID) -> bool:
        record = self.get(record_id)
        return record is not None and record.is_in_flight

    # ------------------------------------------------------------------
    # Error signal
    # ------------------------------------------------------------------

    def _signal_error(self, message: str, persistent: bool = False) -> None:
        self._cancel_error_timer()
        self.error.set(message)
        if not persistent:
            loop = asyncio.get_running_loop()
            self._error_timer = loop.call_later(self._error_seconds, self._expire_error, message)

    def _expire_error(self, message: str) -> None:
        self._error_timer = None
        if self.error.value == message:
            self.error.set(None)

    def _clear_error(self) -> None:
        self._cancel_error_timer()
        self.error.set(None)

    def _cancel_error_timer(self) -> None:
        if self._error_timer is not None:
            self._error_timer.cancel()
            self._error_timer = None

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def wait_idle(self) -> None:
        """Wait for pending connection syncs and fetches to settle."""
        while True:
            pending = [task for task in self._background if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def close(self) -> None:
        self._cancel_error_timer()
        if self._stream_task is not None:
            self._stream_task.cancel()
            await asyncio.gather(self._stream_task, return_exceptions=True)
            self._stream_task = None
        for task in list(self._background):
            task.cancel()
        await asyncio.gather(*list(self._background), return_exceptions=True)
