"""
In-memory record store.

Same contract as the PostgreSQL backend, including a per-owner change feed
that delivers full snapshots. Used by the test-suite and for local runs
with RECORD_STORE_BACKEND=memory. Not shared across processes.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from uuid import UUID

from pydantic import ValidationError

from fileflow.schemas.files import FileRecord, FileStatus, RecordUpdate, utcnow
from fileflow.store.base import (
    ChangeFeed,
    ChangeOp,
    RawChange,
    RecordNotFoundError,
    RecordStore,
    RecordStoreError,
)

logger = logging.getLogger(__name__)


class InMemoryChangeFeed(ChangeFeed):
    def __init__(self, store: "InMemoryRecordStore", owner_id: UUID) -> None:
        super().__init__(owner_id)
        self._store = store

    async def _release(self) -> None:
        self._store._detach(self)


class InMemoryRecordStore(RecordStore):

    def __init__(self) -> None:
        # insertion order doubles as creation order
        self._records: dict[UUID, FileRecord] = {}
        self._feeds: dict[UUID, set[InMemoryChangeFeed]] = defaultdict(set)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def insert(self, record: FileRecord) -> FileRecord:
        if record.id in self._records:
            raise RecordStoreError(f"Record {record.id} already exists")
        stored = record.model_copy(deep=True)
        self._records[stored.id] = stored
        self._notify(ChangeOp.INSERT, stored)
        return stored.model_copy(deep=True)

    async def update(self, record_id: UUID, changes: RecordUpdate) -> FileRecord:
        current = self._records.get(record_id)
        if current is None:
            raise RecordNotFoundError(record_id)
        merged = {**current.model_dump(), **changes.changes(), "updated_at": utcnow()}
        try:
            updated = FileRecord.model_validate(merged)
        except ValidationError as exc:
            raise RecordStoreError(f"Update rejected for {record_id}: {exc}") from exc
        self._records[record_id] = updated
        self._notify(ChangeOp.UPDATE, updated)
        return updated.model_copy(deep=True)

    async def delete(self, owner_id: UUID, record_id: UUID) -> bool:
        current = self._records.get(record_id)
        if current is None or current.owner_id != owner_id:
            return False
        del self._records[record_id]
        self._notify(ChangeOp.DELETE, current, with_snapshot=False)
        return True

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, owner_id: UUID, record_id: UUID) -> FileRecord | None:
        record = self._records.get(record_id)
        if record is None or record.owner_id != owner_id:
            return None
        return record.model_copy(deep=True)

    async def find_active_by_fingerprint(self, owner_id: UUID, fingerprint: str) -> FileRecord | None:
        for record in self._records.values():
            if (
                record.owner_id == owner_id
                and record.content_hash == fingerprint
                and record.status != FileStatus.FAILED
            ):
                return record.model_copy(deep=True)
        return None

    async def list_by_owner(self, owner_id: UUID, status: FileStatus | None = None) -> list[FileRecord]:
        return [
            record.model_copy(deep=True)
            for record in reversed(self._records.values())
            if record.owner_id == owner_id and (status is None or record.status == status)
        ]

    # ------------------------------------------------------------------
    # Change feed
    # ------------------------------------------------------------------

    async def open_feed(self, owner_id: UUID) -> ChangeFeed:
        feed = InMemoryChangeFeed(self, owner_id)
        self._feeds[owner_id].add(feed)
        logger.debug("Change feed opened | owner=%s listeners=%d", owner_id, len(self._feeds[owner_id]))
        return feed

    def listener_count(self, owner_id: UUID) -> int:
        return len(self._feeds.get(owner_id, ()))

    def _detach(self, feed: InMemoryChangeFeed) -> None:
        listeners = self._feeds.get(feed.owner_id)
        if listeners is None:
            return
        listeners.discard(feed)
        if not listeners:
            del self._feeds[feed.owner_id]

    def _notify(self, op: ChangeOp, record: FileRecord, with_snapshot: bool = True) -> None:
        change = RawChange(
            op=op,
            owner_id=record.owner_id,
            record_id=record.id,
            record=record.model_copy(deep=True) if with_snapshot else None,
        )
        for feed in list(self._feeds.get(record.owner_id, ())):
            feed._publish(change)
