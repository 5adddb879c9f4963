"""
Record Store: Abstract Base

Every concrete backend (PostgreSQL, in-memory) implements this interface.
The orchestrator, notifier and API layer only speak this protocol, so
backends are swappable without touching pipeline or streaming code.

Owner isolation contract (enforced by ALL implementations):
  - Every read/delete is scoped to the owner_id passed in.
  - open_feed(owner_id) only ever yields changes for that owner's rows.
  - Every mutation is a single-row write keyed by record id.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from uuid import UUID

from fileflow.schemas.files import FileRecord, FileStatus, RecordUpdate

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class RecordStoreError(Exception):
    """A durable read or write could not be completed."""


class RecordNotFoundError(RecordStoreError):
    def __init__(self, record_id: UUID) -> None:
        super().__init__(f"Record {record_id} does not exist")
        self.record_id = record_id


# ---------------------------------------------------------------------------
# Change feed
# ---------------------------------------------------------------------------

class ChangeOp(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class RawChange:
    """
    One committed row change as seen by the native feed.
    `record` is None when the feed only carries the id (PostgreSQL NOTIFY)
    and always None for deletes.
    """
    op:        ChangeOp
    owner_id:  UUID
    record_id: UUID
    record:    FileRecord | None = None


_CLOSED = object()


class ChangeFeed(ABC):
    """
    Async iterator over one owner's committed changes, in commit order.
    close() is idempotent and releases the listener and its connection.
    """

    def __init__(self, owner_id: UUID) -> None:
        self.owner_id = owner_id
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _publish(self, change: RawChange) -> None:
        if not self._closed:
            self._queue.put_nowait(change)

    def _fail(self, exc: BaseException) -> None:
        """Surface a broken feed to the consumer on its next read."""
        if not self._closed:
            self._queue.put_nowait(exc)

    def __aiter__(self) -> "ChangeFeed":
        return self

    async def __anext__(self) -> RawChange:
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            raise item
        return item

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._release()
        finally:
            self._queue.put_nowait(_CLOSED)
            logger.debug("Change feed closed | owner=%s", self.owner_id)

    @abstractmethod
    async def _release(self) -> None:
        """Detach the backend listener and free its resources."""


# ---------------------------------------------------------------------------
# Store interface
# ---------------------------------------------------------------------------

class RecordStore(ABC):

    @abstractmethod
    async def insert(self, record: FileRecord) -> FileRecord:
        """Persist a new record. Returns the stored snapshot."""

    @abstractmethod
    async def update(self, record_id: UUID, changes: RecordUpdate) -> FileRecord:
        """
        Apply a partial update to one row and return the new snapshot.
        Raises RecordNotFoundError if the row is gone and RecordStoreError
        if the merged row would violate a record invariant.
        """

    @abstractmethod
    async def get(self, owner_id: UUID, record_id: UUID) -> FileRecord | None:
        """Owner-scoped point read."""

    @abstractmethod
    async def find_active_by_fingerprint(self, owner_id: UUID, fingerprint: str) -> FileRecord | None:
        """Return a non-failed record of this owner with the same content hash."""

    @abstractmethod
    async def list_by_owner(self, owner_id: UUID, status: FileStatus | None = None) -> list[FileRecord]:
        """All of an owner's records, newest first, optionally filtered by status."""

    @abstractmethod
    async def delete(self, owner_id: UUID, record_id: UUID) -> bool:
        """Remove one record. Returns False when nothing matched."""

    @abstractmethod
    async def open_feed(self, owner_id: UUID) -> ChangeFeed:
        """Start listening for this owner's committed changes."""

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None
