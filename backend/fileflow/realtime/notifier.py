"""
Change Notifier

subscribe(owner_id) → Subscription, an async iterator of ChangeEvent
(insert | update | delete) for that owner's records, in commit order.

Owner isolation is layered:
  1. data layer: the store's feed is opened per owner (per-owner NOTIFY channel)
  2. here: any change whose owner_id differs is dropped and logged

Insert/update events always carry the full current snapshot. When the
native feed only delivers the id, the snapshot is read back from the store;
if the row has been deleted in the meantime the update is dropped (the
delete event follows on the same feed).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from uuid import UUID

from fileflow.schemas.files import FileRecord
from fileflow.store.base import ChangeFeed, ChangeOp, RecordStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChangeEvent:
    op:        ChangeOp
    record_id: UUID
    record:    FileRecord | None = None     # None for deletes


class Subscription:
    """Closing is idempotent and releases the feed's listener and connection."""

    def __init__(self, owner_id: UUID, feed: ChangeFeed, store: RecordStore, notifier: "ChangeNotifier") -> None:
        self.owner_id  = owner_id
        self._feed     = feed
        self._store    = store
        self._notifier = notifier
        self._closed   = False

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> ChangeEvent:
        while True:
            change = await self._feed.__anext__()

            if change.owner_id != self.owner_id:
                logger.warning(
                    "Cross-owner change dropped | subscriber=%s change_owner=%s record=%s",
                    self.owner_id, change.owner_id, change.record_id,
                )
                continue

            if change.op == ChangeOp.DELETE:
                return ChangeEvent(ChangeOp.DELETE, change.record_id)

            snapshot = change.record
            if snapshot is None:
                snapshot = await self._store.get(self.owner_id, change.record_id)
            if snapshot is None:
                logger.debug("Change for deleted record dropped | record=%s op=%s", change.record_id, change.op.value)
                continue
            if snapshot.owner_id != self.owner_id:
                logger.warning("Snapshot owner mismatch dropped | record=%s", change.record_id)
                continue

            return ChangeEvent(change.op, change.record_id, snapshot)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._feed.close()
        finally:
            self._notifier._released(self)


class ChangeNotifier:

    def __init__(self, store: RecordStore) -> None:
        self._store  = store
        self._active: set[Subscription] = set()

    @property
    def active_subscriptions(self) -> int:
        return len(self._active)

    async def subscribe(self, owner_id: UUID) -> Subscription:
        """Raises RecordStoreError if the feed cannot be opened."""
        feed = await self._store.open_feed(owner_id)
        subscription = Subscription(owner_id, feed, self._store, self)
        self._active.add(subscription)
        logger.info("Subscribed | owner=%s active=%d", owner_id, len(self._active))
        return subscription

    def _released(self, subscription: Subscription) -> None:
        self._active.discard(subscription)
        logger.info("Unsubscribed | owner=%s active=%d", subscription.owner_id, len(self._active))

    async def close_all(self) -> None:
        for subscription in list(self._active):
            await subscription.close()
