"""
PostgreSQL record store.

Reads and writes go through short SQLAlchemy async sessions. The change feed
holds one dedicated asyncpg connection per subscription and LISTENs on the
owner's channel, so the owner filter is applied by the database itself.

NOTIFY payloads only carry `{op, id, owner_id}`; the notifier fetches the
current snapshot through get() before forwarding an insert/update.
"""

from __future__ import annotations

import json
import logging
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import ValidationError
from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from fileflow.db.session import check_db_health, get_engine, session_scope
from fileflow.models.files import FileRecordRow, channel_for_owner
from fileflow.schemas.files import FileRecord, FileStatus, RecordUpdate
from fileflow.store.base import (
    ChangeFeed,
    ChangeOp,
    RawChange,
    RecordNotFoundError,
    RecordStore,
    RecordStoreError,
)

logger = logging.getLogger(__name__)


def _column_values(data: dict[str, Any]) -> dict[str, Any]:
    """Enum members → their string value; everything else passes through."""
    return {key: (value.value if isinstance(value, Enum) else value) for key, value in data.items()}


class PostgresChangeFeed(ChangeFeed):

    def __init__(self, engine: AsyncEngine, owner_id: UUID) -> None:
        super().__init__(owner_id)
        self._engine = engine
        self._channel = channel_for_owner(owner_id)
        self._conn: AsyncConnection | None = None
        self._driver = None

    async def start(self) -> None:
        self._conn = await self._engine.connect()
        try:
            raw = await self._conn.get_raw_connection()
            self._driver = raw.driver_connection
            await self._driver.add_listener(self._channel, self._on_notify)
            self._driver.add_termination_listener(self._on_terminated)
        except Exception:
            await self._conn.close()
            self._conn = None
            raise
        logger.info("LISTEN started | channel=%s", self._channel)

    def _on_notify(self, connection, pid, channel, payload) -> None:
        try:
            data = json.loads(payload)
            change = RawChange(
                op=ChangeOp(data["op"]),
                owner_id=UUID(str(data["owner_id"])),
                record_id=UUID(str(data["id"])),
            )
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("Malformed notification dropped | channel=%s error=%s", channel, exc)
            return
        self._publish(change)

    def _on_terminated(self, connection) -> None:
        logger.warning("LISTEN connection terminated | channel=%s", self._channel)
        self._fail(RecordStoreError("Change feed connection lost"))

    async def _release(self) -> None:
        if self._driver is not None:
            try:
                await self._driver.remove_listener(self._channel, self._on_notify)
                self._driver.remove_termination_listener(self._on_terminated)
            except Exception as exc:
                # connection may already be gone
                logger.debug("remove_listener failed | channel=%s error=%s", self._channel, exc)
            self._driver = None
        if self._conn is not None:
            await self._conn.close()
            self._conn = None


class PostgresRecordStore(RecordStore):

    def __init__(self, engine: AsyncEngine | None = None) -> None:
        self._engine = engine

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            self._engine = get_engine()
        return self._engine

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def insert(self, record: FileRecord) -> FileRecord:
        values = _column_values(record.model_dump(exclude={"created_at", "updated_at"}))
        try:
            async with session_scope() as session:
                row = FileRecordRow(**values)
                session.add(row)
                await session.flush()
                await session.refresh(row)
                return FileRecord.model_validate(row)
        except SQLAlchemyError as exc:
            logger.error("Insert failed | id=%s error=%s", record.id, exc)
            raise RecordStoreError(f"Insert failed for {record.id}") from exc

    async def update(self, record_id: UUID, changes: RecordUpdate) -> FileRecord:
        try:
            async with session_scope() as session:
                row = await session.get(FileRecordRow, record_id, with_for_update=True)
                if row is None:
                    raise RecordNotFoundError(record_id)

                merged = {**FileRecord.model_validate(row).model_dump(), **changes.changes()}
                try:
                    FileRecord.model_validate(merged)
                except ValidationError as exc:
                    raise RecordStoreError(f"Update rejected for {record_id}: {exc}") from exc

                for key, value in _column_values(changes.changes()).items():
                    setattr(row, key, value)
                await session.flush()
                await session.refresh(row)
                return FileRecord.model_validate(row)
        except SQLAlchemyError as exc:
            logger.error("Update failed | id=%s error=%s", record_id, exc)
            raise RecordStoreError(f"Update failed for {record_id}") from exc

    async def delete(self, owner_id: UUID, record_id: UUID) -> bool:
        stmt = delete(FileRecordRow).where(
            FileRecordRow.id == record_id,
            FileRecordRow.owner_id == owner_id,
        )
        try:
            async with session_scope() as session:
                result = await session.execute(stmt)
                return result.rowcount > 0
        except SQLAlchemyError as exc:
            logger.error("Delete failed | id=%s error=%s", record_id, exc)
            raise RecordStoreError(f"Delete failed for {record_id}") from exc

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, owner_id: UUID, record_id: UUID) -> FileRecord | None:
        stmt = select(FileRecordRow).where(
            FileRecordRow.id == record_id,
            FileRecordRow.owner_id == owner_id,
        )
        row = await self._scalar(stmt)
        return FileRecord.model_validate(row) if row is not None else None

    async def find_active_by_fingerprint(self, owner_id: UUID, fingerprint: str) -> FileRecord | None:
        stmt = (
            select(FileRecordRow)
            .where(
                FileRecordRow.owner_id == owner_id,
                FileRecordRow.content_hash == fingerprint,
                FileRecordRow.status != FileStatus.FAILED.value,
            )
            .order_by(FileRecordRow.created_at.desc())
            .limit(1)
        )
        row = await self._scalar(stmt)
        return FileRecord.model_validate(row) if row is not None else None

    async def list_by_owner(self, owner_id: UUID, status: FileStatus | None = None) -> list[FileRecord]:
        stmt = select(FileRecordRow).where(FileRecordRow.owner_id == owner_id)
        if status is not None:
            stmt = stmt.where(FileRecordRow.status == status.value)
        stmt = stmt.order_by(FileRecordRow.created_at.desc())
        try:
            async with session_scope() as session:
                rows = (await session.execute(stmt)).scalars().all()
                return [FileRecord.model_validate(row) for row in rows]
        except SQLAlchemyError as exc:
            logger.error("List failed | owner=%s error=%s", owner_id, exc)
            raise RecordStoreError(f"List failed for owner {owner_id}") from exc

    async def _scalar(self, stmt) -> FileRecordRow | None:
        try:
            async with session_scope() as session:
                return (await session.execute(stmt)).scalars().first()
        except SQLAlchemyError as exc:
            logger.error("Read failed | error=%s", exc)
            raise RecordStoreError("Read failed") from exc

    # ------------------------------------------------------------------
    # Change feed / health
    # ------------------------------------------------------------------

    async def open_feed(self, owner_id: UUID) -> ChangeFeed:
        feed = PostgresChangeFeed(self.engine, owner_id)
        try:
            await feed.start()
        except Exception as exc:
            logger.error("LISTEN failed | owner=%s error=%s", owner_id, exc)
            raise RecordStoreError(f"Could not open change feed for owner {owner_id}") from exc
        return feed

    async def ping(self) -> bool:
        health = await check_db_health()
        return health["status"] == "ok"
