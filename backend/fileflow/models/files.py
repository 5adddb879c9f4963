"""
SQLAlchemy ORM Models: File Records

Maps the `files` table. One row per upload; the row is the single source of
truth for status / stage / progress while a pipeline run is in flight.

Change feed: a row trigger publishes `{op, id, owner_id}` on the per-owner
channel `file_records_<owner hex>` via pg_notify. NOTIFY payloads are capped
at 8000 bytes, so listeners re-read the snapshot from the table instead of
receiving it inline.

Dedup note: there is deliberately no UNIQUE(owner_id, content_hash).
Failed rows keep their hash so an identical re-upload must be able to
coexist with them; the orchestrator's duplicate check covers non-failed rows.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from pgvector.sqlalchemy import Vector
from sqlalchemy import CheckConstraint, DateTime, Index, Integer, String, Text, func, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from fileflow.core.config import settings


class Base(DeclarativeBase):
    pass


CHANNEL_PREFIX = "file_records_"


def channel_for_owner(owner_id: uuid.UUID) -> str:
    """LISTEN/NOTIFY channel carrying changes for one owner's rows."""
    return f"{CHANNEL_PREFIX}{owner_id.hex}"


class FileRecordRow(Base):
    """
    State machine (status column):
        pending    row created after extraction + duplicate check
        processing: compression / embedding in progress (see processing_stage)
        ready      description + embedding stored, progress=100
        failed     error_message holds "[CODE] message"
    """

    __tablename__ = "files"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'ready', 'failed')",
            name="files_status_check",
        ),
        CheckConstraint(
            "file_type IN ('pdf', 'image', 'text', 'code', 'spreadsheet', 'other')",
            name="files_type_check",
        ),
        CheckConstraint("progress BETWEEN 0 AND 100", name="files_progress_check"),
        Index("idx_files_owner_id",     "owner_id"),
        Index("idx_files_owner_status", "owner_id", "status"),
        Index("idx_files_owner_hash",   "owner_id", "content_hash"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )

    # Owner scope: never supplied by the client; always taken from the JWT
    owner_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)

    filename: Mapped[str] = mapped_column(Text, nullable=False)
    file_type: Mapped[str] = mapped_column(Text, nullable=False, default="other", server_default="other")
    content_hash: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        comment="SHA-256 hex digest of the raw bytes; per-owner dedup key",
    )

    # Pipeline outputs: null until their stage completes
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    embedding: Mapped[Optional[list[float]]] = mapped_column(
        Vector(settings.embedding_dimensions),
        nullable=True,
    )

    status: Mapped[str] = mapped_column(Text, nullable=False, default="pending", server_default="pending")
    processing_stage: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    error_message: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Populated only when status='failed'",
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    def __repr__(self) -> str:
        return (
            f"<FileRecordRow id={self.id} owner={self.owner_id} "
            f"status={self.status} stage={self.processing_stage} progress={self.progress}>"
        )


# ---------------------------------------------------------------------------
# Change-feed trigger
# ---------------------------------------------------------------------------

NOTIFY_FUNCTION_DDL = f"""
CREATE OR REPLACE FUNCTION notify_file_record_change() RETURNS trigger AS $$
DECLARE
    row_data RECORD;
BEGIN
    IF TG_OP = 'DELETE' THEN
        row_data := OLD;
    ELSE
        row_data := NEW;
    END IF;
    PERFORM pg_notify(
        '{CHANNEL_PREFIX}' || replace(row_data.owner_id::text, '-', ''),
        json_build_object(
            'op', lower(TG_OP),
            'id', row_data.id,
            'owner_id', row_data.owner_id
        )::text
    );
    RETURN row_data;
END;
$$ LANGUAGE plpgsql;
"""

NOTIFY_TRIGGER_DDL = (
    "DROP TRIGGER IF EXISTS files_change_notify ON files;",
    """
    CREATE TRIGGER files_change_notify
    AFTER INSERT OR UPDATE OR DELETE ON files
    FOR EACH ROW EXECUTE FUNCTION notify_file_record_change();
    """,
)


async def init_schema(engine: AsyncEngine) -> None:
    """
    Create the vector extension, the `files` table and its notify trigger.
    Idempotent; run at startup in development and by deploy tooling elsewhere.
    """
    async with engine.begin() as conn:
        await conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
        await conn.run_sync(Base.metadata.create_all)
        await conn.execute(text(NOTIFY_FUNCTION_DDL))
        for statement in NOTIFY_TRIGGER_DDL:
            await conn.execute(text(statement))
