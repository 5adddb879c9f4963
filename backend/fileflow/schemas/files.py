"""
File Records: Pydantic Schemas

Covers the full lifecycle of an uploaded file:
  - FileRecord: the durable processing record (also the full stream snapshot)
  - RecordUpdate: a partial single-row update written by the orchestrator
  - ProgressUpdate: transient progress struct handed to progress callbacks
  - StreamEvent: the wire-level SSE payload
  - Upload / list responses and all structured error bodies

Design decisions:
  - id and owner_id are always server-side UUIDs; never client-supplied.
  - content_hash is SHA-256 of the raw file bytes, computed server-side.
  - Terminal-state invariants are checked on every FileRecord construction,
    so no store can persist a `ready` record without its description/embedding.
  - All timestamps are ISO-8601 UTC (no timezone-naive datetimes on the wire).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# ---------------------------------------------------------------------------
# Enumerations: mirror the database enum columns
# ---------------------------------------------------------------------------

class FileType(str, Enum):
    PDF         = "pdf"
    IMAGE       = "image"
    TEXT        = "text"
    CODE        = "code"
    SPREADSHEET = "spreadsheet"
    OTHER       = "other"


class FileStatus(str, Enum):
    """
    Record state machine.
    Transitions: pending → processing → ready | failed
    """
    PENDING    = "pending"       # record created, compression not started
    PROCESSING = "processing"    # a stage is actively running
    READY      = "ready"         # description + embedding stored
    FAILED     = "failed"        # see error_message / processing_stage


IN_FLIGHT_STATUSES: frozenset[FileStatus] = frozenset({FileStatus.PENDING, FileStatus.PROCESSING})


class ProcessingStage(str, Enum):
    EXTRACTION   = "extraction"
    COMPRESSION  = "compression"
    EMBEDDING    = "embedding"
    FINALIZATION = "finalization"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Durable record
# ---------------------------------------------------------------------------

class FileRecord(BaseModel):
    """One processing record. Also the full snapshot carried by `recordChanged`."""

    model_config = ConfigDict(from_attributes=True)

    id:               UUID
    owner_id:         UUID
    filename:         str
    file_type:        FileType = FileType.OTHER
    content_hash:     str
    description:      str | None = None
    embedding:        list[float] | None = None
    status:           FileStatus = FileStatus.PENDING
    processing_stage: ProcessingStage | None = None
    progress:         int = Field(0, ge=0, le=100)
    error_message:    str | None = None
    created_at:       datetime = Field(default_factory=utcnow)
    updated_at:       datetime = Field(default_factory=utcnow)

    @field_validator("embedding", mode="before")
    @classmethod
    def _coerce_vector(cls, value: Any) -> Any:
        # pgvector hands back numpy arrays
        if value is None or isinstance(value, list):
            return value
        return [float(x) for x in value]

    @model_validator(mode="after")
    def _check_terminal_state(self) -> "FileRecord":
        if self.status == FileStatus.READY:
            if self.progress != 100:
                raise ValueError("ready record must have progress=100")
            if not self.description or not self.embedding:
                raise ValueError("ready record must carry description and embedding")
        if self.status == FileStatus.FAILED and not self.error_message:
            raise ValueError("failed record must carry error_message")
        return self

    @property
    def is_in_flight(self) -> bool:
        return self.status in IN_FLIGHT_STATUSES


class RecordUpdate(BaseModel):
    """
    Partial single-row update. Only fields explicitly set are written
    (see `model_dump(exclude_unset=True)`).
    """
    description:      str | None = None
    embedding:        list[float] | None = None
    status:           FileStatus | None = None
    processing_stage: ProcessingStage | None = None
    progress:         int | None = Field(None, ge=0, le=100)
    error_message:    str | None = None

    def changes(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True)


# ---------------------------------------------------------------------------
# Transient progress update: handed to orchestrator callbacks, never persisted
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ProgressUpdate:
    owner_id:        UUID
    record_id:       UUID | None          # None until the record exists
    stage:           ProcessingStage
    progress:        int
    message:         str | None = None
    terminal_status: FileStatus | None = None


# ---------------------------------------------------------------------------
# SSE payload: `data: <json>\n\n`
# ---------------------------------------------------------------------------

class StreamEventType(str, Enum):
    RECORD_CHANGED = "recordChanged"
    RECORD_REMOVED = "recordRemoved"
    LIVENESS       = "liveness"
    ERROR          = "error"


class StreamError(BaseModel):
    code:    str
    message: str


class StreamEvent(BaseModel):
    """
    Wire-level event. `record` is the full snapshot for recordChanged and
    `{"id": ...}` for recordRemoved; liveness carries neither.
    """
    model_config = ConfigDict(populate_by_name=True)

    event_type: StreamEventType = Field(..., alias="eventType")
    timestamp:  datetime        = Field(default_factory=utcnow)
    record:     dict[str, Any] | None = None
    error:      StreamError | None    = None

    @classmethod
    def record_changed(cls, record: FileRecord) -> "StreamEvent":
        return cls(event_type=StreamEventType.RECORD_CHANGED, record=record.model_dump(mode="json"))

    @classmethod
    def record_removed(cls, record_id: UUID) -> "StreamEvent":
        return cls(event_type=StreamEventType.RECORD_REMOVED, record={"id": str(record_id)})

    @classmethod
    def liveness(cls) -> "StreamEvent":
        return cls(event_type=StreamEventType.LIVENESS)

    @classmethod
    def failure(cls, code: str, message: str) -> "StreamEvent":
        return cls(event_type=StreamEventType.ERROR, error=StreamError(code=code, message=message))

    def to_sse(self) -> str:
        body = self.model_dump_json(by_alias=True, exclude_none=True)
        return f"data: {body}\n\n"

    def snapshot(self) -> FileRecord | None:
        """Parse the carried snapshot (recordChanged only)."""
        if self.event_type != StreamEventType.RECORD_CHANGED or self.record is None:
            return None
        return FileRecord.model_validate(self.record)

    def removed_id(self) -> UUID | None:
        if self.event_type != StreamEventType.RECORD_REMOVED or not self.record:
            return None
        return UUID(str(self.record["id"]))


# ---------------------------------------------------------------------------
# HTTP responses
# ---------------------------------------------------------------------------

class FileUploadResponse(BaseModel):
    """
    Returned once the pending record exists.
    HTTP 202: processing continues asynchronously; follow it on the event stream.
    """
    id:          UUID            = Field(..., description="Server-generated record UUID")
    filename:    str
    file_type:   FileType
    status:      FileStatus      = Field(FileStatus.PENDING)
    checksum:    str             = Field(..., description="SHA-256 hex digest of the uploaded bytes")
    size_bytes:  int
    created_at:  datetime


class FileListResponse(BaseModel):
    files: list[FileRecord]
    count: int


# ---------------------------------------------------------------------------
# Structured error bodies
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    """Single structured error: may appear in a list."""
    field:   str | None = Field(None, description="Request field that caused the error, if applicable")
    message: str
    code:    str         = Field(..., description="Machine-readable error code for client handling")


class ErrorResponse(BaseModel):
    """
    Uniform error envelope for all 4xx/5xx responses.
    Clients should check `error_code` for programmatic handling.
    """
    error_code: str               = Field(..., description="Stable machine-readable code")
    message:    str               = Field(..., description="Human-readable summary")
    details:    list[ErrorDetail] = Field(default_factory=list)
    request_id: str | None        = Field(None, description="Trace ID for log correlation")


class FileErrors:
    """Factories for every documented error case."""

    @staticmethod
    def missing_file() -> ErrorResponse:
        return ErrorResponse(
            error_code="MISSING_FILE",
            message="No file was provided in the request.",
            details=[
                ErrorDetail(field="file", message="The 'file' multipart field is required.", code="MISSING_FILE")
            ],
        )

    @staticmethod
    def file_too_large(size_bytes: int, limit_bytes: int) -> ErrorResponse:
        return ErrorResponse(
            error_code="FILE_TOO_LARGE",
            message=f"Uploaded file exceeds the {limit_bytes // (1024 * 1024)} MB limit.",
            details=[
                ErrorDetail(
                    field="file",
                    message=f"Received {size_bytes:,} bytes; limit is {limit_bytes:,} bytes.",
                    code="FILE_TOO_LARGE",
                )
            ],
        )

    @staticmethod
    def pipeline_error(code: str, message: str, details: dict | None = None) -> ErrorResponse:
        return ErrorResponse(
            error_code=code,
            message=message,
            details=[
                ErrorDetail(field=key, message=str(value), code=code)
                for key, value in (details or {}).items()
            ],
        )

    @staticmethod
    def invalid_status_filter(value: str) -> ErrorResponse:
        allowed = ", ".join(s.value for s in FileStatus)
        return ErrorResponse(
            error_code="INVALID_STATUS_FILTER",
            message=f"Invalid status filter '{value}'. Must be one of: {allowed}.",
            details=[],
        )

    @staticmethod
    def file_not_found(record_id: UUID) -> ErrorResponse:
        return ErrorResponse(
            error_code="FILE_NOT_FOUND",
            message=f"File '{record_id}' was not found.",
            details=[],
        )

    @staticmethod
    def unauthorized(detail: str = "Missing or invalid Authorization header.") -> ErrorResponse:
        return ErrorResponse(
            error_code="AUTH_REQUIRED",
            message="Authentication required. Provide a valid Bearer token.",
            details=[ErrorDetail(field=None, message=detail, code="AUTH_REQUIRED")],
        )

    @staticmethod
    def store_error(detail: str | None = None) -> ErrorResponse:
        return ErrorResponse(
            error_code="DATABASE_ERROR",
            message="The record store could not complete the request. Please retry.",
            details=([ErrorDetail(field=None, message=detail, code="DATABASE_ERROR")] if detail else []),
        )

    @staticmethod
    def internal_error(request_id: str | None = None) -> ErrorResponse:
        return ErrorResponse(
            error_code="INTERNAL_ERROR",
            message="An unexpected error occurred. Our team has been notified.",
            details=[],
            request_id=request_id,
        )


# ---------------------------------------------------------------------------
# Pipeline error code → HTTP status (thin upload layer)
# ---------------------------------------------------------------------------

HTTP_STATUS_BY_CODE: dict[str, int] = {
    "VALIDATION_ERROR":  400,
    "FILE_TOO_LARGE":    413,
    "EXTRACTION_ERROR":  422,
    "DUPLICATE_FILE":    409,
    "DATABASE_ERROR":    503,
    "UNKNOWN_ERROR":     500,
}
