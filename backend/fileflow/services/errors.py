"""
Pipeline error taxonomy.

Every failure carries a stable machine code, a message and the stage it
happened in. Where it surfaces depends on whether a record exists yet:

  code               durable trace                 surfaced as
  ─────────────────  ────────────────────────────  ───────────────────────────
  VALIDATION_ERROR   none                          raised before anything runs
  EXTRACTION_ERROR   none                          raised
  DUPLICATE_FILE     none (carries existing id)    raised
  COMPRESSION_ERROR  record failed                 returned in PipelineResult
  EMBEDDING_ERROR    record failed                 returned in PipelineResult
  DATABASE_ERROR     last successful write         raised
  UNKNOWN_ERROR      best-effort mark-failed       returned if a record exists, else raised

Failure detail is persisted on the record as "[CODE] message".
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from uuid import UUID

from fileflow.schemas.files import ProcessingStage


class ErrorCode(str, Enum):
    VALIDATION_ERROR  = "VALIDATION_ERROR"
    EXTRACTION_ERROR  = "EXTRACTION_ERROR"
    DUPLICATE_FILE    = "DUPLICATE_FILE"
    COMPRESSION_ERROR = "COMPRESSION_ERROR"
    EMBEDDING_ERROR   = "EMBEDDING_ERROR"
    DATABASE_ERROR    = "DATABASE_ERROR"
    UNKNOWN_ERROR     = "UNKNOWN_ERROR"


def format_failure_detail(code: ErrorCode, message: str) -> str:
    return f"[{code.value}] {message}"


@dataclass(frozen=True)
class PipelineFailure:
    code:    ErrorCode
    message: str
    stage:   ProcessingStage | None = None
    details: dict = field(default_factory=dict)

    @property
    def detail(self) -> str:
        return format_failure_detail(self.code, self.message)


class PipelineError(Exception):
    code: ErrorCode = ErrorCode.UNKNOWN_ERROR

    def __init__(
        self,
        message: str,
        stage:   ProcessingStage | None = None,
        details: dict | None = None,
        code:    ErrorCode | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.stage   = stage
        self.details = details or {}
        if code is not None:
            self.code = code

    def to_failure(self) -> PipelineFailure:
        return PipelineFailure(code=self.code, message=self.message, stage=self.stage, details=self.details)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} code={self.code.value} stage={self.stage} message={self.message!r}>"


class InvalidUploadError(PipelineError):
    code = ErrorCode.VALIDATION_ERROR

    def __init__(self, message: str, field_name: str | None = None, details: dict | None = None) -> None:
        super().__init__(message, stage=None, details=details)
        self.field_name = field_name


class FileTooLargeError(InvalidUploadError):
    def __init__(self, size_bytes: int, limit_bytes: int) -> None:
        super().__init__(
            f"File is {size_bytes:,} bytes; the limit is {limit_bytes:,} bytes",
            field_name="file",
            details={"size_bytes": size_bytes, "limit_bytes": limit_bytes},
        )
        self.size_bytes  = size_bytes
        self.limit_bytes = limit_bytes


class ExtractionError(PipelineError):
    code = ErrorCode.EXTRACTION_ERROR

    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__(message, stage=ProcessingStage.EXTRACTION, details=details)


class DuplicateFileError(PipelineError):
    code = ErrorCode.DUPLICATE_FILE

    def __init__(self, existing_record_id: UUID, fingerprint: str) -> None:
        super().__init__(
            "An identical file has already been uploaded",
            stage=ProcessingStage.EXTRACTION,
            details={"existing_record_id": str(existing_record_id), "content_hash": fingerprint},
        )
        self.existing_record_id = existing_record_id


class CompressionError(PipelineError):
    code = ErrorCode.COMPRESSION_ERROR

    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__(message, stage=ProcessingStage.COMPRESSION, details=details)


class EmbeddingError(PipelineError):
    code = ErrorCode.EMBEDDING_ERROR

    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__(message, stage=ProcessingStage.EMBEDDING, details=details)


class StoreWriteError(PipelineError):
    """A finalize / mark-failed write kept failing after all retries."""
    code = ErrorCode.DATABASE_ERROR

    def __init__(
        self,
        message: str,
        stage: ProcessingStage | None = None,
        record_id: UUID | None = None,
        attempts: int = 0,
    ) -> None:
        super().__init__(
            message,
            stage=stage,
            details={"record_id": str(record_id) if record_id else None, "attempts": attempts},
        )
        self.record_id = record_id
