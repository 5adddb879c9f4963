"""
Pipeline Orchestrator

Sequences one upload through:
  1. Validate inputs (size, name, owner, content type)   no durable trace
  2. Extract text + SHA-256 fingerprint                  progress 0 → 25
  3. Per-owner duplicate check (non-failed records)      no durable trace
  4. Create the record: status=pending, progress=0       first durable write
  5. Compress → description                              progress 25 → 75
  6. Embed description → vector                          progress 75 → 90
  7. Finalize: status=ready, progress=100                progress 90 → 100

All-or-nothing: once step 4 succeeds the record always ends `ready` or
`failed` unless the finalize / mark-failed write itself cannot be made
durable after STORE_WRITE_MAX_ATTEMPTS tries, in which case StoreWriteError
is raised and the record keeps its last successfully written state.

Intermediate progress writes are best effort. Progress callbacks never
abort a run; sync and async callbacks are both accepted.

Each run is an independent coroutine with no shared lock. The
duplicate check is read-then-write, so two identical uploads racing each
other can both pass it.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Awaitable, Callable, Union

from fileflow.core.config import settings
from fileflow.processing.compression import CompressionFailed, CompressionService
from fileflow.processing.embeddings import EmbeddingFailed, EmbeddingService
from fileflow.processing.extractor import ContentExtractor, ExtractionFailed, ExtractionResult
from fileflow.schemas.files import (
    FileRecord,
    FileStatus,
    ProcessingStage,
    ProgressUpdate,
    RecordUpdate,
)
from fileflow.services.errors import (
    CompressionError,
    DuplicateFileError,
    EmbeddingError,
    ErrorCode,
    ExtractionError,
    FileTooLargeError,
    InvalidUploadError,
    PipelineError,
    PipelineFailure,
    StoreWriteError,
)
from fileflow.store.base import RecordNotFoundError, RecordStore, RecordStoreError

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressUpdate], Union[Awaitable[None], None]]

# Stage boundaries on the 0-100 progress scale
PROGRESS_EXTRACTION_START  = 0
PROGRESS_EXTRACTION_END    = 25
PROGRESS_COMPRESSION_END   = 75
PROGRESS_EMBEDDING_END     = 90
PROGRESS_COMPLETE          = 100


@dataclass(frozen=True)
class PipelineResult:
    record_id:    uuid.UUID
    final_status: FileStatus
    failure:      PipelineFailure | None = None

    @property
    def succeeded(self) -> bool:
        return self.final_status == FileStatus.READY


# ---------------------------------------------------------------------------
# Progress reporting
# ---------------------------------------------------------------------------

class _ProgressReporter:
    """Wraps the optional callback; keeps reported progress non-decreasing."""

    def __init__(self, owner_id: uuid.UUID, callback: ProgressCallback | None) -> None:
        self._owner_id = owner_id
        self._callback = callback
        self.record_id: uuid.UUID | None = None
        self.stage     = ProcessingStage.EXTRACTION
        self.progress  = PROGRESS_EXTRACTION_START

    async def emit(
        self,
        stage: ProcessingStage,
        progress: int,
        message: str | None = None,
        terminal_status: FileStatus | None = None,
    ) -> None:
        self.stage    = stage
        self.progress = max(self.progress, progress)
        if self._callback is None:
            return
        update = ProgressUpdate(
            owner_id=self._owner_id,
            record_id=self.record_id,
            stage=stage,
            progress=self.progress,
            message=message,
            terminal_status=terminal_status,
        )
        try:
            result = self._callback(update)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            logger.warning(
                "Progress callback failed | record=%s stage=%s progress=%d error=%s",
                self.record_id, stage.value, self.progress, exc,
            )


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class PipelineOrchestrator:
    """
    One instance per process; safe to run many uploads concurrently.
    Every collaborator is injectable (tests pass fakes).
    """

    def __init__(
        self,
        store:      RecordStore,
        extractor:  ContentExtractor | None = None,
        compressor: CompressionService | None = None,
        embedder:   EmbeddingService | None = None,
        max_upload_bytes:   int | None = None,
        write_max_attempts: int | None = None,
        write_base_delay:   float | None = None,
    ) -> None:
        self._store      = store
        self._max_bytes  = max_upload_bytes or settings.max_upload_bytes
        self._extractor  = extractor or ContentExtractor(max_bytes=self._max_bytes)
        self._compressor = compressor or CompressionService()
        self._embedder   = embedder or EmbeddingService()
        self._write_max_attempts = write_max_attempts or settings.store_write_max_attempts
        self._write_base_delay   = (
            settings.store_write_base_delay if write_base_delay is None else write_base_delay
        )

    @property
    def store(self) -> RecordStore:
        return self._store

    # ------------------------------------------------------------------
    # Public entry point
    # ------------------------------------------------------------------

    async def run(
        self,
        raw_bytes:     bytes,
        original_name: str,
        owner_id:      uuid.UUID | str,
        content_type:  str,
        on_progress:   ProgressCallback | None = None,
        skip_duplicate_check: bool = False,
    ) -> PipelineResult:
        """
        Raises InvalidUploadError / ExtractionError / DuplicateFileError
        before any record exists, StoreWriteError when a terminal write
        cannot be made durable. Compression, embedding and unexpected
        post-create failures come back as a `failed` PipelineResult.
        """
        owner, filename = self._validate(raw_bytes, original_name, owner_id, content_type)
        reporter = _ProgressReporter(owner, on_progress)
        t0 = time.monotonic()

        logger.info(
            "Pipeline start | owner=%s file=%s size=%d content_type=%s",
            owner, filename, len(raw_bytes), content_type,
        )

        # ---- Extraction ------------------------------------------------
        await reporter.emit(ProcessingStage.EXTRACTION, PROGRESS_EXTRACTION_START, "Extracting content")
        extraction = await self._extract(raw_bytes, filename)
        await reporter.emit(ProcessingStage.EXTRACTION, PROGRESS_EXTRACTION_END, "Content extracted")

        # ---- Duplicate check -------------------------------------------
        if not skip_duplicate_check:
            await self._reject_duplicate(owner, extraction.fingerprint)

        # ---- Create pending record ---------------------------------------
        record = await self._create_record(owner, filename, extraction)
        reporter.record_id = record.id
        await reporter.emit(ProcessingStage.EXTRACTION, PROGRESS_EXTRACTION_END, "Record created")

        try:
            result = await self._process(record, extraction, reporter)
        except StoreWriteError:
            raise
        except Exception as exc:
            logger.exception("Pipeline crashed | record=%s stage=%s", record.id, reporter.stage.value)
            failure = PipelineFailure(
                code=ErrorCode.UNKNOWN_ERROR,
                message=f"Unexpected error: {exc}",
                stage=reporter.stage,
            )
            try:
                await self._write_terminal(record.id, self._failed_update(failure), failure.stage)
            except StoreWriteError as write_exc:
                logger.error("Could not mark record failed | record=%s error=%s", record.id, write_exc)
            await reporter.emit(reporter.stage, reporter.progress, failure.message, FileStatus.FAILED)
            result = PipelineResult(record.id, FileStatus.FAILED, failure)

        logger.info(
            "Pipeline done | record=%s status=%s code=%s elapsed_ms=%.0f",
            result.record_id, result.final_status.value,
            result.failure.code.value if result.failure else "-",
            (time.monotonic() - t0) * 1000,
        )
        return result

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _process(
        self,
        record:     FileRecord,
        extraction: ExtractionResult,
        reporter:   _ProgressReporter,
    ) -> PipelineResult:
        # ---- Compression -----------------------------------------------
        await self._write_progress(record.id, RecordUpdate(
            status=FileStatus.PROCESSING,
            processing_stage=ProcessingStage.COMPRESSION,
            progress=PROGRESS_EXTRACTION_END,
        ))
        await reporter.emit(ProcessingStage.COMPRESSION, PROGRESS_EXTRACTION_END, "Compressing content")

        try:
            description = await self._compressor.compress(extraction.text, record.filename, extraction.file_type)
        except CompressionFailed as exc:
            error = CompressionError(str(exc), details={"reason": exc.reason, **exc.details})
            return await self._fail(record.id, error.to_failure(), reporter)

        await self._write_progress(record.id, RecordUpdate(
            description=description,
            processing_stage=ProcessingStage.COMPRESSION,
            progress=PROGRESS_COMPRESSION_END,
        ))
        await reporter.emit(ProcessingStage.COMPRESSION, PROGRESS_COMPRESSION_END, "Content compressed")

        # ---- Embedding -------------------------------------------------
        await self._write_progress(record.id, RecordUpdate(processing_stage=ProcessingStage.EMBEDDING))
        await reporter.emit(ProcessingStage.EMBEDDING, PROGRESS_COMPRESSION_END, "Generating embedding")

        try:
            embedding = await self._embedder.embed(description)
        except EmbeddingFailed as exc:
            error = EmbeddingError(str(exc), details={"reason": exc.reason, **exc.details})
            return await self._fail(record.id, error.to_failure(), reporter)

        await reporter.emit(ProcessingStage.EMBEDDING, PROGRESS_EMBEDDING_END, "Embedding generated")

        # ---- Finalization ----------------------------------------------
        await reporter.emit(ProcessingStage.FINALIZATION, PROGRESS_EMBEDDING_END, "Finalizing")
        await self._write_terminal(
            record.id,
            RecordUpdate(
                description=description,
                embedding=embedding,
                status=FileStatus.READY,
                processing_stage=ProcessingStage.FINALIZATION,
                progress=PROGRESS_COMPLETE,
                error_message=None,
            ),
            ProcessingStage.FINALIZATION,
        )
        await reporter.emit(
            ProcessingStage.FINALIZATION, PROGRESS_COMPLETE, "Processing complete", FileStatus.READY,
        )
        return PipelineResult(record.id, FileStatus.READY)

    async def _fail(
        self,
        record_id: uuid.UUID,
        failure:   PipelineFailure,
        reporter:  _ProgressReporter,
    ) -> PipelineResult:
        logger.warning(
            "Pipeline stage failed | record=%s stage=%s code=%s message=%s",
            record_id, failure.stage.value if failure.stage else "-", failure.code.value, failure.message,
        )
        await self._write_terminal(record_id, self._failed_update(failure), failure.stage)
        stage = failure.stage or reporter.stage
        await reporter.emit(stage, reporter.progress, failure.message, FileStatus.FAILED)
        return PipelineResult(record_id, FileStatus.FAILED, failure)

    @staticmethod
    def _failed_update(failure: PipelineFailure) -> RecordUpdate:
        return RecordUpdate(
            status=FileStatus.FAILED,
            processing_stage=failure.stage,
            error_message=failure.detail,
        )

    # ------------------------------------------------------------------
    # Pre-record steps (raise; leave no durable trace)
    # ------------------------------------------------------------------

    def _validate(
        self,
        raw_bytes:     bytes,
        original_name: str,
        owner_id:      uuid.UUID | str,
        content_type:  str,
    ) -> tuple[uuid.UUID, str]:
        if not raw_bytes:
            raise InvalidUploadError("File is empty", field_name="file")
        if len(raw_bytes) > self._max_bytes:
            raise FileTooLargeError(len(raw_bytes), self._max_bytes)

        # Strip any directory component the client may have sent
        filename = (original_name or "").replace("\\", "/").rsplit("/", 1)[-1].strip()
        if not filename:
            raise InvalidUploadError("Filename is required", field_name="filename")

        if isinstance(owner_id, uuid.UUID):
            owner = owner_id
        else:
            try:
                owner = uuid.UUID(str(owner_id))
            except (ValueError, AttributeError):
                raise InvalidUploadError("Owner id must be a UUID", field_name="owner_id")

        if not content_type or not content_type.strip():
            raise InvalidUploadError("Content type is required", field_name="content_type")

        return owner, filename

    async def _extract(self, raw_bytes: bytes, filename: str) -> ExtractionResult:
        try:
            return await self._extractor.extract(raw_bytes, filename)
        except ExtractionFailed as exc:
            logger.warning("Extraction failed | file=%s reason=%s error=%s", filename, exc.reason, exc)
            raise ExtractionError(str(exc), details={"reason": exc.reason, **exc.details}) from exc
        except Exception as exc:
            logger.exception("Extraction crashed | file=%s", filename)
            raise PipelineError(
                f"Unexpected extraction error: {exc}",
                stage=ProcessingStage.EXTRACTION,
            ) from exc

    async def _reject_duplicate(self, owner: uuid.UUID, fingerprint: str) -> None:
        try:
            existing = await self._store.find_active_by_fingerprint(owner, fingerprint)
        except RecordStoreError as exc:
            raise PipelineError(
                f"Duplicate check failed: {exc}",
                stage=ProcessingStage.EXTRACTION,
                code=ErrorCode.DATABASE_ERROR,
            ) from exc
        if existing is not None:
            logger.info(
                "Duplicate rejected | owner=%s hash=%s existing=%s",
                owner, fingerprint[:12], existing.id,
            )
            raise DuplicateFileError(existing.id, fingerprint)

    async def _create_record(
        self,
        owner:      uuid.UUID,
        filename:   str,
        extraction: ExtractionResult,
    ) -> FileRecord:
        pending = FileRecord(
            id=uuid.uuid4(),
            owner_id=owner,
            filename=filename,
            file_type=extraction.file_type,
            content_hash=extraction.fingerprint,
            status=FileStatus.PENDING,
            processing_stage=None,
            progress=0,
        )
        try:
            record = await self._store.insert(pending)
        except RecordStoreError as exc:
            logger.error("Record create failed | owner=%s file=%s error=%s", owner, filename, exc)
            raise PipelineError(
                f"Could not create file record: {exc}",
                stage=ProcessingStage.EXTRACTION,
                code=ErrorCode.DATABASE_ERROR,
            ) from exc
        logger.info("Record created | record=%s owner=%s type=%s", record.id, owner, record.file_type.value)
        return record

    # ------------------------------------------------------------------
    # Durable writes
    # ------------------------------------------------------------------

    async def _write_progress(self, record_id: uuid.UUID, changes: RecordUpdate) -> None:
        """Intermediate write: log and carry on if it fails."""
        try:
            await self._store.update(record_id, changes)
        except Exception as exc:
            logger.warning(
                "Progress write failed (continuing) | record=%s changes=%s error=%s",
                record_id, sorted(changes.changes()), exc,
            )

    async def _write_terminal(
        self,
        record_id: uuid.UUID,
        changes:   RecordUpdate,
        stage:     ProcessingStage | None,
    ) -> FileRecord:
        """Finalize / mark-failed write, retried with exponential backoff."""
        last_error: Exception | None = None

        for attempt in range(1, self._write_max_attempts + 1):
            try:
                return await self._store.update(record_id, changes)
            except RecordNotFoundError as exc:
                # deleted by its owner mid-run; nothing left to write to
                raise StoreWriteError(str(exc), stage=stage, record_id=record_id, attempts=attempt) from exc
            except Exception as exc:
                last_error = exc
                if attempt == self._write_max_attempts:
                    break
                delay = self._write_base_delay * (2 ** (attempt - 1))
                logger.warning(
                    "Durable write retry | record=%s attempt=%d/%d delay=%.1fs error=%s",
                    record_id, attempt, self._write_max_attempts, delay, exc,
                )
                await asyncio.sleep(delay)

        logger.error(
            "Durable write exhausted | record=%s attempts=%d error=%s",
            record_id, self._write_max_attempts, last_error,
        )
        raise StoreWriteError(
            f"Could not persist terminal state after {self._write_max_attempts} attempts: {last_error}",
            stage=stage,
            record_id=record_id,
            attempts=self._write_max_attempts,
        ) from last_error
