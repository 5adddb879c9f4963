"""
Upload Ingestion Service

Bridges the HTTP upload handler and the pipeline orchestrator:
  1. Start the pipeline run as a tracked background task (it must outlive
     the request; there is no mid-run cancellation)
  2. Wait only until the pending record exists, or the run fails before that
  3. Return the freshly created record for the 202 response

Pre-record failures (validation, extraction, duplicate, store) are re-raised
to the caller as PipelineError; everything after record creation is
reported through the record itself and the event stream.

On shutdown, drain() waits for in-flight runs so no record is abandoned
mid-stage by a clean stop.
"""

from __future__ import annotations

import asyncio
import logging
import uuid

from fileflow.schemas.files import FileRecord, ProgressUpdate
from fileflow.services.errors import ErrorCode, PipelineError
from fileflow.services.pipeline import PipelineOrchestrator, PipelineResult, ProgressCallback

logger = logging.getLogger(__name__)


class IngestionService:
    """One instance per process, held on app.state."""

    def __init__(self, orchestrator: PipelineOrchestrator) -> None:
        self._orchestrator = orchestrator
        self._tasks: set[asyncio.Task] = set()

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def submit(
        self,
        raw_bytes:    bytes,
        filename:     str,
        owner_id:     uuid.UUID,
        content_type: str,
        on_progress:  ProgressCallback | None = None,
        skip_duplicate_check: bool = False,
    ) -> FileRecord:
        loop = asyncio.get_running_loop()
        created: asyncio.Future[uuid.UUID] = loop.create_future()

        async def _track(update: ProgressUpdate) -> None:
            if update.record_id is not None and not created.done():
                created.set_result(update.record_id)
            if on_progress is not None:
                result = on_progress(update)
                if asyncio.iscoroutine(result):
                    await result

        task = asyncio.create_task(
            self._run(raw_bytes, filename, owner_id, content_type, _track, skip_duplicate_check, created),
            name=f"pipeline:{owner_id}:{filename}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

        # Shielded: a client hanging up must not cancel the run
        try:
            record_id = await asyncio.shield(created)
        except asyncio.CancelledError:
            # nobody is left to read the outcome; _run logs pre-record failures instead
            created.cancel()
            raise

        record = await self._orchestrator.store.get(owner_id, record_id)
        if record is None:
            raise PipelineError(
                "Record disappeared right after creation",
                code=ErrorCode.UNKNOWN_ERROR,
                details={"record_id": str(record_id)},
            )
        return record

    async def _run(
        self,
        raw_bytes:    bytes,
        filename:     str,
        owner_id:     uuid.UUID,
        content_type: str,
        on_progress:  ProgressCallback,
        skip_duplicate_check: bool,
        created:      asyncio.Future,
    ) -> PipelineResult | None:
        try:
            result = await self._orchestrator.run(
                raw_bytes,
                filename,
                owner_id,
                content_type,
                on_progress=on_progress,
                skip_duplicate_check=skip_duplicate_check,
            )
        except Exception as exc:
            if not created.done():
                created.set_exception(exc)
            else:
                logger.error(
                    "Background pipeline error | owner=%s file=%s error=%r",
                    owner_id, filename, exc,
                )
            return None

        if not created.done():
            # every successful run creates a record and reports it
            created.set_result(result.record_id)
        return result

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for in-flight runs (used by the app lifespan on shutdown)."""
        if not self._tasks:
            return
        logger.info("Draining pipeline runs | in_flight=%d", len(self._tasks))
        done, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        if pending:
            logger.warning("Pipeline runs still in flight at shutdown | count=%d", len(pending))
