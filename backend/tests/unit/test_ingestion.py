"""
Unit Tests: IngestionService
═════════════════════════════
Coverage targets:
  ✅ submit() returns the pending record while the run continues
  ✅ Pre-record failures re-raised to the caller
  ✅ Caller cancelled before the record exists → run completes, its
     failure is logged, no unretrieved future left behind
  ✅ drain() waits for in-flight runs
"""

from __future__ import annotations

import asyncio
import gc
import logging
import uuid

import pytest

from fileflow.schemas.files import FileStatus
from fileflow.services.errors import DuplicateFileError
from fileflow.services.ingestion import IngestionService


class _GatedOrchestrator:
    """Holds the run until the gate opens, then fails before any record exists."""

    def __init__(self, store, error: Exception) -> None:
        self.store = store
        self.error = error
        self.gate = asyncio.Event()
        self.started = asyncio.Event()

    async def run(self, *args, **kwargs):
        self.started.set()
        await self.gate.wait()
        raise self.error


@pytest.mark.unit
class TestIngestionService:

    async def test_submit_returns_pending_record(self, make_orchestrator, memory_store, owner_id, sample_txt_bytes):
        service = IngestionService(make_orchestrator())

        record = await service.submit(sample_txt_bytes, "q3.txt", owner_id, "text/plain")
        assert record.status in (FileStatus.PENDING, FileStatus.PROCESSING)
        assert record.filename == "q3.txt"

        await service.drain(timeout=5.0)
        assert service.in_flight == 0
        stored = await memory_store.get(owner_id, record.id)
        assert stored.status == FileStatus.READY

    async def test_pre_record_failure_reraised(self, make_orchestrator, owner_id, sample_txt_bytes):
        service = IngestionService(make_orchestrator())
        await service.submit(sample_txt_bytes, "q3.txt", owner_id, "text/plain")

        with pytest.raises(DuplicateFileError):
            await service.submit(sample_txt_bytes, "copy.txt", owner_id, "text/plain")
        await service.drain(timeout=5.0)

    async def test_cancelled_caller_leaves_failure_logged(self, memory_store, owner_id, caplog):
        orchestrator = _GatedOrchestrator(memory_store, DuplicateFileError(uuid.uuid4(), "f" * 64))
        service = IngestionService(orchestrator)

        loop = asyncio.get_running_loop()
        unhandled: list[dict] = []
        previous_handler = loop.get_exception_handler()
        loop.set_exception_handler(lambda _loop, context: unhandled.append(context))
        try:
            request = asyncio.ensure_future(service.submit(b"hello", "a.txt", owner_id, "text/plain"))
            await orchestrator.started.wait()
            request.cancel()
            with pytest.raises(asyncio.CancelledError):
                await request

            with caplog.at_level(logging.ERROR, logger="fileflow.services.ingestion"):
                orchestrator.gate.set()
                await service.drain(timeout=1.0)

            del request
            gc.collect()
            await asyncio.sleep(0)
        finally:
            loop.set_exception_handler(previous_handler)

        assert service.in_flight == 0
        assert "Background pipeline error" in caplog.text
        assert not [c for c in unhandled if "never retrieved" in c.get("message", "")]
