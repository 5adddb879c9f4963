"""
Unit Tests: PipelineOrchestrator
═════════════════════════════════
Runs the full pipeline over the in-memory store with fake compression and
embedding capabilities.

Coverage targets:
  ✅ 1-byte text file → pending → processing → ready, progress 0..100
  ✅ Progress callback values never decrease; sync and async callbacks
  ✅ Stored snapshots on the change feed: pending, processing, ready
  ✅ Oversize / empty / nameless / bad owner → raised, no record
  ✅ Compression failure → failed / compression / detail / no embedding
  ✅ Embedding failure → failed / embedding
  ✅ Duplicate upload → DuplicateFileError, one record
  ✅ Same bytes under two owners → two records
  ✅ Failed record does not block a re-upload; skip_duplicate_check
  ✅ Finalize write retried; exhausted retries → StoreWriteError
  ✅ Record deleted mid-run → StoreWriteError, no resurrection
  ✅ Callback that raises never aborts a run
"""

from __future__ import annotations

import uuid
from unittest.mock import AsyncMock

import pytest

from fileflow.schemas.files import FileStatus, ProcessingStage, ProgressUpdate
from fileflow.services.errors import (
    DuplicateFileError,
    ErrorCode,
    ExtractionError,
    FileTooLargeError,
    InvalidUploadError,
    PipelineError,
    StoreWriteError,
)
from fileflow.store.base import RecordStoreError
from tests.conftest import EMBEDDING_DIM, FakeCompressor, FakeEmbedder


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

class _Recorder:
    def __init__(self) -> None:
        self.updates: list[ProgressUpdate] = []

    def __call__(self, update: ProgressUpdate) -> None:
        self.updates.append(update)

    @property
    def progress(self) -> list[int]:
        return [u.progress for u in self.updates]


class _FlakyStore:
    """Delegates to a real store; the first `failures` terminal writes raise."""

    def __init__(self, inner, failures: int) -> None:
        self._inner = inner
        self.failures = failures
        self.terminal_attempts = 0

    def __getattr__(self, name):
        return getattr(self._inner, name)

    async def update(self, record_id, changes):
        if changes.changes().get("status") in (FileStatus.READY, FileStatus.FAILED):
            self.terminal_attempts += 1
            if self.terminal_attempts <= self.failures:
                raise RecordStoreError("connection reset")
        return await self._inner.update(record_id, changes)


# ─────────────────────────────────────────────────────────────────────────────
# Happy path
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestPipelineHappyPath:

    async def test_one_byte_text_file_reaches_ready(self, make_orchestrator, memory_store, owner_id):
        recorder = _Recorder()
        result = await make_orchestrator().run(b"a", "note.txt", owner_id, "text/plain", on_progress=recorder)

        assert result.succeeded
        record = await memory_store.get(owner_id, result.record_id)
        assert record.status == FileStatus.READY
        assert record.progress == 100
        assert record.processing_stage == ProcessingStage.FINALIZATION
        assert record.description
        assert len(record.embedding) == EMBEDDING_DIM
        assert record.error_message is None

    async def test_progress_is_non_decreasing_and_ends_at_100(self, make_orchestrator, owner_id, sample_txt_bytes):
        recorder = _Recorder()
        await make_orchestrator().run(sample_txt_bytes, "q3.txt", owner_id, "text/plain", on_progress=recorder)

        assert recorder.progress == sorted(recorder.progress)
        assert recorder.progress[0] == 0
        assert recorder.progress[-1] == 100
        assert recorder.updates[-1].terminal_status == FileStatus.READY

    async def test_stored_status_sequence_and_progress(
        self, make_orchestrator, memory_store, owner_id, sample_txt_bytes,
    ):
        feed = await memory_store.open_feed(owner_id)
        result = await make_orchestrator().run(sample_txt_bytes, "q3.txt", owner_id, "text/plain")
        await feed.close()

        snapshots = [change.record async for change in feed if change.record is not None]
        assert all(s.id == result.record_id for s in snapshots)

        statuses = [s.status for s in snapshots]
        assert statuses[0] == FileStatus.PENDING
        assert FileStatus.PROCESSING in statuses
        assert statuses[-1] == FileStatus.READY
        assert FileStatus.PENDING not in statuses[1:]
        assert statuses.index(FileStatus.READY) == len(statuses) - 1

        progress = [s.progress for s in snapshots]
        assert progress == sorted(progress)
        assert progress[-1] == 100

    async def test_record_id_reported_once_record_exists(self, make_orchestrator, owner_id):
        recorder = _Recorder()
        result = await make_orchestrator().run(b"hello", "a.txt", owner_id, "text/plain", on_progress=recorder)

        assert recorder.updates[0].record_id is None
        assert recorder.updates[-1].record_id == result.record_id
        assert all(u.owner_id == owner_id for u in recorder.updates)

    async def test_stages_seen_in_order(self, make_orchestrator, owner_id):
        recorder = _Recorder()
        await make_orchestrator().run(b"hello", "a.txt", owner_id, "text/plain", on_progress=recorder)

        order = [ProcessingStage.EXTRACTION, ProcessingStage.COMPRESSION,
                 ProcessingStage.EMBEDDING, ProcessingStage.FINALIZATION]
        seen = []
        for update in recorder.updates:
            if not seen or seen[-1] != update.stage:
                seen.append(update.stage)
        assert seen == order

    async def test_async_callback_is_awaited(self, make_orchestrator, owner_id):
        callback = AsyncMock()
        await make_orchestrator().run(b"hello", "a.txt", owner_id, "text/plain", on_progress=callback)
        assert callback.await_count >= 5

    async def test_raising_callback_does_not_abort_run(self, make_orchestrator, owner_id):
        def boom(update):
            raise RuntimeError("UI went away")

        result = await make_orchestrator().run(b"hello", "a.txt", owner_id, "text/plain", on_progress=boom)
        assert result.succeeded

    async def test_compressor_receives_extracted_text(self, make_orchestrator, fake_compressor, owner_id):
        await make_orchestrator().run(b"def f(): pass", "mod.py", owner_id, "text/x-python")
        text, filename, file_type = fake_compressor.calls[0]
        assert text == "def f(): pass"
        assert filename == "mod.py"
        assert file_type.value == "code"

    async def test_directory_components_stripped_from_name(self, make_orchestrator, memory_store, owner_id):
        result = await make_orchestrator().run(b"x", "../../etc/notes.txt", owner_id, "text/plain")
        record = await memory_store.get(owner_id, result.record_id)
        assert record.filename == "notes.txt"


# ─────────────────────────────────────────────────────────────────────────────
# Pre-record failures (raised, no durable trace)
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestPipelineValidation:

    async def test_oversize_file_raises_without_record(
        self, make_orchestrator, memory_store, owner_id, oversized_file_bytes,
    ):
        with pytest.raises(FileTooLargeError) as exc_info:
            await make_orchestrator().run(oversized_file_bytes, "big.txt", owner_id, "text/plain")

        assert exc_info.value.code == ErrorCode.VALIDATION_ERROR
        assert await memory_store.list_by_owner(owner_id) == []

    async def test_empty_file_raises(self, make_orchestrator, owner_id):
        with pytest.raises(InvalidUploadError):
            await make_orchestrator().run(b"", "empty.txt", owner_id, "text/plain")

    async def test_missing_filename_raises(self, make_orchestrator, owner_id):
        with pytest.raises(InvalidUploadError) as exc_info:
            await make_orchestrator().run(b"x", "  ", owner_id, "text/plain")
        assert exc_info.value.field_name == "filename"

    async def test_non_uuid_owner_raises(self, make_orchestrator):
        with pytest.raises(InvalidUploadError) as exc_info:
            await make_orchestrator().run(b"x", "a.txt", "dev-user", "text/plain")
        assert exc_info.value.field_name == "owner_id"

    async def test_missing_content_type_raises(self, make_orchestrator, owner_id):
        with pytest.raises(InvalidUploadError):
            await make_orchestrator().run(b"x", "a.txt", owner_id, "")

    async def test_unreadable_pdf_is_extraction_error(self, make_orchestrator, memory_store, owner_id):
        with pytest.raises(ExtractionError) as exc_info:
            await make_orchestrator().run(b"not a pdf at all", "broken.pdf", owner_id, "application/pdf")

        assert exc_info.value.stage == ProcessingStage.EXTRACTION
        assert await memory_store.list_by_owner(owner_id) == []

    async def test_store_outage_before_create_is_database_error(self, make_orchestrator, memory_store, owner_id):
        memory_store.insert = AsyncMock(side_effect=RecordStoreError("db down"))
        with pytest.raises(PipelineError) as exc_info:
            await make_orchestrator().run(b"x", "a.txt", owner_id, "text/plain")
        assert exc_info.value.code == ErrorCode.DATABASE_ERROR


# ─────────────────────────────────────────────────────────────────────────────
# Post-record failures (recorded on the record)
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestPipelineStageFailures:

    async def test_compression_failure_marks_record_failed(self, make_orchestrator, memory_store, owner_id):
        recorder = _Recorder()
        result = await make_orchestrator(compressor=FakeCompressor(fail=True)).run(
            b"hello", "a.txt", owner_id, "text/plain", on_progress=recorder,
        )

        assert result.final_status == FileStatus.FAILED
        assert result.failure.code == ErrorCode.COMPRESSION_ERROR

        record = await memory_store.get(owner_id, result.record_id)
        assert record.status == FileStatus.FAILED
        assert record.processing_stage == ProcessingStage.COMPRESSION
        assert record.error_message.startswith("[COMPRESSION_ERROR]")
        assert record.embedding is None
        assert recorder.updates[-1].terminal_status == FileStatus.FAILED

    async def test_embedding_failure_marks_record_failed(self, make_orchestrator, memory_store, owner_id):
        result = await make_orchestrator(embedder=FakeEmbedder(fail=True)).run(
            b"hello", "a.txt", owner_id, "text/plain",
        )

        record = await memory_store.get(owner_id, result.record_id)
        assert record.status == FileStatus.FAILED
        assert record.processing_stage == ProcessingStage.EMBEDDING
        assert record.error_message.startswith("[EMBEDDING_ERROR]")
        assert record.description  # compression output is kept

    async def test_unexpected_crash_after_create_is_unknown_error(self, make_orchestrator, memory_store, owner_id):
        compressor = FakeCompressor()
        compressor.compress = AsyncMock(side_effect=KeyError("boom"))
        result = await make_orchestrator(compressor=compressor).run(b"hello", "a.txt", owner_id, "text/plain")

        assert result.failure.code == ErrorCode.UNKNOWN_ERROR
        record = await memory_store.get(owner_id, result.record_id)
        assert record.status == FileStatus.FAILED
        assert record.error_message.startswith("[UNKNOWN_ERROR]")


# ─────────────────────────────────────────────────────────────────────────────
# Per-owner duplicate detection
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestPipelineDuplicates:

    async def test_identical_bytes_same_owner_rejected(self, make_orchestrator, memory_store, owner_id):
        orchestrator = make_orchestrator()
        first = await orchestrator.run(b"same bytes", "a.txt", owner_id, "text/plain")

        with pytest.raises(DuplicateFileError) as exc_info:
            await orchestrator.run(b"same bytes", "b.txt", owner_id, "text/plain")

        assert exc_info.value.existing_record_id == first.record_id
        assert len(await memory_store.list_by_owner(owner_id)) == 1

    async def test_identical_bytes_two_owners_both_processed(
        self, make_orchestrator, memory_store, owner_id, other_owner_id,
    ):
        orchestrator = make_orchestrator()
        a = await orchestrator.run(b"same bytes", "a.txt", owner_id, "text/plain")
        b = await orchestrator.run(b"same bytes", "a.txt", other_owner_id, "text/plain")

        assert a.record_id != b.record_id
        assert len(await memory_store.list_by_owner(owner_id)) == 1
        assert len(await memory_store.list_by_owner(other_owner_id)) == 1

    async def test_failed_record_does_not_block_reupload(self, make_orchestrator, owner_id):
        failing = make_orchestrator(compressor=FakeCompressor(fail=True))
        first = await failing.run(b"retry me", "a.txt", owner_id, "text/plain")
        assert first.final_status == FileStatus.FAILED

        second = await make_orchestrator().run(b"retry me", "a.txt", owner_id, "text/plain")
        assert second.succeeded

    async def test_skip_duplicate_check(self, make_orchestrator, memory_store, owner_id):
        orchestrator = make_orchestrator()
        await orchestrator.run(b"same", "a.txt", owner_id, "text/plain")
        await orchestrator.run(b"same", "a.txt", owner_id, "text/plain", skip_duplicate_check=True)
        assert len(await memory_store.list_by_owner(owner_id)) == 2


# ─────────────────────────────────────────────────────────────────────────────
# Durable terminal writes
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestPipelineDurableWrites:

    async def test_finalize_retried_until_durable(self, make_orchestrator, memory_store, owner_id):
        flaky = _FlakyStore(memory_store, failures=2)
        result = await make_orchestrator(store=flaky, write_max_attempts=3).run(
            b"hello", "a.txt", owner_id, "text/plain",
        )

        assert result.succeeded
        assert flaky.terminal_attempts == 3

    async def test_exhausted_finalize_raises_and_keeps_last_state(self, make_orchestrator, memory_store, owner_id):
        flaky = _FlakyStore(memory_store, failures=10)
        recorder = _Recorder()

        with pytest.raises(StoreWriteError) as exc_info:
            await make_orchestrator(store=flaky, write_max_attempts=3).run(
                b"hello", "a.txt", owner_id, "text/plain", on_progress=recorder,
            )

        assert exc_info.value.code == ErrorCode.DATABASE_ERROR
        assert flaky.terminal_attempts == 3
        record = await memory_store.get(owner_id, recorder.updates[-1].record_id)
        assert record.status == FileStatus.PROCESSING
        assert record.progress == 75

    async def test_record_deleted_mid_run_is_not_resurrected(self, make_orchestrator, memory_store, owner_id):
        async def delete_when_embedding(update: ProgressUpdate) -> None:
            if update.stage == ProcessingStage.EMBEDDING and update.record_id:
                await memory_store.delete(owner_id, update.record_id)

        with pytest.raises(StoreWriteError):
            await make_orchestrator().run(
                b"hello", "a.txt", owner_id, "text/plain", on_progress=delete_when_embedding,
            )

        assert await memory_store.list_by_owner(owner_id) == []

    async def test_run_ids_are_unique(self, make_orchestrator, owner_id):
        orchestrator = make_orchestrator()
        ids = {
            (await orchestrator.run(f"file {i}".encode(), f"{i}.txt", owner_id, "text/plain")).record_id
            for i in range(5)
        }
        assert len(ids) == 5
        assert all(isinstance(i, uuid.UUID) for i in ids)
