"""
Tests for the upload orchestrator: state machine, chunk loop, retries,
pause/resume/cancel and integrity handling.
"""

import asyncio
import hashlib
from unittest.mock import AsyncMock

import pytest

from chunked_uploader.models.upload import CHECKSUM_DEFERRED, UploadStatus, ValidationResult
from chunked_uploader.services.file_source import BytesFileSource
from chunked_uploader.services.orchestrator import (
    REATTACH_FILE_MESSAGE,
    UploadCancellationToken,
    UploadStateMachine,
)
from chunked_uploader.services.registry import UploadRegistry
from chunked_uploader.services.session_store import InMemorySessionStore
from chunked_uploader.services.storage_backend import InMemoryStorageBackend
from chunked_uploader.services.upload_errors import (
    FileMismatchError,
    FileNotAvailableError,
    FileValidationError,
    InvalidTransitionError,
    InvalidUploadStateError,
    StorageBackendError,
    UploadError,
)

from conftest import (
    MB,
    BlockingBackend,
    FlakyBackend,
    build_orchestrator,
    make_bytes,
    make_record,
    make_source,
    wait_for,
)


class StubValidator:
    """Returns queued results, then valid ones."""

    def __init__(self, *results):
        self.results = list(results)
        self.calls = 0

    async def validate(self, record):
        self.calls += 1
        if self.results:
            return self.results.pop(0)
        return ValidationResult(is_valid=True, expected_checksum=record.checksum)


class TestUploadStateMachine:

    @pytest.mark.parametrize("current,new", [
        (UploadStatus.PENDING, UploadStatus.UPLOADING),
        (UploadStatus.UPLOADING, UploadStatus.PAUSED),
        (UploadStatus.PAUSED, UploadStatus.RESUMING),
        (UploadStatus.ERROR, UploadStatus.RESUMING),
        (UploadStatus.RESUMING, UploadStatus.UPLOADING),
        (UploadStatus.UPLOADING, UploadStatus.VALIDATING),
        (UploadStatus.VALIDATING, UploadStatus.COMPLETED),
        (UploadStatus.VALIDATING, UploadStatus.ERROR),
        (UploadStatus.PAUSED, UploadStatus.CANCELLED),
        (UploadStatus.COMPLETED, UploadStatus.VALIDATING),
    ])
    def test_allowed(self, current, new):
        UploadStateMachine.check(current, new)

    @pytest.mark.parametrize("current,new", [
        (UploadStatus.PENDING, UploadStatus.COMPLETED),
        (UploadStatus.PAUSED, UploadStatus.UPLOADING),
        (UploadStatus.COMPLETED, UploadStatus.CANCELLED),
        (UploadStatus.CANCELLED, UploadStatus.RESUMING),
        (UploadStatus.ERROR, UploadStatus.UPLOADING),
    ])
    def test_rejected(self, current, new):
        with pytest.raises(InvalidTransitionError):
            UploadStateMachine.check(current, new)

    def test_accepts_plain_status_values(self):
        assert UploadStateMachine.can_transition("uploading", "paused")


class TestCancellationToken:

    @pytest.mark.asyncio
    async def test_cancel_cancels_tracked_tasks(self):
        token = UploadCancellationToken()
        task = token.track(asyncio.create_task(asyncio.sleep(10)))

        token.cancel("paused")
        await asyncio.gather(task, return_exceptions=True)

        assert token.cancelled
        assert token.reason == "paused"
        assert task.cancelled()

    @pytest.mark.asyncio
    async def test_sleep_wakes_on_cancel(self):
        token = UploadCancellationToken()
        sleeper = asyncio.create_task(token.sleep(10))
        await asyncio.sleep(0)

        token.cancel()

        await asyncio.wait_for(sleeper, timeout=1)


class TestStartUpload:

    @pytest.mark.asyncio
    async def test_twelve_megabyte_upload_completes(self):
        backend = InMemoryStorageBackend()
        orch = build_orchestrator(backend)
        data = make_bytes(12 * MB)
        source = make_source(12 * MB)

        upload_id = await orch.start_upload(source)
        record = await orch.wait_until_settled(upload_id)

        assert record.status == UploadStatus.COMPLETED
        assert [c.size for c in record.chunks] == [5 * MB, 5 * MB, 2 * MB]
        assert record.uploaded_count == 3
        assert record.progress_percent == 100.0
        assert record.retry_count == 0
        assert record.checksum == hashlib.sha256(data).hexdigest()
        assert record.validation_result.is_valid
        assert record.download_url is not None
        assert backend.objects[record.object_key].data == data
        await orch.stop()

    @pytest.mark.asyncio
    async def test_too_small_file_rejected(self):
        orch = build_orchestrator(InMemoryStorageBackend())
        with pytest.raises(FileValidationError):
            await orch.start_upload(make_source(MB))
        assert orch.list_uploads() == []

    @pytest.mark.asyncio
    async def test_large_file_defers_checksum(self):
        backend = InMemoryStorageBackend()
        orch = build_orchestrator(backend, deferral_threshold=6 * MB)
        data = make_bytes(12 * MB)

        upload_id = await orch.start_upload(make_source(12 * MB))
        assert orch.get_upload(upload_id).checksum == CHECKSUM_DEFERRED

        await orch.wait_until_settled(upload_id)
        await wait_for(lambda: orch.get_upload(upload_id).checksum != CHECKSUM_DEFERRED)

        assert orch.get_upload(upload_id).checksum == hashlib.sha256(data).hexdigest()
        assert orch.get_upload(upload_id).status == UploadStatus.COMPLETED
        await orch.stop()

    @pytest.mark.asyncio
    async def test_initiate_failure_moves_to_error(self):
        backend = InMemoryStorageBackend()
        backend.initiate_multipart_upload = AsyncMock(side_effect=StorageBackendError("AccessDenied"))
        orch = build_orchestrator(backend)

        upload_id = await orch.start_upload(make_source())
        record = await orch.wait_until_settled(upload_id)

        assert record.status == UploadStatus.ERROR
        assert record.error_message == "AccessDenied"

    @pytest.mark.asyncio
    async def test_notifier_receives_lifecycle_events(self):
        notifier = AsyncMock()
        orch = build_orchestrator(InMemoryStorageBackend(), notifier=notifier)

        upload_id = await orch.start_upload(make_source())
        await orch.wait_until_settled(upload_id)
        await orch.stop()

        event_types = [call.args[1] for call in notifier.await_args_list]
        assert "upload_created" in event_types
        assert "upload_uploading" in event_types
        assert event_types.count("chunk_uploaded") == 3
        assert "upload_completed" in event_types


class TestRetries:

    @pytest.mark.asyncio
    async def test_chunk_failing_twice_then_succeeding(self):
        backend = FlakyBackend(failures={2: 2})
        orch = build_orchestrator(backend, max_retries=3)

        upload_id = await orch.start_upload(make_source())
        record = await orch.wait_until_settled(upload_id)

        assert record.status == UploadStatus.COMPLETED
        assert record.retry_count == 2
        assert backend.upload_part_calls.count(2) == 3

    @pytest.mark.asyncio
    async def test_retry_exhaustion_is_terminal_error(self):
        backend = FlakyBackend(failures={2: 100})
        orch = build_orchestrator(backend, max_retries=3, concurrency=1, auto_resume_attempts=0)

        upload_id = await orch.start_upload(make_source())
        record = await orch.wait_until_settled(upload_id)

        assert record.status == UploadStatus.ERROR
        assert record.retry_count == 3
        assert "ServiceUnavailable" in record.error_message
        assert backend.upload_part_calls == [1, 2, 2, 2]
        assert backend.abort_calls == []

    @pytest.mark.asyncio
    async def test_non_retryable_error_fails_immediately(self):
        backend = FlakyBackend(failures={1: 100}, code="AccessDenied")
        orch = build_orchestrator(backend, concurrency=1)

        upload_id = await orch.start_upload(make_source())
        record = await orch.wait_until_settled(upload_id)

        assert record.status == UploadStatus.ERROR
        assert record.retry_count == 1
        assert backend.upload_part_calls == [1]
        assert not orch.has_scheduled_resume(upload_id)

    @pytest.mark.asyncio
    async def test_part_timeout_is_retried(self):
        backend = BlockingBackend(block_parts={3})
        orch = build_orchestrator(backend, part_timeout=0.05)

        upload_id = await orch.start_upload(make_source())
        record = await orch.wait_until_settled(upload_id)

        assert record.status == UploadStatus.COMPLETED
        assert record.retry_count == 1
        assert backend.upload_part_calls.count(3) == 2

    def test_backoff_is_capped(self):
        orch = build_orchestrator(InMemoryStorageBackend(), retry_base_delay=1.0, max_retry_delay=30.0)
        assert orch._backoff_delay(1) == 2.0
        assert orch._backoff_delay(3) == 8.0
        assert orch._backoff_delay(10) == 30.0


class TestPauseResume:

    @pytest.mark.asyncio
    async def test_pause_after_first_chunk_then_resume(self):
        backend = BlockingBackend(block_parts={2})
        orch = build_orchestrator(backend, concurrency=1)

        upload_id = await orch.start_upload(make_source())
        await wait_for(lambda: 2 in backend.blocked)
        assert orch.get_upload(upload_id).uploaded_count == 1

        paused = await orch.pause_upload(upload_id)
        assert paused.status == UploadStatus.PAUSED
        assert not orch.progress.is_tracking(upload_id)
        await orch.wait_until_settled(upload_id)
        assert orch.get_upload(upload_id).status == UploadStatus.PAUSED

        backend.upload_part_calls.clear()
        await orch.resume_upload(upload_id)
        record = await orch.wait_until_settled(upload_id)

        assert record.status == UploadStatus.COMPLETED
        assert backend.upload_part_calls == [2, 3]
        assert record.uploaded_count == 3
        await orch.stop()

    @pytest.mark.asyncio
    async def test_pause_is_noop_when_not_uploading(self):
        orch = build_orchestrator(InMemoryStorageBackend())
        upload_id = await orch.start_upload(make_source())
        await orch.wait_until_settled(upload_id)

        record = await orch.pause_upload(upload_id)

        assert record.status == UploadStatus.COMPLETED
        await orch.stop()

    @pytest.mark.asyncio
    async def test_backend_is_authoritative_on_resume(self):
        backend = BlockingBackend(block_parts={3})
        orch = build_orchestrator(backend, concurrency=1)

        upload_id = await orch.start_upload(make_source())
        await wait_for(lambda: 3 in backend.blocked)
        await orch.pause_upload(upload_id)
        await orch.wait_until_settled(upload_id)

        # The backend lost part 2 even though it was acknowledged locally
        record = orch.get_upload(upload_id)
        assert record.uploaded_count == 2
        del backend.sessions[record.backend_upload_id].parts[2]

        backend.upload_part_calls.clear()
        await orch.resume_upload(upload_id)
        record = await orch.wait_until_settled(upload_id)

        assert record.status == UploadStatus.COMPLETED
        assert backend.upload_part_calls == [2, 3]
        await orch.stop()

    @pytest.mark.asyncio
    async def test_resume_after_restart_requires_file(self):
        store = InMemorySessionStore()
        backend = BlockingBackend(block_parts={2})
        first = build_orchestrator(backend, registry=UploadRegistry(store), concurrency=1)

        upload_id = await first.start_upload(make_source())
        await wait_for(lambda: 2 in backend.blocked)
        # Simulated crash: the persisted status is still "uploading"
        first._tokens[upload_id].cancel("crash")
        await first.wait_until_settled(upload_id)
        first.progress.stop_all()
        assert store.load()[upload_id].status == "uploading"

        second = build_orchestrator(backend, registry=UploadRegistry(store), concurrency=1)
        second.restore_sessions()
        restored = second.get_upload(upload_id)
        assert restored.status == UploadStatus.PAUSED
        assert restored.error_message == REATTACH_FILE_MESSAGE
        assert restored.file is None

        with pytest.raises(FileNotAvailableError):
            await second.resume_upload(upload_id)
        assert second.get_upload(upload_id).status == UploadStatus.PAUSED

        with pytest.raises(FileMismatchError):
            await second.resume_upload_with_file(upload_id, make_source(13 * MB))

        backend.upload_part_calls.clear()
        await second.resume_upload_with_file(upload_id, make_source())
        record = await second.wait_until_settled(upload_id)

        assert record.status == UploadStatus.COMPLETED
        assert backend.upload_part_calls == [2, 3]
        await second.stop()

    @pytest.mark.asyncio
    async def test_resume_rejected_for_terminal_upload(self):
        orch = build_orchestrator(InMemoryStorageBackend())
        upload_id = await orch.start_upload(make_source())
        await orch.wait_until_settled(upload_id)

        with pytest.raises(InvalidUploadStateError):
            await orch.resume_upload(upload_id)
        await orch.stop()

    @pytest.mark.asyncio
    async def test_error_upload_can_be_resumed(self):
        backend = FlakyBackend(failures={2: 3})
        orch = build_orchestrator(backend, max_retries=3, auto_resume_attempts=0)

        upload_id = await orch.start_upload(make_source())
        assert (await orch.wait_until_settled(upload_id)).status == UploadStatus.ERROR

        await orch.resume_upload(upload_id)
        record = await orch.wait_until_settled(upload_id)

        assert record.status == UploadStatus.COMPLETED
        assert record.error_message is None
        await orch.stop()


class TestCancel:

    @pytest.mark.asyncio
    async def test_cancel_aborts_backend_once(self):
        backend = BlockingBackend(block_parts={1})
        orch = build_orchestrator(backend)

        upload_id = await orch.start_upload(make_source())
        await wait_for(lambda: 1 in backend.blocked)
        backend_upload_id = orch.get_upload(upload_id).backend_upload_id

        record = await orch.cancel_upload(upload_id)
        await orch.cancel_upload(upload_id)
        await orch.wait_until_settled(upload_id)

        assert record.status == UploadStatus.CANCELLED
        assert backend.abort_calls == [backend_upload_id]
        assert backend_upload_id not in backend.sessions
        assert not orch.progress.is_tracking(upload_id)

    @pytest.mark.asyncio
    async def test_cancel_survives_abort_failure(self):
        backend = BlockingBackend(block_parts={1})
        backend.abort_multipart_upload = AsyncMock(side_effect=StorageBackendError("InternalError"))
        orch = build_orchestrator(backend)

        upload_id = await orch.start_upload(make_source())
        await wait_for(lambda: 1 in backend.blocked)

        record = await orch.cancel_upload(upload_id)

        assert record.status == UploadStatus.CANCELLED
        backend.abort_multipart_upload.assert_awaited_once()
        await orch.stop()

    @pytest.mark.asyncio
    async def test_cancel_paused_upload(self):
        backend = BlockingBackend(block_parts={2})
        orch = build_orchestrator(backend, concurrency=1)

        upload_id = await orch.start_upload(make_source())
        await wait_for(lambda: 2 in backend.blocked)
        await orch.pause_upload(upload_id)

        record = await orch.cancel_upload(upload_id)

        assert record.status == UploadStatus.CANCELLED
        assert len(backend.abort_calls) == 1

    @pytest.mark.asyncio
    async def test_remove_only_terminal_uploads(self):
        backend = BlockingBackend(block_parts={1})
        orch = build_orchestrator(backend)

        upload_id = await orch.start_upload(make_source())
        await wait_for(lambda: 1 in backend.blocked)

        with pytest.raises(InvalidUploadStateError):
            await orch.remove_upload(upload_id)

        await orch.cancel_upload(upload_id)
        await orch.remove_upload(upload_id)

        assert orch.get_upload(upload_id) is None


class TestValidation:

    @pytest.mark.asyncio
    async def test_size_mismatch_on_manual_validation(self):
        backend = InMemoryStorageBackend()
        orch = build_orchestrator(backend)
        upload_id = await orch.start_upload(make_source())
        record = await orch.wait_until_settled(upload_id)
        backend.objects[record.object_key].data = make_bytes(11 * MB)

        result = await orch.validate_upload(upload_id)

        assert not result.is_valid
        assert str(12 * MB) in result.error
        assert str(11 * MB) in result.error
        record = orch.get_upload(upload_id)
        assert record.status == UploadStatus.ERROR
        assert record.validation_result.is_valid is False
        await orch.stop()

    @pytest.mark.asyncio
    async def test_manual_validation_failure_restores_completed(self):
        backend = InMemoryStorageBackend()
        orch = build_orchestrator(backend)
        upload_id = await orch.start_upload(make_source())
        record = await orch.wait_until_settled(upload_id)
        del backend.objects[record.object_key]

        with pytest.raises(UploadError):
            await orch.validate_upload(upload_id)

        assert orch.get_upload(upload_id).status == UploadStatus.COMPLETED
        await orch.stop()

    @pytest.mark.asyncio
    async def test_manual_validation_requires_completed(self):
        backend = BlockingBackend(block_parts={1})
        orch = build_orchestrator(backend)
        upload_id = await orch.start_upload(make_source())
        await wait_for(lambda: 1 in backend.blocked)

        with pytest.raises(InvalidUploadStateError):
            await orch.validate_upload(upload_id)
        await orch.cancel_upload(upload_id)

    @pytest.mark.asyncio
    async def test_corrupted_chunk_is_invalidated_and_resume_scheduled(self):
        validator = StubValidator(
            ValidationResult(is_valid=False, corrupted_chunks=[2], error="Chunk 2 corrupted")
        )
        orch = build_orchestrator(InMemoryStorageBackend(), validator=validator, integrity_retry_delay=30)

        upload_id = await orch.start_upload(make_source())
        record = await orch.wait_until_settled(upload_id)

        assert record.status == UploadStatus.ERROR
        assert record.chunks[1].uploaded is False
        assert record.chunks[1].content_tag is None
        assert record.uploaded_count == 2
        assert record.error_message == "Chunk 2 corrupted"
        assert orch.has_scheduled_resume(upload_id)

        await orch.cancel_upload(upload_id)
        assert not orch.has_scheduled_resume(upload_id)

    @pytest.mark.asyncio
    async def test_corrupted_chunk_recovers_automatically(self):
        validator = StubValidator(
            ValidationResult(is_valid=False, corrupted_chunks=[2], error="Chunk 2 corrupted")
        )
        orch = build_orchestrator(InMemoryStorageBackend(), validator=validator, integrity_retry_delay=0.01)

        upload_id = await orch.start_upload(make_source())
        await wait_for(lambda: orch.get_upload(upload_id).status == UploadStatus.COMPLETED)

        assert validator.calls == 2
        assert orch.get_upload(upload_id).uploaded_count == 3
        await orch.stop()

    @pytest.mark.asyncio
    async def test_unattributable_corruption_is_terminal_and_aborts(self):
        validator = StubValidator(ValidationResult(is_valid=False, error="Checksum mismatch"))
        backend = InMemoryStorageBackend()
        backend.abort_multipart_upload = AsyncMock()
        orch = build_orchestrator(backend, validator=validator)

        upload_id = await orch.start_upload(make_source())
        record = await orch.wait_until_settled(upload_id)

        assert record.status == UploadStatus.ERROR
        assert not orch.has_scheduled_resume(upload_id)
        backend.abort_multipart_upload.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_download_reference_failure_keeps_completed(self):
        backend = InMemoryStorageBackend()
        backend.generate_download_reference = AsyncMock(side_effect=StorageBackendError("AccessDenied"))
        orch = build_orchestrator(backend)

        upload_id = await orch.start_upload(make_source())
        record = await orch.wait_until_settled(upload_id)

        assert record.status == UploadStatus.COMPLETED
        assert record.download_url is None


class TestOverview:

    @pytest.mark.asyncio
    async def test_overview_and_clear_completed(self):
        orch = build_orchestrator(InMemoryStorageBackend())
        first = await orch.start_upload(make_source())
        second = await orch.start_upload(make_source(6 * MB, name="other.bin"))
        await orch.wait_until_settled(first)
        await orch.wait_until_settled(second)

        overview = orch.get_overview()
        assert overview["total_uploads"] == 2
        assert overview["completed"] == 2
        assert overview["active_uploads"] == 0

        progress = orch.get_progress(first)
        assert progress.progress_percent == 100.0
        assert progress.uploaded_bytes == 12 * MB
        assert progress.remaining_display == "Calculating..."

        assert sorted(orch.clear_completed_uploads()) == sorted([first, second])
        assert orch.list_uploads() == []
        await orch.stop()

    @pytest.mark.asyncio
    async def test_restore_marks_unstarted_uploads_as_error(self):
        store = InMemorySessionStore()
        UploadRegistry(store).create(make_record(status=UploadStatus.PENDING, upload_id="p"))

        orch = build_orchestrator(InMemoryStorageBackend(), registry=UploadRegistry(store))
        orch.restore_sessions()

        assert orch.get_upload("p").status == UploadStatus.ERROR


class FailingFirstReadSource(BytesFileSource):
    """Raises on the first read only."""

    def __init__(self, name, data):
        super().__init__(name, data)
        self.failed = False

    async def read_range(self, start, end):
        if not self.failed:
            self.failed = True
            raise OSError("transient read failure")
        return await super().read_range(start, end)


class SlowDigestSource(BytesFileSource):
    """Serves chunk-sized reads at once but stalls window-sized ones."""

    async def read_range(self, start, end):
        if end - start <= MB:
            await asyncio.sleep(10)
        return await super().read_range(start, end)


class GatedInitiateBackend(BlockingBackend):
    """Holds session creation once ``gate`` is set."""

    def __init__(self, block_parts=None):
        super().__init__(block_parts)
        self.gate = None
        self.initiating = asyncio.Event()

    async def initiate_multipart_upload(self, key, content_type, metadata):
        if self.gate is not None:
            self.initiating.set()
            await self.gate.wait()
        return await super().initiate_multipart_upload(key, content_type, metadata)


class TestRecovery:

    @pytest.mark.asyncio
    async def test_retry_limit_applies_per_chunk(self):
        backend = FlakyBackend(failures={1: 1, 2: 1, 3: 1})
        orch = build_orchestrator(backend, max_retries=3)

        upload_id = await orch.start_upload(make_source())
        record = await orch.wait_until_settled(upload_id)

        assert record.status == UploadStatus.COMPLETED
        assert record.retry_count == 1
        assert sorted(backend.upload_part_calls) == [1, 1, 2, 2, 3, 3]

    @pytest.mark.asyncio
    async def test_exhausted_retries_resume_automatically(self):
        backend = FlakyBackend(failures={2: 3})
        orch = build_orchestrator(backend, max_retries=3)

        upload_id = await orch.start_upload(make_source())
        await wait_for(lambda: orch.get_upload(upload_id).status == UploadStatus.COMPLETED)

        assert backend.upload_part_calls.count(2) == 4
        assert orch.get_upload(upload_id).error_message is None
        await orch.stop()

    @pytest.mark.asyncio
    async def test_automatic_resumes_are_bounded(self):
        backend = FlakyBackend(failures={2: 100})
        orch = build_orchestrator(backend, max_retries=3, concurrency=1, auto_resume_attempts=2)

        upload_id = await orch.start_upload(make_source())
        await wait_for(
            lambda: backend.upload_part_calls.count(2) == 9
            and orch.get_upload(upload_id).status == UploadStatus.ERROR
        )
        await asyncio.sleep(0.05)

        record = orch.get_upload(upload_id)
        assert record.status == UploadStatus.ERROR
        assert "Retrying" not in record.error_message
        assert backend.upload_part_calls.count(2) == 9
        assert not orch.has_scheduled_resume(upload_id)

    @pytest.mark.asyncio
    async def test_retrying_message_while_resume_is_scheduled(self):
        backend = FlakyBackend(failures={2: 1})
        orch = build_orchestrator(backend, max_retries=1, retry_base_delay=10, max_retry_delay=30)

        upload_id = await orch.start_upload(make_source())
        record = await orch.wait_until_settled(upload_id)

        assert record.status == UploadStatus.ERROR
        assert record.error_message.endswith("Retrying in 20s...")
        assert orch.has_scheduled_resume(upload_id)

        await orch.cancel_upload(upload_id)
        assert not orch.has_scheduled_resume(upload_id)

    @pytest.mark.asyncio
    async def test_checksum_failure_does_not_fail_start(self):
        data = make_bytes(12 * MB)
        orch = build_orchestrator(InMemoryStorageBackend())

        upload_id = await orch.start_upload(FailingFirstReadSource("sample.bin", data))
        assert orch.get_upload(upload_id).checksum == CHECKSUM_DEFERRED

        await wait_for(lambda: orch.get_upload(upload_id).checksum != CHECKSUM_DEFERRED)
        await wait_for(lambda: orch.get_upload(upload_id).status == UploadStatus.COMPLETED)

        assert orch.get_upload(upload_id).checksum == hashlib.sha256(data).hexdigest()
        await orch.stop()

    @pytest.mark.asyncio
    async def test_cancel_stops_background_checksum(self):
        backend = BlockingBackend(block_parts={1})
        orch = build_orchestrator(backend, deferral_threshold=6 * MB)

        upload_id = await orch.start_upload(SlowDigestSource("sample.bin", make_bytes(12 * MB)))
        await wait_for(lambda: 1 in backend.blocked)
        digest_task = orch._checksum_tasks[upload_id]

        await orch.cancel_upload(upload_id)
        await asyncio.gather(digest_task, return_exceptions=True)

        assert digest_task.cancelled()
        assert upload_id not in orch._checksum_tasks
        await orch.wait_until_settled(upload_id)

    @pytest.mark.asyncio
    async def test_cancel_during_session_replacement_discards_new_session(self):
        backend = GatedInitiateBackend(block_parts={2})
        orch = build_orchestrator(backend, concurrency=1)

        upload_id = await orch.start_upload(make_source())
        await wait_for(lambda: 2 in backend.blocked)
        await orch.pause_upload(upload_id)
        await orch.wait_until_settled(upload_id)

        # The multipart session expired while paused
        backend.sessions.clear()
        backend.gate = asyncio.Event()
        await orch.resume_upload(upload_id)
        await backend.initiating.wait()

        await orch.cancel_upload(upload_id)
        backend.gate.set()
        await orch.wait_until_settled(upload_id)

        assert orch.get_upload(upload_id).status == UploadStatus.CANCELLED
        assert backend.sessions == {}
        assert len(backend.abort_calls) == 2
