import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from chunked_uploader.config import settings
from chunked_uploader.models.upload import (
    CHECKSUM_DEFERRED,
    TERMINAL_STATUSES,
    ChunkDescriptor,
    UploadProgress,
    UploadRecord,
    UploadStatus,
    ValidationResult,
)
from chunked_uploader.services.checksum import ChecksumEngine
from chunked_uploader.services.chunk_planner import plan_chunks, validate_file_size
from chunked_uploader.services.file_source import FileSource
from chunked_uploader.services.progress import ProgressManager, format_speed, format_time_remaining
from chunked_uploader.services.registry import UploadRegistry
from chunked_uploader.services.storage_backend import StorageBackend, UploadedPart
from chunked_uploader.services.upload_errors import (
    FileMismatchError,
    FileNotAvailableError,
    InvalidTransitionError,
    InvalidUploadStateError,
    UploadError,
    UploadErrorType,
    UploadInterrupted,
    classify_storage_error,
    is_no_such_upload,
)
from chunked_uploader.services.validator import IntegrityValidator

logger = logging.getLogger(__name__)

Notifier = Callable[[str, str, Dict[str, Any]], Awaitable[None]]

REATTACH_FILE_MESSAGE = "Please re-select this file to resume upload"


class UploadStateMachine:
    """Validates upload status transitions."""

    VALID_TRANSITIONS = {
        UploadStatus.PENDING: {UploadStatus.UPLOADING, UploadStatus.ERROR, UploadStatus.CANCELLED},
        UploadStatus.UPLOADING: {
            UploadStatus.PAUSED,
            UploadStatus.VALIDATING,
            UploadStatus.ERROR,
            UploadStatus.CANCELLED,
        },
        UploadStatus.PAUSED: {UploadStatus.RESUMING, UploadStatus.CANCELLED},
        UploadStatus.ERROR: {UploadStatus.RESUMING, UploadStatus.CANCELLED},
        UploadStatus.RESUMING: {
            UploadStatus.UPLOADING,
            UploadStatus.PAUSED,
            UploadStatus.ERROR,
            UploadStatus.CANCELLED,
        },
        UploadStatus.VALIDATING: {UploadStatus.COMPLETED, UploadStatus.ERROR, UploadStatus.CANCELLED},
        # Only manual re-validation leaves COMPLETED
        UploadStatus.COMPLETED: {UploadStatus.VALIDATING},
        UploadStatus.CANCELLED: set(),
    }

    @staticmethod
    def can_transition(current, new) -> bool:
        return UploadStatus(new) in UploadStateMachine.VALID_TRANSITIONS.get(UploadStatus(current), set())

    @staticmethod
    def check(current, new) -> None:
        if not UploadStateMachine.can_transition(current, new):
            raise InvalidTransitionError(f"Invalid transition: {UploadStatus(current).value} -> {UploadStatus(new).value}")


class UploadCancellationToken:
    """Cancellation handle for one run of the chunk loop and its in-flight requests."""

    def __init__(self):
        self._event = asyncio.Event()
        self._tasks: Set[asyncio.Task] = set()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def track(self, task: asyncio.Task) -> asyncio.Task:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def cancel(self, reason: str = "") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        for task in list(self._tasks):
            task.cancel()

    async def sleep(self, delay: float) -> None:
        """Sleep for ``delay`` seconds, waking early if cancelled."""
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass


@dataclass
class _RetryBudget:
    """Highest per-chunk failure count seen in one run of the chunk loop."""
    peak: int = 0


class UploadOrchestrator:
    """Drives uploads through their state machine against a multipart storage backend."""

    def __init__(
        self,
        backend: StorageBackend,
        registry: Optional[UploadRegistry] = None,
        *,
        concurrency: int = 3,
        max_retries: int = 3,
        retry_base_delay: float = 1.0,
        max_retry_delay: float = 30.0,
        part_timeout: Optional[float] = 300.0,
        progress_interval: float = 1.0,
        checksum_engine: Optional[ChecksumEngine] = None,
        validator: Optional[IntegrityValidator] = None,
        notifier: Optional[Notifier] = None,
        deferral_threshold: int = 1024 * 1024 * 1024,
        integrity_retry_delay: float = 2.0,
        auto_resume_attempts: int = 3,
        download_ttl: int = 86400,
        key_prefix: str = "",
    ):
        if not 1 <= concurrency <= 10:
            raise ValueError(f"concurrency must be between 1 and 10, got {concurrency}")
        self.backend = backend
        self.registry = registry or UploadRegistry()
        self.concurrency = concurrency
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self.max_retry_delay = max_retry_delay
        self.part_timeout = part_timeout
        self.checksum_engine = checksum_engine or ChecksumEngine()
        self.validator = validator or IntegrityValidator(backend, self.checksum_engine)
        self.notifier = notifier
        self.deferral_threshold = deferral_threshold
        self.integrity_retry_delay = integrity_retry_delay
        self.auto_resume_attempts = auto_resume_attempts
        self.download_ttl = download_ttl
        self.key_prefix = key_prefix

        self.progress = ProgressManager(self.registry, progress_interval, on_sample=self._on_progress_sample)

        self._tokens: Dict[str, UploadCancellationToken] = {}
        self._runs: Dict[str, asyncio.Task] = {}
        self._scheduled_resumes: Dict[str, asyncio.Task] = {}
        self._aborted: Set[str] = set()
        self._auto_resumes: Dict[str, int] = {}
        self._checksum_tasks: Dict[str, asyncio.Task] = {}
        self._notify_tasks: Set[asyncio.Task] = set()

    # Notifications

    def _notify(self, upload_id: str, event_type: str, data: Dict[str, Any]) -> None:
        if self.notifier is None:
            return

        async def _send():
            try:
                await self.notifier(upload_id, event_type, data)
            except Exception as e:
                logger.warning(f"Failed to deliver {event_type} for upload {upload_id}: {e}")

        task = asyncio.create_task(_send())
        self._notify_tasks.add(task)
        task.add_done_callback(self._notify_tasks.discard)

    async def _on_progress_sample(self, record: UploadRecord) -> None:
        self._notify(record.id, "progress", {
            "progress": record.progress_percent,
            "speed": record.speed,
            "remaining_time": record.remaining_time,
        })

    # State handling

    def _transition(self, upload_id: str, new_status: UploadStatus, reason: str = "", **changes) -> UploadRecord:
        record = self.registry.require(upload_id)
        UploadStateMachine.check(record.status, new_status)

        # The progress timer goes down in the same step that ends activity.
        if new_status != UploadStatus.UPLOADING:
            self.progress.stop(upload_id)
            changes.setdefault("speed", 0.0)
            changes.setdefault("remaining_time", None)

        record = self.registry.update(upload_id, status=new_status, **changes)
        if new_status == UploadStatus.UPLOADING:
            self.progress.start(upload_id)

        logger.info("Upload %s -> %s%s", upload_id, UploadStatus(new_status).value, f" ({reason})" if reason else "")
        self._notify(upload_id, f"upload_{UploadStatus(new_status).value}", {
            "status": record.status,
            "progress": record.progress_percent,
            "error_message": record.error_message,
        })
        return record

    def _is_active(self, upload_id: str, token: UploadCancellationToken) -> bool:
        if token.cancelled or self._tokens.get(upload_id) is not token:
            return False
        record = self.registry.get(upload_id)
        return record is not None and record.status == UploadStatus.UPLOADING

    def _ensure_active(self, upload_id: str, token: UploadCancellationToken) -> None:
        if not self._is_active(upload_id, token):
            raise UploadInterrupted(f"Upload {upload_id} is no longer active")

    def _backoff_delay(self, attempt: int) -> float:
        return min(self.retry_base_delay * (2 ** attempt), self.max_retry_delay)

    def _launch(self, upload_id: str, runner: Callable[[UploadCancellationToken], Awaitable[None]]) -> asyncio.Task:
        previous = self._tokens.get(upload_id)
        if previous is not None:
            previous.cancel("superseded")
        token = UploadCancellationToken()
        self._tokens[upload_id] = token

        async def _run():
            try:
                await runner(token)
            except Exception as e:
                # Last-resort guard; the runners handle their own expected failures.
                logger.error(f"Unexpected failure while running upload {upload_id}: {e}", exc_info=True)
                self._fail(upload_id, classify_storage_error(e, upload_id))

        task = asyncio.create_task(_run())
        self._runs[upload_id] = task
        return task

    def _fail(self, upload_id: str, error: UploadError, auto_resume: bool = False) -> None:
        """Move the upload to ERROR; retryable failures may schedule an automatic resume."""
        record = self.registry.get(upload_id)
        if record is None or not UploadStateMachine.can_transition(record.status, UploadStatus.ERROR):
            return

        attempt = self._auto_resumes.get(upload_id, 0) + 1
        if not (auto_resume and error.retryable and attempt <= self.auto_resume_attempts):
            self._transition(upload_id, UploadStatus.ERROR, reason=error.code, error_message=error.message)
            return

        self._auto_resumes[upload_id] = attempt
        delay = self._backoff_delay(attempt)
        self._transition(
            upload_id,
            UploadStatus.ERROR,
            reason=error.code,
            error_message=f"{error.message}. Retrying in {delay:.0f}s...",
        )
        logger.info(f"Automatic resume {attempt}/{self.auto_resume_attempts} of upload {upload_id} in {delay:.1f}s")
        self._schedule_resume(upload_id, delay)

    # Public API

    async def start_upload(self, file: FileSource, content_type: Optional[str] = None) -> str:
        """Register a new upload for ``file`` and start sending it in the background."""
        validate_file_size(file.size)

        upload_id = str(uuid.uuid4())
        chunks = plan_chunks(file.size)
        deferred = file.size > self.deferral_threshold
        checksum = CHECKSUM_DEFERRED
        if not deferred:
            try:
                checksum = await self.checksum_engine.compute_file_checksum(file)
            except Exception as e:
                logger.warning(f"Checksum of {file.name} failed, retrying in the background: {e}")
                deferred = True

        now = datetime.now()
        self.registry.create(UploadRecord(
            id=upload_id,
            file_name=file.name,
            file_size=file.size,
            content_type=content_type or file.content_type,
            object_key=f"{self.key_prefix}{upload_id}/{file.name}",
            chunks=chunks,
            status=UploadStatus.PENDING,
            checksum=checksum,
            created_at=now,
            updated_at=now,
            file=file,
        ))
        self._notify(upload_id, "upload_created", {"file_name": file.name, "file_size": file.size})

        if deferred:
            async def _store_checksum(digest: str):
                record = self.registry.get(upload_id)
                if record is not None and record.checksum == CHECKSUM_DEFERRED:
                    self.registry.update(upload_id, checksum=digest)

            task = self.checksum_engine.compute_deferred(file, _store_checksum, label=upload_id)
            self._checksum_tasks[upload_id] = task
            task.add_done_callback(lambda _: self._checksum_tasks.pop(upload_id, None))

        self._launch(upload_id, lambda token: self._start_run(upload_id, token))
        return upload_id

    async def pause_upload(self, upload_id: str) -> UploadRecord:
        record = self.registry.require(upload_id)
        if record.status != UploadStatus.UPLOADING:
            return record
        token = self._tokens.get(upload_id)
        if token is not None:
            token.cancel("paused")
        return self._transition(upload_id, UploadStatus.PAUSED, reason="user_pause")

    async def resume_upload(self, upload_id: str) -> UploadRecord:
        record = await self._resume(upload_id)
        # A caller-driven resume starts a fresh automatic-resume allowance.
        self._auto_resumes.pop(upload_id, None)
        return record

    async def _resume(self, upload_id: str) -> UploadRecord:
        record = self.registry.require(upload_id)
        if record.status in (UploadStatus.UPLOADING, UploadStatus.RESUMING, UploadStatus.VALIDATING):
            return record
        if record.status not in (UploadStatus.PAUSED, UploadStatus.ERROR):
            raise InvalidUploadStateError(f"Upload {upload_id} cannot be resumed from {record.status}")

        self._cancel_scheduled_resume(upload_id)
        record = self._transition(upload_id, UploadStatus.RESUMING, reason="resume", error_message=None)

        if record.file is None:
            self._transition(upload_id, UploadStatus.PAUSED, reason="file_missing", error_message=REATTACH_FILE_MESSAGE)
            raise FileNotAvailableError(REATTACH_FILE_MESSAGE)

        self._launch(upload_id, lambda token: self._resume_run(upload_id, token))
        return record

    async def resume_upload_with_file(self, upload_id: str, file: FileSource) -> UploadRecord:
        record = self.registry.require(upload_id)
        if not file.matches(record.file_name, record.file_size):
            raise FileMismatchError(
                f"Selected file ({file.name}, {file.size} bytes) does not match upload "
                f"({record.file_name}, {record.file_size} bytes)"
            )
        self.registry.update(upload_id, file=file)
        return await self.resume_upload(upload_id)

    async def cancel_upload(self, upload_id: str) -> UploadRecord:
        record = self.registry.require(upload_id)
        if record.status in TERMINAL_STATUSES:
            return record

        token = self._tokens.get(upload_id)
        if token is not None:
            token.cancel("cancelled")
        self._cancel_scheduled_resume(upload_id)
        self._cancel_checksum(upload_id)
        self._auto_resumes.pop(upload_id, None)
        record = self._transition(upload_id, UploadStatus.CANCELLED, reason="user_cancel", error_message=None)
        await self._abort_backend_session(record)
        return self.registry.require(upload_id)

    async def validate_upload(self, upload_id: str) -> ValidationResult:
        """Re-validate a completed upload on request."""
        record = self.registry.require(upload_id)
        if record.status != UploadStatus.COMPLETED:
            raise InvalidUploadStateError(f"Only completed uploads can be validated, upload {upload_id} is {record.status}")

        record = self._transition(upload_id, UploadStatus.VALIDATING, reason="manual_validation")
        try:
            result = await self.validator.validate(record)
        except Exception as e:
            error = classify_storage_error(e, upload_id)
            logger.warning(f"Manual validation of upload {upload_id} failed: {error.message}")
            self._transition(upload_id, UploadStatus.COMPLETED, reason="validation_failed_restored")
            raise error from e
        await self._apply_validation(upload_id, result)
        return result

    async def remove_upload(self, upload_id: str) -> None:
        record = self.registry.require(upload_id)
        if record.status not in TERMINAL_STATUSES:
            raise InvalidUploadStateError(f"Upload {upload_id} is {record.status}; cancel it before removing")
        self._forget(upload_id)
        self.registry.delete(upload_id)

    def get_upload(self, upload_id: str) -> Optional[UploadRecord]:
        return self.registry.get(upload_id)

    def list_uploads(self) -> List[UploadRecord]:
        return self.registry.list_all()

    def get_progress(self, upload_id: str) -> UploadProgress:
        record = self.registry.require(upload_id)
        return UploadProgress(
            upload_id=record.id,
            status=record.status,
            progress_percent=record.progress_percent,
            uploaded_chunks=record.uploaded_count,
            total_chunks=record.total_count,
            uploaded_bytes=record.uploaded_bytes,
            total_bytes=record.file_size,
            speed=record.speed,
            remaining_time=record.remaining_time,
            retry_count=record.retry_count,
            error_message=record.error_message,
            speed_display=format_speed(record.speed),
            remaining_display=format_time_remaining(record.remaining_time),
        )

    def get_overview(self) -> Dict[str, Any]:
        total_speed = self.registry.total_speed()
        return {
            "total_uploads": len(self.registry.list_all()),
            "active_uploads": len(self.registry.active_uploads()),
            "uploading": self.registry.count_by_status(UploadStatus.UPLOADING),
            "paused": self.registry.count_by_status(UploadStatus.PAUSED),
            "errored": self.registry.count_by_status(UploadStatus.ERROR),
            "completed": self.registry.count_by_status(UploadStatus.COMPLETED),
            "total_progress": self.registry.total_progress(),
            "total_speed": total_speed,
            "total_speed_display": format_speed(total_speed),
        }

    def clear_completed_uploads(self) -> List[str]:
        removed = self.registry.clear_completed()
        for upload_id in removed:
            self._forget(upload_id)
        return removed

    def has_scheduled_resume(self, upload_id: str) -> bool:
        task = self._scheduled_resumes.get(upload_id)
        return task is not None and not task.done()

    def restore_sessions(self) -> List[UploadRecord]:
        """
        Load persisted uploads after a restart.

        File handles do not survive a restart, so uploads that were moving are
        parked as PAUSED (or ERROR if they never started or were mid-validation)
        until the caller re-attaches the file.
        """
        restored = self.registry.load()
        for record in restored:
            if record.status in (UploadStatus.UPLOADING, UploadStatus.RESUMING):
                self._transition(record.id, UploadStatus.PAUSED, reason="restored", error_message=REATTACH_FILE_MESSAGE)
            elif record.status in (UploadStatus.PENDING, UploadStatus.VALIDATING):
                self._transition(record.id, UploadStatus.ERROR, reason="restored", error_message=REATTACH_FILE_MESSAGE)
        return self.registry.list_all()

    async def wait_until_settled(self, upload_id: str) -> UploadRecord:
        """Wait for the current background run of an upload (and any run it hands over to)."""
        while True:
            task = self._runs.get(upload_id)
            if task is None or task.done():
                return self.registry.require(upload_id)
            await asyncio.gather(task, return_exceptions=True)

    async def stop(self):
        logger.info("Stopping upload orchestrator")
        for upload_id, token in list(self._tokens.items()):
            token.cancel("shutdown")
            record = self.registry.get(upload_id)
            if record is not None and record.status == UploadStatus.UPLOADING:
                self._transition(upload_id, UploadStatus.PAUSED, reason="shutdown")
        for upload_id in list(self._scheduled_resumes):
            self._cancel_scheduled_resume(upload_id)
        await asyncio.gather(*self._runs.values(), return_exceptions=True)
        self._runs.clear()
        self.progress.stop_all()
        await self.checksum_engine.shutdown()
        if self._notify_tasks:
            await asyncio.gather(*list(self._notify_tasks), return_exceptions=True)

    # Background runs

    async def _start_run(self, upload_id: str, token: UploadCancellationToken) -> None:
        record = self.registry.require(upload_id)
        try:
            backend_upload_id = await self.backend.initiate_multipart_upload(
                record.object_key,
                record.content_type,
                {
                    "original-size": str(record.file_size),
                    "checksum": record.checksum or "",
                    "upload-id": record.id,
                },
            )
        except Exception as e:
            error = classify_storage_error(e, upload_id)
            logger.error(f"Could not initiate multipart upload for {upload_id}: {error.message}")
            self._fail(upload_id, error, auto_resume=True)
            return

        if token.cancelled:
            # Cancelled while the session was being created
            await self._abort_backend_session(self.registry.update(upload_id, backend_upload_id=backend_upload_id))
            return

        self.registry.update(upload_id, backend_upload_id=backend_upload_id, retry_count=0)
        self._transition(upload_id, UploadStatus.UPLOADING, reason="started")
        await self._run_chunk_loop(upload_id, token)

    async def _resume_run(self, upload_id: str, token: UploadCancellationToken) -> None:
        record = self.registry.require(upload_id)

        # Rebuild the plan from the size alone, carrying local acknowledgements over.
        local = {chunk.index: chunk for chunk in record.chunks}
        plan = plan_chunks(record.file_size)
        for chunk in plan:
            previous = local.get(chunk.index)
            if previous is not None:
                chunk.uploaded = previous.uploaded
                chunk.content_tag = previous.content_tag

        try:
            plan, backend_upload_id = await self._reconcile(record, plan)
        except Exception as e:
            error = classify_storage_error(e, upload_id)
            logger.error(f"Could not reconcile upload {upload_id} with the backend: {error.message}")
            if token.cancelled:
                return
            self._fail(upload_id, error, auto_resume=True)
            return

        fresh_session = backend_upload_id != record.backend_upload_id
        current = self.registry.get(upload_id)
        if (
            token.cancelled
            or self._tokens.get(upload_id) is not token
            or current is None
            or current.status != UploadStatus.RESUMING
        ):
            if fresh_session:
                # Nothing will ever reference the replacement session
                await self._discard_session(upload_id, record.object_key, backend_upload_id)
            return

        if fresh_session:
            self._aborted.discard(upload_id)
        self.registry.update(upload_id, chunks=plan, backend_upload_id=backend_upload_id, retry_count=0)
        self._transition(upload_id, UploadStatus.UPLOADING, reason="resumed")
        await self._run_chunk_loop(upload_id, token)

    async def _reconcile(self, record: UploadRecord, plan: List[ChunkDescriptor]):
        """
        Align local chunk flags with the parts the backend actually holds.

        The backend is authoritative: a part it does not list is not uploaded,
        whatever the local flag says. A missing session starts a fresh one.
        """
        backend_upload_id = record.backend_upload_id
        if backend_upload_id is not None:
            try:
                parts = await self.backend.list_uploaded_parts(backend_upload_id, record.object_key)
            except Exception as e:
                if not is_no_such_upload(e):
                    raise
                logger.warning(f"Multipart session for upload {record.id} is gone, starting a new one")
                backend_upload_id = None

        if backend_upload_id is None:
            backend_upload_id = await self.backend.initiate_multipart_upload(
                record.object_key,
                record.content_type,
                {
                    "original-size": str(record.file_size),
                    "checksum": record.checksum or "",
                    "upload-id": record.id,
                },
            )
            parts = []

        backend_tags = {part.part_number: part.content_tag for part in parts}
        for chunk in plan:
            if chunk.index in backend_tags:
                tag = backend_tags[chunk.index] or chunk.content_tag
                chunk.uploaded = tag is not None
                chunk.content_tag = tag
            else:
                chunk.uploaded = False
                chunk.content_tag = None

        skipped = sum(1 for chunk in plan if chunk.uploaded)
        logger.info(f"Upload {record.id}: backend confirms {skipped}/{len(plan)} chunks")
        return plan, backend_upload_id

    async def _run_chunk_loop(self, upload_id: str, token: UploadCancellationToken) -> None:
        try:
            await self._upload_chunks(upload_id, token)
        except UploadInterrupted:
            logger.info(f"Chunk loop for upload {upload_id} stopped ({token.reason or 'inactive'})")
            return
        except UploadError as e:
            logger.error(
                "Upload %s failed on chunk %s: %s%s",
                upload_id,
                e.chunk_index,
                e.message,
                f" (chunk sha256 {e.chunk_checksum})" if e.chunk_checksum else "",
            )
            if self._is_active(upload_id, token):
                self._fail(upload_id, e, auto_resume=True)
            return

        await self._complete(upload_id, token)

    async def _upload_chunks(self, upload_id: str, token: UploadCancellationToken) -> None:
        record = self.registry.require(upload_id)
        pending = [chunk for chunk in record.chunks if not chunk.uploaded]
        budget = _RetryBudget()

        for offset in range(0, len(pending), self.concurrency):
            self._ensure_active(upload_id, token)
            batch = pending[offset:offset + self.concurrency]
            tasks = [
                token.track(asyncio.create_task(self._upload_chunk(upload_id, chunk, token, budget)))
                for chunk in batch
            ]
            try:
                await asyncio.gather(*tasks)
            except asyncio.CancelledError:
                if token.cancelled:
                    raise UploadInterrupted(f"Upload {upload_id} {token.reason}") from None
                raise
            except BaseException:
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
                raise

        self._ensure_active(upload_id, token)

    async def _upload_chunk(
        self,
        upload_id: str,
        chunk: ChunkDescriptor,
        token: UploadCancellationToken,
        budget: _RetryBudget,
    ) -> None:
        failures = 0
        while True:
            self._ensure_active(upload_id, token)
            record = self.registry.require(upload_id)
            if record.file is None:
                raise UploadError(
                    "FileNotAvailable",
                    REATTACH_FILE_MESSAGE,
                    UploadErrorType.NON_RETRYABLE,
                    upload_id=upload_id,
                    chunk_index=chunk.index,
                )

            data: Optional[bytes] = None
            try:
                data = await record.file.read_range(chunk.start_byte, chunk.end_byte)
                upload = self.backend.upload_part(record.backend_upload_id, record.object_key, chunk.index, data)
                if self.part_timeout:
                    tag = await asyncio.wait_for(upload, timeout=self.part_timeout)
                else:
                    tag = await upload
            except Exception as e:
                if not self._is_active(upload_id, token):
                    raise UploadInterrupted(f"Upload {upload_id} stopped during chunk {chunk.index}") from e

                error = classify_storage_error(e, upload_id, chunk.index)
                failures += 1
                if failures > budget.peak:
                    budget.peak = failures
                    self.registry.update(upload_id, retry_count=failures)
                self._notify(upload_id, "chunk_failed", {
                    "chunk_index": chunk.index,
                    "attempt": failures,
                    "message": error.message,
                })

                if not error.retryable or failures >= self.max_retries:
                    if data is not None:
                        error.chunk_checksum = self.checksum_engine.compute_bytes_checksum(data)
                    raise error from e

                delay = self._backoff_delay(failures)
                logger.warning(
                    f"Chunk {chunk.index} of upload {upload_id} failed ({error.code}: {error.message}), "
                    f"retrying in {delay:.1f}s"
                )
                await token.sleep(delay)
                continue

            self._ensure_active(upload_id, token)
            record = self.registry.update(upload_id, acknowledge={chunk.index: tag})
            logger.debug(f"Chunk {chunk.index}/{record.total_count} of upload {upload_id} acknowledged")
            self._notify(upload_id, "chunk_uploaded", {
                "chunk_index": chunk.index,
                "uploaded_count": record.uploaded_count,
                "progress": record.progress_percent,
            })
            return

    async def _complete(self, upload_id: str, token: UploadCancellationToken) -> None:
        if not self._is_active(upload_id, token):
            return
        record = self._transition(upload_id, UploadStatus.VALIDATING, reason="all_chunks_uploaded")

        parts = [UploadedPart(part_number=chunk.index, content_tag=chunk.content_tag) for chunk in record.chunks]
        try:
            location = await self.backend.complete_multipart_upload(
                record.backend_upload_id, record.object_key, parts
            )
        except Exception as e:
            error = classify_storage_error(e, upload_id)
            logger.error(f"Could not complete multipart upload {upload_id}: {error.message}")
            self._fail(upload_id, error)
            return

        record = self.registry.update(upload_id, location=location)
        if record.status != UploadStatus.VALIDATING:
            return
        try:
            result = await self.validator.validate(record)
        except Exception as e:
            error = classify_storage_error(e, upload_id)
            logger.error(f"Validation of upload {upload_id} could not run: {error.message}")
            self._fail(upload_id, error)
            return
        await self._apply_validation(upload_id, result)

    async def _apply_validation(self, upload_id: str, result: ValidationResult) -> None:
        record = self.registry.get(upload_id)
        if record is None or record.status != UploadStatus.VALIDATING:
            return

        if result.is_valid:
            record = self._transition(
                upload_id,
                UploadStatus.COMPLETED,
                reason="validated",
                validation_result=result,
                error_message=None,
            )
            self._auto_resumes.pop(upload_id, None)
            try:
                url = await self.backend.generate_download_reference(record.object_key, self.download_ttl)
                self.registry.update(upload_id, download_url=url)
            except Exception as e:
                logger.warning(f"Could not create download URL for upload {upload_id}: {e}")
            return

        if result.corrupted_chunks:
            logger.warning(f"Upload {upload_id} has corrupted chunks {result.corrupted_chunks}, re-uploading them")
            self.registry.update(upload_id, invalidate=result.corrupted_chunks, validation_result=result)
            self._transition(upload_id, UploadStatus.ERROR, reason="corrupted_chunks", error_message=result.error)
            self._schedule_resume(upload_id, self.integrity_retry_delay)
            return

        logger.error(f"Upload {upload_id} failed integrity validation: {result.error}")
        record = self._transition(
            upload_id,
            UploadStatus.ERROR,
            reason="integrity_failure",
            validation_result=result,
            error_message=result.error,
        )
        await self._abort_backend_session(record)

    def _schedule_resume(self, upload_id: str, delay: float) -> None:
        self._cancel_scheduled_resume(upload_id)

        async def _resume_later():
            await asyncio.sleep(delay)
            self._scheduled_resumes.pop(upload_id, None)
            record = self.registry.get(upload_id)
            if record is None or record.status != UploadStatus.ERROR:
                return
            try:
                await self._resume(upload_id)
            except (FileNotAvailableError, InvalidUploadStateError, InvalidTransitionError) as e:
                logger.warning(f"Automatic resume of upload {upload_id} did not start: {e}")

        self._scheduled_resumes[upload_id] = asyncio.create_task(_resume_later())

    def _cancel_scheduled_resume(self, upload_id: str) -> None:
        task = self._scheduled_resumes.pop(upload_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    def _cancel_checksum(self, upload_id: str) -> None:
        task = self._checksum_tasks.pop(upload_id, None)
        if task is not None:
            task.cancel()

    async def _abort_backend_session(self, record: UploadRecord) -> None:
        """Best-effort discard of the multipart session, at most once per upload."""
        if record.backend_upload_id is None or record.id in self._aborted:
            return
        self._aborted.add(record.id)
        await self._discard_session(record.id, record.object_key, record.backend_upload_id)

    async def _discard_session(self, upload_id: str, key: str, backend_upload_id: str) -> None:
        try:
            await self.backend.abort_multipart_upload(backend_upload_id, key)
        except Exception as e:
            logger.warning(f"Abort of multipart session for upload {upload_id} failed: {e}")

    def _forget(self, upload_id: str) -> None:
        token = self._tokens.pop(upload_id, None)
        if token is not None:
            token.cancel("removed")
        self._cancel_scheduled_resume(upload_id)
        self._cancel_checksum(upload_id)
        self._auto_resumes.pop(upload_id, None)
        self._runs.pop(upload_id, None)
        self.progress.stop(upload_id)


orchestrator: Optional[UploadOrchestrator] = None


async def init_orchestrator(instance: Optional[UploadOrchestrator] = None) -> UploadOrchestrator:
    global orchestrator
    if orchestrator is None:
        if instance is None:
            from chunked_uploader.routes.websocket import broadcast_upload_update
            from chunked_uploader.services.session_store import SqliteSessionStore
            from chunked_uploader.services.storage_backend import create_storage_backend

            backend = create_storage_backend(settings)
            checksum_engine = ChecksumEngine()
            instance = UploadOrchestrator(
                backend,
                UploadRegistry(SqliteSessionStore(settings.session_db_path)),
                concurrency=settings.max_concurrent_uploads,
                max_retries=settings.retry_attempts,
                retry_base_delay=settings.retry_base_delay_seconds,
                max_retry_delay=settings.max_retry_delay_seconds,
                part_timeout=settings.part_timeout_seconds,
                progress_interval=settings.progress_interval_seconds,
                checksum_engine=checksum_engine,
                validator=IntegrityValidator(
                    backend, checksum_engine, settings.validation_download_threshold_bytes
                ),
                notifier=broadcast_upload_update,
                deferral_threshold=settings.checksum_defer_threshold_bytes,
                integrity_retry_delay=settings.integrity_retry_delay_seconds,
                auto_resume_attempts=settings.auto_resume_attempts,
                download_ttl=settings.download_url_ttl_seconds,
                key_prefix=settings.s3_key_prefix,
            )
        orchestrator = instance
        orchestrator.restore_sessions()
    return orchestrator


async def shutdown_orchestrator():
    global orchestrator
    if orchestrator is not None:
        await orchestrator.stop()
        orchestrator = None


def get_orchestrator() -> UploadOrchestrator:
    if orchestrator is None:
        raise RuntimeError("Upload orchestrator is not initialized")
    return orchestrator
