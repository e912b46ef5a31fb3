"""
Upload registry: the single owner of upload records.

Every write goes through ``update``, which recomputes the derived counters in the
same step and mirrors the whole set into the session store.
"""

import logging
from datetime import datetime
from typing import Dict, Iterable, List, Mapping, Optional

from chunked_uploader.models.upload import (
    ChunkDescriptor,
    PersistedUpload,
    TERMINAL_STATUSES,
    UploadRecord,
    UploadStatus,
)
from chunked_uploader.services.session_store import SessionStore
from chunked_uploader.services.upload_errors import UploadNotFoundError

logger = logging.getLogger(__name__)

IMMUTABLE_FIELDS = {"id", "file_name", "file_size", "created_at"}
DERIVED_FIELDS = {"uploaded_count", "total_count", "progress_percent", "updated_at"}


def _copy(record: UploadRecord) -> UploadRecord:
    return record.model_copy(update={"chunks": [chunk.model_copy() for chunk in record.chunks]})


def _refresh_derived(record: UploadRecord) -> None:
    record.total_count = len(record.chunks)
    record.uploaded_count = sum(1 for chunk in record.chunks if chunk.uploaded)
    if record.total_count:
        record.progress_percent = 100.0 * record.uploaded_count / record.total_count
    else:
        record.progress_percent = 0.0
    record.updated_at = datetime.now()


class UploadRegistry:
    """In-memory record set, mirrored to a durable store after each mutation."""

    def __init__(self, store: Optional[SessionStore] = None):
        self._records: Dict[str, UploadRecord] = {}
        self.store = store

    def load(self) -> List[UploadRecord]:
        """Populate the registry from the session store; records come back without file handles."""
        if self.store is None:
            return []
        loaded = self.store.load()
        for upload_id, persisted in loaded.items():
            self._records[upload_id] = UploadRecord.from_persisted(persisted)
        logger.info("Restored %d uploads from session store", len(loaded))
        return [_copy(record) for record in self._records.values()]

    def _persist(self) -> None:
        if self.store is None:
            return
        self.store.save(self.snapshot())

    def snapshot(self) -> Dict[str, PersistedUpload]:
        return {upload_id: record.to_persisted() for upload_id, record in self._records.items()}

    def create(self, record: UploadRecord) -> UploadRecord:
        if record.id in self._records:
            raise ValueError(f"Upload {record.id} already exists")
        stored = _copy(record)
        _refresh_derived(stored)
        self._records[stored.id] = stored
        self._persist()
        logger.info("Registered upload %s (%s, %d bytes)", stored.id, stored.file_name, stored.file_size)
        return _copy(stored)

    def get(self, upload_id: str) -> Optional[UploadRecord]:
        record = self._records.get(upload_id)
        return _copy(record) if record is not None else None

    def require(self, upload_id: str) -> UploadRecord:
        record = self.get(upload_id)
        if record is None:
            raise UploadNotFoundError(upload_id)
        return record

    def update(
        self,
        upload_id: str,
        *,
        acknowledge: Optional[Mapping[int, str]] = None,
        invalidate: Optional[Iterable[int]] = None,
        chunks: Optional[List[ChunkDescriptor]] = None,
        **changes,
    ) -> UploadRecord:
        """
        Merge ``changes`` into a record and apply chunk flag updates atomically.

        ``acknowledge`` maps chunk index to the backend content tag; ``invalidate``
        clears both flags for the given indices. A replacement ``chunks`` list must
        keep the existing boundaries.
        """
        record = self._records.get(upload_id)
        if record is None:
            raise UploadNotFoundError(upload_id)

        forbidden = (IMMUTABLE_FIELDS | DERIVED_FIELDS) & set(changes)
        if forbidden:
            raise ValueError(f"Fields cannot be changed directly: {', '.join(sorted(forbidden))}")

        if chunks is not None:
            old_bounds = [(c.index, c.start_byte, c.end_byte) for c in record.chunks]
            new_bounds = [(c.index, c.start_byte, c.end_byte) for c in chunks]
            if record.chunks and old_bounds != new_bounds:
                raise ValueError(f"Chunk plan of upload {upload_id} cannot change boundaries")
            record.chunks = [chunk.model_copy() for chunk in chunks]

        by_index = {chunk.index: chunk for chunk in record.chunks}
        for index in invalidate or ():
            chunk = by_index.get(index)
            if chunk is None:
                raise ValueError(f"Upload {upload_id} has no chunk {index}")
            chunk.uploaded = False
            chunk.content_tag = None
        for index, tag in (acknowledge or {}).items():
            chunk = by_index.get(index)
            if chunk is None:
                raise ValueError(f"Upload {upload_id} has no chunk {index}")
            chunk.uploaded = True
            chunk.content_tag = tag

        for name, value in changes.items():
            if name not in UploadRecord.model_fields:
                raise ValueError(f"Unknown upload field: {name}")
            if name == "status" and value is not None:
                value = UploadStatus(value).value
            setattr(record, name, value)

        _refresh_derived(record)
        self._persist()
        return _copy(record)

    def delete(self, upload_id: str) -> None:
        if upload_id not in self._records:
            raise UploadNotFoundError(upload_id)
        del self._records[upload_id]
        self._persist()
        logger.info("Removed upload %s", upload_id)

    def list_all(self) -> List[UploadRecord]:
        return [_copy(record) for record in self._records.values()]

    # Aggregates

    def count_by_status(self, status: UploadStatus) -> int:
        return sum(1 for record in self._records.values() if record.status == status)

    def active_uploads(self) -> List[UploadRecord]:
        return [
            _copy(record)
            for record in self._records.values()
            if record.status not in TERMINAL_STATUSES
        ]

    def total_progress(self) -> float:
        """Byte-weighted progress across non-terminal uploads."""
        active = [r for r in self._records.values() if r.status not in TERMINAL_STATUSES]
        total = sum(r.file_size for r in active)
        if total == 0:
            return 0.0
        return 100.0 * sum(r.uploaded_bytes for r in active) / total

    def total_speed(self) -> float:
        return sum(r.speed for r in self._records.values() if r.status == UploadStatus.UPLOADING)

    def clear_completed(self) -> List[str]:
        removed = [upload_id for upload_id, r in self._records.items() if r.status == UploadStatus.COMPLETED]
        for upload_id in removed:
            del self._records[upload_id]
        if removed:
            self._persist()
            logger.info("Cleared %d completed uploads", len(removed))
        return removed
