from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field
from enum import Enum
from typing import Any, List, Optional
from datetime import datetime

# Stored in place of a digest while the whole-file checksum is computed in the background.
CHECKSUM_DEFERRED = "deferred"


class UploadStatus(str, Enum):
    """Upload state enumeration"""
    PENDING = "pending"
    UPLOADING = "uploading"
    PAUSED = "paused"
    RESUMING = "resuming"
    VALIDATING = "validating"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = (UploadStatus.COMPLETED, UploadStatus.CANCELLED)


class ChunkDescriptor(BaseModel):
    """One contiguous byte range [start_byte, end_byte) of a file, uploaded as a single part."""

    index: int  # 1-based, doubles as the backend part number
    start_byte: int
    end_byte: int
    uploaded: bool = False
    content_tag: Optional[str] = None

    @property
    def size(self) -> int:
        return self.end_byte - self.start_byte


class ValidationResult(BaseModel):
    """Outcome of the post-completion integrity check."""

    is_valid: bool
    expected_checksum: Optional[str] = None
    actual_checksum: Optional[str] = None
    corrupted_chunks: List[int] = Field(default_factory=list)
    error: Optional[str] = None


class PersistedChunk(BaseModel):
    index: int
    start_byte: int
    end_byte: int
    uploaded: bool = False
    content_tag: Optional[str] = None


class PersistedUpload(BaseModel):
    """Serializable subset of an upload record, as written to the session store."""

    model_config = ConfigDict(use_enum_values=True)

    id: str
    file_name: str
    file_size: int
    content_type: str = "application/octet-stream"
    object_key: str
    backend_upload_id: Optional[str] = None
    chunks: List[PersistedChunk] = Field(default_factory=list)
    uploaded_count: int = 0
    total_count: int = 0
    progress_percent: float = 0.0
    status: UploadStatus
    retry_count: int = 0
    checksum: Optional[str] = None
    validation_result: Optional[ValidationResult] = None
    error_message: Optional[str] = None
    location: Optional[str] = None
    download_url: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class UploadRecord(BaseModel):
    """Runtime upload entity, including the live file source when one is attached."""

    model_config = ConfigDict(use_enum_values=True, arbitrary_types_allowed=True)

    id: str
    file_name: str
    file_size: int
    content_type: str = "application/octet-stream"
    object_key: str
    backend_upload_id: Optional[str] = None
    chunks: List[ChunkDescriptor] = Field(default_factory=list)
    uploaded_count: int = 0
    total_count: int = 0
    progress_percent: float = 0.0
    status: UploadStatus = UploadStatus.PENDING
    speed: float = 0.0
    remaining_time: Optional[float] = None  # None means unknown
    retry_count: int = 0
    checksum: Optional[str] = None
    validation_result: Optional[ValidationResult] = None
    error_message: Optional[str] = None
    location: Optional[str] = None
    download_url: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    # Live FileSource; never serialized
    file: Optional[Any] = Field(default=None, exclude=True)

    @property
    def uploaded_bytes(self) -> int:
        return sum(chunk.size for chunk in self.chunks if chunk.uploaded)

    def to_persisted(self) -> PersistedUpload:
        data = self.model_dump(exclude={"file", "speed", "remaining_time"})
        return PersistedUpload(**data)

    @classmethod
    def from_persisted(cls, persisted: PersistedUpload) -> "UploadRecord":
        return cls(**persisted.model_dump())


class UploadProgress(BaseModel):
    """Point-in-time progress snapshot for one upload."""

    model_config = ConfigDict(use_enum_values=True)

    upload_id: str
    status: UploadStatus
    progress_percent: float
    uploaded_chunks: int
    total_chunks: int
    uploaded_bytes: int
    total_bytes: int
    speed: float
    remaining_time: Optional[float] = None
    retry_count: int = 0
    error_message: Optional[str] = None
    speed_display: str
    remaining_display: str
