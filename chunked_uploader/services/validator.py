"""
Integrity validation of completed multipart uploads.

Checks run in order and the first failure decides the result:
object size, chunk acknowledgements, content digest (small files only) and
the backend's part count.
"""

import logging
from typing import Optional

from chunked_uploader.models.upload import CHECKSUM_DEFERRED, UploadRecord, ValidationResult
from chunked_uploader.services.checksum import ChecksumEngine
from chunked_uploader.services.storage_backend import StorageBackend

logger = logging.getLogger(__name__)

DEFAULT_DOWNLOAD_THRESHOLD = 100 * 1024 * 1024


class IntegrityValidator:
    def __init__(
        self,
        backend: StorageBackend,
        checksum_engine: Optional[ChecksumEngine] = None,
        download_threshold: int = DEFAULT_DOWNLOAD_THRESHOLD,
    ):
        self.backend = backend
        self.checksum_engine = checksum_engine or ChecksumEngine()
        self.download_threshold = download_threshold

    async def validate(self, record: UploadRecord) -> ValidationResult:
        """Validate the stored object for ``record``. Backend metadata errors propagate."""
        expected = record.checksum

        info = await self.backend.get_object_info(record.object_key)
        if info.size != record.file_size:
            return ValidationResult(
                is_valid=False,
                expected_checksum=expected,
                error=f"Size mismatch: expected {record.file_size} bytes, got {info.size} bytes",
            )

        corrupted = [chunk.index for chunk in record.chunks if chunk.uploaded and not chunk.content_tag]
        if corrupted:
            return ValidationResult(
                is_valid=False,
                expected_checksum=expected,
                corrupted_chunks=corrupted,
                error=f"Chunks without a backend acknowledgement: {corrupted}",
            )

        actual: Optional[str] = None
        if record.file_size < self.download_threshold and expected and expected != CHECKSUM_DEFERRED:
            try:
                actual = await self.checksum_engine.compute_stream_checksum(
                    self.backend.iter_object(record.object_key)
                )
            except Exception as e:
                # Correct size plus acknowledged chunks is accepted without the digest.
                logger.warning(f"Could not download {record.object_key} for checksum verification: {e}")
                actual = None
            if actual is not None and actual != expected:
                return ValidationResult(
                    is_valid=False,
                    expected_checksum=expected,
                    actual_checksum=actual,
                    error=f"Checksum mismatch: expected {expected}, got {actual}",
                )

        if info.parts_count is not None and info.parts_count != record.total_count:
            return ValidationResult(
                is_valid=False,
                expected_checksum=expected,
                actual_checksum=actual,
                error=f"Part count mismatch: expected {record.total_count} parts, backend reports {info.parts_count}",
            )

        logger.info(f"Upload {record.id} passed integrity validation")
        return ValidationResult(is_valid=True, expected_checksum=expected, actual_checksum=actual)
