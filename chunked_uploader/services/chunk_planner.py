"""
Chunk planning for multipart uploads.

The partition depends on the file size alone, so a plan rebuilt after a restart
has exactly the same boundaries as the one the upload started with.
"""

import logging
from typing import List

from chunked_uploader.models.upload import ChunkDescriptor
from chunked_uploader.services.upload_errors import FileValidationError

logger = logging.getLogger(__name__)

MB = 1024 * 1024
GB = 1024 * MB

MIN_FILE_SIZE = 5 * MB
MAX_FILE_SIZE = 200 * GB
MIN_PART_SIZE = 5 * MB

# (upper bound inclusive, chunk size)
CHUNK_SIZE_TIERS = [
    (50 * MB, 5 * MB),
    (500 * MB, 10 * MB),
    (5 * GB, 25 * MB),
    (50 * GB, 50 * MB),
]
LARGEST_CHUNK_SIZE = 100 * MB


def calculate_chunk_size(file_size: int) -> int:
    for upper_bound, chunk_size in CHUNK_SIZE_TIERS:
        if file_size <= upper_bound:
            return chunk_size
    return LARGEST_CHUNK_SIZE


def validate_file_size(file_size: int) -> None:
    """Raise FileValidationError if the size is outside the supported range."""
    if file_size < MIN_FILE_SIZE:
        raise FileValidationError(
            f"File is too small for a multipart upload: {file_size} bytes (minimum {MIN_FILE_SIZE} bytes)"
        )
    if file_size > MAX_FILE_SIZE:
        raise FileValidationError(
            f"File exceeds the maximum upload size: {file_size} bytes (maximum {MAX_FILE_SIZE} bytes)"
        )


def plan_chunks(file_size: int) -> List[ChunkDescriptor]:
    """
    Partition [0, file_size) into ascending, contiguous chunk descriptors.

    Every chunk except the last is exactly the tier's chunk size; the last one
    holds the remainder and may be smaller than the backend's minimum part size.
    """
    if file_size <= 0:
        raise FileValidationError(f"File size must be positive, got {file_size}")

    chunk_size = calculate_chunk_size(file_size)
    chunks: List[ChunkDescriptor] = []
    start = 0
    index = 1
    while start < file_size:
        end = min(start + chunk_size, file_size)
        chunks.append(ChunkDescriptor(index=index, start_byte=start, end_byte=end))
        start = end
        index += 1

    logger.debug("Planned %d chunks of %d bytes for %d-byte file", len(chunks), chunk_size, file_size)
    return chunks
