"""
Tests for post-completion integrity validation.
"""

import hashlib

import pytest

from chunked_uploader.models.upload import CHECKSUM_DEFERRED, UploadStatus
from chunked_uploader.services.storage_backend import InMemoryStorageBackend, UploadedPart
from chunked_uploader.services.upload_errors import StorageBackendError
from chunked_uploader.services.validator import IntegrityValidator

from conftest import MB, make_bytes, make_record


async def store_object(backend, record, data, part_sizes=None):
    """Upload ``data`` as a completed multipart object and acknowledge the record's chunks."""
    backend_upload_id = await backend.initiate_multipart_upload(record.object_key, "application/octet-stream", {})
    sizes = part_sizes or [chunk.size for chunk in record.chunks]
    parts = []
    offset = 0
    for number, size in enumerate(sizes, start=1):
        tag = await backend.upload_part(backend_upload_id, record.object_key, number, data[offset:offset + size])
        parts.append(UploadedPart(number, tag))
        offset += size
    await backend.complete_multipart_upload(backend_upload_id, record.object_key, parts)
    for chunk in record.chunks:
        chunk.uploaded = True
        chunk.content_tag = f'"tag-{chunk.index}"'
    record.total_count = len(record.chunks)
    record.uploaded_count = len(record.chunks)
    return record


class TestIntegrityValidator:

    @pytest.fixture
    def data(self):
        return make_bytes(12 * MB)

    @pytest.fixture
    def backend(self):
        return InMemoryStorageBackend()

    @pytest.mark.asyncio
    async def test_valid_upload(self, backend, data):
        record = await store_object(
            backend, make_record(status=UploadStatus.VALIDATING, checksum=hashlib.sha256(data).hexdigest()), data
        )

        result = await IntegrityValidator(backend).validate(record)

        assert result.is_valid
        assert result.actual_checksum == result.expected_checksum

    @pytest.mark.asyncio
    async def test_size_mismatch_names_both_sizes(self, backend, data):
        record = await store_object(backend, make_record(), data)
        backend.objects[record.object_key].data = data[:-10]

        result = await IntegrityValidator(backend).validate(record)

        assert not result.is_valid
        assert str(12 * MB) in result.error
        assert str(12 * MB - 10) in result.error

    @pytest.mark.asyncio
    async def test_missing_tags_are_reported_as_corrupted(self, backend, data):
        record = await store_object(backend, make_record(), data)
        record.chunks[1].content_tag = None

        result = await IntegrityValidator(backend).validate(record)

        assert not result.is_valid
        assert result.corrupted_chunks == [2]

    @pytest.mark.asyncio
    async def test_checksum_mismatch(self, backend, data):
        record = await store_object(backend, make_record(checksum="0" * 64), data)

        result = await IntegrityValidator(backend).validate(record)

        assert not result.is_valid
        assert result.expected_checksum == "0" * 64
        assert result.actual_checksum == hashlib.sha256(data).hexdigest()
        assert result.corrupted_chunks == []

    @pytest.mark.asyncio
    async def test_deferred_checksum_skips_download(self, backend, data):
        record = await store_object(backend, make_record(checksum=CHECKSUM_DEFERRED), data)

        result = await IntegrityValidator(backend).validate(record)

        assert result.is_valid
        assert result.actual_checksum is None

    @pytest.mark.asyncio
    async def test_large_files_skip_download(self, backend, data):
        record = await store_object(backend, make_record(checksum="0" * 64), data)

        result = await IntegrityValidator(backend, download_threshold=12 * MB).validate(record)

        assert result.is_valid

    @pytest.mark.asyncio
    async def test_download_failure_alone_is_accepted(self, data):
        class NoDownloadBackend(InMemoryStorageBackend):
            async def iter_object(self, key, chunk_size=1024 * 1024):
                raise StorageBackendError("ServiceUnavailable")
                yield b""

        backend = NoDownloadBackend()
        record = await store_object(backend, make_record(checksum="0" * 64), data)

        result = await IntegrityValidator(backend).validate(record)

        assert result.is_valid
        assert result.actual_checksum is None

    @pytest.mark.asyncio
    async def test_part_count_mismatch(self, backend, data):
        record = await store_object(
            backend,
            make_record(checksum=hashlib.sha256(data).hexdigest()),
            data,
            part_sizes=[10 * MB, 2 * MB],
        )

        result = await IntegrityValidator(backend).validate(record)

        assert not result.is_valid
        assert "expected 3 parts" in result.error

    @pytest.mark.asyncio
    async def test_missing_object_propagates(self, backend):
        with pytest.raises(StorageBackendError):
            await IntegrityValidator(backend).validate(make_record())
