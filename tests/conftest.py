"""
Shared fixtures for upload engine tests.
"""

import asyncio
from datetime import datetime
from typing import Dict, List, Optional, Set

import pytest

from chunked_uploader.models.upload import UploadRecord, UploadStatus
from chunked_uploader.services.chunk_planner import plan_chunks
from chunked_uploader.services.file_source import BytesFileSource
from chunked_uploader.services.orchestrator import UploadOrchestrator
from chunked_uploader.services.registry import UploadRegistry
from chunked_uploader.services.session_store import InMemorySessionStore
from chunked_uploader.services.storage_backend import InMemoryStorageBackend
from chunked_uploader.services.upload_errors import StorageBackendError

MB = 1024 * 1024


def make_bytes(size: int) -> bytes:
    pattern = bytes(range(256))
    return (pattern * (size // len(pattern) + 1))[:size]


def make_source(size: int = 12 * MB, name: str = "sample.bin") -> BytesFileSource:
    return BytesFileSource(name, make_bytes(size))


def make_record(
    size: int = 12 * MB,
    status: UploadStatus = UploadStatus.PENDING,
    upload_id: str = "upload-1",
    **fields,
) -> UploadRecord:
    now = datetime.now()
    return UploadRecord(
        id=upload_id,
        file_name=fields.pop("file_name", "sample.bin"),
        file_size=size,
        object_key=fields.pop("object_key", f"{upload_id}/sample.bin"),
        chunks=fields.pop("chunks", plan_chunks(size)),
        status=status,
        created_at=now,
        updated_at=now,
        **fields,
    )


async def wait_for(predicate, timeout: float = 5.0, interval: float = 0.01):
    """Poll ``predicate`` until it is truthy."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return
        await asyncio.sleep(interval)
    raise AssertionError("Condition not met before timeout")


class FlakyBackend(InMemoryStorageBackend):
    """Fails selected parts a given number of times before accepting them."""

    def __init__(self, failures: Optional[Dict[int, int]] = None, code: str = "ServiceUnavailable"):
        super().__init__()
        self.failures = dict(failures or {})
        self.code = code
        self.upload_part_calls: List[int] = []

    async def upload_part(self, backend_upload_id, key, part_number, data):
        self.upload_part_calls.append(part_number)
        if self.failures.get(part_number, 0) > 0:
            self.failures[part_number] -= 1
            raise StorageBackendError(self.code, f"Simulated {self.code} for part {part_number}")
        return await super().upload_part(backend_upload_id, key, part_number, data)


class BlockingBackend(InMemoryStorageBackend):
    """Holds selected parts until released; each part blocks only on its first attempt."""

    def __init__(self, block_parts: Optional[Set[int]] = None):
        super().__init__()
        self.block_parts = set(block_parts or ())
        self.blocked: Set[int] = set()
        self.release = asyncio.Event()
        self.upload_part_calls: List[int] = []

    async def upload_part(self, backend_upload_id, key, part_number, data):
        self.upload_part_calls.append(part_number)
        if part_number in self.block_parts:
            self.block_parts.discard(part_number)
            self.blocked.add(part_number)
            try:
                await self.release.wait()
            finally:
                self.blocked.discard(part_number)
        return await super().upload_part(backend_upload_id, key, part_number, data)


def build_orchestrator(backend, registry: Optional[UploadRegistry] = None, **overrides) -> UploadOrchestrator:
    options = dict(
        concurrency=3,
        max_retries=3,
        retry_base_delay=0.001,
        max_retry_delay=0.01,
        part_timeout=5.0,
        progress_interval=0.05,
        integrity_retry_delay=0.05,
    )
    options.update(overrides)
    return UploadOrchestrator(backend, registry or UploadRegistry(InMemorySessionStore()), **options)


@pytest.fixture
def memory_backend():
    return InMemoryStorageBackend()


@pytest.fixture
def session_store():
    return InMemorySessionStore()
