"""
Checksum engine for whole-file and per-chunk SHA-256 digests.

Files are read in bounded windows and folded into a running hash, so memory use
stays flat regardless of file size. For very large files the orchestrator asks
for a deferred digest, computed by a background task after the upload started.
"""

import asyncio
import hashlib
import logging
from typing import AsyncIterator, Awaitable, Callable, Optional, Set

from chunked_uploader.services.file_source import FileSource

logger = logging.getLogger(__name__)

WINDOW_SIZE = 1024 * 1024
SUB_WINDOW_SIZE = 64 * 1024

ProgressCallback = Callable[[float], None]


class ChecksumEngine:
    """Computes SHA-256 digests over file sources and byte streams."""

    def __init__(self, window_size: int = WINDOW_SIZE, sub_window_size: int = SUB_WINDOW_SIZE):
        self.window_size = window_size
        self.sub_window_size = sub_window_size
        self._background_tasks: Set[asyncio.Task] = set()

    def _new_hasher(self):
        return hashlib.sha256()

    def _fold(self, hasher, data: bytes) -> None:
        """
        Fold a window into the hash state.

        If the hashing primitive rejects the window, it is split into
        sub-windows and folded piece by piece; the digest is unchanged.
        """
        try:
            hasher.update(data)
        except (OverflowError, MemoryError, ValueError):
            if len(data) <= self.sub_window_size:
                raise
            logger.debug("Hash window of %d bytes rejected, splitting", len(data))
            view = memoryview(data)
            for offset in range(0, len(data), self.sub_window_size):
                self._fold(hasher, bytes(view[offset:offset + self.sub_window_size]))

    async def _digest_range(
        self,
        source: FileSource,
        start: int,
        end: int,
        on_progress: Optional[ProgressCallback] = None,
    ) -> str:
        hasher = self._new_hasher()
        total = max(end - start, 1)
        position = start
        while position < end:
            window_end = min(position + self.window_size, end)
            data = await source.read_range(position, window_end)
            await asyncio.to_thread(self._fold, hasher, data)
            position = window_end
            if on_progress is not None:
                on_progress(100.0 * (position - start) / total)
        return hasher.hexdigest()

    async def compute_file_checksum(
        self, source: FileSource, on_progress: Optional[ProgressCallback] = None
    ) -> str:
        digest = await self._digest_range(source, 0, source.size, on_progress)
        logger.debug("Computed checksum for %s: %s", source.name, digest)
        return digest

    async def compute_chunk_checksum(self, source: FileSource, start: int, end: int) -> str:
        return await self._digest_range(source, start, end)

    def compute_bytes_checksum(self, data: bytes) -> str:
        hasher = self._new_hasher()
        view = memoryview(data)
        for offset in range(0, len(data), self.window_size):
            self._fold(hasher, bytes(view[offset:offset + self.window_size]))
        return hasher.hexdigest()

    async def compute_stream_checksum(self, stream: AsyncIterator[bytes]) -> str:
        """Digest an async byte stream, e.g. an object downloaded from the backend."""
        hasher = self._new_hasher()
        async for data in stream:
            await asyncio.to_thread(self._fold, hasher, data)
        return hasher.hexdigest()

    def compute_deferred(
        self,
        source: FileSource,
        on_complete: Callable[[str], Awaitable[None]],
        label: str = "",
    ) -> asyncio.Task:
        """
        Start a best-effort background digest of ``source``.

        ``on_complete`` receives the digest. Any failure, including in the
        callback, is logged and dropped so it never affects the upload.
        """

        async def _run():
            try:
                digest = await self.compute_file_checksum(source)
                await on_complete(digest)
                logger.info("Deferred checksum finished for %s", label or source.name)
            except asyncio.CancelledError:
                logger.info("Deferred checksum cancelled for %s", label or source.name)
                raise
            except Exception as e:
                logger.warning("Deferred checksum failed for %s: %s", label or source.name, e)

        task = asyncio.create_task(_run())
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    async def shutdown(self) -> None:
        """Cancel outstanding background digests."""
        tasks = list(self._background_tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
