"""
File sources: byte-range readers over a file the caller wants uploaded.

A source is the live handle that never goes into the session store. After a
restart the caller re-attaches one, matched by name and size.
"""

import asyncio
import mimetypes
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

DEFAULT_CONTENT_TYPE = "application/octet-stream"


class FileSource(ABC):
    """Random-access reader over a single file."""

    name: str
    size: int
    content_type: str

    @abstractmethod
    async def read_range(self, start: int, end: int) -> bytes:
        """Return exactly the bytes in [start, end)."""

    def matches(self, file_name: str, file_size: int) -> bool:
        return self.name == file_name and self.size == file_size


class LocalFileSource(FileSource):
    """A file on the local filesystem, read in a worker thread."""

    def __init__(self, path: str, content_type: Optional[str] = None):
        self.path = Path(path)
        if not self.path.is_file():
            raise FileNotFoundError(f"File not found: {self.path}")
        self.name = self.path.name
        self.size = os.path.getsize(self.path)
        self.content_type = content_type or mimetypes.guess_type(self.name)[0] or DEFAULT_CONTENT_TYPE

    def _read(self, start: int, end: int) -> bytes:
        with open(self.path, "rb") as f:
            f.seek(start)
            data = f.read(end - start)
        if len(data) != end - start:
            raise OSError(
                f"Short read from {self.path}: expected {end - start} bytes at offset {start}, got {len(data)}"
            )
        return data

    async def read_range(self, start: int, end: int) -> bytes:
        return await asyncio.to_thread(self._read, start, end)


class BytesFileSource(FileSource):
    """An in-memory file, mostly useful for tests and small payloads."""

    def __init__(self, name: str, data: bytes, content_type: str = DEFAULT_CONTENT_TYPE):
        self.name = name
        self.data = data
        self.size = len(data)
        self.content_type = content_type

    async def read_range(self, start: int, end: int) -> bytes:
        if start < 0 or end > self.size or start > end:
            raise OSError(f"Range [{start}, {end}) outside file of {self.size} bytes")
        return self.data[start:end]
