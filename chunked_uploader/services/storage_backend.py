"""
Storage backends exposing an object-store multipart upload API.

``S3StorageBackend`` talks to S3 or any S3-compatible endpoint through boto3.
``InMemoryStorageBackend`` mirrors the same semantics in process and is used for
local runs and tests.
"""

import asyncio
import hashlib
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, List, Optional, Tuple

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

from chunked_uploader.config import Settings
from chunked_uploader.services.upload_errors import StorageBackendError

logger = logging.getLogger(__name__)


@dataclass
class UploadedPart:
    part_number: int
    content_tag: Optional[str] = None


@dataclass
class ObjectInfo:
    size: int
    parts_count: Optional[int] = None
    etag: Optional[str] = None


class StorageBackend(ABC):
    """Multipart upload contract consumed by the orchestrator and validator."""

    @abstractmethod
    async def initiate_multipart_upload(self, key: str, content_type: str, metadata: Dict[str, str]) -> str:
        ...

    @abstractmethod
    async def upload_part(self, backend_upload_id: str, key: str, part_number: int, data: bytes) -> str:
        ...

    @abstractmethod
    async def complete_multipart_upload(
        self, backend_upload_id: str, key: str, parts: List[UploadedPart]
    ) -> str:
        ...

    @abstractmethod
    async def abort_multipart_upload(self, backend_upload_id: str, key: str) -> None:
        ...

    @abstractmethod
    async def list_uploaded_parts(self, backend_upload_id: str, key: str) -> List[UploadedPart]:
        ...

    @abstractmethod
    async def get_object_info(self, key: str) -> ObjectInfo:
        ...

    @abstractmethod
    def iter_object(self, key: str, chunk_size: int = 1024 * 1024) -> AsyncIterator[bytes]:
        ...

    @abstractmethod
    async def generate_download_reference(self, key: str, ttl_seconds: int) -> str:
        ...


def _parts_count_from_etag(etag: Optional[str]) -> Optional[int]:
    """Multipart ETags look like "<md5>-<parts>"."""
    if not etag:
        return None
    stripped = etag.strip('"')
    if "-" not in stripped:
        return None
    try:
        return int(stripped.rsplit("-", 1)[1])
    except ValueError:
        return None


class S3StorageBackend(StorageBackend):
    """boto3-backed multipart uploads against S3 or an S3-compatible service."""

    def __init__(
        self,
        bucket: str,
        region: str = "us-east-1",
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        read_timeout: float = 300,
    ):
        if not bucket:
            raise ValueError("S3 bucket name is required")
        self.bucket = bucket
        self.region = region
        self.endpoint_url = endpoint_url

        self.session = boto3.Session(
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            region_name=region,
        )
        # The orchestrator owns retry accounting, so botocore gets a single attempt.
        self.config = Config(
            region_name=region,
            retries={"max_attempts": 1, "mode": "standard"},
            read_timeout=read_timeout,
            signature_version="s3v4",
        )
        self.s3 = self.session.client("s3", config=self.config, endpoint_url=endpoint_url)

    async def initiate_multipart_upload(self, key: str, content_type: str, metadata: Dict[str, str]) -> str:
        response = await asyncio.to_thread(
            self.s3.create_multipart_upload,
            Bucket=self.bucket,
            Key=key,
            ContentType=content_type,
            Metadata=metadata,
        )
        logger.info("Initiated multipart upload %s for s3://%s/%s", response["UploadId"], self.bucket, key)
        return response["UploadId"]

    async def upload_part(self, backend_upload_id: str, key: str, part_number: int, data: bytes) -> str:
        response = await asyncio.to_thread(
            self.s3.upload_part,
            Bucket=self.bucket,
            Key=key,
            UploadId=backend_upload_id,
            PartNumber=part_number,
            Body=data,
        )
        return response["ETag"]

    async def complete_multipart_upload(
        self, backend_upload_id: str, key: str, parts: List[UploadedPart]
    ) -> str:
        ordered = sorted(parts, key=lambda p: p.part_number)
        response = await asyncio.to_thread(
            self.s3.complete_multipart_upload,
            Bucket=self.bucket,
            Key=key,
            UploadId=backend_upload_id,
            MultipartUpload={
                "Parts": [{"PartNumber": p.part_number, "ETag": p.content_tag} for p in ordered]
            },
        )
        location = response.get("Location") or f"s3://{self.bucket}/{key}"
        logger.info("Completed multipart upload %s -> %s", backend_upload_id, location)
        return location

    async def abort_multipart_upload(self, backend_upload_id: str, key: str) -> None:
        await asyncio.to_thread(
            self.s3.abort_multipart_upload,
            Bucket=self.bucket,
            Key=key,
            UploadId=backend_upload_id,
        )
        logger.info("Aborted multipart upload %s", backend_upload_id)

    def _list_parts(self, backend_upload_id: str, key: str) -> List[UploadedPart]:
        paginator = self.s3.get_paginator("list_parts")
        parts: List[UploadedPart] = []
        for page in paginator.paginate(Bucket=self.bucket, Key=key, UploadId=backend_upload_id):
            for part in page.get("Parts", []):
                parts.append(UploadedPart(part_number=part["PartNumber"], content_tag=part.get("ETag")))
        return parts

    async def list_uploaded_parts(self, backend_upload_id: str, key: str) -> List[UploadedPart]:
        return await asyncio.to_thread(self._list_parts, backend_upload_id, key)

    def _object_info(self, key: str) -> ObjectInfo:
        head = self.s3.head_object(Bucket=self.bucket, Key=key)
        etag = head.get("ETag")
        parts_count = _parts_count_from_etag(etag)
        if parts_count is None:
            try:
                part_head = self.s3.head_object(Bucket=self.bucket, Key=key, PartNumber=1)
                parts_count = part_head.get("PartsCount", 1)
            except ClientError as e:
                logger.debug("PartNumber head_object unsupported for %s: %s", key, e)
                parts_count = None
        return ObjectInfo(size=head["ContentLength"], parts_count=parts_count, etag=etag)

    async def get_object_info(self, key: str) -> ObjectInfo:
        return await asyncio.to_thread(self._object_info, key)

    async def iter_object(self, key: str, chunk_size: int = 1024 * 1024) -> AsyncIterator[bytes]:
        response = await asyncio.to_thread(self.s3.get_object, Bucket=self.bucket, Key=key)
        body = response["Body"]
        try:
            while True:
                data = await asyncio.to_thread(body.read, chunk_size)
                if not data:
                    break
                yield data
        finally:
            body.close()

    def _plain_url(self, key: str) -> str:
        if self.endpoint_url:
            return f"{self.endpoint_url.rstrip('/')}/{self.bucket}/{key}"
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}"

    async def generate_download_reference(self, key: str, ttl_seconds: int) -> str:
        file_name = key.rsplit("/", 1)[-1]
        try:
            return await asyncio.to_thread(
                self.s3.generate_presigned_url,
                "get_object",
                Params={
                    "Bucket": self.bucket,
                    "Key": key,
                    "ResponseContentDisposition": f'attachment; filename="{file_name}"',
                },
                ExpiresIn=ttl_seconds,
            )
        except ClientError as e:
            logger.warning("Could not presign download URL for %s, using plain URL: %s", key, e)
            return self._plain_url(key)


@dataclass
class _MemorySession:
    key: str
    content_type: str
    metadata: Dict[str, str]
    parts: Dict[int, Tuple[str, bytes]] = field(default_factory=dict)


@dataclass
class _MemoryObject:
    data: bytes
    content_type: str
    metadata: Dict[str, str]
    etag: str
    parts_count: int


class InMemoryStorageBackend(StorageBackend):
    """Process-local backend with S3 multipart semantics."""

    def __init__(self):
        self.sessions: Dict[str, _MemorySession] = {}
        self.objects: Dict[str, _MemoryObject] = {}
        self.abort_calls: List[str] = []

    def _session(self, backend_upload_id: str) -> _MemorySession:
        session = self.sessions.get(backend_upload_id)
        if session is None:
            raise StorageBackendError("NoSuchUpload", f"Multipart upload {backend_upload_id} does not exist")
        return session

    async def initiate_multipart_upload(self, key: str, content_type: str, metadata: Dict[str, str]) -> str:
        backend_upload_id = uuid.uuid4().hex
        self.sessions[backend_upload_id] = _MemorySession(key=key, content_type=content_type, metadata=dict(metadata))
        return backend_upload_id

    async def upload_part(self, backend_upload_id: str, key: str, part_number: int, data: bytes) -> str:
        session = self._session(backend_upload_id)
        tag = f'"{hashlib.md5(data).hexdigest()}"'
        session.parts[part_number] = (tag, bytes(data))
        return tag

    async def complete_multipart_upload(
        self, backend_upload_id: str, key: str, parts: List[UploadedPart]
    ) -> str:
        session = self._session(backend_upload_id)
        ordered = sorted(parts, key=lambda p: p.part_number)
        if not ordered:
            raise StorageBackendError("InvalidPart", "No parts supplied")

        payload = bytearray()
        digests = bytearray()
        for part in ordered:
            stored = session.parts.get(part.part_number)
            if stored is None or stored[0] != part.content_tag:
                raise StorageBackendError("InvalidPart", f"Part {part.part_number} missing or tag mismatch")
            payload.extend(stored[1])
            digests.extend(bytes.fromhex(stored[0].strip('"')))

        etag = f'"{hashlib.md5(bytes(digests)).hexdigest()}-{len(ordered)}"'
        self.objects[key] = _MemoryObject(
            data=bytes(payload),
            content_type=session.content_type,
            metadata=session.metadata,
            etag=etag,
            parts_count=len(ordered),
        )
        del self.sessions[backend_upload_id]
        return f"memory://{key}"

    async def abort_multipart_upload(self, backend_upload_id: str, key: str) -> None:
        self.abort_calls.append(backend_upload_id)
        self._session(backend_upload_id)
        del self.sessions[backend_upload_id]

    async def list_uploaded_parts(self, backend_upload_id: str, key: str) -> List[UploadedPart]:
        session = self._session(backend_upload_id)
        return [
            UploadedPart(part_number=number, content_tag=tag)
            for number, (tag, _) in sorted(session.parts.items())
        ]

    async def get_object_info(self, key: str) -> ObjectInfo:
        obj = self.objects.get(key)
        if obj is None:
            raise StorageBackendError("NoSuchKey", f"Object {key} does not exist")
        return ObjectInfo(size=len(obj.data), parts_count=obj.parts_count, etag=obj.etag)

    async def iter_object(self, key: str, chunk_size: int = 1024 * 1024) -> AsyncIterator[bytes]:
        obj = self.objects.get(key)
        if obj is None:
            raise StorageBackendError("NoSuchKey", f"Object {key} does not exist")
        for offset in range(0, len(obj.data), chunk_size):
            yield obj.data[offset:offset + chunk_size]

    async def generate_download_reference(self, key: str, ttl_seconds: int) -> str:
        if key not in self.objects:
            raise StorageBackendError("NoSuchKey", f"Object {key} does not exist")
        return f"memory://{key}?expires_in={ttl_seconds}"


def create_storage_backend(config: Settings) -> StorageBackend:
    """Build the backend selected by STORAGE_BACKEND."""
    if config.storage_backend == "memory":
        logger.info("Using in-memory storage backend")
        return InMemoryStorageBackend()
    return S3StorageBackend(
        bucket=config.s3_bucket,
        region=config.s3_region,
        access_key=config.s3_access_key,
        secret_key=config.s3_secret_key,
        endpoint_url=config.s3_endpoint_url,
        read_timeout=config.part_timeout_seconds,
    )
