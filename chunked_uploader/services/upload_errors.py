import asyncio
import logging
from enum import Enum
from typing import Any, Dict, Optional

from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

logger = logging.getLogger(__name__)


RETRYABLE_CODES = {
    "NetworkingError",
    "TimeoutError",
    "RequestTimeout",
    "RequestTimeTooSkewed",
    "ThrottlingException",
    "Throttling",
    "SlowDown",
    "ServiceUnavailable",
    "InternalError",
}

NON_RETRYABLE_CODES = {
    "NoSuchUpload",
    "NoSuchBucket",
    "InvalidAccessKeyId",
    "SignatureDoesNotMatch",
    "AccessDenied",
    "ExpiredToken",
    "InvalidPart",
    "InvalidPartOrder",
    "EntityTooSmall",
}

TRANSIENT_MESSAGE_HINTS = ("network", "timeout", "connection")


class UploadErrorType(Enum):
    """Types of upload errors"""
    TRANSPORT = "transport"
    NON_RETRYABLE = "non_retryable"
    INTEGRITY = "integrity"
    CANCELLED = "cancelled"


class UploadError(Exception):
    """A classified failure of a backend operation performed for an upload."""

    def __init__(
        self,
        code: str,
        message: str,
        error_type: UploadErrorType = UploadErrorType.TRANSPORT,
        upload_id: Optional[str] = None,
        chunk_index: Optional[int] = None,
        chunk_checksum: Optional[str] = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.error_type = error_type
        self.upload_id = upload_id
        self.chunk_index = chunk_index
        self.chunk_checksum = chunk_checksum

    @property
    def retryable(self) -> bool:
        return self.error_type == UploadErrorType.TRANSPORT

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.upload_id is not None:
            payload["upload_id"] = self.upload_id
        if self.chunk_index is not None:
            payload["chunk_index"] = self.chunk_index
        return payload


class StorageBackendError(Exception):
    """Raised by backends that do not speak botocore, using S3 error codes."""

    def __init__(self, code: str, message: Optional[str] = None):
        super().__init__(message or code)
        self.code = code


class UploadInterrupted(Exception):
    """The chunk loop stopped because the upload was paused or cancelled."""


class UploadNotFoundError(KeyError):
    def __init__(self, upload_id: str):
        super().__init__(upload_id)
        self.upload_id = upload_id

    def __str__(self) -> str:
        return f"Upload {self.upload_id} not found"


class InvalidTransitionError(ValueError):
    pass


class InvalidUploadStateError(Exception):
    """The requested operation is not allowed in the upload's current status."""


class FileValidationError(ValueError):
    pass


class FileMismatchError(ValueError):
    pass


class FileNotAvailableError(Exception):
    """No live file source is attached to the upload."""


def _client_error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", "") or "")


def _client_error_status(exc: ClientError) -> Optional[int]:
    return exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")


def is_no_such_upload(exc: BaseException) -> bool:
    """Return True if the exception reports a missing multipart upload session."""
    if isinstance(exc, UploadError):
        return exc.code == "NoSuchUpload"
    if isinstance(exc, ClientError):
        return _client_error_code(exc) == "NoSuchUpload"
    if isinstance(exc, StorageBackendError):
        return exc.code == "NoSuchUpload"
    return False


def _type_for_code(code: str, message: str, status: Optional[int] = None) -> UploadErrorType:
    if code in NON_RETRYABLE_CODES:
        return UploadErrorType.NON_RETRYABLE
    if code in RETRYABLE_CODES:
        return UploadErrorType.TRANSPORT
    if status is not None and (status >= 500 or status == 429):
        return UploadErrorType.TRANSPORT
    lowered = message.lower()
    if any(hint in lowered for hint in TRANSIENT_MESSAGE_HINTS):
        return UploadErrorType.TRANSPORT
    return UploadErrorType.NON_RETRYABLE


def classify_storage_error(
    exc: BaseException,
    upload_id: Optional[str] = None,
    chunk_index: Optional[int] = None,
) -> UploadError:
    """Map an exception raised by a backend call onto the upload error taxonomy."""
    if isinstance(exc, UploadError):
        return exc

    if isinstance(exc, ClientError):
        code = _client_error_code(exc) or "ClientError"
        message = str(exc.response.get("Error", {}).get("Message") or exc)
        error_type = _type_for_code(code, message, _client_error_status(exc))
    elif isinstance(exc, StorageBackendError):
        code = exc.code
        message = str(exc)
        error_type = _type_for_code(code, message)
    elif isinstance(exc, (ConnectTimeoutError, ReadTimeoutError, asyncio.TimeoutError, TimeoutError)):
        code = "TimeoutError"
        message = str(exc) or "Request timed out"
        error_type = UploadErrorType.TRANSPORT
    elif isinstance(exc, (EndpointConnectionError, ConnectionClosedError, ConnectionError)):
        code = "NetworkingError"
        message = str(exc) or "Network connection failed"
        error_type = UploadErrorType.TRANSPORT
    elif isinstance(exc, OSError):
        # Local read failure: re-sending will not help
        code = "FileReadError"
        message = str(exc)
        error_type = UploadErrorType.NON_RETRYABLE
    else:
        code = type(exc).__name__
        message = str(exc)
        error_type = _type_for_code(code, message)

    return UploadError(
        code=code,
        message=message,
        error_type=error_type,
        upload_id=upload_id,
        chunk_index=chunk_index,
    )
