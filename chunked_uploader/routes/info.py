from fastapi import APIRouter
from datetime import datetime, timezone
import logging
import platform
import sys

from chunked_uploader.config import settings, validate_storage_settings

logger = logging.getLogger(__name__)
router = APIRouter()

@router.get("/server/info")
async def server_info():
    """
    Server information endpoint
    Returns service version, upload engine limits and configuration problems
    """
    logger.info("Server info requested")
    return {
        "service": "chunked-upload-service",
        "version": settings.app_version,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "system": {
            "platform": platform.platform(),
            "python_version": sys.version,
        },
        "upload": {
            "storage_backend": settings.storage_backend,
            "max_concurrent_uploads": settings.max_concurrent_uploads,
            "retry_attempts": settings.retry_attempts,
            "configuration_problems": validate_storage_settings(settings),
        },
        "status": "running"
    }
