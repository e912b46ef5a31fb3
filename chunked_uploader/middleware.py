from fastapi import FastAPI, Request, HTTPException
from fastapi.responses import JSONResponse
import logging
import traceback

from chunked_uploader.services.upload_errors import UploadError

logger = logging.getLogger(__name__)

def add_error_handling_middleware(app: FastAPI):
    """Add error handling middleware to FastAPI app"""

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        """Handle HTTP exceptions with proper error format"""
        logger.error(f"HTTP error {exc.status_code}: {exc.detail}")
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "code": exc.status_code,
                "message": exc.detail,
                "hint": "Check the request parameters and try again",
                "retryable": exc.status_code >= 500
            }
        )

    @app.exception_handler(UploadError)
    async def upload_error_handler(request: Request, exc: UploadError):
        """Storage backend failures surfaced by an upload operation"""
        logger.error(f"Upload error {exc.code}: {exc.message}")
        content = exc.to_dict()
        content["hint"] = (
            "The storage backend is temporarily unavailable, try again shortly"
            if exc.retryable
            else "Check the storage backend configuration and credentials"
        )
        return JSONResponse(status_code=502, content=content)

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Handle general exceptions"""
        logger.error(f"Unhandled exception: {str(exc)}")
        logger.error(f"Traceback: {traceback.format_exc()}")
        return JSONResponse(
            status_code=500,
            content={
                "code": 500,
                "message": "Internal server error",
                "hint": "Please try again later or contact support",
                "retryable": True
            }
        )
