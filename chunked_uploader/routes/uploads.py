import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

import chunked_uploader.services.orchestrator as orchestrator_service
from chunked_uploader.models.upload import UploadRecord
from chunked_uploader.services.file_source import LocalFileSource
from chunked_uploader.services.orchestrator import UploadOrchestrator
from chunked_uploader.services.upload_errors import (
    FileMismatchError,
    FileNotAvailableError,
    FileValidationError,
    InvalidTransitionError,
    InvalidUploadStateError,
    UploadNotFoundError,
)

logger = logging.getLogger(__name__)
router = APIRouter()


class StartUploadRequest(BaseModel):
    path: str
    content_type: Optional[str] = None


class ResumeUploadRequest(BaseModel):
    path: Optional[str] = None


def get_upload_orchestrator() -> UploadOrchestrator:
    try:
        return orchestrator_service.get_orchestrator()
    except RuntimeError as e:
        raise HTTPException(status_code=503, detail=str(e))


def _to_http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, UploadNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, (InvalidUploadStateError, InvalidTransitionError, FileNotAvailableError)):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, (FileValidationError, FileMismatchError)):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, FileNotFoundError):
        return HTTPException(status_code=400, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


def _serialize(record: UploadRecord) -> dict:
    data = record.model_dump(mode="json")
    data["uploaded_bytes"] = record.uploaded_bytes
    return data


def _open_source(path: str, content_type: Optional[str] = None) -> LocalFileSource:
    try:
        return LocalFileSource(path, content_type)
    except FileNotFoundError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/uploads")
async def start_upload(req: StartUploadRequest, orch: UploadOrchestrator = Depends(get_upload_orchestrator)):
    source = _open_source(req.path, req.content_type)
    try:
        upload_id = await orch.start_upload(source, req.content_type)
    except FileValidationError as e:
        raise _to_http_error(e)
    logger.info(f"Started upload {upload_id} for {source.path}")
    record = orch.get_upload(upload_id)
    return {"upload_id": upload_id, "status": record.status if record else None}


@router.get("/uploads")
async def list_uploads(orch: UploadOrchestrator = Depends(get_upload_orchestrator)):
    return {"uploads": [_serialize(record) for record in orch.list_uploads()]}


@router.get("/uploads/overview")
async def uploads_overview(orch: UploadOrchestrator = Depends(get_upload_orchestrator)):
    return orch.get_overview()


@router.delete("/uploads/completed")
async def clear_completed(orch: UploadOrchestrator = Depends(get_upload_orchestrator)):
    removed = orch.clear_completed_uploads()
    return {"removed": removed}


@router.get("/uploads/{upload_id}")
async def get_upload(upload_id: str, orch: UploadOrchestrator = Depends(get_upload_orchestrator)):
    record = orch.get_upload(upload_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Upload {upload_id} not found")
    return _serialize(record)


@router.get("/uploads/{upload_id}/progress")
async def get_progress(upload_id: str, orch: UploadOrchestrator = Depends(get_upload_orchestrator)):
    try:
        return orch.get_progress(upload_id).model_dump(mode="json")
    except UploadNotFoundError as e:
        raise _to_http_error(e)


@router.post("/uploads/{upload_id}/pause")
async def pause_upload(upload_id: str, orch: UploadOrchestrator = Depends(get_upload_orchestrator)):
    try:
        record = await orch.pause_upload(upload_id)
    except UploadNotFoundError as e:
        raise _to_http_error(e)
    return {"upload_id": upload_id, "status": record.status}


@router.post("/uploads/{upload_id}/resume")
async def resume_upload(
    upload_id: str,
    req: Optional[ResumeUploadRequest] = None,
    orch: UploadOrchestrator = Depends(get_upload_orchestrator),
):
    try:
        if req is not None and req.path:
            record = await orch.resume_upload_with_file(upload_id, _open_source(req.path))
        else:
            record = await orch.resume_upload(upload_id)
    except (
        UploadNotFoundError,
        InvalidUploadStateError,
        InvalidTransitionError,
        FileNotAvailableError,
        FileMismatchError,
    ) as e:
        raise _to_http_error(e)
    return {"upload_id": upload_id, "status": record.status}


@router.post("/uploads/{upload_id}/cancel")
async def cancel_upload(upload_id: str, orch: UploadOrchestrator = Depends(get_upload_orchestrator)):
    try:
        record = await orch.cancel_upload(upload_id)
    except UploadNotFoundError as e:
        raise _to_http_error(e)
    return {"upload_id": upload_id, "status": record.status}


@router.post("/uploads/{upload_id}/validate")
async def validate_upload(upload_id: str, orch: UploadOrchestrator = Depends(get_upload_orchestrator)):
    try:
        result = await orch.validate_upload(upload_id)
    except (UploadNotFoundError, InvalidUploadStateError, InvalidTransitionError) as e:
        raise _to_http_error(e)
    record = orch.get_upload(upload_id)
    return {
        "upload_id": upload_id,
        "status": record.status if record else None,
        "validation": result.model_dump(),
    }


@router.delete("/uploads/{upload_id}")
async def remove_upload(upload_id: str, orch: UploadOrchestrator = Depends(get_upload_orchestrator)):
    try:
        await orch.remove_upload(upload_id)
    except (UploadNotFoundError, InvalidUploadStateError) as e:
        raise _to_http_error(e)
    return {"upload_id": upload_id, "removed": True}
