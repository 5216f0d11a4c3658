"""Capture upload API routes.

Local control surface for host integrations: submit a capture, poll or
cancel its session, and read or prune the upload history.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Request, UploadFile
from pydantic import BaseModel

from capture_upload.exceptions import UploadError
from capture_upload.models.upload import ArtifactKind, SessionSnapshot, UploadRequest
from capture_upload.pipeline.manager import UploadSessionManager

router = APIRouter(prefix="/api/v1", tags=["captures"])
logger = logging.getLogger(__name__)


class SubmitResponse(BaseModel):
    session_id: str


class CancelResponse(BaseModel):
    session_id: str
    cancelled: bool


class DeleteResponse(BaseModel):
    object_key: str
    deleted: bool
    removed_from_history: bool


def get_manager(request: Request) -> UploadSessionManager:
    """Return the session manager created by the application lifespan."""
    manager = getattr(request.app.state, "manager", None)
    if manager is None:
        raise HTTPException(status_code=503, detail="Upload manager is not running")
    return manager


@router.post("/captures", response_model=SubmitResponse, status_code=202)
async def submit_capture(
    file: UploadFile = File(...),
    case_id: str = Form(""),
    kind: str = Form(...),
    description: Optional[str] = Form(None),
    origin_url: Optional[str] = Form(None),
    tags: str = Form(""),
    manager: UploadSessionManager = Depends(get_manager),
) -> SubmitResponse:
    """Queue a captured screenshot or recording for upload."""
    if not case_id or not case_id.strip():
        raise HTTPException(status_code=400, detail="case_id is required")
    try:
        artifact_kind = ArtifactKind(kind.strip().lower())
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown capture kind: {kind}")

    payload = await file.read()
    request = UploadRequest(
        payload=payload,
        size_bytes=len(payload),
        content_type=file.content_type or "application/octet-stream",
        case_id=case_id.strip(),
        kind=artifact_kind,
        file_name=file.filename or "capture.bin",
        tags=[tag.strip() for tag in tags.split(",") if tag.strip()],
        description=description,
        origin_url=origin_url,
    )
    session_id = manager.submit(request)
    return SubmitResponse(session_id=session_id)


@router.get("/captures/{session_id}", response_model=SessionSnapshot)
async def get_capture(
    session_id: str, manager: UploadSessionManager = Depends(get_manager)
) -> SessionSnapshot:
    snapshot = manager.get_status(session_id)
    if snapshot is None:
        raise HTTPException(status_code=404, detail="Upload session not found")
    return snapshot


@router.delete("/captures/{session_id}", response_model=CancelResponse)
async def cancel_capture(
    session_id: str, manager: UploadSessionManager = Depends(get_manager)
) -> CancelResponse:
    return CancelResponse(session_id=session_id, cancelled=manager.cancel(session_id))


@router.get("/history")
async def list_history(
    case_id: Optional[str] = None, manager: UploadSessionManager = Depends(get_manager)
) -> list[dict]:
    """List completed uploads, newest first."""
    return [record.to_dict() for record in manager.history.list_all(case_id)]


@router.get("/history/stats")
async def history_stats(
    case_id: Optional[str] = None, manager: UploadSessionManager = Depends(get_manager)
) -> dict:
    stats = manager.history.stats(case_id)
    return {
        "total_files": stats.total_files,
        "total_size": stats.total_size,
        "by_kind": stats.by_kind,
        "by_case": stats.by_case,
        "success_rate": stats.success_rate,
        "average_upload_seconds": stats.average_upload_seconds,
        "recent_uploads": [record.to_dict() for record in stats.recent_uploads],
    }


@router.delete("/history/{object_key:path}", response_model=DeleteResponse)
async def delete_artifact(
    object_key: str,
    case_id: str = Query(..., min_length=1),
    manager: UploadSessionManager = Depends(get_manager),
) -> DeleteResponse:
    """Delete a stored artifact through the broker and forget its history record."""
    try:
        removed = await manager.delete_artifact(object_key, case_id)
    except UploadError as e:
        logger.error(
            "Artifact deletion failed",
            extra={"object_key": object_key, "case_id": case_id, "error": e.message},
        )
        status_code = 404 if e.status_code == 404 else 502
        raise HTTPException(status_code=status_code, detail=e.message)
    return DeleteResponse(object_key=object_key, deleted=True, removed_from_history=removed)
