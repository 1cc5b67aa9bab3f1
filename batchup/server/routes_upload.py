"""Upload session API routes."""
import logging
from typing import List, Optional

from fastapi import APIRouter, Body, Depends, File, Request, UploadFile

from .schemas import (
    CancelUploadResponse,
    InitUploadRequest,
    InitUploadResponse,
    ProcessUploadRequest,
    ProcessUploadResponse,
    StatusResponse,
    UploadFilesResponse,
)
from .sessions import SessionManager

router = APIRouter(prefix="/api/v1/upload", tags=["upload"])
logger = logging.getLogger(__name__)


def get_sessions(request: Request) -> SessionManager:
    return request.app.state.sessions


@router.post("/init", response_model=InitUploadResponse)
async def init_upload(
    request: Request,
    body: InitUploadRequest = Body(...),
    sessions: SessionManager = Depends(get_sessions),
) -> InitUploadResponse:
    """Create a session that will receive files."""
    session = await sessions.create_session(
        uploader=body.uploader,
        root_path=body.root_path,
        parent_pi=body.parent_pi,
        metadata=body.metadata,
        processing=body.processing.to_config() if body.processing else None,
        parallel_uploads=body.parallel_uploads,
        parallel_parts=body.parallel_parts,
    )
    base_url = str(request.base_url).rstrip("/")
    return InitUploadResponse(
        session_id=session.session_id,
        upload_url=f"{base_url}{router.prefix}/{session.session_id}/files",
        status_url=f"{base_url}{router.prefix}/{session.session_id}/status",
        expires_at=session.expires_at,
    )


@router.post("/{session_id}/files", response_model=UploadFilesResponse)
async def upload_files(
    session_id: str,
    files: List[UploadFile] = File(...),
    sessions: SessionManager = Depends(get_sessions),
) -> UploadFilesResponse:
    """
    Receive files into the session.

    Each part's filename may carry a relative path (``folder/sub/a.pdf``);
    the directory structure is kept.
    """
    session = await sessions.accept_files(
        session_id,
        [(f.filename or "unnamed", f.file) for f in files],
    )
    return UploadFilesResponse(
        session_id=session.session_id,
        files_received=session.files_received,
        total_size=session.total_size,
        status=session.status,
    )


@router.post("/{session_id}/process", response_model=ProcessUploadResponse)
async def process_upload(
    session_id: str,
    body: Optional[ProcessUploadRequest] = Body(None),
    sessions: SessionManager = Depends(get_sessions),
) -> ProcessUploadResponse:
    """Start the batch upload in the background; poll the status route."""
    dry_run = body.dry_run if body else False
    session = sessions.start_processing(session_id, dry_run=dry_run)
    return ProcessUploadResponse(
        session_id=session.session_id,
        status=session.status,
        message="Processing started. Poll status endpoint for progress updates.",
    )


@router.get("/{session_id}/status", response_model=StatusResponse)
async def get_status(
    session_id: str,
    sessions: SessionManager = Depends(get_sessions),
) -> StatusResponse:
    return StatusResponse.from_session(sessions.require(session_id))


@router.delete("/{session_id}", response_model=CancelUploadResponse)
async def cancel_upload(
    session_id: str,
    sessions: SessionManager = Depends(get_sessions),
) -> CancelUploadResponse:
    """Cancel the session and delete its files."""
    session = await sessions.cancel(session_id)
    return CancelUploadResponse(
        session_id=session.session_id,
        status=session.status,
        message="Upload cancelled and temp files cleaned up",
    )
