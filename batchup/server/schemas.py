"""Request and response models for the session API."""
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from ..models import ProcessingConfig, ProgressSnapshot
from .sessions import SessionStatus, UploadSession


class ProcessingOptions(BaseModel):
    """Downstream processing switches; omitted keys keep their defaults."""

    ocr: bool = True
    describe: bool = True
    pinax: bool = True

    def to_config(self) -> ProcessingConfig:
        return ProcessingConfig(ocr=self.ocr, describe=self.describe, pinax=self.pinax)


class InitUploadRequest(BaseModel):
    uploader: str
    root_path: str = "/"
    parent_pi: str = ""
    metadata: Optional[Dict[str, Any]] = None
    processing: Optional[ProcessingOptions] = None
    parallel_uploads: Optional[int] = Field(default=None, ge=1)
    parallel_parts: Optional[int] = Field(default=None, ge=1)


class InitUploadResponse(BaseModel):
    session_id: str
    upload_url: str
    status_url: str
    expires_at: datetime


class UploadFilesResponse(BaseModel):
    session_id: str
    files_received: int
    total_size: int
    status: SessionStatus


class ProcessUploadRequest(BaseModel):
    dry_run: bool = False


class ProcessUploadResponse(BaseModel):
    session_id: str
    status: SessionStatus
    message: str


class ProgressModel(BaseModel):
    phase: str
    files_total: int
    files_completed: int
    files_failed: int
    bytes_total: int
    bytes_uploaded: int
    percent_complete: int
    current_file: Optional[str] = None

    @classmethod
    def from_snapshot(cls, snapshot: ProgressSnapshot) -> "ProgressModel":
        return cls(**snapshot.to_dict())


class StatusResponse(BaseModel):
    session_id: str
    batch_id: Optional[str] = None
    status: SessionStatus
    phase: Optional[str] = None
    progress: Optional[ProgressModel] = None
    errors: List[str] = Field(default_factory=list)
    files_received: int = 0
    total_size: int = 0
    started_at: datetime
    updated_at: datetime
    expires_at: datetime

    @classmethod
    def from_session(cls, session: UploadSession) -> "StatusResponse":
        progress = session.progress
        return cls(
            session_id=session.session_id,
            batch_id=session.batch_id,
            status=session.status,
            phase=progress.phase.value if progress else None,
            progress=ProgressModel.from_snapshot(progress) if progress else None,
            errors=list(session.errors),
            files_received=session.files_received,
            total_size=session.total_size,
            started_at=session.created_at,
            updated_at=session.updated_at,
            expires_at=session.expires_at,
        )


class CancelUploadResponse(BaseModel):
    session_id: str
    status: SessionStatus
    message: str


class StorageHealth(BaseModel):
    directory: str
    available: int
    used: int


class WorkerHealth(BaseModel):
    url: str
    reachable: bool


class HealthResponse(BaseModel):
    status: Literal["healthy", "degraded", "unhealthy"]
    version: str
    uptime: float
    storage: StorageHealth
    worker: WorkerHealth
    active_sessions: int


class ErrorResponse(BaseModel):
    error: str
    detail: Optional[Any] = None
