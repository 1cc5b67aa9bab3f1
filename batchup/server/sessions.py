"""
Upload sessions for the HTTP server.

A session collects files into a temporary directory, then runs one batch
upload over that directory in the background while callers poll it.

    initialized -> receiving -> (ready) -> processing -> completed | failed
    any non-terminal state -> cancelled

Records are immutable; every change replaces the whole record under its
id, so a reader never sees a half-applied update. Sessions live in memory
only and are lost on restart.
"""
import asyncio
import logging
import shutil
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Any, BinaryIO, Callable, Dict, Iterable, Optional, Tuple

from ..errors import BatchFailedError, UploaderError, ValidationError
from ..models import (
    BatchPhase,
    ProcessingConfig,
    ProgressSnapshot,
    RetryOptions,
    UploadConfig,
    utcnow,
)
from ..orchestrator.core import BatchUploader
from ..orchestrator.process import BatchUploadProcess
from ..utils.validation import (
    normalize_path,
    validate_logical_path,
    validate_parent_pi,
    validate_uploader,
)
from .config import Settings

logger = logging.getLogger(__name__)


class SessionStatus(str, Enum):
    INITIALIZED = "initialized"
    RECEIVING = "receiving"
    READY = "ready"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.CANCELLED)

    @property
    def accepts_files(self) -> bool:
        return self in (SessionStatus.INITIALIZED, SessionStatus.RECEIVING, SessionStatus.READY)


class SessionNotFoundError(UploaderError):
    """No session with this id (never created, deleted or expired)."""


class SessionConflictError(UploaderError):
    """The request is not allowed in the session's current state."""


@dataclass(frozen=True)
class UploadSession:
    session_id: str
    config: UploadConfig
    status: SessionStatus
    upload_dir: Path
    created_at: datetime
    updated_at: datetime
    expires_at: datetime
    files_received: int = 0
    total_size: int = 0
    progress: Optional[ProgressSnapshot] = None
    errors: Tuple[str, ...] = ()
    batch_id: Optional[str] = None


UploaderFactory = Callable[[UploadConfig], BatchUploader]


class SessionManager:
    """
    In-memory session store and state machine.

    Owned by the application (created at startup, drained at shutdown)
    rather than a module-level singleton, so tests get isolated stores.
    """

    def __init__(
        self,
        upload_dir: Path,
        worker_url: str,
        ttl: timedelta = timedelta(hours=24),
        completed_grace: timedelta = timedelta(minutes=5),
        sweep_interval: float = 60.0,
        parallel_uploads: int = 5,
        parallel_parts: int = 3,
        retry: Optional[RetryOptions] = None,
        timeout: float = 30.0,
        uploader_factory: UploaderFactory = BatchUploader,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._upload_dir = Path(upload_dir)
        self._worker_url = worker_url
        self._ttl = ttl
        self._grace = completed_grace
        self._sweep_interval = sweep_interval
        self._parallel_uploads = parallel_uploads
        self._parallel_parts = parallel_parts
        self._retry = retry or RetryOptions()
        self._timeout = timeout
        self._uploader_factory = uploader_factory
        self._clock = clock

        self._sessions: Dict[str, UploadSession] = {}
        self._processes: Dict[str, BatchUploadProcess] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._timers: Dict[str, asyncio.Task] = {}
        self._sweeper: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "SessionManager":
        return cls(
            upload_dir=Path(settings.UPLOAD_DIR),
            worker_url=settings.WORKER_URL,
            ttl=timedelta(seconds=settings.SESSION_TTL_SECONDS),
            completed_grace=timedelta(seconds=settings.COMPLETED_GRACE_SECONDS),
            sweep_interval=settings.SWEEP_INTERVAL_SECONDS,
            parallel_uploads=settings.DEFAULT_PARALLEL_UPLOADS,
            parallel_parts=settings.DEFAULT_PARALLEL_PARTS,
            retry=RetryOptions(max_retries=settings.MAX_RETRIES),
            timeout=float(settings.REQUEST_TIMEOUT),
            **kwargs,
        )

    # Lookup

    @property
    def upload_dir(self) -> Path:
        return self._upload_dir

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    def get(self, session_id: str) -> Optional[UploadSession]:
        return self._sessions.get(session_id)

    def require(self, session_id: str) -> UploadSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session not found: {session_id}", status_code=404)
        return session

    def _owns(self, session_id: str, upload_dir: Path) -> bool:
        session = self._sessions.get(session_id)
        return session is not None and session.upload_dir == upload_dir

    def _replace(self, session_id: str, **changes: Any) -> UploadSession:
        session = self.require(session_id)
        updated = replace(session, updated_at=self._clock(), **changes)
        self._sessions[session_id] = updated
        return updated

    # Transitions

    async def create_session(
        self,
        uploader: str,
        root_path: str = "/",
        parent_pi: str = "",
        metadata: Optional[Dict[str, Any]] = None,
        processing: Optional[ProcessingConfig] = None,
        parallel_uploads: Optional[int] = None,
        parallel_parts: Optional[int] = None,
    ) -> UploadSession:
        validate_uploader(uploader)
        validate_logical_path(root_path)
        validate_parent_pi(parent_pi)

        session_id = uuid.uuid4().hex
        upload_dir = self._upload_dir / session_id
        await asyncio.to_thread(upload_dir.mkdir, parents=True, exist_ok=True)
        logger.debug("Created upload directory: %s", upload_dir)

        config = UploadConfig(
            worker_url=self._worker_url,
            uploader=uploader,
            root_path=root_path,
            parent_pi=parent_pi,
            metadata=metadata,
            processing=processing or ProcessingConfig(),
            parallel_uploads=parallel_uploads or self._parallel_uploads,
            parallel_parts=parallel_parts or self._parallel_parts,
            retry=self._retry,
            timeout=self._timeout,
        )
        now = self._clock()
        session = UploadSession(
            session_id=session_id,
            config=config,
            status=SessionStatus.INITIALIZED,
            upload_dir=upload_dir,
            created_at=now,
            updated_at=now,
            expires_at=now + self._ttl,
        )
        self._sessions[session_id] = session
        logger.info("Created session %s (uploader=%s, root_path=%s)", session_id, uploader, root_path)
        return session

    async def accept_files(self, session_id: str, files: Iterable[Tuple[str, BinaryIO]]) -> UploadSession:
        """
        Store ``(relative_name, handle)`` pairs below the session directory.

        Relative directories in the name are kept; names that would land
        outside the session directory are rejected.
        """
        session = self.require(session_id)
        if not session.status.accepts_files:
            raise SessionConflictError(
                f"Cannot upload files to session in state {session.status.value}",
                status_code=409,
            )

        targets = [(_safe_target(session.upload_dir, name), handle) for name, handle in files]

        count = 0
        size = 0
        for target, handle in targets:
            if not self._owns(session_id, session.upload_dir):
                break
            try:
                size += await asyncio.to_thread(_store, session.upload_dir, target, handle)
            except FileNotFoundError:
                break
            count += 1

        if not self._owns(session_id, session.upload_dir):
            await asyncio.to_thread(shutil.rmtree, session.upload_dir, True)
            raise SessionNotFoundError(f"Session not found: {session_id}", status_code=404)

        session = self.require(session_id)
        if not session.status.accepts_files:
            raise SessionConflictError(
                f"Session changed to {session.status.value} while receiving files",
                status_code=409,
            )
        session = self._replace(
            session_id,
            status=SessionStatus.RECEIVING,
            files_received=session.files_received + count,
            total_size=session.total_size + size,
        )
        logger.info("Received %d files (%d bytes) for session %s", count, size, session_id)
        return session

    def start_processing(self, session_id: str, dry_run: bool = False) -> UploadSession:
        session = self.require(session_id)
        if session.status == SessionStatus.PROCESSING:
            raise SessionConflictError("Session already processing", status_code=409)
        if session.status.is_terminal:
            raise SessionConflictError(f"Session already {session.status.value}", status_code=409)

        session = self._replace(
            session_id,
            status=SessionStatus.PROCESSING,
            progress=ProgressSnapshot(phase=BatchPhase.SCANNING),
        )
        self._tasks[session_id] = asyncio.create_task(self._process(session_id, dry_run))
        logger.info("Processing started for session %s (dry_run=%s)", session_id, dry_run)
        return session

    async def cancel(self, session_id: str) -> UploadSession:
        """Cancel (unless already terminal), delete, and return the last record."""
        session = self.require(session_id)
        if not session.status.is_terminal:
            session = self._replace(session_id, status=SessionStatus.CANCELLED)
            process = self._processes.get(session_id)
            if process:
                process.cancel()
        await self.delete(session_id)
        logger.info("Session cancelled: %s", session_id)
        return session

    async def delete(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return

        timer = self._timers.pop(session_id, None)
        if timer and timer is not asyncio.current_task():
            timer.cancel()

        try:
            await asyncio.to_thread(shutil.rmtree, session.upload_dir)
            logger.debug("Deleted upload directory: %s", session.upload_dir)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error("Failed to delete upload dir %s: %s", session.upload_dir, e)

    async def sweep_expired(self, now: Optional[datetime] = None) -> int:
        """Delete every session past its expiry, whatever its status."""
        now = now or self._clock()
        expired = [sid for sid, s in self._sessions.items() if s.expires_at <= now]
        for session_id in expired:
            logger.info("Deleting expired session: %s", session_id)
            process = self._processes.get(session_id)
            if process:
                process.cancel()
            await self.delete(session_id)
        return len(expired)

    # Lifecycle

    def start(self) -> None:
        if self._sweeper is None:
            self._sweeper = asyncio.create_task(self._sweep_loop())

    async def shutdown(self) -> None:
        logger.info("Cleaning up all sessions (%d total)", len(self._sessions))
        pending = []
        if self._sweeper:
            self._sweeper.cancel()
            pending.append(self._sweeper)
            self._sweeper = None
        for task in list(self._tasks.values()) + list(self._timers.values()):
            task.cancel()
            pending.append(task)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._tasks.clear()
        self._timers.clear()

        for session_id in list(self._sessions):
            await self.delete(session_id)
        logger.info("All sessions cleaned up")

    # Background work

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            count = await self.sweep_expired()
            if count:
                logger.info("Expired %d session(s)", count)

    def _is_processing(self, session_id: str) -> bool:
        session = self._sessions.get(session_id)
        return session is not None and session.status == SessionStatus.PROCESSING

    async def _process(self, session_id: str, dry_run: bool) -> None:
        session = self._sessions.get(session_id)
        if session is None:
            self._tasks.pop(session_id, None)
            return
        try:
            async with self._uploader_factory(session.config) as uploader:
                process = uploader.upload_batch(session.upload_dir, dry_run)
                self._processes[session_id] = process
                if not self._is_processing(session_id):
                    process.cancel()

                def on_phase(phase: BatchPhase) -> None:
                    current = self._sessions.get(session_id)
                    if self._is_processing(session_id) and current is not None:
                        progress = current.progress or ProgressSnapshot(phase=phase)
                        self._replace(session_id, progress=replace(progress, phase=phase), batch_id=process.batch_id)

                def on_progress(snapshot: ProgressSnapshot) -> None:
                    if self._is_processing(session_id):
                        self._replace(session_id, progress=snapshot, batch_id=process.batch_id)

                process.on_phase(on_phase)
                process.on_progress(on_progress)
                result = await process.wait()
        except Exception as e:
            if not self._is_processing(session_id):
                logger.debug("Discarding outcome of session %s: %s", session_id, e)
                return
            errors = [str(e) or type(e).__name__]
            if isinstance(e, BatchFailedError):
                errors.extend(f"{f.logical_path}: {f.error}" for f in e.failures)
            session = self.require(session_id)
            self._replace(
                session_id,
                status=SessionStatus.FAILED,
                errors=session.errors + tuple(errors),
                progress=replace(session.progress, phase=BatchPhase.FAILED) if session.progress else None,
            )
            logger.error("Session failed: %s: %s", session_id, e)
            return
        finally:
            self._processes.pop(session_id, None)
            self._tasks.pop(session_id, None)

        if not self._is_processing(session_id):
            logger.debug("Discarding result of session %s", session_id)
            return

        session = self.require(session_id)
        self._replace(
            session_id,
            status=SessionStatus.COMPLETED,
            batch_id=result.batch_id,
            errors=session.errors + tuple(f"{f.logical_path}: {f.error}" for f in result.failures),
            progress=ProgressSnapshot(
                phase=BatchPhase.COMPLETE,
                files_total=result.files_total,
                files_completed=result.files_uploaded,
                files_failed=result.files_failed,
                bytes_total=result.total_bytes,
                bytes_uploaded=result.bytes_uploaded,
            ),
        )
        logger.info("Session completed: %s (batch %s)", session_id, result.batch_id)
        self._timers[session_id] = asyncio.create_task(self._delete_after_grace(session_id))

    async def _delete_after_grace(self, session_id: str) -> None:
        await asyncio.sleep(self._grace.total_seconds())
        await self.delete(session_id)
        logger.info("Session cleaned up: %s", session_id)


def _safe_target(base: Path, name: str) -> Path:
    relative = PurePosixPath(normalize_path(name or ""))
    parts = [p for p in relative.parts if p not in ("", ".")]
    if relative.is_absolute() or not parts or ".." in parts:
        raise ValidationError(f"Invalid file name: {name!r}", "files")
    target = base.joinpath(*parts)
    if base.resolve() not in target.resolve().parents:
        raise ValidationError(f"Invalid file name: {name!r}", "files")
    return target


def _store(base: Path, target: Path, handle: BinaryIO) -> int:
    if not base.is_dir():
        raise FileNotFoundError(f"Upload directory missing: {base}")
    target.parent.mkdir(parents=True, exist_ok=True)
    if hasattr(handle, "seek"):
        handle.seek(0)
    with open(target, "wb") as out:
        shutil.copyfileobj(handle, out)
        return out.tell()
