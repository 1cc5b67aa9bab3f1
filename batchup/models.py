"""
Models for batchup.

Configuration objects are immutable dataclasses; per-batch state
(UploadTask, BatchContext) is mutable and owned by one batch run.
"""
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, BinaryIO, Callable, Dict, List, Optional, Union


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TaskStatus(str, Enum):
    """Upload status of a single file."""
    PENDING = "pending"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    FAILED = "failed"


class BatchPhase(str, Enum):
    """Phase of a batch run. Linear, with FAILED reachable from any phase."""
    SCANNING = "scanning"
    INITIALIZED = "initialized"
    UPLOADING = "uploading"
    FINALIZING = "finalizing"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass(frozen=True)
class ProcessingConfig:
    """Downstream processing switches attached to every file."""
    ocr: bool = True
    describe: bool = True
    pinax: bool = True

    def merge(self, override: Optional[Dict[str, Any]]) -> "ProcessingConfig":
        """Return a copy with the keys present in ``override`` applied."""
        if not override:
            return self
        return ProcessingConfig(
            ocr=bool(override.get("ocr", self.ocr)),
            describe=bool(override.get("describe", self.describe)),
            pinax=bool(override.get("pinax", self.pinax)),
        )

    def to_dict(self) -> Dict[str, bool]:
        return asdict(self)


@dataclass(frozen=True)
class RetryOptions:
    """
    Retry configuration for network operations.

    ``max_retries`` counts additional attempts after the first one.
    Delays are in seconds.
    """
    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    jitter: bool = True
    should_retry: Optional[Callable[[BaseException], bool]] = None

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ValueError("retry delays must be >= 0")


@dataclass(frozen=True)
class UploadConfig:
    """Immutable configuration for one batch upload."""
    worker_url: str
    uploader: str
    root_path: str = "/"
    parent_pi: str = ""
    metadata: Optional[Dict[str, Any]] = None
    processing: ProcessingConfig = field(default_factory=ProcessingConfig)
    parallel_uploads: int = 5
    parallel_parts: int = 3
    retry: RetryOptions = field(default_factory=RetryOptions)
    timeout: float = 30.0
    follow_symlinks: bool = True


@dataclass(frozen=True)
class InMemoryFile:
    """A file handed over as bytes or an open binary handle instead of a path."""
    name: str
    data: Union[bytes, BinaryIO]
    relative_path: Optional[str] = None
    content_type: Optional[str] = None

    @property
    def path(self) -> str:
        return self.relative_path or self.name


@dataclass(frozen=True)
class PartInfo:
    """One acknowledged chunk of a multipart upload."""
    part_number: int
    etag: str

    def to_dict(self) -> Dict[str, Any]:
        return {"part_number": self.part_number, "etag": self.etag}


@dataclass
class UploadTask:
    """One file to transfer. Mutated only by the worker that claimed it."""
    logical_path: str
    file_name: str
    size: int
    content_type: str
    source: Union[Path, bytes, BinaryIO]
    cid: Optional[str] = None
    processing: ProcessingConfig = field(default_factory=ProcessingConfig)
    status: TaskStatus = TaskStatus.PENDING
    storage_key: Optional[str] = None
    upload_type: Optional[str] = None
    upload_id: Optional[str] = None
    completed_parts: List[PartInfo] = field(default_factory=list)
    error: Optional[str] = None
    bytes_uploaded: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def read_bytes(self) -> bytes:
        """Read the whole content. Blocking; callers run it off the event loop."""
        if isinstance(self.source, (bytes, bytearray)):
            return bytes(self.source)
        if isinstance(self.source, Path):
            return self.source.read_bytes()
        if hasattr(self.source, "seek"):
            self.source.seek(0)
        return self.source.read()


@dataclass
class ScanResult:
    """Files found by the scanner."""
    tasks: List[UploadTask]
    skipped: List[str] = field(default_factory=list)

    @property
    def total_files(self) -> int:
        return len(self.tasks)

    @property
    def total_size(self) -> int:
        return sum(t.size for t in self.tasks)


@dataclass
class BatchContext:
    """
    Shared state of one batch.

    ``total_size`` is fixed at creation and never recomputed, even when
    individual files fail.
    """
    batch_id: str
    session_id: str
    tasks: List[UploadTask]
    total_size: int
    created_at: datetime = field(default_factory=utcnow)
    finalized_at: Optional[datetime] = None

    @classmethod
    def create(cls, batch_id: str, session_id: str, tasks: List[UploadTask]) -> "BatchContext":
        return cls(
            batch_id=batch_id,
            session_id=session_id,
            tasks=list(tasks),
            total_size=sum(t.size for t in tasks),
        )

    @property
    def completed_tasks(self) -> List[UploadTask]:
        return [t for t in self.tasks if t.status == TaskStatus.COMPLETED]

    @property
    def failed_tasks(self) -> List[UploadTask]:
        return [t for t in self.tasks if t.status == TaskStatus.FAILED]


@dataclass(frozen=True)
class ProgressSnapshot:
    """Aggregate progress of a batch at one instant."""
    phase: BatchPhase
    files_total: int = 0
    files_completed: int = 0
    files_failed: int = 0
    bytes_total: int = 0
    bytes_uploaded: int = 0
    current_file: Optional[str] = None

    @property
    def percent_complete(self) -> int:
        if self.phase == BatchPhase.COMPLETE:
            return 100
        if self.bytes_total <= 0:
            return 0
        return int(round(self.bytes_uploaded / self.bytes_total * 100))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase": self.phase.value,
            "files_total": self.files_total,
            "files_completed": self.files_completed,
            "files_failed": self.files_failed,
            "bytes_total": self.bytes_total,
            "bytes_uploaded": self.bytes_uploaded,
            "current_file": self.current_file,
            "percent_complete": self.percent_complete,
        }


@dataclass(frozen=True)
class FileFailure:
    """A file that did not make it, with the reason."""
    logical_path: str
    error: str


@dataclass(frozen=True)
class BatchResult:
    """Result of a finished batch."""
    batch_id: str
    files_total: int
    files_uploaded: int
    bytes_uploaded: int
    total_bytes: int
    failures: List[FileFailure] = field(default_factory=list)
    session_id: Optional[str] = None
    files_enqueued: Optional[int] = None
    storage_prefix: Optional[str] = None
    duration: float = 0.0
    dry_run: bool = False

    @property
    def files_failed(self) -> int:
        return len(self.failures)

    @property
    def success(self) -> bool:
        return self.files_failed == 0

    @property
    def partial(self) -> bool:
        return 0 < self.files_failed < self.files_total
