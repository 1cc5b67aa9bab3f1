from enum import Enum
from typing import Any, Callable, Optional, TYPE_CHECKING
import asyncio
import logging

from ..errors import BatchCancelledError
from ..models import BatchPhase, BatchResult, ProgressSnapshot, UploadTask
from ..utils.events import EventEmitter

logger = logging.getLogger(__name__)

if TYPE_CHECKING:
    from .core import BatchUploader


class ProcessState(Enum):
    """State of a batch upload process."""
    PENDING = "pending"
    RUNNING = "running"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    FAILED = "failed"


class BatchUploadProcess:
    """
    Process object for one batch upload with event-based progress tracking.

    Usage:
        process = uploader.upload_batch("./scans")

        process.on_phase(lambda phase: print(f"Phase: {phase.value}"))
        process.on_file_complete(lambda task: print(f"Done: {task.logical_path}"))
        process.on_file_fail(lambda task: print(f"Failed: {task.logical_path}: {task.error}"))
        process.on_progress(lambda snap: print(f"{snap.percent_complete}%"))

        result = await process.wait()  # wait() starts automatically if needed

    Cancelling stops dispatching new files. Uploads already in flight are
    allowed to settle, then ``wait()`` raises ``BatchCancelledError``.
    """

    def __init__(self, uploader: "BatchUploader", source: Any, dry_run: bool = False):
        self._uploader = uploader
        self._source = source
        self._dry_run = dry_run
        self._events = EventEmitter()
        self._state = ProcessState.PENDING
        self._task: Optional[asyncio.Task] = None
        self._cancelled = False
        self._result: Optional[BatchResult] = None
        self._error: Optional[BaseException] = None
        self._snapshot = ProgressSnapshot(phase=BatchPhase.SCANNING)
        self.batch_id: Optional[str] = None

    # Event subscription methods
    def on_phase(self, callback: Callable[[BatchPhase], Any]):
        """Called on every phase transition. Receives BatchPhase."""
        self._events.on("phase", callback)

    def on_file_start(self, callback: Callable[[UploadTask], Any]):
        """Called when a file starts uploading. Receives UploadTask."""
        self._events.on("file_start", callback)

    def on_file_progress(self, callback: Callable[[UploadTask, int], Any]):
        """Called when bytes of a file are acknowledged. Receives UploadTask and byte count."""
        self._events.on("file_progress", callback)

    def on_file_complete(self, callback: Callable[[UploadTask], Any]):
        self._events.on("file_complete", callback)

    def on_file_fail(self, callback: Callable[[UploadTask], Any]):
        self._events.on("file_fail", callback)

    def on_progress(self, callback: Callable[[ProgressSnapshot], Any]):
        """Called with aggregate progress after every file outcome. Receives ProgressSnapshot."""
        self._events.on("progress", callback)

    def on_finish(self, callback: Callable[[BatchResult], Any]):
        self._events.on("finish", callback)

    def on_error(self, callback: Callable[[BaseException], Any]):
        """Called when the batch fails or is cancelled. Receives the exception."""
        self._events.on("error", callback)

    # Control methods
    async def start(self):
        """Start the upload process (non-blocking)."""
        if self._state != ProcessState.PENDING:
            raise RuntimeError(f"Cannot start process in state: {self._state}")

        self._state = ProcessState.RUNNING
        self._task = asyncio.create_task(self._run())
        await self._events.emit("start")

    def cancel(self):
        """Stop dispatching new files. In-flight uploads settle on their own."""
        if self._state in (ProcessState.COMPLETED, ProcessState.CANCELLED, ProcessState.FAILED):
            return
        self._cancelled = True
        if self._state == ProcessState.PENDING:
            self._state = ProcessState.CANCELLED
            self._error = BatchCancelledError("Batch upload cancelled before start")

    async def wait(self) -> BatchResult:
        """Wait for the process and return its result, or raise its error."""
        if self._state == ProcessState.PENDING:
            await self.start()

        if self._task:
            await self._task

        if self._error is not None:
            raise self._error
        assert self._result is not None
        return self._result

    # State properties
    @property
    def state(self) -> ProcessState:
        return self._state

    @property
    def snapshot(self) -> ProgressSnapshot:
        """Latest aggregate progress."""
        return self._snapshot

    @property
    def result(self) -> Optional[BatchResult]:
        """Final result (None if not completed yet)."""
        return self._result

    @property
    def error(self) -> Optional[BaseException]:
        return self._error

    @property
    def is_running(self) -> bool:
        return self._state == ProcessState.RUNNING

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    # Hooks used by BatchUploader
    async def emit(self, event_name: str, *args):
        if event_name == "progress":
            self._snapshot = args[0]
        await self._events.emit(event_name, *args)

    def should_stop(self) -> bool:
        return self._cancelled

    # Internal methods
    async def _run(self):
        try:
            self._result = await self._uploader._run(self._source, self._dry_run, self)
            self._state = ProcessState.COMPLETED
            await self._events.emit("finish", self._result)
        except BatchCancelledError as e:
            self._state = ProcessState.CANCELLED
            self._error = e
            logger.info("Batch upload cancelled")
            await self._events.emit("error", e)
        except Exception as e:
            self._state = ProcessState.FAILED
            self._error = e
            logger.error(f"Batch upload failed: {e}")
            await self._events.emit("error", e)
