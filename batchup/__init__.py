"""
batchup - batch uploads of file trees to object storage through an ingest worker.

The worker hands out presigned URLs; files go straight to storage, small
ones in one PUT and large ones in parallel parts, with retries and
aggregate progress.

Usage:
    from batchup import BatchUploader, UploadConfig

    config = UploadConfig(worker_url="https://ingest.example.org", uploader="archivist")
    async with BatchUploader(config) as uploader:
        result = await uploader.upload("./scans")

    # Observe progress
    async with BatchUploader(config) as uploader:
        process = uploader.upload_batch("./scans")
        process.on_file_fail(lambda task: print(f"Failed: {task.logical_path}: {task.error}"))
        process.on_progress(lambda snap: print(f"{snap.percent_complete}%"))
        result = await process.wait()

    if result.partial:
        for failure in result.failures:
            print(failure.logical_path, failure.error)
"""
__version__ = "1.0.0"

from .errors import (
    BatchCancelledError,
    BatchFailedError,
    NetworkError,
    ScanError,
    UploadError,
    UploaderError,
    ValidationError,
    WorkerAPIError,
)
from .models import (
    BatchPhase,
    BatchResult,
    FileFailure,
    InMemoryFile,
    PartInfo,
    ProcessingConfig,
    ProgressSnapshot,
    RetryOptions,
    TaskStatus,
    UploadConfig,
    UploadTask,
)
from .orchestrator import BatchUploader, BatchUploadProcess, ProcessState

__all__ = [
    # Main
    "BatchUploader",
    "BatchUploadProcess",
    "ProcessState",
    # Models
    "UploadConfig",
    "RetryOptions",
    "ProcessingConfig",
    "InMemoryFile",
    "UploadTask",
    "PartInfo",
    "TaskStatus",
    "BatchPhase",
    "ProgressSnapshot",
    "BatchResult",
    "FileFailure",
    # Errors
    "UploaderError",
    "ValidationError",
    "ScanError",
    "NetworkError",
    "WorkerAPIError",
    "UploadError",
    "BatchFailedError",
    "BatchCancelledError",
]
