"""Orchestrator package - schedules file and part uploads for a batch."""
from .core import BatchUploader
from .multipart import plan_parts, upload_multipart
from .parallel import run_bounded
from .process import BatchUploadProcess, ProcessState

__all__ = [
    "BatchUploader",
    "BatchUploadProcess",
    "ProcessState",
    "run_bounded",
    "plan_parts",
    "upload_multipart",
]
