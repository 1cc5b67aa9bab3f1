"""Services for batchup: coordinating-service client, storage transfers, scanning."""
from .scanner import FileScanner
from .transfer import TransferService
from .worker_client import (
    FileUploadInstructions,
    FinalizeBatchResponse,
    InitBatchResponse,
    PresignedPart,
    WorkerClient,
)

__all__ = [
    "FileScanner",
    "TransferService",
    "WorkerClient",
    "InitBatchResponse",
    "FileUploadInstructions",
    "FinalizeBatchResponse",
    "PresignedPart",
]
