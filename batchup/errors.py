"""
Error taxonomy.

Every error is tagged where it is raised: ``retryable`` says whether the
backoff loop may try again, ``status_code`` keeps the HTTP status when one
was observed.
"""
from typing import Any, List, Optional


class UploaderError(Exception):
    """Base class for batchup errors."""

    retryable = False

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        retryable: Optional[bool] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.cause = cause
        if retryable is not None:
            self.retryable = retryable


class ValidationError(UploaderError):
    """Malformed input, detected before any network call."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class ScanError(UploaderError):
    """The source could not be enumerated."""

    def __init__(self, message: str, path: str = ""):
        super().__init__(message)
        self.path = path


class NetworkError(UploaderError):
    """Transport failure (connection refused, timeout, reset)."""

    retryable = True


class WorkerAPIError(UploaderError):
    """Error response from the coordinating service."""

    def __init__(
        self,
        message: str,
        status_code: int,
        details: Any = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(
            message,
            status_code=status_code,
            retryable=status_code >= 500 or status_code == 429,
        )
        self.details = details
        self.retry_after = retry_after


class UploadError(UploaderError):
    """A PUT to object storage failed, or its response was unusable."""

    retryable = True

    def __init__(
        self,
        message: str,
        file_name: Optional[str] = None,
        *,
        part_number: Optional[int] = None,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
        retryable: Optional[bool] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message, status_code=status_code, retryable=retryable, cause=cause)
        self.file_name = file_name
        self.part_number = part_number
        self.retry_after = retry_after


class BatchFailedError(UploaderError):
    """Every file of a batch failed; the batch was not finalized."""

    def __init__(self, message: str, failures: Optional[List[Any]] = None, batch_id: Optional[str] = None):
        super().__init__(message)
        self.failures = failures or []
        self.batch_id = batch_id


class BatchCancelledError(UploaderError):
    """The batch was cancelled before it was finalized."""


def is_retryable(error: BaseException) -> bool:
    """Default retry predicate: trust the tag set at the point of failure."""
    return isinstance(error, UploaderError) and bool(error.retryable)
