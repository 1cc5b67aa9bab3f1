"""HTTP adapter for the coordinating (ingest worker) service."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from ..errors import NetworkError, WorkerAPIError
from ..models import PartInfo, RetryOptions
from ..utils.retry import parse_retry_after, retry_with_backoff

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InitBatchResponse:
    batch_id: str
    session_id: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InitBatchResponse":
        return cls(batch_id=data["batch_id"], session_id=data.get("session_id", ""))


@dataclass(frozen=True)
class PresignedPart:
    part_number: int
    url: str


@dataclass(frozen=True)
class FileUploadInstructions:
    """How the coordinating service wants one file transferred."""
    storage_key: str
    upload_type: str
    presigned_url: Optional[str] = None
    upload_id: Optional[str] = None
    part_size: Optional[int] = None
    presigned_urls: List[PresignedPart] = field(default_factory=list)

    @property
    def is_multipart(self) -> bool:
        return self.upload_type == "multipart"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FileUploadInstructions":
        parts = [
            PresignedPart(part_number=int(p["part_number"]), url=p["url"])
            for p in data.get("presigned_urls") or []
        ]
        return cls(
            storage_key=data["r2_key"],
            upload_type=data["upload_type"],
            presigned_url=data.get("presigned_url"),
            upload_id=data.get("upload_id"),
            part_size=data.get("part_size"),
            presigned_urls=parts,
        )


@dataclass(frozen=True)
class FinalizeBatchResponse:
    batch_id: str
    status: str
    files_uploaded: int
    total_bytes: int
    storage_prefix: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FinalizeBatchResponse":
        return cls(
            batch_id=data["batch_id"],
            status=data.get("status", ""),
            files_uploaded=int(data.get("files_uploaded", 0)),
            total_bytes=int(data.get("total_bytes", 0)),
            storage_prefix=data.get("r2_prefix"),
        )


class WorkerClient:
    """
    HTTP client for the coordinating service.

    Every call retries 5xx, 429 and transport failures with backoff; 4xx
    responses fail immediately with ``WorkerAPIError``.

    Usage:
        async with WorkerClient("https://ingest.example.org") as worker:
            batch = await worker.init_batch({...})
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        retry: Optional[RetryOptions] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._retry = retry or RetryOptions()
        self._transport = transport
        self._sleep = sleep
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            transport=self._transport,
        )
        return self

    async def __aexit__(self, *args):
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _request(self, method: str, path: str, body: Optional[Dict] = None) -> Dict[str, Any]:
        """One attempt, with failures mapped onto tagged errors."""
        if not self._client:
            raise RuntimeError("WorkerClient not initialized. Use 'async with' context.")

        logger.debug("HTTP %s %s %s", method, path, body)
        try:
            response = await self._client.request(method, path, json=body)
        except httpx.TimeoutException as exc:
            raise NetworkError(f"Request timeout after {self._timeout}s: {method} {path}", cause=exc) from exc
        except httpx.RequestError as exc:
            raise NetworkError(f"Network request failed: {method} {path}: {exc}", cause=exc) from exc

        try:
            data = response.json()
        except ValueError:
            data = {"error": response.text}

        logger.debug("HTTP %s %s -> %d", method, path, response.status_code)

        if response.status_code >= 400:
            error = data.get("error") if isinstance(data, dict) else None
            details = data.get("details") if isinstance(data, dict) else None
            retry_after = None
            if response.status_code == 429:
                retry_after = parse_retry_after(response.headers.get("retry-after"))
            raise WorkerAPIError(
                f"API error {response.status_code} on {method} {path}: {error or 'Request failed'}",
                response.status_code,
                details,
                retry_after,
            )

        return data

    async def _call(self, method: str, path: str, body: Optional[Dict] = None) -> Dict[str, Any]:
        return await retry_with_backoff(
            lambda: self._request(method, path, body),
            self._retry,
            label=f"{method} {path}",
            sleep=self._sleep,
        )

    async def init_batch(
        self,
        uploader: str,
        root_path: str,
        parent_pi: str,
        file_count: int,
        total_size: int,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> InitBatchResponse:
        body: Dict[str, Any] = {
            "uploader": uploader,
            "root_path": root_path,
            "parent_pi": parent_pi,
            "file_count": file_count,
            "total_size": total_size,
        }
        if metadata is not None:
            body["metadata"] = metadata
        data = await self._call("POST", "/api/batches/init", body)
        return InitBatchResponse.from_dict(data)

    async def start_file_upload(
        self,
        batch_id: str,
        file_name: str,
        file_size: int,
        logical_path: str,
        content_type: str,
        processing_config: Dict[str, Any],
        cid: Optional[str] = None,
    ) -> FileUploadInstructions:
        body: Dict[str, Any] = {
            "file_name": file_name,
            "file_size": file_size,
            "logical_path": logical_path,
            "content_type": content_type,
            "processing_config": processing_config,
        }
        if cid:
            body["cid"] = cid
        data = await self._call("POST", f"/api/batches/{batch_id}/files/start", body)
        return FileUploadInstructions.from_dict(data)

    async def complete_file_upload(
        self,
        batch_id: str,
        storage_key: str,
        upload_id: Optional[str] = None,
        parts: Optional[List[PartInfo]] = None,
    ) -> bool:
        body: Dict[str, Any] = {"r2_key": storage_key}
        if upload_id:
            body["upload_id"] = upload_id
        if parts is not None:
            body["parts"] = [p.to_dict() for p in parts]
        data = await self._call("POST", f"/api/batches/{batch_id}/files/complete", body)
        return bool(data.get("success", True))

    async def finalize_batch(self, batch_id: str) -> FinalizeBatchResponse:
        data = await self._call("POST", f"/api/batches/{batch_id}/finalize", {})
        return FinalizeBatchResponse.from_dict(data)

    async def ping(self) -> bool:
        """True when the service answers below 500 (any route)."""
        if not self._client:
            raise RuntimeError("WorkerClient not initialized. Use 'async with' context.")
        try:
            response = await self._client.get("/")
        except httpx.HTTPError as exc:
            logger.warning("Worker health check failed: %s", exc)
            return False
        return response.status_code < 500
