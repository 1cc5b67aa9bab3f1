"""Shared fixtures: a fake ingest worker and object store behind httpx.MockTransport."""
import asyncio
import json
import math
from typing import Callable, Dict, List, Optional
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from batchup.models import InMemoryFile, RetryOptions, UploadConfig

WORKER_URL = "https://worker.test"
STORAGE_HOST = "storage.test"


class FakeCoordinator:
    """
    Plays both the coordinating service and the storage backend.

    Files larger than ``multipart_threshold`` get multipart instructions
    with ``part_size`` chunks unless ``upload_types`` says otherwise for a
    logical path. ``storage_hook`` can return a response to override a PUT.
    """

    def __init__(self, multipart_threshold: int = 5 * 1024 * 1024, part_size: int = 5 * 1024 * 1024):
        self.multipart_threshold = multipart_threshold
        self.part_size = part_size
        self.upload_types: Dict[str, str] = {}
        self.storage_hook: Optional[Callable[[httpx.Request], Optional[httpx.Response]]] = None
        self.worker_hook: Optional[Callable[[httpx.Request], Optional[httpx.Response]]] = None

        self.batch_id = "01BATCHTESTBATCHTESTBATCH0"
        self.init_requests: List[dict] = []
        self.start_requests: List[dict] = []
        self.complete_requests: List[dict] = []
        self.finalize_calls = 0
        self.puts: List[httpx.Request] = []
        self.stored: Dict[str, bytes] = {}
        self.in_flight_puts = 0
        self.max_in_flight_puts = 0

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    async def handle(self, request: httpx.Request) -> httpx.Response:
        if request.url.host == STORAGE_HOST:
            return await self._handle_storage(request)
        if self.worker_hook:
            response = self.worker_hook(request)
            if response is not None:
                return response
        return self._handle_worker(request)

    def _handle_worker(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        body = json.loads(request.content) if request.content else {}

        if path == "/api/batches/init":
            self.init_requests.append(body)
            return httpx.Response(200, json={"batch_id": self.batch_id, "session_id": "sess-1"})

        if path.endswith("/files/start"):
            self.start_requests.append(body)
            key = f"staging/{self.batch_id}{body['logical_path']}"
            upload_type = self.upload_types.get(body["logical_path"])
            if upload_type is None:
                upload_type = "multipart" if body["file_size"] > self.multipart_threshold else "simple"
            if upload_type == "simple":
                return httpx.Response(200, json={
                    "r2_key": key,
                    "upload_type": "simple",
                    "presigned_url": f"https://{STORAGE_HOST}/{key}",
                })
            count = max(math.ceil(body["file_size"] / self.part_size), 1)
            return httpx.Response(200, json={
                "r2_key": key,
                "upload_type": "multipart",
                "upload_id": f"upload-{body['file_name']}",
                "part_size": self.part_size,
                "presigned_urls": [
                    {"part_number": n, "url": f"https://{STORAGE_HOST}/{key}?partNumber={n}"}
                    for n in range(1, count + 1)
                ],
            })

        if path.endswith("/files/complete"):
            self.complete_requests.append(body)
            return httpx.Response(200, json={"success": True})

        if path.endswith("/finalize"):
            self.finalize_calls += 1
            return httpx.Response(200, json={
                "batch_id": self.batch_id,
                "status": "enqueued",
                "files_uploaded": len(self.complete_requests),
                "total_bytes": sum(r["file_size"] for r in self.start_requests),
                "r2_prefix": f"staging/{self.batch_id}/",
            })

        if path == "/":
            return httpx.Response(200, json={"service": "ingest"})

        return httpx.Response(404, json={"error": "Not found"})

    async def _handle_storage(self, request: httpx.Request) -> httpx.Response:
        self.puts.append(request)
        self.in_flight_puts += 1
        self.max_in_flight_puts = max(self.max_in_flight_puts, self.in_flight_puts)
        try:
            await asyncio.sleep(0)
            if self.storage_hook:
                response = self.storage_hook(request)
                if response is not None:
                    return response
            key = request.url.path.lstrip("/")
            part = parse_qs(urlparse(str(request.url)).query).get("partNumber", [None])[0]
            self.stored[f"{key}#{part}" if part else key] = request.content
            return httpx.Response(200, headers={"ETag": f'"etag-{part or 0}"'})
        finally:
            self.in_flight_puts -= 1


def part_number(request: httpx.Request) -> Optional[int]:
    value = parse_qs(urlparse(str(request.url)).query).get("partNumber", [None])[0]
    return int(value) if value else None


class SleepRecorder:
    """Stands in for asyncio.sleep; records requested delays without waiting."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


@pytest.fixture
def coordinator():
    return FakeCoordinator()


@pytest.fixture
def sleep():
    return SleepRecorder()


@pytest.fixture
def config():
    return UploadConfig(
        worker_url=WORKER_URL,
        uploader="tester",
        parallel_uploads=2,
        parallel_parts=2,
        retry=RetryOptions(max_retries=2, initial_delay=0.5, max_delay=4.0, jitter=False),
    )


def make_files(*sizes: int, prefix: str = "file") -> List[InMemoryFile]:
    return [
        InMemoryFile(name=f"{prefix}{i}.bin", data=bytes([i % 256]) * size)
        for i, size in enumerate(sizes, start=1)
    ]
