"""Health check endpoint."""
import asyncio
import logging
import shutil
import time

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from ..services.worker_client import WorkerClient
from .config import Settings
from .schemas import HealthResponse, StorageHealth, WorkerHealth

router = APIRouter(prefix="/api/v1", tags=["health"])
logger = logging.getLogger(__name__)

WORKER_PROBE_TIMEOUT = 5.0
DEGRADED_FREE_BYTES = 1024 ** 3  # 1 GB
UNHEALTHY_FREE_BYTES = 100 * 1024 ** 2  # 100 MB


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


async def probe_worker(settings: Settings = Depends(get_app_settings)) -> bool:
    async with WorkerClient(settings.WORKER_URL, timeout=WORKER_PROBE_TIMEOUT) as worker:
        return await worker.ping()


@router.get("/health", response_model=HealthResponse)
async def health_check(
    request: Request,
    settings: Settings = Depends(get_app_settings),
    worker_reachable: bool = Depends(probe_worker),
):
    """
    Report disk space of the upload directory and whether the coordinating
    service answers. Responds 503 when free space is critically low.
    """
    try:
        usage = await asyncio.to_thread(shutil.disk_usage, settings.UPLOAD_DIR)
        available, used = usage.free, usage.used
    except OSError as e:
        logger.error(f"Cannot read disk usage of {settings.UPLOAD_DIR}: {e}")
        available, used = 0, 0

    if available < UNHEALTHY_FREE_BYTES:
        status = "unhealthy"
    elif available < DEGRADED_FREE_BYTES or not worker_reachable:
        status = "degraded"
    else:
        status = "healthy"

    body = HealthResponse(
        status=status,
        version=settings.SERVICE_VERSION,
        uptime=time.monotonic() - request.app.state.started_at,
        storage=StorageHealth(directory=settings.UPLOAD_DIR, available=available, used=used),
        worker=WorkerHealth(url=settings.WORKER_URL, reachable=worker_reachable),
        active_sessions=request.app.state.sessions.session_count,
    )
    return JSONResponse(status_code=503 if status == "unhealthy" else 200, content=body.model_dump())
