"""Application entrypoint for the batchup upload server."""
import logging
import sys
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ..errors import UploaderError, ValidationError
from . import routes_health, routes_upload
from .config import Settings, get_settings
from .schemas import ErrorResponse
from .sessions import SessionConflictError, SessionManager, SessionNotFoundError

logger = logging.getLogger(__name__)


def setup_logging(settings: Settings) -> None:
    """Send application and uvicorn logs to stdout at the configured level."""
    log_level = logging.DEBUG if settings.DEBUG else getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()
    root_logger.addHandler(handler)

    for logger_name in ["uvicorn", "uvicorn.access", "uvicorn.error"]:
        uvicorn_logger = logging.getLogger(logger_name)
        uvicorn_logger.setLevel(log_level)
        uvicorn_logger.handlers.clear()
        uvicorn_logger.addHandler(handler)
        uvicorn_logger.propagate = False


def _error(status_code: int, error: str, detail=None) -> JSONResponse:
    body = ErrorResponse(error=error, detail=detail)
    return JSONResponse(status_code=status_code, content=body.model_dump())


def create_app(settings: Optional[Settings] = None, sessions: Optional[SessionManager] = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: Settings to use instead of the environment
        sessions: Session store to use instead of one built from settings

    Returns:
        FastAPI: Configured application instance
    """
    settings = settings or get_settings()
    sessions = sessions or SessionManager.from_settings(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        Path(settings.UPLOAD_DIR).mkdir(parents=True, exist_ok=True)
        sessions.start()
        logger.info(f"{settings.SERVICE_NAME} {settings.SERVICE_VERSION} started, worker={settings.WORKER_URL}")
        try:
            yield
        finally:
            await sessions.shutdown()

    app = FastAPI(
        title=settings.SERVICE_NAME,
        version=settings.SERVICE_VERSION,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.sessions = sessions
    app.state.started_at = time.monotonic()

    app.include_router(routes_health.router)
    app.include_router(routes_upload.router)

    @app.exception_handler(SessionNotFoundError)
    async def not_found(request: Request, exc: SessionNotFoundError):
        return _error(404, "Session not found", str(exc))

    @app.exception_handler(SessionConflictError)
    async def conflict(request: Request, exc: SessionConflictError):
        return _error(409, str(exc))

    @app.exception_handler(ValidationError)
    async def invalid(request: Request, exc: ValidationError):
        return _error(400, str(exc), exc.field)

    @app.exception_handler(UploaderError)
    async def uploader_error(request: Request, exc: UploaderError):
        logger.error(f"Request failed: {exc}")
        return _error(exc.status_code or 500, str(exc))

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        return _error(500, "Internal server error", str(exc))

    @app.get("/")
    async def root() -> dict:
        return {
            "name": settings.SERVICE_NAME,
            "version": settings.SERVICE_VERSION,
            "endpoints": {
                "health": "GET /api/v1/health",
                "init": "POST /api/v1/upload/init",
                "upload": "POST /api/v1/upload/{session_id}/files",
                "process": "POST /api/v1/upload/{session_id}/process",
                "status": "GET /api/v1/upload/{session_id}/status",
                "cancel": "DELETE /api/v1/upload/{session_id}",
            },
        }

    return app


def main() -> None:
    settings = get_settings()
    setup_logging(settings)
    uvicorn.run(create_app(settings), host=settings.HOST, port=settings.PORT, log_config=None)


if __name__ == "__main__":
    main()
