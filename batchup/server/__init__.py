"""HTTP server that wraps batch uploads in pollable sessions."""
from .app import create_app, setup_logging
from .config import Settings, get_settings
from .sessions import (
    SessionConflictError,
    SessionManager,
    SessionNotFoundError,
    SessionStatus,
    UploadSession,
)

__all__ = [
    "create_app",
    "setup_logging",
    "Settings",
    "get_settings",
    "SessionManager",
    "SessionStatus",
    "UploadSession",
    "SessionNotFoundError",
    "SessionConflictError",
]
