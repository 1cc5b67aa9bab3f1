"""Configuration management for the batchup upload server."""
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    SERVICE_NAME: str = "batchup-server"
    SERVICE_VERSION: str = "1.0.0"

    # Coordinating service
    WORKER_URL: str = "https://ingest.arke.institute"
    REQUEST_TIMEOUT: int = 30  # seconds per coordinating-service call
    MAX_RETRIES: int = 3

    # Session storage
    UPLOAD_DIR: str = "/tmp/batchup-uploads"
    SESSION_TTL_SECONDS: int = 24 * 60 * 60
    COMPLETED_GRACE_SECONDS: int = 5 * 60
    SWEEP_INTERVAL_SECONDS: int = 60

    # Upload defaults for sessions that do not set them
    DEFAULT_PARALLEL_UPLOADS: int = 5
    DEFAULT_PARALLEL_PARTS: int = 3

    HOST: str = "0.0.0.0"
    PORT: int = 3000
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    return Settings()
