"""Application configuration via environment variables."""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    APP_NAME: str = "voicedesc"
    ENVIRONMENT: str = "development"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool | None = None  # None = JSON outside development
    LOG_DIR: Path | None = None

    # Retry defaults (seconds)
    RETRY_MAX_ATTEMPTS: int = Field(default=3, ge=1)
    RETRY_BASE_DELAY_S: float = Field(default=1.0, ge=0)
    RETRY_MAX_DELAY_S: float = Field(default=10.0, ge=0)
    RETRY_BACKOFF_MULTIPLIER: float = Field(default=2.0, ge=1.0)
    RETRY_JITTER: bool = True
    RETRY_JITTER_FACTOR: float = Field(default=1.0, ge=0, le=1.0)

    # Concurrency
    BATCH_CONCURRENCY_LIMIT: int = Field(default=3, ge=1)
    BATCH_MAX_ITEMS: int = Field(default=100, ge=1)
    STAGE_FANOUT_CONCURRENCY: int = Field(default=3, ge=1)

    # Job store
    JOB_STORE_BACKEND: Literal["memory", "redis"] = "memory"
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_KEY_PREFIX: str = "voicedesc:job:"
    JOB_STORE_CAS_RETRIES: int = Field(default=16, ge=1)

    # Job lifecycle
    JOB_RETENTION_HOURS: int = Field(default=24, ge=1)
    MAX_IMAGE_SIZE_MB: int = Field(default=50, ge=1)
    MAX_VIDEO_SIZE_MB: int = Field(default=500, ge=1)
    DEFAULT_VOICE_ID: str = "Joanna"

    # Health roll-up
    HEALTH_DEGRADED_ACTIVE_JOBS: int = Field(default=10, ge=1)

    def max_media_bytes(self, kind: str) -> int:
        mb = self.MAX_VIDEO_SIZE_MB if kind == "video" else self.MAX_IMAGE_SIZE_MB
        return mb * 1024 * 1024

@lru_cache
def get_settings() -> Settings:
    return Settings()

settings = get_settings()
