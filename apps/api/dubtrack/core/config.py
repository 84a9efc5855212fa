"""Application configuration."""

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_MIB = 1024 * 1024


class Settings(BaseSettings):
    """Runtime configuration loaded from environment variables."""

    auth_provider: Literal["mock", "firebase"] = "firebase"
    firebase_project_id: str | None = None
    firebase_audience: str | None = None
    callback_secret: str
    log_level: str = "INFO"

    storage_provider: Literal["memory", "s3"] = "memory"
    s3_endpoint_url: str | None = None
    s3_access_key_id: str | None = None
    s3_secret_access_key: str | None = None
    s3_bucket: str = "dubtrack-media"
    s3_region: str = "us-east-1"

    upload_chunk_size: int = Field(default=5 * _MIB, ge=5 * _MIB, le=10 * _MIB)
    upload_max_file_size: int = Field(default=900 * _MIB, gt=0, le=1024 * _MIB)
    upload_max_batch_size: int = Field(default=10 * 1024 * _MIB, gt=0)
    upload_concurrency: int = Field(default=3, ge=1)
    upload_part_attempts: int = Field(default=3, ge=1)
    upload_part_backoff_seconds: float = Field(default=1.0, ge=0)

    audio_cleaner_url: str | None = None
    translation_service_url: str | None = None
    voice_assignment_service_url: str | None = None
    audio_cleaner_timeout_seconds: float = 30.0
    translation_timeout_seconds: float = 30 * 60.0
    voice_assignment_timeout_seconds: float = 5 * 60.0

    job_max_attempts: int = Field(default=3, ge=1)
    job_backoff_seconds: float = Field(default=1.0, ge=0)
    job_workers: int = Field(default=1, ge=1)
    job_completed_retention_seconds: int = 24 * 60 * 60
    job_completed_retention_count: int = 100
    job_failed_retention_seconds: int = 7 * 24 * 60 * 60

    notification_webhook_url: str | None = None
    notification_timeout_seconds: float = 5.0

    pipeline_reset_after_finalize: bool = False

    model_config = SettingsConfigDict(env_prefix="DUBTRACK_", extra="ignore")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
