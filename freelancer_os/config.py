"""
Configuration and settings for the Freelancer OS backend.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed settings for the FastAPI service."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    api_prefix: str = Field(default="/api")
    log_level: str = Field(default="INFO")

    # Document store (any SQLAlchemy URL; Postgres in production)
    database_url: Optional[str] = Field(default=None)

    # Development toggles
    use_in_memory_backends: bool = Field(default=False)

    # Change feed (Redis pub/sub) for subscriptions across processes
    redis_url: Optional[str] = Field(default=None)
    redis_channel: str = Field(default="freelancer_os:changes")

    # Sessions
    secret_key: str = Field(default="dev-secret-change-me")
    access_token_expire_minutes: int = Field(default=60 * 8)
    recent_login_seconds: int = Field(default=300)
    federated_secret: Optional[str] = Field(default=None)

    # Profile photo uploads
    max_upload_bytes: int = Field(default=5 * 1024 * 1024)
    cloudinary_url: Optional[str] = Field(default=None)
    cloudinary_upload_preset: Optional[str] = Field(default=None)

    # S3-compatible media storage
    s3_bucket: Optional[str] = Field(default=None)
    s3_region: Optional[str] = Field(default=None)
    s3_endpoint: Optional[str] = Field(default=None)
    s3_public_url: Optional[str] = Field(default=None)
    aws_access_key_id: Optional[str] = Field(default=None)
    aws_secret_access_key: Optional[str] = Field(default=None)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
