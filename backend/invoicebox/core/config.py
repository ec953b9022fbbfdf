"""Simple configuration management.

This module defines a ``Settings`` class that reads configuration
values from environment variables and provides sensible defaults.
``.env`` support is implemented by loading files from the repository
root in a defined order.  You can override any value via environment
variables.

Components never read ``settings`` implicitly while handling a request:
the ingestion pipeline, normalizer and blob store are constructed from
an explicit configuration value (see ``IngestionConfig`` in
``invoicebox.services.ingestion_service``).
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from dotenv import load_dotenv, find_dotenv

# -----------------------------------------------------------------------------
# .env loading
#
# Prefer a .env in the repository root but allow fallback to whatever
# python-dotenv discovers from the current working directory.  Files are
# loaded in order without overriding already-set variables.

_THIS_FILE = Path(__file__).resolve()
_REPO_ROOT = _THIS_FILE.parents[3]
_ROOT_ENV = _REPO_ROOT / ".env"

_candidate_envs: list[str] = []
if _ROOT_ENV.exists():
    _candidate_envs.append(str(_ROOT_ENV))

_FOUND_ENV = find_dotenv(usecwd=True)
if _FOUND_ENV and _FOUND_ENV not in _candidate_envs:
    _candidate_envs.append(_FOUND_ENV)

_LOCAL_ENV = (_THIS_FILE.parent.parent.parent / ".env").as_posix()
if os.path.exists(_LOCAL_ENV) and _LOCAL_ENV not in _candidate_envs:
    _candidate_envs.append(_LOCAL_ENV)

for _env_path in _candidate_envs:
    load_dotenv(dotenv_path=_env_path, override=False)


class Settings(BaseSettings):
    """Application settings.

    Values are loaded from the environment with sensible defaults.  Any
    attribute defined here can be overridden by setting the corresponding
    environment variable.
    """

    model_config = SettingsConfigDict(
        env_file=tuple(_candidate_envs) if _candidate_envs else (".env",),
        case_sensitive=True,
        extra="allow",
    )

    # API Settings
    API_PREFIX: str = "/api"
    PROJECT_NAME: str = "InvoiceBox"
    ENVIRONMENT: str = Field(default="development")

    # Database
    DATABASE_URL: Optional[str] = Field(default=None)
    # Dev DB fallback: use a local SQLite file when DATABASE_URL is unset
    DB_DEV_FALLBACK_SQLITE: bool = Field(default=True)

    # Redis (cache + Dramatiq broker)
    REDIS_URL: str = Field(default="redis://localhost:6379/0")
    CACHE_ENABLED: bool = Field(default=True)
    CACHE_TTL_SECONDS: int = Field(default=60)

    # Storage
    STORAGE_BACKEND: str = Field(default="filesystem")
    STORAGE_DIRECTORY: str = Field(default="./uploads")
    MINIO_ENDPOINT: str = Field(default="localhost:9000")
    MINIO_ACCESS_KEY: str = Field(default="minioadmin")
    MINIO_SECRET_KEY: str = Field(default="minioadmin")
    MINIO_BUCKET_NAME: str = Field(default="invoice-attachments")
    MINIO_USE_SSL: bool = Field(default=False)

    # File Upload
    MAX_UPLOAD_SIZE: int = 10 * 1024 * 1024  # 10MB
    MAX_FILES_PER_REQUEST: int = 10
    ACCEPTED_CONTENT_TYPES: set[str] = {
        "image/jpeg",
        "image/png",
        "image/gif",
        "image/webp",
        "image/heic",
        "image/heif",
    }

    # Format normalization
    NON_CANONICAL_EXTENSIONS: set[str] = {".heic", ".heif"}
    CONVERTER_BACKEND: str = Field(default="command")
    # {src} and {dst} are replaced with temporary file paths
    CONVERTER_COMMAND: list[str] = Field(default=["heif-convert", "-q", "90", "{src}", "{dst}"])
    CONVERSION_TIMEOUT_SECONDS: float = Field(default=30.0)
    JPEG_QUALITY: int = Field(default=90)

    # Background tasks ("redis" or "stub")
    TASK_BROKER: str = Field(default="redis")
    DRAMATIQ_BROKER_URL: Optional[str] = Field(default=None)

    # CORS
    BACKEND_CORS_ORIGINS: list[str] = Field(
        default=["http://localhost:3000", "http://127.0.0.1:3000"],
    )

    # Sentry
    SENTRY_DSN: Optional[str] = Field(default=None)
    SENTRY_TRACES_SAMPLE_RATE: float = Field(default=0.0)
    SENTRY_RELEASE: Optional[str] = Field(default=None)


# Instantiate global settings
settings = Settings()
