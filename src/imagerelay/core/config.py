"""Configuration management for Image Relay.

This module provides centralized configuration management using Pydantic Settings.
All configuration is loaded from environment variables with the IMAGERELAY_ prefix,
allowing deployment-specific values (API tokens, public URLs, storage paths) to be
changed without code changes.

Environment Variable Loading
-----------------------------
Configuration values are loaded in the following priority order:
1. Environment variables (IMAGERELAY_* prefix)
2. .env file in the project root
3. Default values defined in RelayConfig

Example .env file:
    IMAGERELAY_REPLICATE_API_TOKEN=r8_xxxxxxxx
    IMAGERELAY_IMGBB_API_KEY=xxxxxxxx
    IMAGERELAY_PUBLIC_BASE_URL=https://relay.example.com
    IMAGERELAY_WEBHOOK_BASE_URL=https://relay.example.com
    IMAGERELAY_DATA_DIR=/tmp

Global Configuration Instance
------------------------------
A global `config` instance is created automatically at module import time.
Application code receives it explicitly (``create_app(config)``) so tests can
substitute a configuration pointing at temporary directories.

Storage Layout
--------------
Unless overridden, every storage location lives under ``data_dir``:
- uploads_dir: client-uploaded originals (expired after one hour)
- thumbnails_dir: archived generation outputs (never expired)
- thumbnails_file: flat JSON metadata for archived outputs
- usage_db_path: SQLite database holding the API usage log

Polling and Retry Settings
--------------------------
- poll_interval_seconds / max_poll_attempts: prediction polling cadence
  (1 second x 300 attempts by default)
- download_attempts / download_backoff_seconds / download_timeout_seconds:
  thumbnail download retry policy (3 attempts, 2 s backoff, 30 s timeout)
"""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class RelayConfig(BaseSettings):
    """Main configuration for Image Relay.

    Path fields left unset are derived from ``data_dir`` and every storage
    directory is created on initialisation.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="IMAGERELAY_",
        case_sensitive=False,
    )

    # Remote generation API
    replicate_api_token: str = Field(
        default="",
        description="Replicate API token used for all prediction calls",
    )
    replicate_api_base: str = Field(
        default="https://api.replicate.com/v1",
        description="Base URL of the Replicate REST API",
    )
    replicate_timeout_seconds: float = Field(default=30.0, gt=0)

    # External image hosts
    imgbb_api_key: str = Field(
        default="",
        description="ImgBB API key for the primary image host (empty disables it)",
    )
    imgbb_upload_url: str = Field(default="https://api.imgbb.com/1/upload")
    secondary_host_url: str = Field(
        default="https://imgcdn.dev/upload",
        description="Multipart upload endpoint of the secondary image host",
    )
    host_upload_timeout_seconds: float = Field(default=15.0, gt=0)
    url_verify_timeout_seconds: float = Field(default=3.0, gt=0)

    # Public addressing
    public_base_url: str = Field(
        default="http://localhost:5000",
        description="Base URL under which /uploads and /ThumbnailImages are served",
    )
    webhook_base_url: str | None = Field(
        default=None,
        description="Public base URL for Replicate webhooks (None disables webhooks)",
    )
    cors_origins: list[str] = Field(
        default=[
            "http://localhost:5600",
            "https://frontify-artifacts.com",
            "https://developer-sandbox-skoda.frontify.com",
        ],
    )

    # Storage
    data_dir: Path = Field(default=Path("data"))
    uploads_dir: Path | None = None
    thumbnails_dir: Path | None = None
    thumbnails_file: Path | None = None
    usage_db_path: Path | None = None

    # Prediction polling
    poll_interval_seconds: float = Field(default=1.0, ge=0)
    max_poll_attempts: int = Field(default=300, ge=1)

    # Thumbnail archiving
    download_attempts: int = Field(default=3, ge=1)
    download_backoff_seconds: float = Field(default=2.0, ge=0)
    download_timeout_seconds: float = Field(default=30.0, gt=0)
    download_max_bytes: int = Field(default=50 * 1024 * 1024, gt=0)
    thumbnail_revalidate_interval_seconds: float = Field(default=15 * 60, gt=0)

    # Uploads
    upload_max_bytes: int = Field(default=5 * 1024 * 1024, gt=0)
    upload_max_age_seconds: float = Field(default=60 * 60, gt=0)
    upload_cleanup_interval_seconds: float = Field(default=60 * 60, gt=0)

    # Result store
    result_retention_seconds: float = Field(default=60 * 60, gt=0)

    # Server
    server_host: str = Field(default="0.0.0.0")
    server_port: int = Field(default=5000, ge=1024, le=65535)

    def __init__(self, **kwargs):
        """Initialize configuration, derive storage paths and create directories.

        Args:
            **kwargs: Configuration overrides (typically from environment variables)
        """
        super().__init__(**kwargs)

        if self.uploads_dir is None:
            self.uploads_dir = self.data_dir / "uploads"
        if self.thumbnails_dir is None:
            self.thumbnails_dir = self.data_dir / "thumbnails"
        if self.thumbnails_file is None:
            self.thumbnails_file = self.data_dir / "thumbnails.json"
        if self.usage_db_path is None:
            self.usage_db_path = self.data_dir / "usage.db"

        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.uploads_dir.mkdir(parents=True, exist_ok=True)
        self.thumbnails_dir.mkdir(parents=True, exist_ok=True)

    @property
    def webhook_url(self) -> str | None:
        """Full webhook callback URL, or None when webhooks are disabled."""
        if not self.webhook_base_url:
            return None
        return f"{self.webhook_base_url.rstrip('/')}/api/replicate-webhook"


# Global configuration instance
config = RelayConfig()
