"""Tests for imagerelay.core.config — configuration management.

Tests cover:
- Default values for polling, archiving and upload policies.
- Environment variable overrides via the IMAGERELAY_ prefix.
- Storage path derivation from ``data_dir`` and directory creation.
- Webhook URL composition.
- Pydantic validation constraints.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from imagerelay.core.config import RelayConfig


class TestConfigDefaults:
    """Verify that RelayConfig provides the documented defaults."""

    def test_polling_defaults(self, monkeypatch, temp_dir: Path):
        """Polling runs once per second for at most 300 attempts."""
        monkeypatch.delenv("IMAGERELAY_POLL_INTERVAL_SECONDS", raising=False)
        monkeypatch.delenv("IMAGERELAY_MAX_POLL_ATTEMPTS", raising=False)
        cfg = RelayConfig(_env_file=None, data_dir=temp_dir)
        assert cfg.poll_interval_seconds == 1.0
        assert cfg.max_poll_attempts == 300

    def test_download_defaults(self, test_config: RelayConfig):
        """Thumbnail downloads retry three times with a 2 s backoff and 30 s timeout."""
        assert test_config.download_attempts == 3
        assert test_config.download_backoff_seconds == 2.0
        assert test_config.download_timeout_seconds == 30.0

    def test_upload_defaults(self, test_config: RelayConfig):
        """Uploads are capped at 5 MB and expire after one hour."""
        assert test_config.upload_max_bytes == 5 * 1024 * 1024
        assert test_config.upload_max_age_seconds == 3600

    def test_default_server_port(self, monkeypatch, temp_dir: Path):
        monkeypatch.delenv("IMAGERELAY_SERVER_PORT", raising=False)
        cfg = RelayConfig(_env_file=None, data_dir=temp_dir)
        assert cfg.server_port == 5000


class TestConfigEnvironment:
    """Verify IMAGERELAY_ environment overrides."""

    def test_token_from_environment(self, monkeypatch, temp_dir: Path):
        monkeypatch.setenv("IMAGERELAY_REPLICATE_API_TOKEN", "r8_from_env")
        cfg = RelayConfig(_env_file=None, data_dir=temp_dir)
        assert cfg.replicate_api_token == "r8_from_env"

    def test_numeric_override_from_environment(self, monkeypatch, temp_dir: Path):
        monkeypatch.setenv("IMAGERELAY_MAX_POLL_ATTEMPTS", "12")
        cfg = RelayConfig(_env_file=None, data_dir=temp_dir)
        assert cfg.max_poll_attempts == 12


class TestConfigPaths:
    """Verify storage path derivation and directory creation."""

    def test_paths_derived_from_data_dir(self, test_config: RelayConfig, temp_dir: Path):
        data_dir = temp_dir / "data"
        assert test_config.uploads_dir == data_dir / "uploads"
        assert test_config.thumbnails_dir == data_dir / "thumbnails"
        assert test_config.thumbnails_file == data_dir / "thumbnails.json"
        assert test_config.usage_db_path == data_dir / "usage.db"

    def test_directories_created(self, test_config: RelayConfig):
        assert test_config.uploads_dir.is_dir()
        assert test_config.thumbnails_dir.is_dir()

    def test_explicit_paths_override_derivation(self, temp_dir: Path):
        custom = temp_dir / "elsewhere" / "thumbs"
        cfg = RelayConfig(_env_file=None, data_dir=temp_dir / "data", thumbnails_dir=custom)
        assert cfg.thumbnails_dir == custom
        assert custom.is_dir()
        assert cfg.uploads_dir == temp_dir / "data" / "uploads"


class TestWebhookUrl:
    def test_disabled_without_base_url(self, test_config: RelayConfig):
        assert test_config.webhook_url is None

    def test_composed_from_base_url(self, temp_dir: Path):
        cfg = RelayConfig(
            _env_file=None, data_dir=temp_dir, webhook_base_url="https://relay.example.com/"
        )
        assert cfg.webhook_url == "https://relay.example.com/api/replicate-webhook"


class TestConfigValidation:
    """Verify Pydantic validation constraints on config fields."""

    def test_zero_poll_attempts_rejected(self, temp_dir: Path):
        with pytest.raises(Exception):
            RelayConfig(_env_file=None, data_dir=temp_dir, max_poll_attempts=0)

    def test_invalid_port_rejected(self, temp_dir: Path):
        with pytest.raises(Exception):
            RelayConfig(_env_file=None, data_dir=temp_dir, server_port=80)
