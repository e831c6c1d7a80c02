"""Tests for sketchworks.core.config — configuration management.

Tests cover:
- Default values for the admission, queue and provider knobs.
- Environment variable overrides (no prefix, case-insensitive).
- Automatic directory creation on initialisation.
- Derived properties (database path, seconds/bytes conversions).
- Pydantic validation constraints.
"""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from sketchworks.core.config import SketchworksConfig


def _config(temp_dir: Path, **kwargs) -> SketchworksConfig:
    return SketchworksConfig(
        data_dir=temp_dir / "data",
        storage_dir=temp_dir / "artifacts",
        _env_file=None,
        **kwargs,
    )


class TestConfigDefaults:
    """Verify that SketchworksConfig provides the documented defaults."""

    def test_budget_and_image_limits(self, monkeypatch, temp_dir: Path):
        """Budget defaults to 1,000,000 cents and images to 10 MB of base64."""
        monkeypatch.delenv("MONTHLY_BUDGET_CENTS", raising=False)
        monkeypatch.delenv("MAX_IMAGE_BASE64_MB", raising=False)
        cfg = _config(temp_dir)
        assert cfg.monthly_budget_cents == 1_000_000
        assert cfg.max_image_base64_mb == 10.0

    def test_queue_defaults(self, monkeypatch, temp_dir: Path):
        """Three workers, five job attempts and a 5-per-minute provider cap."""
        for name in (
            "WORKER_CONCURRENCY", "JOB_MAX_ATTEMPTS", "RATE_LIMIT_MAX", "PROVIDER_FALLBACKS"
        ):
            monkeypatch.delenv(name, raising=False)
        cfg = _config(temp_dir)
        assert cfg.worker_concurrency == 3
        assert cfg.job_max_attempts == 5
        assert cfg.rate_limit_max == 5
        assert cfg.rate_limit_window_ms == 60_000
        assert cfg.job_lease_s == 300
        assert cfg.worker_heartbeat_interval_s == 30
        assert cfg.provider_fallbacks == []

    def test_provider_timeout_default(self, monkeypatch, temp_dir: Path):
        """Provider calls time out after 120 seconds by default."""
        monkeypatch.delenv("PROVIDER_TIMEOUT_MS", raising=False)
        cfg = _config(temp_dir)
        assert cfg.provider_timeout_s == 120.0

    def test_moderation_enabled_by_default(self, monkeypatch, temp_dir: Path):
        """The noop moderation backend must be opted into explicitly."""
        monkeypatch.delenv("MODERATION_BACKEND", raising=False)
        cfg = _config(temp_dir)
        assert cfg.moderation_backend == "vision"

    def test_default_server_port(self, monkeypatch, temp_dir: Path):
        """Default server port should be 7860."""
        monkeypatch.delenv("SERVER_PORT", raising=False)
        cfg = _config(temp_dir)
        assert cfg.server_port == 7860


class TestConfigEnvironment:
    """Verify environment variable overrides."""

    def test_budget_from_env(self, monkeypatch, temp_dir: Path):
        """MONTHLY_BUDGET_CENTS overrides the default."""
        monkeypatch.setenv("MONTHLY_BUDGET_CENTS", "5000")
        assert _config(temp_dir).monthly_budget_cents == 5000

    def test_env_names_are_case_insensitive(self, monkeypatch, temp_dir: Path):
        """Lower-case variable names are accepted too."""
        monkeypatch.setenv("worker_concurrency", "7")
        assert _config(temp_dir).worker_concurrency == 7

    def test_privileged_projects_from_json(self, monkeypatch, temp_dir: Path):
        """List settings are parsed from JSON."""
        monkeypatch.setenv("PRIVILEGED_PROJECT_IDS", '["studio", "ops"]')
        assert _config(temp_dir).privileged_project_ids == ["studio", "ops"]

    def test_provider_fallbacks_from_json(self, monkeypatch, temp_dir: Path):
        """Fallback providers keep their order."""
        monkeypatch.setenv("PROVIDER_FALLBACKS", '["stability", "openai"]')
        assert _config(temp_dir).provider_fallbacks == ["stability", "openai"]

    def test_provider_keys_from_env(self, monkeypatch, temp_dir: Path):
        """Provider credentials are keyed by provider id."""
        monkeypatch.setenv("STABILITY_API_KEY", "sk-stability")
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        keys = _config(temp_dir).provider_api_keys()
        assert keys["stability"] == "sk-stability"
        assert keys["openai"] is None
        assert set(keys) == {"gemini-tuzi", "openai", "stability", "google"}


class TestConfigDirectoryCreation:
    """Verify that SketchworksConfig creates required directories."""

    def test_data_dir_created(self, test_config: SketchworksConfig):
        """data_dir should exist after initialisation."""
        assert test_config.data_dir.is_dir()

    def test_storage_dir_created_for_local_backend(self, test_config: SketchworksConfig):
        """The local storage root should exist after initialisation."""
        assert test_config.storage_backend == "local"
        assert test_config.storage_dir.is_dir()

    def test_storage_dir_skipped_for_s3(self, temp_dir: Path):
        """No local artifact directory is created when S3 is configured."""
        cfg = _config(temp_dir, storage_backend="s3", aws_s3_bucket="bucket")
        assert not cfg.storage_dir.exists()


class TestConfigDerivedValues:
    """Verify the unit-converting properties."""

    def test_database_path(self, test_config: SketchworksConfig):
        assert test_config.database_path == test_config.data_dir / "sketchworks.db"

    def test_max_image_bytes(self, temp_dir: Path):
        """MB setting converts to bytes of base64 text."""
        cfg = _config(temp_dir, max_image_base64_mb=2)
        assert cfg.max_image_base64_bytes == 2 * 1024 * 1024

    def test_rate_limit_window_seconds(self, temp_dir: Path):
        cfg = _config(temp_dir, rate_limit_window_ms=1500)
        assert cfg.rate_limit_window_s == 1.5


class TestConfigValidation:
    """Verify pydantic constraints."""

    def test_zero_workers_rejected(self, temp_dir: Path):
        with pytest.raises(ValidationError):
            _config(temp_dir, worker_concurrency=0)

    def test_non_positive_budget_rejected(self, temp_dir: Path):
        with pytest.raises(ValidationError):
            _config(temp_dir, monthly_budget_cents=0)

    def test_unknown_storage_backend_rejected(self, temp_dir: Path):
        with pytest.raises(ValidationError):
            _config(temp_dir, storage_backend="ftp")

    def test_privileged_port_rejected(self, temp_dir: Path):
        """Ports below 1024 are rejected."""
        with pytest.raises(ValidationError):
            _config(temp_dir, server_port=80)

    def test_unknown_fallback_provider_rejected(self, temp_dir: Path):
        with pytest.raises(ValidationError):
            _config(temp_dir, provider_fallbacks=["midjourney"])
