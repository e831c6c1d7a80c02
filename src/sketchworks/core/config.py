"""Configuration management for the Sketchworks generation service.

This module provides centralized configuration management using Pydantic Settings.
Values are loaded from environment variables (no prefix, case-insensitive) so
that the operational knobs keep the names operators already use, for example
``MONTHLY_BUDGET_CENTS`` or ``MAX_IMAGE_BASE64_MB``.

Environment Variable Loading
-----------------------------
Configuration values are loaded in the following priority order:
1. Environment variables
2. .env file in the working directory
3. Default values defined in SketchworksConfig

Example .env file:
    MONTHLY_BUDGET_CENTS=1000000
    MAX_IMAGE_BASE64_MB=10
    PROVIDER_TIMEOUT_MS=120000
    WORKER_CONCURRENCY=3
    RATE_LIMIT_MAX=5
    RATE_LIMIT_WINDOW_MS=60000
    OPENAI_API_KEY=sk-...
    STORAGE_BACKEND=s3
    AWS_S3_BUCKET=my-bucket

Global Configuration Instance
------------------------------
A global `config` instance is created automatically at module import time.
Entry points (the FastAPI lifespan and the worker process) read it once and
thread the values into the service objects they construct; library code never
imports the global directly, which keeps every component testable with a
purpose-built configuration.

Directory Management
--------------------
The configuration creates required directories on initialization:
- data_dir: SQLite database (assets, jobs, billing ledger)
- storage_dir: Generated artifacts when the local storage backend is used

See Also
--------
- SketchworksConfig: Full configuration class documentation
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class SketchworksConfig(BaseSettings):
    """Main configuration for the Sketchworks generation service.

    Attributes
    ----------
    Admission:
        monthly_budget_cents : int
            Monthly spend cap in cents; the Budget Guardian gates on it
        privileged_project_ids : list[str]
            Projects that may keep generating past the 95% soft stop
        max_image_base64_mb : float
            Upper bound for the submitted base64 payload

    Providers:
        provider_timeout_ms : int
            Per-call timeout for AI provider requests
        router_default_attempts : int
            Router attempts when a request carries no fallback providers
        provider_fallbacks : list[str]
            Providers tried in order after a retryable provider failure
            (``PROVIDER_FALLBACKS=["stability","openai"]``)
        openai_api_key, gemini_api_key, stability_api_key, google_api_key : str | None
            Credentials; a provider without a key is never selected

    Queue and workers:
        worker_concurrency : int
            Number of concurrent pipeline workers
        worker_enabled : bool
            Start the worker pool inside the API process
        rate_limit_max, rate_limit_window_ms : int
            Global cap on provider-bound calls across all workers
        job_max_attempts, job_backoff_base_ms : int
            Job-level retry policy for infrastructure failures
        job_retention_hours : int
            How long finished jobs stay in the queue table
        job_lease_s, worker_heartbeat_interval_s : int
            A running job's lease and how often its worker renews it; jobs
            whose lease expires are re-queued

    Billing:
        generation_cost_cents : int
            Fixed cost recorded per generated image

    Moderation and storage:
        moderation_backend : Literal["vision", "noop"]
        storage_backend : Literal["local", "s3"]

    Notes
    -----
    - All directories are created automatically if they don't exist
    - To modify config, set environment variables and restart the service

    Examples
    --------
        >>> custom = SketchworksConfig(monthly_budget_cents=5000, worker_concurrency=1)
        >>> custom.rate_limit_window_s
        60.0
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        case_sensitive=False,
        extra="ignore",
    )

    # Admission control
    monthly_budget_cents: int = Field(
        default=1_000_000,
        description="Monthly budget cap in cents",
        gt=0,
    )
    privileged_project_ids: list[str] = Field(
        default_factory=list,
        description="Project ids allowed through the 95% soft stop",
    )
    max_image_base64_mb: float = Field(
        default=10.0,
        description="Maximum size of the submitted base64 image payload in MB",
        gt=0,
    )

    # Provider calls
    provider_timeout_ms: int = Field(
        default=120_000,
        description="Timeout for a single provider call",
        ge=1,
    )
    router_default_attempts: int = Field(
        default=3,
        description="Router attempts when no fallback providers are given",
        ge=1,
        le=10,
    )
    provider_fallbacks: list[Literal["gemini-tuzi", "openai", "stability", "google"]] = Field(
        default_factory=list,
        description="Ordered providers tried after a retryable provider failure",
    )
    openai_api_key: str | None = Field(default=None, description="OpenAI API key")
    gemini_api_key: str | None = Field(default=None, description="Gemini (tu-zi) API key")
    stability_api_key: str | None = Field(default=None, description="Stability AI API key")
    google_api_key: str | None = Field(default=None, description="Google AI (Imagen) API key")

    # Generation defaults
    default_quality: Literal["fast", "standard", "premium"] = Field(
        default="standard",
        description="Quality requested for submissions that don't specify one",
    )
    default_prompt: str = Field(
        default=(
            "Turn this hand-drawn sketch into a polished professional artwork, "
            "keeping the original composition"
        ),
        description="Prompt used when a submission carries none",
    )

    # Queue and worker pool
    worker_concurrency: int = Field(default=3, ge=1, le=64)
    worker_enabled: bool = Field(
        default=True,
        description="Run the worker pool inside the API process",
    )
    worker_poll_interval_ms: int = Field(default=1000, ge=10)
    rate_limit_max: int = Field(default=5, ge=1)
    rate_limit_window_ms: int = Field(default=60_000, ge=1)
    job_max_attempts: int = Field(default=5, ge=1)
    job_backoff_base_ms: int = Field(default=60_000, ge=0)
    job_retention_hours: int = Field(default=24, ge=1)
    queue_cleanup_interval_s: int = Field(default=3600, ge=1)
    job_lease_s: int = Field(
        default=300,
        description="Heartbeat age after which an active job is re-queued",
        ge=1,
    )
    worker_heartbeat_interval_s: int = Field(default=30, ge=1)

    # Billing
    generation_cost_cents: int = Field(
        default=7,
        description="Cost unit recorded once per generated image",
        ge=0,
    )

    # Moderation
    moderation_backend: Literal["vision", "noop"] = Field(
        default="vision",
        description="SafeSearch backend; 'noop' disables moderation for local development",
    )
    google_vision_api_key: str | None = Field(default=None)
    moderation_timeout_ms: int = Field(default=30_000, ge=1)

    # Storage
    storage_backend: Literal["local", "s3"] = Field(default="local")
    storage_public_base_url: str = Field(
        default="/static",
        description="Prefix prepended to storage keys to build public URLs",
    )
    aws_s3_bucket: str | None = Field(default=None)
    aws_region: str = Field(default="us-east-1")
    aws_access_key_id: str | None = Field(default=None)
    aws_secret_access_key: str | None = Field(default=None)
    aws_session_token: str | None = Field(default=None)

    # Paths
    data_dir: Path = Field(
        default=Path("data"),
        description="Directory holding the SQLite database",
    )
    storage_dir: Path = Field(
        default=Path("data/artifacts"),
        description="Root directory for the local storage backend",
    )
    database_filename: str = Field(default="sketchworks.db")

    # Server
    server_host: str = Field(default="0.0.0.0")
    server_port: int = Field(default=7860, ge=1024, le=65535)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")

    def __init__(self, **kwargs):
        """Initialize configuration and create required directories.

        Args:
            **kwargs: Configuration overrides (typically from environment variables)
        """
        super().__init__(**kwargs)

        self.data_dir.mkdir(parents=True, exist_ok=True)
        if self.storage_backend == "local":
            self.storage_dir.mkdir(parents=True, exist_ok=True)

    @property
    def database_path(self) -> Path:
        """Location of the SQLite database file."""
        return self.data_dir / self.database_filename

    @property
    def provider_timeout_s(self) -> float:
        return self.provider_timeout_ms / 1000

    @property
    def rate_limit_window_s(self) -> float:
        return self.rate_limit_window_ms / 1000

    @property
    def max_image_base64_bytes(self) -> int:
        return int(self.max_image_base64_mb * 1024 * 1024)

    def provider_api_keys(self) -> dict[str, str | None]:
        """Return configured credentials keyed by provider id value."""
        return {
            "gemini-tuzi": self.gemini_api_key,
            "openai": self.openai_api_key,
            "stability": self.stability_api_key,
            "google": self.google_api_key,
        }


# Global configuration instance, read by the process entry points only.
config = SketchworksConfig()
