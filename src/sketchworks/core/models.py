"""Domain records shared across the generation pipeline."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

Quality = Literal["fast", "standard", "premium"]
Priority = Literal["quality", "speed", "cost"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AssetStatus(str, Enum):
    """Lifecycle states of an asset, in pipeline order."""

    PENDING = "pending"
    AUDITING_INPUT = "auditing_input"
    GENERATING = "generating"
    AUDITING_OUTPUT = "auditing_output"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (AssetStatus.COMPLETED, AssetStatus.FAILED)


# Forward order of the pipeline; FAILED sits outside the ordering.
STATUS_ORDER: tuple[AssetStatus, ...] = (
    AssetStatus.PENDING,
    AssetStatus.AUDITING_INPUT,
    AssetStatus.GENERATING,
    AssetStatus.AUDITING_OUTPUT,
    AssetStatus.UPLOADING,
    AssetStatus.COMPLETED,
)


@dataclass
class Asset:
    """Persisted record tracking one generation's inputs, status and output."""

    id: str
    project_id: str
    source_sketch_id: str
    status: AssetStatus
    created_at: datetime
    updated_at: datetime
    storage_url: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    ai_model_version: str | None = None
    generation_seed: int | None = None
    processing_time_ms: int | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialise using the camelCase field names pollers expect."""
        return {
            "id": self.id,
            "projectId": self.project_id,
            "sourceSketchId": self.source_sketch_id,
            "status": self.status.value,
            "storageUrl": self.storage_url,
            "errorCode": self.error_code,
            "errorMessage": self.error_message,
            "aiModelVersion": self.ai_model_version,
            "generationSeed": self.generation_seed,
            "processingTimeMs": self.processing_time_ms,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }


@dataclass
class GenerationJob:
    """Unit of work handed to a worker; 1:1 with an asset while in flight."""

    job_id: str
    asset_id: str
    source_image: bytes
    prompt: str
    requested_quality: Quality = "standard"
    seed: int | None = None
    priority: int = 0
    # Provider tried first, then the ordered fallbacks; empty means auto-select.
    preferred_provider: str | None = None
    fallback_providers: tuple[str, ...] = ()
    attempts: int = 0
    max_attempts: int = 1
    # Generated image checkpoint, kept so a job-level retry after the
    # generation step does not call the provider again.
    generated_image: bytes | None = None
    generated_content_type: str | None = None
    generation_meta: dict[str, Any] = field(default_factory=dict)
    cancel_requested: bool = False
    claimed_by: str | None = None
    last_error: str | None = None


@dataclass(frozen=True)
class BudgetInfo:
    """Projection of the billing ledger for one calendar month."""

    total_cents: int
    used_cents: int
    remaining: int
    usage_percent: float
    month_year: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalCents": self.total_cents,
            "usedCents": self.used_cents,
            "remaining": self.remaining,
            "usagePercent": round(self.usage_percent, 2),
            "monthYear": self.month_year,
        }


@dataclass(frozen=True)
class BillingEvent:
    """One ledger row; there is at most one per asset."""

    asset_id: str
    cost_cents: int
    api_calls: int
    status: str
    month_year: str
    created_at: datetime

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        return data


@dataclass(frozen=True)
class Dimensions:
    width: int
    height: int

    @property
    def pixels(self) -> int:
        return self.width * self.height


@dataclass(frozen=True)
class GenerationRequest:
    """Provider-facing request built by the pipeline driver.

    Attributes:
        operation: Operation type (``image-to-image`` for sketch jobs).
        prompt: Final prompt text.
        source_image: Input image bytes for image-conditioned operations.
        dimensions: Requested output size; ``None`` leaves it to the provider.
        quality: Requested quality tier.
        style: Optional style preset name.
        seed: Optional seed for reproducibility.
    """

    operation: str
    prompt: str
    source_image: bytes | None = None
    dimensions: Dimensions | None = None
    quality: Quality | None = None
    style: str | None = None
    seed: int | None = None


@dataclass(frozen=True)
class GenerationResult:
    """Normalised output of a successful provider call."""

    image: bytes
    content_type: str
    provider: str
    model_version: str
    seed: int | None = None
    processing_time_ms: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class GenerationOptions:
    """Caller preferences for a single router execution."""

    provider: str | None = None
    priority: Priority = "quality"
    fallback_providers: tuple[str, ...] = ()
