"""Submission and status contracts of the generation pipeline.

:class:`GenerationService` is what the HTTP layer talks to.  A submission is
validated, gated by the Budget Guardian, then turned into a ``pending`` asset
plus one queued job.  Everything after that happens in the worker pool; callers
poll :meth:`GenerationService.get_status`.

Submission errors
-----------------
========================= ====== ============================================
Code                      HTTP   Cause
========================= ====== ============================================
MISSING_REQUIRED_FIELDS   400    no project id or image data
IMAGE_TOO_LARGE           413    base64 payload above ``MAX_IMAGE_BASE64_MB``
INVALID_IMAGE_ENCODING    400    payload is not base64
INVALID_IMAGE_DATA        400    bytes are not a readable image
INVALID_REQUEST           400    unknown provider id requested
UNSUPPORTED_IMAGE_TYPE    400    readable, but not PNG, JPEG or WebP
SERVICE_TEMPORARILY_...   503    monthly budget exhausted (with Retry-After)
QUOTA_NEARLY_EXCEEDED     429    soft stop for non-privileged projects
SERVICE_UNAVAILABLE       503    budget check or queue unavailable
========================= ====== ============================================
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from sketchworks.providers.capabilities import ProviderId

from .assets import AssetStateMachine
from .budget import AdmissionContext, BudgetGuardian
from .errors import AdmissionError, InfrastructureError
from .images import content_digest, decode_base64, identify_format, split_data_url
from .job_queue import CancelOutcome, JobQueue
from .models import Asset, BudgetInfo
from .storage import StorageUploader

logger = logging.getLogger(__name__)

ESTIMATED_TIME_MS = 30_000
ACCEPTED_FORMATS = frozenset({"PNG", "JPEG", "WEBP"})

_BUDGET_HTTP_STATUS = {
    "SERVICE_TEMPORARILY_UNAVAILABLE": 503,
    "QUOTA_NEARLY_EXCEEDED": 429,
    "SERVICE_UNAVAILABLE": 503,
}

_BUDGET_MESSAGES = {
    "SERVICE_TEMPORARILY_UNAVAILABLE": "Monthly budget exhausted. Please try again next month.",
    "QUOTA_NEARLY_EXCEEDED": "Monthly quota nearly exceeded.",
    "SERVICE_UNAVAILABLE": "Service temporarily unavailable.",
}


@dataclass(frozen=True)
class SubmissionReceipt:
    asset_id: str
    job_id: str
    estimated_time_ms: int = ESTIMATED_TIME_MS

    def to_dict(self) -> dict:
        return {
            "assetId": self.asset_id,
            "jobId": self.job_id,
            "estimatedTimeMs": self.estimated_time_ms,
        }


class GenerationService:
    """Front door of the pipeline.

    Args:
        assets: Asset state machine.
        queue: Job queue.
        guardian: Budget Guardian consulted once per submission.
        storage: Uploader, used to schedule artifact deletes.
        max_image_bytes: Limit on the submitted base64 text.
        default_prompt: Prompt used when a submission has none.
        default_quality: Quality tier for new jobs.
        privileged_project_ids: Projects that pass the soft stop.
        fallback_providers: Providers tried in order after the first one fails
            with a retryable error; recorded on every new job.
        on_enqueue: Called after every enqueue (wakes idle workers).
    """

    def __init__(
        self,
        assets: AssetStateMachine,
        queue: JobQueue,
        guardian: BudgetGuardian,
        storage: StorageUploader,
        *,
        max_image_bytes: int,
        default_prompt: str,
        default_quality: str = "standard",
        privileged_project_ids: Iterable[str] = (),
        fallback_providers: Iterable[str] = (),
        on_enqueue: Callable[[], None] | None = None,
    ) -> None:
        self.assets = assets
        self.queue = queue
        self.guardian = guardian
        self.storage = storage
        self.max_image_bytes = max_image_bytes
        self.default_prompt = default_prompt
        self.default_quality = default_quality
        self.privileged_project_ids = frozenset(privileged_project_ids)
        self.fallback_providers = tuple(ProviderId(p).value for p in fallback_providers)
        self.on_enqueue = on_enqueue

    def decode_image(self, image_data: str) -> bytes:
        """Validate a base64 or data-URL image and return its bytes."""
        if len(image_data) > self.max_image_bytes:
            raise AdmissionError(
                "IMAGE_TOO_LARGE",
                f"Image data exceeds {self.max_image_bytes} bytes",
                http_status=413,
            )
        declared, payload = split_data_url(image_data)
        if declared is not None and not declared.lower().startswith("image/"):
            raise AdmissionError("UNSUPPORTED_IMAGE_TYPE", f"Unsupported media type {declared}")
        try:
            image = decode_base64(payload)
        except ValueError as e:
            raise AdmissionError("INVALID_IMAGE_ENCODING", str(e)) from e
        if not image:
            raise AdmissionError("INVALID_IMAGE_DATA", "Image data is empty")

        image_format = identify_format(image)
        if image_format is None:
            raise AdmissionError("INVALID_IMAGE_DATA", "Image data could not be read")
        if image_format not in ACCEPTED_FORMATS:
            raise AdmissionError(
                "UNSUPPORTED_IMAGE_TYPE", f"Unsupported image format {image_format}"
            )
        return image

    async def submit(
        self,
        project_id: str | None,
        image_data: str | None,
        prompt: str | None = None,
        *,
        seed: int | None = None,
        priority: int = 0,
        provider: str | None = None,
    ) -> SubmissionReceipt:
        """Admit a sketch and queue its generation job.

        ``provider`` names the provider to try first; without it the router
        picks one from the capability table.

        Raises:
            AdmissionError: For invalid input or a budget rejection.
            InfrastructureError: If the asset or job could not be persisted.
        """
        if not project_id or not image_data:
            raise AdmissionError(
                "MISSING_REQUIRED_FIELDS", "projectId and imageData are required"
            )
        if provider is not None and provider not in {p.value for p in ProviderId}:
            raise AdmissionError("INVALID_REQUEST", f"Unknown provider {provider}")
        image = self.decode_image(image_data)
        prompt = (prompt or "").strip() or self.default_prompt

        context = AdmissionContext(
            project_id=project_id, privileged=project_id in self.privileged_project_ids
        )
        decision = self.guardian.check_budget(context)
        if not decision.allowed:
            code = decision.error_code or "SERVICE_UNAVAILABLE"
            raise AdmissionError(
                code,
                _BUDGET_MESSAGES.get(code, "Service temporarily unavailable."),
                http_status=_BUDGET_HTTP_STATUS.get(code, 503),
                retry_after_seconds=decision.retry_after_seconds,
                details={"budget": decision.budget_info.to_dict()} if decision.budget_info else {},
            )

        asset = self.assets.create(project_id, content_digest(image))
        try:
            job = self.queue.enqueue(
                asset.id,
                image,
                prompt,
                requested_quality=self.default_quality,
                seed=seed,
                priority=priority,
                preferred_provider=provider,
                fallback_providers=tuple(p for p in self.fallback_providers if p != provider),
            )
        except InfrastructureError as e:
            await self.assets.fail(asset.id, e.code, e.message)
            raise

        if self.on_enqueue is not None:
            self.on_enqueue()
        logger.info(f"Accepted submission for project {project_id}: asset {asset.id}")
        return SubmissionReceipt(asset_id=asset.id, job_id=job.job_id)

    def get_status(self, asset_id: str) -> Asset:
        return self.assets.get(asset_id)

    def list_assets(self, project_id: str, limit: int = 50, offset: int = 0) -> list[Asset]:
        return self.assets.list_for_project(project_id, limit=limit, offset=offset)

    async def cancel(self, job_id: str) -> CancelOutcome:
        """Cancel a job; a job that never started fails its asset with ``CANCELLED``."""
        asset_id = self.queue.asset_of(job_id)
        outcome = self.queue.cancel(job_id)
        if outcome is CancelOutcome.REMOVED and asset_id is not None:
            await self.assets.fail(asset_id, "CANCELLED", "Generation was cancelled")
        return outcome

    async def delete_asset(self, asset_id: str) -> Asset:
        """Remove an asset, cancel its job and schedule its artifact for deletion."""
        self.assets.get(asset_id)
        job_id = self.queue.in_flight_for(asset_id)
        if job_id is not None:
            self.queue.cancel(job_id)
        removed = self.assets.remove(asset_id)
        self.storage.schedule_delete([removed.storage_url])
        return removed

    def queue_status(self) -> dict[str, int]:
        return self.queue.counts()

    def budget_info(self) -> BudgetInfo:
        return self.guardian.budget_info()
