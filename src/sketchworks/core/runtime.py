"""Composition root shared by the API process and the headless worker.

:func:`build_runtime` turns a :class:`~sketchworks.core.config.SketchworksConfig`
into the full object graph (database, queue, router, gate, uploader, service,
worker pool).  Nothing in the pipeline reaches for globals; every collaborator
is passed in here, and tests build a runtime with fakes swapped in.

Lifecycle
---------
``build_runtime`` only constructs objects.  :meth:`Runtime.start` opens the
database, starts the background channels and (optionally) the worker pool;
:meth:`Runtime.stop` undoes all of it in reverse order.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

import httpx

from .assets import AssetStateMachine
from .background import BackgroundChannel
from .budget import BillingLedger, BudgetGuardian, log_budget_alert
from .config import SketchworksConfig
from .database import Database
from .job_queue import JobQueue
from .models import utcnow
from .moderation import (
    ContentModerationGate,
    NoopDetector,
    SafeSearchDetector,
    VisionSafeSearchDetector,
)
from .rate_limiter import SlidingWindowRateLimiter
from .router import CredentialStore, RequestRouter
from .service import GenerationService
from .storage import (
    LocalStorageBackend,
    S3StorageBackend,
    StorageBackend,
    StorageUploader,
    create_s3_client,
)
from .worker import PipelineDriver, WorkerPool

logger = logging.getLogger(__name__)


def build_detector(cfg: SketchworksConfig, http_client: httpx.AsyncClient) -> SafeSearchDetector:
    if cfg.moderation_backend == "noop":
        logger.warning("Content moderation is DISABLED (MODERATION_BACKEND=noop)")
        return NoopDetector()
    if not cfg.google_vision_api_key:
        # The gate fails closed, so every audit will be rejected until a key is set.
        logger.error("GOOGLE_VISION_API_KEY is not set; all moderation checks will fail")
    return VisionSafeSearchDetector(cfg.google_vision_api_key or "", http_client=http_client)


def build_storage_backend(cfg: SketchworksConfig) -> StorageBackend:
    if cfg.storage_backend == "s3":
        if not cfg.aws_s3_bucket:
            raise ValueError("AWS_S3_BUCKET is required when STORAGE_BACKEND=s3")
        client = create_s3_client(
            cfg.aws_region,
            cfg.aws_access_key_id,
            cfg.aws_secret_access_key,
            cfg.aws_session_token,
        )
        return S3StorageBackend(cfg.aws_s3_bucket, client)
    return LocalStorageBackend(cfg.storage_dir)


@dataclass
class Runtime:
    config: SketchworksConfig
    db: Database
    http_client: httpx.AsyncClient
    assets: AssetStateMachine
    queue: JobQueue
    ledger: BillingLedger
    budget_alerts: BackgroundChannel
    guardian: BudgetGuardian
    router: RequestRouter
    moderation: ContentModerationGate
    storage: StorageUploader
    service: GenerationService
    pool: WorkerPool

    async def start(self, start_workers: bool = True) -> None:
        self.db.open()
        self.budget_alerts.start()
        self.storage.start()
        if start_workers:
            await self.pool.start()

    async def stop(self) -> None:
        await self.pool.stop()
        await self.storage.stop()
        await self.budget_alerts.stop()
        await self.router.aclose()
        await self.moderation.aclose()
        await self.http_client.aclose()
        self.db.close()


def build_runtime(
    cfg: SketchworksConfig,
    *,
    db: Database | None = None,
    router: RequestRouter | None = None,
    detector: SafeSearchDetector | None = None,
    storage_backend: StorageBackend | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> Runtime:
    """Construct every pipeline component from configuration.

    Keyword arguments replace the corresponding component, which is how the
    test suite injects fakes; ``clock`` drives every UTC timestamp (asset
    stamps, billing month, storage key dates).
    """
    http_client = httpx.AsyncClient(timeout=cfg.provider_timeout_s)
    db = db or Database(cfg.database_path)

    assets = AssetStateMachine(db, clock=clock)
    queue = JobQueue(db, default_max_attempts=cfg.job_max_attempts, lease_s=cfg.job_lease_s)
    ledger = BillingLedger(db, clock=clock)
    budget_alerts = BackgroundChannel("budget-alerts", log_budget_alert)
    guardian = BudgetGuardian(
        ledger, cfg.monthly_budget_cents, alerts=budget_alerts, clock=clock
    )

    if router is None:
        router = RequestRouter(
            CredentialStore(cfg.provider_api_keys()),
            rate_limiter=SlidingWindowRateLimiter(cfg.rate_limit_max, cfg.rate_limit_window_s),
            http_client=http_client,
            timeout_s=cfg.provider_timeout_s,
            default_attempts=cfg.router_default_attempts,
        )
    moderation = ContentModerationGate(detector or build_detector(cfg, http_client))
    storage = StorageUploader(
        storage_backend or build_storage_backend(cfg), cfg.storage_public_base_url, clock=clock
    )

    driver = PipelineDriver(
        assets,
        queue,
        router,
        moderation,
        storage,
        ledger,
        cost_cents=cfg.generation_cost_cents,
        backoff_base_s=cfg.job_backoff_base_ms / 1000,
    )
    pool = WorkerPool(
        queue,
        driver,
        concurrency=cfg.worker_concurrency,
        poll_interval_s=cfg.worker_poll_interval_ms / 1000,
        retention_s=cfg.job_retention_hours * 3600,
        cleanup_interval_s=cfg.queue_cleanup_interval_s,
        heartbeat_interval_s=cfg.worker_heartbeat_interval_s,
    )
    service = GenerationService(
        assets,
        queue,
        guardian,
        storage,
        max_image_bytes=cfg.max_image_base64_bytes,
        default_prompt=cfg.default_prompt,
        default_quality=cfg.default_quality,
        privileged_project_ids=cfg.privileged_project_ids,
        fallback_providers=cfg.provider_fallbacks,
        on_enqueue=pool.notify,
    )
    return Runtime(
        config=cfg,
        db=db,
        http_client=http_client,
        assets=assets,
        queue=queue,
        ledger=ledger,
        budget_alerts=budget_alerts,
        guardian=guardian,
        router=router,
        moderation=moderation,
        storage=storage,
        service=service,
        pool=pool,
    )
