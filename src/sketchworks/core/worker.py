"""Worker pool and the per-job pipeline driver.

Pipeline
--------
For each claimed job the driver walks the asset through::

    auditing_input -> generating -> auditing_output -> uploading -> completed

1. Input moderation on the sketch; a rejection fails the asset with
   ``INPUT_REJECTED`` before any provider is called.
2. Generation through the request router.  The image is checkpointed on the
   job row and one billing event is recorded for the asset.
3. Output moderation; a rejection fails the asset with ``OUTPUT_REJECTED``
   (the billing event stays, the provider was paid).  A moderation service
   outage on either audit is ``SERVICE_UNAVAILABLE`` and retried.
4. Upload through the storage uploader.
5. ``completed`` with the storage URL, model version, seed and timing.

The driver starts from the asset's current status, so a job-level retry after
an infrastructure failure resumes where it stopped and never calls the
provider twice for one asset.

Retry policy
------------
Only retryable :class:`~sketchworks.core.errors.SketchworksError` failures
(``SERVICE_UNAVAILABLE`` for queue or moderation outages,
``STORAGE_UNAVAILABLE``) are retried at job level,
after ``backoff_base * 2**(attempt-1)``, up to the job's ``max_attempts``.
Moderation rejections and provider failures are terminal; the router has
already retried the latter.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging

from .assets import AssetStateMachine
from .budget import BillingLedger
from .errors import (
    GenerationFailed,
    InfrastructureError,
    JobCancelled,
    ModerationRejected,
    SketchworksError,
)
from .job_queue import JobQueue
from .models import AssetStatus, GenerationJob, GenerationOptions, GenerationRequest
from .moderation import ContentModerationGate
from .router import RequestRouter
from .storage import StorageUploader

logger = logging.getLogger(__name__)


class PipelineDriver:
    """Run one job through moderation, generation and upload.

    Args:
        assets: Asset state machine.
        queue: Job queue the job was claimed from.
        router: Request router for the generation step.
        moderation: Gate applied to the input and output images.
        storage: Uploader for the final artifact.
        ledger: Billing ledger.
        cost_cents: Cost recorded per generated image.
        backoff_base_s: Base delay for job-level retries.
    """

    def __init__(
        self,
        assets: AssetStateMachine,
        queue: JobQueue,
        router: RequestRouter,
        moderation: ContentModerationGate,
        storage: StorageUploader,
        ledger: BillingLedger,
        *,
        cost_cents: int = 7,
        backoff_base_s: float = 60.0,
    ) -> None:
        self.assets = assets
        self.queue = queue
        self.router = router
        self.moderation = moderation
        self.storage = storage
        self.ledger = ledger
        self.cost_cents = cost_cents
        self.backoff_base_s = backoff_base_s

    def retry_delay_s(self, attempt: int) -> float:
        return self.backoff_base_s * 2 ** (attempt - 1)

    async def run(self, job: GenerationJob) -> None:
        """Process a claimed job and settle it in the queue."""
        logger.info(f"Processing job {job.job_id} (asset {job.asset_id}, attempt {job.attempts})")
        try:
            await self._execute(job)
        except JobCancelled as e:
            await self.assets.fail(job.asset_id, e.code, e.message)
            self.queue.mark_cancelled(job.job_id)
        except GenerationFailed as e:
            await self._fail(job, e.error.code, e.error.message)
        except SketchworksError as e:
            if e.retryable and job.attempts < job.max_attempts:
                delay = self.retry_delay_s(job.attempts)
                self.queue.retry_later(job.job_id, delay, str(e))
            else:
                await self._fail(job, e.code, e.message)
        except Exception as e:
            logger.exception(f"Job {job.job_id} crashed")
            await self._fail(job, "INTERNAL_ERROR", str(e))
        else:
            self.queue.complete(job.job_id)
            logger.info(f"Job {job.job_id} completed")

    async def _fail(self, job: GenerationJob, code: str, message: str) -> None:
        logger.error(f"Job {job.job_id} failed: {code}: {message}")
        await self.assets.fail(job.asset_id, code, message)
        self.queue.fail(job.job_id, f"{code}: {message}")

    def _check_cancelled(self, job: GenerationJob) -> None:
        if self.queue.is_cancel_requested(job.job_id):
            raise JobCancelled("Generation was cancelled")

    async def _execute(self, job: GenerationJob) -> None:
        asset = self.assets.get(job.asset_id)
        status = asset.status
        if status.is_terminal:
            logger.warning(f"Asset {job.asset_id} is already {status.value}; nothing to do")
            return

        if status is AssetStatus.PENDING:
            status = (await self.assets.transition(job.asset_id, AssetStatus.AUDITING_INPUT)).status

        if status is AssetStatus.AUDITING_INPUT:
            await self._audit(job.source_image, "INPUT_REJECTED", "Input image")
            self._check_cancelled(job)
            status = (await self.assets.transition(job.asset_id, AssetStatus.GENERATING)).status

        if status is AssetStatus.GENERATING:
            if job.generated_image is None:
                await self._generate(job)
            status = (await self.assets.transition(job.asset_id, AssetStatus.AUDITING_OUTPUT)).status

        if job.generated_image is None:
            raise SketchworksError(
                "Generated image is missing for a resumed job", code="GENERATION_RESULT_MISSING"
            )

        if status is AssetStatus.AUDITING_OUTPUT:
            try:
                await self._audit(job.generated_image, "OUTPUT_REJECTED", "Generated image")
            except ModerationRejected:
                self.ledger.record(job.asset_id, self.cost_cents, status="rejected")
                raise
            self._check_cancelled(job)
            status = (await self.assets.transition(job.asset_id, AssetStatus.UPLOADING)).status

        if status is AssetStatus.UPLOADING:
            content_type = job.generated_content_type or "image/png"
            url = await self.storage.upload(job.generated_image, job.asset_id, content_type)
            meta = job.generation_meta
            await self.assets.transition(
                job.asset_id,
                AssetStatus.COMPLETED,
                storage_url=url,
                ai_model_version=meta.get("model_version"),
                generation_seed=meta.get("seed"),
                processing_time_ms=meta.get("processing_time_ms"),
            )
            self.ledger.record(job.asset_id, self.cost_cents, status="completed")

    async def _audit(self, image: bytes, rejection_code: str, label: str) -> None:
        result = await self.moderation.audit(image)
        if result.passed:
            return
        if result.error_code:
            raise InfrastructureError(f"Content moderation unavailable: {result.message}")
        raise ModerationRejected(
            f"{label} failed content moderation: {result.describe()}", code=rejection_code
        )

    async def _generate(self, job: GenerationJob) -> None:
        request = GenerationRequest(
            operation="image-to-image",
            prompt=job.prompt,
            source_image=job.source_image,
            quality=job.requested_quality,
            seed=job.seed,
        )
        options = GenerationOptions(
            provider=job.preferred_provider, fallback_providers=job.fallback_providers
        )
        result = await self.router.execute(request, options)
        meta = {
            "provider": result.provider,
            "model_version": result.model_version,
            "seed": result.seed,
            "processing_time_ms": result.processing_time_ms,
        }
        self.queue.checkpoint(job.job_id, result.image, result.content_type, meta)
        job.generated_image = result.image
        job.generated_content_type = result.content_type
        job.generation_meta = meta
        self.ledger.record(job.asset_id, self.cost_cents, status="generated")


class WorkerPool:
    """Fixed-size pool of asyncio workers draining the job queue.

    Args:
        queue: Job queue to claim from.
        driver: Pipeline driver run for each job.
        concurrency: Number of worker tasks.
        poll_interval_s: Idle wait between claims when the queue is empty.
        retention_s: Age after which finished jobs are purged.
        cleanup_interval_s: How often the janitor purges.
        heartbeat_interval_s: How often leases on running jobs are renewed and
            expired leases from dead workers are re-queued; keep it well below
            the queue's ``lease_s``.
    """

    def __init__(
        self,
        queue: JobQueue,
        driver: PipelineDriver,
        *,
        concurrency: int = 3,
        poll_interval_s: float = 1.0,
        retention_s: float = 24 * 3600,
        cleanup_interval_s: float = 3600,
        heartbeat_interval_s: float = 30.0,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.queue = queue
        self.driver = driver
        self.concurrency = concurrency
        self.poll_interval_s = poll_interval_s
        self.retention_s = retention_s
        self.cleanup_interval_s = cleanup_interval_s
        self.heartbeat_interval_s = heartbeat_interval_s
        self._tasks: list[asyncio.Task] = []
        self._stopping = asyncio.Event()
        self._wakeup = asyncio.Event()
        self.processed = 0

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    async def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        self.queue.requeue_stalled()
        loop = asyncio.get_running_loop()
        self._tasks = [
            loop.create_task(self._worker(index), name=f"worker-{index}")
            for index in range(self.concurrency)
        ]
        self._tasks.append(loop.create_task(self._janitor(), name="queue-janitor"))
        self._tasks.append(loop.create_task(self._lease_keeper(), name="lease-keeper"))
        logger.info(f"Worker pool started with {self.concurrency} worker(s)")

    async def stop(self, timeout_s: float = 30.0) -> None:
        """Let in-flight jobs finish, then stop every task."""
        self._stopping.set()
        self._wakeup.set()
        if not self._tasks:
            return
        _, pending = await asyncio.wait(self._tasks, timeout=timeout_s)
        for task in pending:
            task.cancel()
        for task in pending:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks = []
        logger.info("Worker pool stopped")

    def notify(self) -> None:
        """Wake idle workers after an enqueue."""
        self._wakeup.set()

    async def process_next(self) -> bool:
        """Claim and run one job; returns False when nothing was claimable."""
        job = self.queue.claim()
        if job is None:
            return False
        await self.driver.run(job)
        self.processed += 1
        return True

    async def _worker(self, index: int) -> None:
        while not self._stopping.is_set():
            try:
                if await self.process_next():
                    continue
            except Exception:
                # Settling the job itself failed (e.g. the database went away).
                logger.exception(f"Worker {index} failed to process a job")
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.poll_interval_s)
            self._wakeup.clear()

    async def _janitor(self) -> None:
        while not self._stopping.is_set():
            try:
                self.queue.purge_finished(self.retention_s)
            except Exception:
                logger.exception("Queue cleanup failed")
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._stopping.wait(), timeout=self.cleanup_interval_s)

    async def _lease_keeper(self) -> None:
        while not self._stopping.is_set():
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._stopping.wait(), timeout=self.heartbeat_interval_s)
            try:
                self.queue.renew_leases()
                if self.queue.requeue_stalled():
                    self._wakeup.set()
            except Exception:
                logger.exception("Lease renewal failed")
