"""Durable generation job queue backed by SQLite.

Job states
----------
``waiting``
    Ready to be claimed.
``delayed``
    Scheduled for a job-level retry; claimable once ``available_at`` passes.
``active``
    Claimed by a worker.
``completed`` / ``failed`` / ``cancelled``
    Finished; purged after the retention window.

Claim order is highest ``priority`` first, then FIFO by insertion.  A claim is
a select-and-update inside one transaction, so each job has a single
claimant.  A partial unique index allows at most one ``waiting``, ``delayed``
or ``active`` job per asset; :meth:`JobQueue.enqueue` turns a violation into
:class:`~sketchworks.core.errors.JobConflict`.

Leases
------
A claim records the claiming queue's ``worker_id`` and a ``heartbeat_at``
timestamp.  The owning worker pool renews its leases while jobs run; only an
``active`` job whose heartbeat is older than ``lease_s`` is treated as
abandoned by a dead process and returned to ``waiting``.  Several processes
can therefore share one database file without taking over each other's
live jobs.  Settling a job is only accepted from the queue that holds its
lease.
"""

from __future__ import annotations

import json
import logging
import os
import socket
import sqlite3
import time
import uuid
from collections.abc import Callable
from enum import Enum
from typing import Any

from .database import Database
from .errors import JobConflict, JobNotFound
from .models import GenerationJob

logger = logging.getLogger(__name__)

IN_FLIGHT_STATES = ("waiting", "delayed", "active")
FINISHED_STATES = ("completed", "failed", "cancelled")
ALL_STATES = IN_FLIGHT_STATES + FINISHED_STATES


class CancelOutcome(str, Enum):
    REMOVED = "removed"
    FLAGGED = "flagged"
    ALREADY_FINISHED = "already_finished"


def _row_to_job(row: sqlite3.Row) -> GenerationJob:
    return GenerationJob(
        job_id=row["job_id"],
        asset_id=row["asset_id"],
        source_image=bytes(row["source_image"]),
        prompt=row["prompt"],
        requested_quality=row["requested_quality"],
        seed=row["seed"],
        priority=row["priority"],
        preferred_provider=row["preferred_provider"],
        fallback_providers=tuple(json.loads(row["fallback_providers"] or "[]")),
        attempts=row["attempts"],
        max_attempts=row["max_attempts"],
        generated_image=bytes(row["generated_image"]) if row["generated_image"] else None,
        generated_content_type=row["generated_content_type"],
        generation_meta=json.loads(row["generation_meta"]) if row["generation_meta"] else {},
        cancel_requested=bool(row["cancel_requested"]),
        claimed_by=row["claimed_by"],
        last_error=row["last_error"],
    )


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class JobQueue:
    """Durable priority queue of :class:`GenerationJob` rows.

    Args:
        db: Open database handle.
        default_max_attempts: Job-level attempt budget for new jobs.
        clock: Wall-clock source in epoch seconds (injectable for tests).
        worker_id: Identity written on claimed jobs; unique per process by default.
        lease_s: Heartbeat age after which an active job counts as abandoned.
    """

    def __init__(
        self,
        db: Database,
        default_max_attempts: int = 5,
        clock: Callable[[], float] = time.time,
        *,
        worker_id: str | None = None,
        lease_s: float = 300.0,
    ) -> None:
        if lease_s <= 0:
            raise ValueError("lease_s must be > 0")
        self.db = db
        self.default_max_attempts = default_max_attempts
        self._clock = clock
        self.worker_id = worker_id or default_worker_id()
        self.lease_s = lease_s

    def enqueue(
        self,
        asset_id: str,
        source_image: bytes,
        prompt: str,
        *,
        requested_quality: str = "standard",
        seed: int | None = None,
        priority: int = 0,
        preferred_provider: str | None = None,
        fallback_providers: tuple[str, ...] = (),
        max_attempts: int | None = None,
        job_id: str | None = None,
    ) -> GenerationJob:
        """Add a job for an asset.

        Raises:
            JobConflict: If the asset already has an unfinished job.
        """
        job = GenerationJob(
            job_id=job_id or str(uuid.uuid4()),
            asset_id=asset_id,
            source_image=source_image,
            prompt=prompt,
            requested_quality=requested_quality,  # type: ignore[arg-type]
            seed=seed,
            priority=priority,
            preferred_provider=preferred_provider,
            fallback_providers=tuple(fallback_providers),
            max_attempts=max_attempts or self.default_max_attempts,
        )
        now = self._clock()
        try:
            with self.db.transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO jobs (job_id, asset_id, state, priority, prompt,
                        requested_quality, seed, preferred_provider, fallback_providers,
                        source_image, attempts, max_attempts, available_at, created_at)
                    VALUES (?, ?, 'waiting', ?, ?, ?, ?, ?, ?, ?, 0, ?, ?, ?)
                    """,
                    (
                        job.job_id,
                        job.asset_id,
                        job.priority,
                        job.prompt,
                        job.requested_quality,
                        job.seed,
                        job.preferred_provider,
                        json.dumps(list(job.fallback_providers)),
                        job.source_image,
                        job.max_attempts,
                        now,
                        now,
                    ),
                )
        except sqlite3.IntegrityError as e:
            raise JobConflict(f"Asset {asset_id} already has a job in flight") from e
        logger.info(f"Enqueued job {job.job_id} for asset {asset_id} (priority {priority})")
        return job

    def claim(self) -> GenerationJob | None:
        """Atomically take the next claimable job, or None if there is none."""
        now = self._clock()
        with self.db.transaction() as conn:
            row = conn.execute(
                """
                SELECT job_id FROM jobs
                WHERE state IN ('waiting', 'delayed') AND available_at <= ?
                ORDER BY priority DESC, seq ASC
                LIMIT 1
                """,
                (now,),
            ).fetchone()
            if row is None:
                return None
            conn.execute(
                "UPDATE jobs SET state = 'active', attempts = attempts + 1, claimed_by = ?, "
                "heartbeat_at = ? WHERE job_id = ?",
                (self.worker_id, now, row["job_id"]),
            )
            claimed = conn.execute("SELECT * FROM jobs WHERE job_id = ?", (row["job_id"],)).fetchone()
        return _row_to_job(claimed)

    def _finish(self, job_id: str, state: str, error: str | None = None) -> None:
        with self.db.transaction() as conn:
            cursor = conn.execute(
                "UPDATE jobs SET state = ?, last_error = COALESCE(?, last_error), finished_at = ?, "
                "source_image = X'', generated_image = NULL WHERE job_id = ? "
                "AND (claimed_by IS NULL OR claimed_by = ?)",
                (state, error, self._clock(), job_id, self.worker_id),
            )
            if cursor.rowcount == 0:
                raise JobNotFound(f"Job {job_id} not found or claimed by another worker")

    def complete(self, job_id: str) -> None:
        self._finish(job_id, "completed")

    def fail(self, job_id: str, error: str) -> None:
        self._finish(job_id, "failed", error)

    def mark_cancelled(self, job_id: str) -> None:
        """Finish an active job that stopped on its cancel flag."""
        self._finish(job_id, "cancelled", "CANCELLED")

    def retry_later(self, job_id: str, delay_s: float, error: str) -> None:
        """Put an active job back as ``delayed`` until ``now + delay_s``."""
        with self.db.transaction() as conn:
            cursor = conn.execute(
                "UPDATE jobs SET state = 'delayed', available_at = ?, last_error = ?, "
                "claimed_by = NULL, heartbeat_at = NULL "
                "WHERE job_id = ? AND state = 'active' AND claimed_by = ?",
                (self._clock() + delay_s, error, job_id, self.worker_id),
            )
            if cursor.rowcount == 0:
                raise JobNotFound(f"Active job {job_id} not found for this worker")
        logger.warning(f"Job {job_id} scheduled for retry in {delay_s:.0f}s: {error}")

    def checkpoint(
        self, job_id: str, image: bytes, content_type: str, meta: dict[str, Any]
    ) -> None:
        """Store the generated image so a retry can skip generation."""
        with self.db.transaction() as conn:
            conn.execute(
                "UPDATE jobs SET generated_image = ?, generated_content_type = ?, "
                "generation_meta = ? WHERE job_id = ?",
                (image, content_type, json.dumps(meta), job_id),
            )

    def cancel(self, job_id: str) -> CancelOutcome:
        """Cancel a job.

        Waiting and delayed jobs are marked ``cancelled`` at once.  Active
        jobs only get a flag that the pipeline driver checks between steps.

        Raises:
            JobNotFound: If no such job exists.
        """
        with self.db.transaction() as conn:
            row = conn.execute("SELECT state FROM jobs WHERE job_id = ?", (job_id,)).fetchone()
            if row is None:
                raise JobNotFound(f"Job {job_id} not found")
            state = row["state"]
            if state in ("waiting", "delayed"):
                conn.execute(
                    "UPDATE jobs SET state = 'cancelled', finished_at = ?, "
                    "source_image = X'' WHERE job_id = ?",
                    (self._clock(), job_id),
                )
                outcome = CancelOutcome.REMOVED
            elif state == "active":
                conn.execute("UPDATE jobs SET cancel_requested = 1 WHERE job_id = ?", (job_id,))
                outcome = CancelOutcome.FLAGGED
            else:
                outcome = CancelOutcome.ALREADY_FINISHED
        logger.info(f"Cancel job {job_id}: {outcome.value}")
        return outcome

    def is_cancel_requested(self, job_id: str) -> bool:
        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT cancel_requested FROM jobs WHERE job_id = ?", (job_id,)
            ).fetchone()
        return bool(row and row["cancel_requested"])

    def get(self, job_id: str) -> GenerationJob | None:
        with self.db.transaction() as conn:
            row = conn.execute("SELECT * FROM jobs WHERE job_id = ?", (job_id,)).fetchone()
        return _row_to_job(row) if row else None

    def state_of(self, job_id: str) -> str | None:
        with self.db.transaction() as conn:
            row = conn.execute("SELECT state FROM jobs WHERE job_id = ?", (job_id,)).fetchone()
        return row["state"] if row else None

    def asset_of(self, job_id: str) -> str | None:
        with self.db.transaction() as conn:
            row = conn.execute("SELECT asset_id FROM jobs WHERE job_id = ?", (job_id,)).fetchone()
        return row["asset_id"] if row else None

    def in_flight_for(self, asset_id: str) -> str | None:
        """Job id of the asset's unfinished job, if any."""
        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT job_id FROM jobs WHERE asset_id = ? "
                "AND state IN ('waiting', 'delayed', 'active')",
                (asset_id,),
            ).fetchone()
        return row["job_id"] if row else None

    def counts(self) -> dict[str, int]:
        with self.db.transaction() as conn:
            rows = conn.execute("SELECT state, COUNT(*) AS n FROM jobs GROUP BY state").fetchall()
        result = dict.fromkeys(ALL_STATES, 0)
        result.update({row["state"]: row["n"] for row in rows})
        return result

    def renew_leases(self) -> int:
        """Refresh the heartbeat of every active job claimed by this queue."""
        with self.db.transaction() as conn:
            cursor = conn.execute(
                "UPDATE jobs SET heartbeat_at = ? WHERE state = 'active' AND claimed_by = ?",
                (self._clock(), self.worker_id),
            )
        return cursor.rowcount

    def requeue_stalled(self) -> int:
        """Return active jobs whose lease has expired to ``waiting``.

        A job whose heartbeat is newer than ``lease_s`` belongs to a live
        worker, in this process or another one, and is left alone.
        """
        now = self._clock()
        with self.db.transaction() as conn:
            cursor = conn.execute(
                "UPDATE jobs SET state = 'waiting', available_at = ?, claimed_by = NULL, "
                "heartbeat_at = NULL WHERE state = 'active' "
                "AND (heartbeat_at IS NULL OR heartbeat_at < ?)",
                (now, now - self.lease_s),
            )
        if cursor.rowcount:
            logger.warning(f"Re-queued {cursor.rowcount} stalled job(s)")
        return cursor.rowcount

    def purge_finished(self, older_than_s: float) -> int:
        """Delete finished jobs whose ``finished_at`` is older than the cutoff."""
        cutoff = self._clock() - older_than_s
        with self.db.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM jobs WHERE state IN ('completed', 'failed', 'cancelled') "
                "AND finished_at < ?",
                (cutoff,),
            )
        if cursor.rowcount:
            logger.info(f"Purged {cursor.rowcount} finished job(s)")
        return cursor.rowcount
