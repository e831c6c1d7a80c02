"""Asset records and the state machine that is their only writer.

Lifecycle::

    pending -> auditing_input -> generating -> auditing_output -> uploading -> completed
    (any non-terminal state) -> failed

Rules enforced by :meth:`AssetStateMachine.transition`:

- status only moves forward along the pipeline order
- ``failed`` is reachable from every non-terminal state
- ``completed`` and ``failed`` are terminal
- every write stamps ``updated_at``

Calls for the same asset id are serialised with a per-asset ``asyncio.Lock``
(kept only while in use);
the read-check-write also runs inside one database transaction.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import uuid
import weakref
from collections.abc import Callable
from datetime import datetime
from typing import Any

from .database import Database
from .errors import AssetNotFound, InvalidTransition
from .models import STATUS_ORDER, Asset, AssetStatus, utcnow

logger = logging.getLogger(__name__)

MUTABLE_FIELDS = frozenset(
    {
        "storage_url",
        "error_code",
        "error_message",
        "ai_model_version",
        "generation_seed",
        "processing_time_ms",
    }
)


def can_transition(current: AssetStatus, new: AssetStatus) -> bool:
    if current.is_terminal:
        return False
    if new is AssetStatus.FAILED:
        return True
    return STATUS_ORDER.index(new) > STATUS_ORDER.index(current)


def _row_to_asset(row: sqlite3.Row) -> Asset:
    return Asset(
        id=row["id"],
        project_id=row["project_id"],
        source_sketch_id=row["source_sketch_id"],
        status=AssetStatus(row["status"]),
        storage_url=row["storage_url"],
        error_code=row["error_code"],
        error_message=row["error_message"],
        ai_model_version=row["ai_model_version"],
        generation_seed=row["generation_seed"],
        processing_time_ms=row["processing_time_ms"],
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )


class AssetStateMachine:
    """Persist assets and guard their status transitions.

    Args:
        db: Open database handle.
        clock: UTC time source (injectable for tests).
    """

    def __init__(self, db: Database, clock: Callable[[], datetime] = utcnow) -> None:
        self.db = db
        self._clock = clock
        # Entries vanish once no transition holds or waits on the lock.
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def _lock_for(self, asset_id: str) -> asyncio.Lock:
        lock = self._locks.get(asset_id)
        if lock is None:
            lock = self._locks[asset_id] = asyncio.Lock()
        return lock

    def create(self, project_id: str, source_sketch_id: str, asset_id: str | None = None) -> Asset:
        """Insert a new ``pending`` asset."""
        now = self._clock()
        asset = Asset(
            id=asset_id or str(uuid.uuid4()),
            project_id=project_id,
            source_sketch_id=source_sketch_id,
            status=AssetStatus.PENDING,
            created_at=now,
            updated_at=now,
        )
        with self.db.transaction() as conn:
            conn.execute(
                "INSERT INTO assets (id, project_id, source_sketch_id, status, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    asset.id,
                    asset.project_id,
                    asset.source_sketch_id,
                    asset.status.value,
                    now.isoformat(),
                    now.isoformat(),
                ),
            )
        logger.info(f"Created asset {asset.id} for project {project_id}")
        return asset

    def find(self, asset_id: str) -> Asset | None:
        with self.db.transaction() as conn:
            row = conn.execute("SELECT * FROM assets WHERE id = ?", (asset_id,)).fetchone()
        return _row_to_asset(row) if row else None

    def get(self, asset_id: str) -> Asset:
        asset = self.find(asset_id)
        if asset is None:
            raise AssetNotFound(f"Asset {asset_id} not found")
        return asset

    def list_for_project(self, project_id: str, limit: int = 50, offset: int = 0) -> list[Asset]:
        with self.db.transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM assets WHERE project_id = ? "
                "ORDER BY created_at DESC, id LIMIT ? OFFSET ?",
                (project_id, limit, offset),
            ).fetchall()
        return [_row_to_asset(row) for row in rows]

    async def transition(self, asset_id: str, new_status: AssetStatus, **fields: Any) -> Asset:
        """Move an asset to ``new_status`` and write the given fields.

        Raises:
            AssetNotFound: If the asset does not exist.
            InvalidTransition: If the move is backward or out of a terminal state.
            ValueError: If a field is not writable.
        """
        unknown = set(fields) - MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot write asset fields: {', '.join(sorted(unknown))}")

        async with self._lock_for(asset_id):
            now = self._clock()
            with self.db.transaction() as conn:
                row = conn.execute("SELECT * FROM assets WHERE id = ?", (asset_id,)).fetchone()
                if row is None:
                    raise AssetNotFound(f"Asset {asset_id} not found")
                current = AssetStatus(row["status"])
                if not can_transition(current, new_status):
                    raise InvalidTransition(
                        f"Asset {asset_id} cannot move from {current.value} to {new_status.value}"
                    )

                assignments = ["status = ?", "updated_at = ?"]
                values: list[Any] = [new_status.value, now.isoformat()]
                for name, value in fields.items():
                    assignments.append(f"{name} = ?")
                    values.append(value)
                conn.execute(
                    f"UPDATE assets SET {', '.join(assignments)} WHERE id = ?",
                    (*values, asset_id),
                )
                row = conn.execute("SELECT * FROM assets WHERE id = ?", (asset_id,)).fetchone()

        logger.info(f"Asset {asset_id}: {current.value} -> {new_status.value}")
        return _row_to_asset(row)

    async def fail(self, asset_id: str, error_code: str, error_message: str) -> Asset | None:
        """Mark an asset failed unless it already reached a terminal state."""
        try:
            return await self.transition(
                asset_id,
                AssetStatus.FAILED,
                error_code=error_code,
                error_message=error_message,
            )
        except InvalidTransition:
            logger.warning(f"Asset {asset_id} already terminal; not recording {error_code}")
            return None
        except AssetNotFound:
            logger.warning(f"Asset {asset_id} was removed; not recording {error_code}")
            return None

    def remove(self, asset_id: str) -> Asset:
        """Delete an asset record and return what was removed."""
        with self.db.transaction() as conn:
            row = conn.execute("SELECT * FROM assets WHERE id = ?", (asset_id,)).fetchone()
            if row is None:
                raise AssetNotFound(f"Asset {asset_id} not found")
            conn.execute("DELETE FROM assets WHERE id = ?", (asset_id,))
        logger.info(f"Removed asset {asset_id}")
        return _row_to_asset(row)
