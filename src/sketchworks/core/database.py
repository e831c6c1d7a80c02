"""SQLite handle shared by the asset store, job queue and billing ledger.

The database is opened once by the process composition root (the FastAPI
lifespan or the worker entry point), handed to every component that persists
state, and closed on shutdown.  Components never open their own connections.

All statements go through :meth:`Database.transaction`, which serialises access
with a re-entrant lock inside the process and opens every transaction with
``BEGIN IMMEDIATE``, so a claim (select + update) or an upsert is also atomic
with respect to other processes sharing the database file.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from .errors import InfrastructureError

logger = logging.getLogger(__name__)

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS assets (
        id TEXT PRIMARY KEY,
        project_id TEXT NOT NULL,
        source_sketch_id TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        storage_url TEXT,
        error_code TEXT,
        error_message TEXT,
        ai_model_version TEXT,
        generation_seed INTEGER,
        processing_time_ms INTEGER,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_assets_project_id ON assets(project_id)",
    "CREATE INDEX IF NOT EXISTS idx_assets_status ON assets(status)",
    """
    CREATE TABLE IF NOT EXISTS jobs (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        job_id TEXT NOT NULL UNIQUE,
        asset_id TEXT NOT NULL,
        state TEXT NOT NULL DEFAULT 'waiting',
        priority INTEGER NOT NULL DEFAULT 0,
        prompt TEXT NOT NULL,
        requested_quality TEXT NOT NULL,
        seed INTEGER,
        preferred_provider TEXT,
        fallback_providers TEXT,
        source_image BLOB NOT NULL,
        generated_image BLOB,
        generated_content_type TEXT,
        generation_meta TEXT,
        attempts INTEGER NOT NULL DEFAULT 0,
        max_attempts INTEGER NOT NULL DEFAULT 1,
        available_at REAL NOT NULL,
        claimed_by TEXT,
        heartbeat_at REAL,
        cancel_requested INTEGER NOT NULL DEFAULT 0,
        last_error TEXT,
        created_at REAL NOT NULL,
        finished_at REAL
    )
    """,
    # At most one unfinished job per asset.
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_jobs_asset_in_flight
    ON jobs(asset_id) WHERE state IN ('waiting', 'delayed', 'active')
    """,
    "CREATE INDEX IF NOT EXISTS idx_jobs_claim ON jobs(state, priority DESC, seq)",
    """
    CREATE TABLE IF NOT EXISTS billing_events (
        asset_id TEXT PRIMARY KEY,
        cost_cents INTEGER NOT NULL,
        api_calls INTEGER NOT NULL DEFAULT 1,
        status TEXT NOT NULL DEFAULT 'pending',
        month_year TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_billing_month ON billing_events(month_year)",
)

# Columns added after the first release; applied to older database files.
ADDED_COLUMNS = {
    "jobs": (
        ("preferred_provider", "TEXT"),
        ("fallback_providers", "TEXT"),
        ("claimed_by", "TEXT"),
        ("heartbeat_at", "REAL"),
    ),
}


class Database:
    """Explicitly owned SQLite connection.

    Args:
        path: Database file, or ``":memory:"`` for tests.
    """

    def __init__(self, path: Path | str) -> None:
        self.path = str(path)
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    def open(self) -> "Database":
        """Open the connection and create the schema if needed."""
        if self._conn is not None:
            return self
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self.path, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        if self.path != ":memory:":
            self._conn.execute("PRAGMA journal_mode = WAL")
        with self.transaction() as conn:
            for statement in SCHEMA:
                conn.execute(statement)
            for table, columns in ADDED_COLUMNS.items():
                existing = {row["name"] for row in conn.execute(f"PRAGMA table_info({table})")}
                for name, kind in columns:
                    if name not in existing:
                        conn.execute(f"ALTER TABLE {table} ADD COLUMN {name} {kind}")
        logger.info(f"Opened database at {self.path}")
        return self

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
                logger.info(f"Closed database at {self.path}")

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run statements atomically under the process-wide lock.

        Raises:
            InfrastructureError: If the database is closed or SQLite fails.
        """
        with self._lock:
            if self._conn is None:
                raise InfrastructureError("Database is not open")
            conn = self._conn
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise InfrastructureError(f"Database unavailable: {e}") from e
            try:
                yield conn
            except sqlite3.IntegrityError:
                # Constraint violations are domain signals for the caller.
                conn.execute("ROLLBACK")
                raise
            except sqlite3.Error as e:
                conn.execute("ROLLBACK")
                raise InfrastructureError(f"Database error: {e}") from e
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            else:
                conn.execute("COMMIT")

    def __enter__(self) -> "Database":
        return self.open()

    def __exit__(self, *exc_info) -> None:
        self.close()
