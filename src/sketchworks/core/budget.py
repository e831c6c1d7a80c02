"""Budget Guardian and billing ledger.

Admission is gated on the spend recorded for the current UTC calendar month:

=============== ===================================== ==========================
Usage ratio     Decision                              Notes
=============== ===================================== ==========================
``>= 1.0``      reject ``SERVICE_TEMPORARILY_UNAV…``  retry after the 1st (UTC)
``>= 0.95``     reject ``QUOTA_NEARLY_EXCEEDED``      privileged callers pass
``>= 0.8``      allow                                 alert on background channel
otherwise       allow
=============== ===================================== ==========================

Any failure while computing the decision rejects with ``SERVICE_UNAVAILABLE``.
The guardian runs once per submission, before the job is enqueued; workers
never consult it.

The ledger holds one billing event per asset.  Recording is an upsert keyed by
asset id, so a retried job never double-bills.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone

from .background import BackgroundChannel
from .database import Database
from .models import BillingEvent, BudgetInfo, utcnow

logger = logging.getLogger(__name__)

WARNING_RATIO = 0.8
SOFT_STOP_RATIO = 0.95
HARD_STOP_RATIO = 1.0


def month_key(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).strftime("%Y-%m")


def seconds_until_next_month(moment: datetime) -> int:
    """Whole seconds from ``moment`` until 00:00 UTC on the 1st of next month."""
    moment = moment.astimezone(timezone.utc)
    if moment.month == 12:
        boundary = datetime(moment.year + 1, 1, 1, tzinfo=timezone.utc)
    else:
        boundary = datetime(moment.year, moment.month + 1, 1, tzinfo=timezone.utc)
    return max(0, int((boundary - moment).total_seconds()))


def _row_to_event(row: sqlite3.Row) -> BillingEvent:
    return BillingEvent(
        asset_id=row["asset_id"],
        cost_cents=row["cost_cents"],
        api_calls=row["api_calls"],
        status=row["status"],
        month_year=row["month_year"],
        created_at=datetime.fromisoformat(row["created_at"]),
    )


class BillingLedger:
    """Per-asset billing events stored in the ``billing_events`` table."""

    def __init__(self, db: Database, clock: Callable[[], datetime] = utcnow) -> None:
        self.db = db
        self._clock = clock

    def record(
        self, asset_id: str, cost_cents: int, *, api_calls: int = 1, status: str = "completed"
    ) -> BillingEvent:
        """Insert or replace the billing event for an asset."""
        now = self._clock()
        with self.db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO billing_events
                    (asset_id, cost_cents, api_calls, status, month_year, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(asset_id) DO UPDATE SET
                    cost_cents = excluded.cost_cents,
                    api_calls = excluded.api_calls,
                    status = excluded.status
                """,
                (asset_id, cost_cents, api_calls, status, month_key(now), now.isoformat()),
            )
            row = conn.execute(
                "SELECT * FROM billing_events WHERE asset_id = ?", (asset_id,)
            ).fetchone()
        logger.info(f"Recorded billing event for asset {asset_id}: {cost_cents} cents")
        return _row_to_event(row)

    def get(self, asset_id: str) -> BillingEvent | None:
        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM billing_events WHERE asset_id = ?", (asset_id,)
            ).fetchone()
        return _row_to_event(row) if row else None

    def used_cents(self, month_year: str) -> int:
        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT COALESCE(SUM(cost_cents), 0) AS used FROM billing_events "
                "WHERE month_year = ?",
                (month_year,),
            ).fetchone()
        return int(row["used"])

    def count(self, month_year: str) -> int:
        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM billing_events WHERE month_year = ?", (month_year,)
            ).fetchone()
        return int(row["n"])


@dataclass(frozen=True)
class AdmissionContext:
    """Who is asking.  ``privileged`` callers pass the soft stop."""

    project_id: str
    privileged: bool = False


@dataclass(frozen=True)
class AdmissionDecision:
    allowed: bool
    budget_info: BudgetInfo | None = None
    error_code: str | None = None
    retry_after_seconds: int | None = None


@dataclass(frozen=True)
class BudgetAlert:
    usage_ratio: float
    used_cents: int
    total_cents: int
    month_year: str


async def log_budget_alert(alert: BudgetAlert) -> None:
    """Default alert sink: a warning in the service log."""
    logger.warning(
        f"Budget warning for {alert.month_year}: {alert.usage_ratio * 100:.1f}% used "
        f"({alert.used_cents}/{alert.total_cents} cents)"
    )


class BudgetGuardian:
    """Admission gate over the monthly budget.

    Args:
        ledger: Billing ledger to sum spend from.
        monthly_limit_cents: Monthly cap.
        alerts: Channel receiving :class:`BudgetAlert` items at the warning
            threshold; alerts are skipped when omitted.
        clock: UTC time source (injectable for tests).
    """

    def __init__(
        self,
        ledger: BillingLedger,
        monthly_limit_cents: int,
        *,
        alerts: BackgroundChannel | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if monthly_limit_cents <= 0:
            raise ValueError("monthly_limit_cents must be positive")
        self.ledger = ledger
        self.monthly_limit_cents = monthly_limit_cents
        self.alerts = alerts
        self._clock = clock

    def budget_info(self) -> BudgetInfo:
        month_year = month_key(self._clock())
        used = self.ledger.used_cents(month_year)
        return BudgetInfo(
            total_cents=self.monthly_limit_cents,
            used_cents=used,
            remaining=self.monthly_limit_cents - used,
            usage_percent=used / self.monthly_limit_cents * 100,
            month_year=month_year,
        )

    def check_budget(self, context: AdmissionContext) -> AdmissionDecision:
        try:
            now = self._clock()
            info = self.budget_info()
            ratio = info.used_cents / self.monthly_limit_cents

            if ratio >= HARD_STOP_RATIO:
                logger.warning(f"Budget exhausted for {info.month_year}; rejecting submission")
                return AdmissionDecision(
                    allowed=False,
                    budget_info=info,
                    error_code="SERVICE_TEMPORARILY_UNAVAILABLE",
                    retry_after_seconds=seconds_until_next_month(now),
                )

            if ratio >= SOFT_STOP_RATIO and not context.privileged:
                logger.info(f"Soft stop: rejecting project {context.project_id} at {ratio:.1%}")
                return AdmissionDecision(
                    allowed=False, budget_info=info, error_code="QUOTA_NEARLY_EXCEEDED"
                )

            if ratio >= WARNING_RATIO and self.alerts is not None:
                self.alerts.submit(
                    BudgetAlert(
                        usage_ratio=ratio,
                        used_cents=info.used_cents,
                        total_cents=info.total_cents,
                        month_year=info.month_year,
                    )
                )

            return AdmissionDecision(allowed=True, budget_info=info)
        except Exception:
            logger.exception("Budget check failed; rejecting submission")
            return AdmissionDecision(allowed=False, error_code="SERVICE_UNAVAILABLE")
