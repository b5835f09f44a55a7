"""Scheduled sweeps.

``TrialSweeper`` expires free trials that never got a provider subscription.
``GraceSweeper`` suspends past-due accounts whose grace window has run out.
Both are driven by the cron endpoints and are safe to run repeatedly.
"""

from __future__ import annotations

from datetime import datetime, timedelta

import structlog
from sqlalchemy.orm import sessionmaker

from bms_billing.billing.projection import ProjectionStore, touch
from bms_billing.billing.schemas import TrialSweepResult
from bms_billing.core.db import SessionLocal, session_scope
from bms_billing.core.instrumentation import SWEEP_TRANSITIONS
from bms_billing.core.states import AccountStatus, SubscriptionStatus, transition_account
from bms_billing.core.utils import as_utc, utcnow

logger = structlog.get_logger()

GRACE_EXPIRED_REASON = "Payment past due - grace period expired"


class TrialSweeper:

    def __init__(
        self,
        *,
        session_factory: sessionmaker = SessionLocal,
        warning_days: int = 2,
        store: ProjectionStore | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.warning_window = timedelta(days=warning_days)
        self.store = store or ProjectionStore()

    def run(self, now: datetime | None = None) -> TrialSweepResult:
        now = now or utcnow()
        result = TrialSweepResult()
        with session_scope(self.session_factory) as db:
            for projection in self.store.list_trialing_without_subscription(db):
                trial_end = as_utc(projection.trial_end)
                if trial_end is None:
                    continue
                if trial_end <= now:
                    if transition_account(projection, AccountStatus.TRIAL_EXPIRED):
                        projection.subscription_status = SubscriptionStatus.EXPIRED
                        touch(projection, now)
                        result.expired.append(projection.tenant_id)
                    else:
                        logger.warning(
                            "billing.sweep.trial_skipped",
                            tenant_id=projection.tenant_id,
                            account_status=projection.account_status.value,
                        )
                        result.skipped.append(projection.tenant_id)
                elif trial_end - now <= self.warning_window:
                    result.expiring_soon.append(projection.tenant_id)

        if result.expired:
            SWEEP_TRANSITIONS.labels(sweep="trial").inc(len(result.expired))
        logger.info(
            "billing.sweep.trial_completed",
            expired=len(result.expired),
            expiring_soon=len(result.expiring_soon),
            skipped=len(result.skipped),
        )
        return result


class GraceSweeper:
    """Suspend ``past_due`` accounts once ``grace_until`` has passed."""

    def __init__(self, *, session_factory: sessionmaker = SessionLocal, store: ProjectionStore | None = None) -> None:
        self.session_factory = session_factory
        self.store = store or ProjectionStore()

    def run(self, now: datetime | None = None) -> list[str]:
        now = now or utcnow()
        suspended: list[str] = []
        with session_scope(self.session_factory) as db:
            for projection in self.store.list_past_due(db):
                grace_until = as_utc(projection.grace_until)
                if grace_until is not None and grace_until > now:
                    continue
                if projection.account_status == AccountStatus.SUSPENDED:
                    continue
                if transition_account(projection, AccountStatus.SUSPENDED):
                    projection.suspended_reason = GRACE_EXPIRED_REASON
                    projection.suspended_at = now
                    touch(projection, now)
                    suspended.append(projection.tenant_id)

        if suspended:
            SWEEP_TRANSITIONS.labels(sweep="grace").inc(len(suspended))
        logger.info("billing.sweep.grace_completed", suspended=len(suspended))
        return suspended
