"""Account projection store.

One ``AccountProjection`` row per tenant, read-modify-written by the webhook
handlers, the plan-change orchestrators and the sweepers. There is no locking:
every writer derives its target state from live provider data, so applying the
same input twice yields the same row.
"""

from __future__ import annotations

from datetime import datetime, timedelta

import structlog
from sqlalchemy import or_
from sqlalchemy.orm import Session

from bms_billing.billing.catalog import PlanCatalogEntry
from bms_billing.billing.errors import BillingValidationError
from bms_billing.core.models import AccountProjection
from bms_billing.core.states import AccountStatus, SubscriptionStatus
from bms_billing.core.utils import utcnow

logger = structlog.get_logger()


class ProjectionStore:

    def get(self, db: Session, tenant_id: str) -> AccountProjection | None:
        return db.get(AccountProjection, tenant_id)

    def find_by_subscription(self, db: Session, subscription_id: str | None) -> AccountProjection | None:
        if not subscription_id:
            return None
        return (
            db.query(AccountProjection)
            .filter(AccountProjection.subscription_id == subscription_id)
            .first()
        )

    def resolve(
        self,
        db: Session,
        *,
        subscription_id: str | None = None,
        correlation_id: str | None = None,
    ) -> AccountProjection | None:
        """Subscription id first, then the ``tenant_id`` correlation id."""
        projection = self.find_by_subscription(db, subscription_id)
        if projection is None and correlation_id:
            projection = self.get(db, correlation_id)
        return projection

    def create(
        self,
        db: Session,
        tenant_id: str,
        *,
        plan: PlanCatalogEntry | None = None,
        free_trial: bool = False,
        now: datetime | None = None,
    ) -> AccountProjection:
        """Create the projection at signup.

        A free-trial signup starts as ``free_trial_pending`` with its trial end
        computed from the plan's ``trial_days``; everything else waits for
        payment.
        """
        if self.get(db, tenant_id) is not None:
            raise BillingValidationError(f"Tenant '{tenant_id}' already has a billing account")
        now = now or utcnow()

        projection = AccountProjection(
            tenant_id=tenant_id,
            account_status=AccountStatus.PENDING_PAYMENT,
            subscription_status=SubscriptionStatus.PENDING,
            cancel_at_period_end=False,
            created_at=now,
            updated_at=now,
        )
        if plan is not None:
            apply_plan(projection, plan)
        if free_trial:
            if plan is None or plan.trial_days <= 0:
                raise BillingValidationError("Free trial requires a plan with trial days")
            projection.account_status = AccountStatus.FREE_TRIAL_PENDING
            projection.trial_end = now + timedelta(days=plan.trial_days)

        db.add(projection)
        db.flush()
        logger.info(
            "billing.projection.created",
            tenant_id=tenant_id,
            account_status=projection.account_status.value,
            plan_id=projection.plan_id,
        )
        return projection

    def start_trial(self, db: Session, tenant_id: str, now: datetime | None = None) -> AccountProjection:
        """``free_trial_pending`` -> ``active_trial`` once the tenant confirms."""
        projection = self.get(db, tenant_id)
        if projection is None or projection.account_status != AccountStatus.FREE_TRIAL_PENDING:
            raise BillingValidationError("No pending free trial to start")
        projection.account_status = AccountStatus.ACTIVE_TRIAL
        projection.subscription_status = SubscriptionStatus.TRIALING
        touch(projection, now)
        return projection

    def list_trialing_without_subscription(self, db: Session) -> list[AccountProjection]:
        return (
            db.query(AccountProjection)
            .filter(
                or_(
                    AccountProjection.account_status == AccountStatus.ACTIVE_TRIAL,
                    AccountProjection.subscription_status == SubscriptionStatus.TRIALING,
                ),
                AccountProjection.subscription_id.is_(None),
            )
            .order_by(AccountProjection.tenant_id)
            .all()
        )

    def list_past_due(self, db: Session) -> list[AccountProjection]:
        return (
            db.query(AccountProjection)
            .filter(AccountProjection.subscription_status == SubscriptionStatus.PAST_DUE)
            .order_by(AccountProjection.tenant_id)
            .all()
        )


def apply_plan(projection: AccountProjection, plan: PlanCatalogEntry, price_id: str | None = None) -> None:
    """Copy the active plan's fields and limits onto the projection."""
    projection.plan_id = plan.plan_id
    projection.plan_key = plan.plan_key or plan.plan_id
    projection.plan_name = plan.name
    projection.price_label = plan.display_price
    projection.branch_limit = plan.branch_limit
    projection.staff_limit = plan.staff_limit
    if price_id or plan.price_id:
        projection.price_id = price_id or plan.price_id


def touch(projection: AccountProjection, now: datetime | None = None) -> None:
    projection.updated_at = now or utcnow()
