"""Plan change orchestration.

Upgrade (immediate)
    release any schedule -> new price -> swap the subscription item, end the
    trial, restart the billing cycle today without proration -> re-fetch ->
    write the projection with the new plan and limits.

Downgrade (deferred)
    new price -> two-phase schedule [current price until period end, new
    price from period end], released on completion -> record the pending
    downgrade. Current plan and limits stay until the period-end transition
    is reconciled by the webhook processor.

Checkout
    reuse or create the provider customer -> hosted checkout session for the
    plan price, stamped with the ``tenant_id`` correlation id in the session
    metadata, ``subscription_data.metadata`` and ``client_reference_id``. The
    subscription itself is attached by ``checkout.session.completed``.

Cancellation
    provider ``cancel_at_period_end``; the account is suspended when the
    ``customer.subscription.deleted`` event arrives.

None of these are transactional across the provider: the projection is only
written after every provider call succeeded, so a failure leaves it at its
last known good state.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable

import structlog
from sqlalchemy.orm import sessionmaker

from bms_billing.billing.catalog import PlanCatalog, PlanCatalogEntry
from bms_billing.billing.errors import (
    BillingValidationError,
    ProviderError,
    ScheduleConflictError,
    TenantNotFoundError,
)
from bms_billing.billing.projection import ProjectionStore, apply_plan, touch
from bms_billing.billing.provider import BillingProviderGateway, LiveSubscription, SchedulePhase
from bms_billing.billing.schemas import CheckoutResult, PlanChangeResult
from bms_billing.core.db import SessionLocal, session_scope
from bms_billing.core.instrumentation import PLAN_CHANGES
from bms_billing.core.models import AccountProjection, PendingDowngrade
from bms_billing.core.states import AccountStatus, SubscriptionStatus, transition_account
from bms_billing.core.utils import as_utc, utcnow

logger = structlog.get_logger()

SCHEDULE_END_BEHAVIOR = "release"

_SUBSCRIBED = (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING, SubscriptionStatus.PAST_DUE)


@dataclass(frozen=True)
class _AccountSnapshot:
    """Projection values read before talking to the provider."""

    tenant_id: str
    subscription_id: str
    schedule_id: str | None
    plan_id: str | None
    trial_end: datetime | None


def _result(projection: AccountProjection, kind: str, **extra) -> PlanChangeResult:
    return PlanChangeResult(
        tenant_id=projection.tenant_id,
        kind=kind,
        account_status=projection.account_status.value,
        subscription_status=projection.subscription_status.value,
        **extra,
    )


class PlanChangeService:

    def __init__(
        self,
        gateway: BillingProviderGateway,
        *,
        session_factory: sessionmaker = SessionLocal,
        currency: str = "aud",
        interval_days: int = 28,
        public_app_url: str = "",
        catalog: PlanCatalog | None = None,
        store: ProjectionStore | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.gateway = gateway
        self.session_factory = session_factory
        self.currency = currency
        self.interval_days = interval_days
        self.public_app_url = public_app_url.rstrip("/")
        self.catalog = catalog or PlanCatalog()
        self.store = store or ProjectionStore()
        self.clock = clock

    # ── Preconditions ─────────────────────────────────────────────────────────

    def _load(self, tenant_id: str, plan_id: str | None = None) -> tuple[_AccountSnapshot, PlanCatalogEntry | None]:
        with session_scope(self.session_factory) as db:
            projection = self.store.get(db, tenant_id)
            if projection is None:
                raise TenantNotFoundError(f"Tenant '{tenant_id}' not found")
            if projection.account_status == AccountStatus.CANCELLED:
                raise BillingValidationError("Account is cancelled")
            if not projection.subscription_id:
                raise BillingValidationError("No active subscription found")
            plan = None
            if plan_id is not None:
                plan = self.catalog.get_plan_by_id(db, plan_id)
                if not plan.is_paid:
                    raise BillingValidationError("Plan does not have a valid price")
            snapshot = _AccountSnapshot(
                tenant_id=projection.tenant_id,
                subscription_id=projection.subscription_id,
                schedule_id=projection.schedule_id,
                plan_id=projection.plan_id,
                trial_end=as_utc(projection.trial_end),
            )
        return snapshot, plan

    def _create_price(self, snapshot: _AccountSnapshot, plan: PlanCatalogEntry) -> str:
        return self.gateway.create_price(
            plan.plan_id,
            plan.monthly_price_cents,
            self.currency,
            self.interval_days,
            {"plan_key": plan.plan_key or "", "tenant_id": snapshot.tenant_id},
            product_name=plan.name,
        )

    # ── Upgrade ───────────────────────────────────────────────────────────────

    def request_upgrade(self, tenant_id: str, plan_id: str, now: datetime | None = None) -> PlanChangeResult:
        now = now or self.clock()
        try:
            snapshot, plan = self._load(tenant_id, plan_id)
            live = self.gateway.get_subscription(snapshot.subscription_id)

            # A subscription managed by a schedule cannot be modified directly
            for schedule_id in {live.schedule_id, snapshot.schedule_id} - {None}:
                self._release_quietly(schedule_id, tenant_id)

            price_id = self._create_price(snapshot, plan)
            end_trial = live.status == SubscriptionStatus.TRIALING.value or (
                snapshot.trial_end is not None and snapshot.trial_end > now
            )
            self.gateway.update_subscription(
                snapshot.subscription_id,
                new_price_id=price_id,
                end_trial_now=end_trial,
                reset_billing_anchor=True,
                proration_behavior="none",
                metadata={
                    **live.metadata,
                    "tenant_id": tenant_id,
                    "plan_id": plan.plan_id,
                    "plan_name": plan.name,
                    "previous_plan_id": snapshot.plan_id or "",
                    "upgraded_at": now.isoformat(),
                },
            )
            refreshed = self.gateway.get_subscription(snapshot.subscription_id)
            result = self._write_upgrade(tenant_id, plan, price_id, refreshed, now)
        except Exception as exc:
            PLAN_CHANGES.labels(kind="upgrade", result=type(exc).__name__).inc()
            logger.warning("billing.upgrade.failed", tenant_id=tenant_id, plan_id=plan_id, error=str(exc))
            raise
        PLAN_CHANGES.labels(kind="upgrade", result="ok").inc()
        logger.info(
            "billing.upgrade.completed",
            tenant_id=tenant_id,
            plan_id=plan.plan_id,
            price_id=price_id,
            trial_ended=end_trial,
        )
        return result

    def _write_upgrade(
        self,
        tenant_id: str,
        plan: PlanCatalogEntry,
        price_id: str,
        live: LiveSubscription,
        now: datetime,
    ) -> PlanChangeResult:
        with session_scope(self.session_factory) as db:
            projection = self.store.get(db, tenant_id)
            apply_plan(projection, plan, price_id)
            projection.subscription_status = SubscriptionStatus.ACTIVE
            if transition_account(projection, AccountStatus.ACTIVE):
                projection.clear_suspension()
            projection.trial_end = None
            projection.grace_until = None
            projection.payment_failure_reason = None
            projection.pending_downgrade = None
            projection.schedule_id = None
            projection.cancel_at_period_end = live.cancel_at_period_end
            if live.current_period_start:
                projection.current_period_start = live.current_period_start
            if live.current_period_end:
                projection.current_period_end = live.current_period_end
            touch(projection, now)
            return _result(projection, "upgrade", plan_id=plan.plan_id, price_id=price_id)

    def _release_quietly(self, schedule_id: str, tenant_id: str) -> None:
        try:
            self.gateway.release_schedule(schedule_id)
            logger.info("billing.schedule.released", tenant_id=tenant_id, schedule_id=schedule_id)
        except ProviderError as exc:
            logger.warning(
                "billing.schedule.release_failed",
                tenant_id=tenant_id,
                schedule_id=schedule_id,
                error=str(exc),
            )

    # ── Downgrade ─────────────────────────────────────────────────────────────

    def request_downgrade(self, tenant_id: str, plan_id: str, now: datetime | None = None) -> PlanChangeResult:
        now = now or self.clock()
        try:
            snapshot, plan = self._load(tenant_id, plan_id)
            if plan.plan_id == snapshot.plan_id:
                raise BillingValidationError("Account is already on this plan")
            live = self.gateway.get_subscription(snapshot.subscription_id)
            if not live.current_price_id:
                raise BillingValidationError("Subscription price not found")
            if live.current_period_end is None:
                raise BillingValidationError("Subscription has no current period end")

            price_id = self._create_price(snapshot, plan)
            phases = [
                SchedulePhase(
                    price_id=live.current_price_id,
                    start=live.current_period_start,
                    end=live.current_period_end,
                ),
                SchedulePhase(price_id=price_id, start=live.current_period_end),
            ]
            metadata = {
                "tenant_id": tenant_id,
                "new_plan_id": plan.plan_id,
                "downgraded_at": now.isoformat(),
            }
            schedule_id = self._apply_schedule(
                live.schedule_id or snapshot.schedule_id,
                snapshot.subscription_id,
                phases,
                metadata,
            )
            result = self._write_downgrade(tenant_id, plan, price_id, schedule_id, live, now)
        except Exception as exc:
            PLAN_CHANGES.labels(kind="downgrade", result=type(exc).__name__).inc()
            logger.warning("billing.downgrade.failed", tenant_id=tenant_id, plan_id=plan_id, error=str(exc))
            raise
        PLAN_CHANGES.labels(kind="downgrade", result="ok").inc()
        logger.info(
            "billing.downgrade.scheduled",
            tenant_id=tenant_id,
            plan_id=plan.plan_id,
            schedule_id=schedule_id,
            effective_date=live.current_period_end.isoformat(),
        )
        return result

    def _apply_schedule(
        self,
        candidate_id: str | None,
        subscription_id: str,
        phases: list[SchedulePhase],
        metadata: dict[str, str],
    ) -> str:
        """Update an open schedule in place, otherwise replace it.

        A schedule that turns out to be closed when updated is released and
        recreated once.
        """
        if candidate_id:
            schedule = None
            try:
                schedule = self.gateway.get_schedule(candidate_id)
            except ProviderError as exc:
                logger.info("billing.schedule.lookup_failed", schedule_id=candidate_id, error=str(exc))
            if schedule is not None and schedule.status.is_open:
                try:
                    self.gateway.update_schedule(candidate_id, phases, SCHEDULE_END_BEHAVIOR, metadata)
                    return candidate_id
                except ScheduleConflictError as exc:
                    logger.info("billing.schedule.conflict", schedule_id=candidate_id, error=str(exc))
            self._release_quietly(candidate_id, metadata.get("tenant_id", ""))

        schedule_id = self.gateway.create_schedule_from_subscription(subscription_id)
        self.gateway.update_schedule(schedule_id, phases, SCHEDULE_END_BEHAVIOR, metadata)
        return schedule_id

    def _write_downgrade(
        self,
        tenant_id: str,
        plan: PlanCatalogEntry,
        price_id: str,
        schedule_id: str,
        live: LiveSubscription,
        now: datetime,
    ) -> PlanChangeResult:
        with session_scope(self.session_factory) as db:
            projection = self.store.get(db, tenant_id)
            projection.pending_downgrade = PendingDowngrade(
                plan_id=plan.plan_id,
                price_id=price_id,
                effective_date=live.current_period_end,
                branch_limit=plan.branch_limit,
                staff_limit=plan.staff_limit,
                plan_name=plan.name,
                price_label=plan.display_price,
            )
            projection.schedule_id = schedule_id
            if live.current_period_start:
                projection.current_period_start = live.current_period_start
            projection.current_period_end = live.current_period_end
            touch(projection, now)
            return _result(
                projection,
                "downgrade",
                plan_id=plan.plan_id,
                price_id=price_id,
                schedule_id=schedule_id,
                effective_date=live.current_period_end,
            )

    # ── Cancellation ──────────────────────────────────────────────────────────

    def request_cancellation(self, tenant_id: str, now: datetime | None = None) -> PlanChangeResult:
        now = now or self.clock()
        try:
            snapshot, _ = self._load(tenant_id)
            live = self.gateway.get_subscription(snapshot.subscription_id)
            if live.cancel_at_period_end:
                raise BillingValidationError("Subscription is already scheduled for cancellation")
            self.gateway.update_subscription(
                snapshot.subscription_id,
                cancel_at_period_end=True,
                metadata={**live.metadata, "tenant_id": tenant_id, "cancel_requested_at": now.isoformat()},
            )
            with session_scope(self.session_factory) as db:
                projection = self.store.get(db, tenant_id)
                projection.cancel_at_period_end = True
                projection.cancellation_requested_at = now
                touch(projection, now)
                result = _result(projection, "cancel", effective_date=live.current_period_end)
        except Exception as exc:
            PLAN_CHANGES.labels(kind="cancel", result=type(exc).__name__).inc()
            logger.warning("billing.cancel.failed", tenant_id=tenant_id, error=str(exc))
            raise
        PLAN_CHANGES.labels(kind="cancel", result="ok").inc()
        logger.info("billing.cancel.scheduled", tenant_id=tenant_id, effective_date=str(live.current_period_end))
        return result

    # ── Checkout ──────────────────────────────────────────────────────────────

    def request_checkout(
        self,
        tenant_id: str,
        plan_id: str,
        *,
        email: str | None = None,
        success_url: str = "",
        cancel_url: str = "",
    ) -> CheckoutResult:
        try:
            with session_scope(self.session_factory) as db:
                projection = self.store.get(db, tenant_id)
                if projection is None:
                    raise TenantNotFoundError(f"Tenant '{tenant_id}' not found")
                if projection.account_status == AccountStatus.CANCELLED:
                    raise BillingValidationError("Account is cancelled")
                if projection.subscription_id and projection.subscription_status in _SUBSCRIBED:
                    raise BillingValidationError("Account already has a subscription")
                plan = self.catalog.get_plan_by_id(db, plan_id)
                if not plan.is_paid or not plan.price_id:
                    raise BillingValidationError("Plan does not have a valid price")
                customer_id = projection.customer_id

            if not customer_id:
                customer_id = self.gateway.create_customer(tenant_id, email=email)
                # Kept even if the session below fails, so a retry reuses it
                with session_scope(self.session_factory) as db:
                    self.store.get(db, tenant_id).customer_id = customer_id

            session = self.gateway.create_checkout_session(
                customer_id,
                plan.price_id,
                tenant_id,
                plan.plan_id,
                success_url=success_url
                or f"{self.public_app_url}/subscription/success?session_id={{CHECKOUT_SESSION_ID}}",
                cancel_url=cancel_url or f"{self.public_app_url}/subscription/cancel",
                plan_name=plan.name,
            )
        except Exception as exc:
            PLAN_CHANGES.labels(kind="checkout", result=type(exc).__name__).inc()
            logger.warning("billing.checkout.failed", tenant_id=tenant_id, plan_id=plan_id, error=str(exc))
            raise
        PLAN_CHANGES.labels(kind="checkout", result="ok").inc()
        logger.info("billing.checkout.created", tenant_id=tenant_id, plan_id=plan.plan_id, session_id=session.id)
        return CheckoutResult(
            tenant_id=tenant_id,
            plan_id=plan.plan_id,
            customer_id=customer_id,
            session_id=session.id,
            url=session.url,
        )
