"""Provider webhook reconciliation.

``WebhookProcessor.process`` verifies a delivery, skips event ids already in
the ledger, dispatches to a handler and records the id in the same
transaction as the handler's projection write. Handler errors roll the whole
unit back and propagate so the provider redelivers.

Events handled:
    checkout.session.completed          -> subscription attached, active / active_trial
    invoice.payment_succeeded / .paid   -> active, grace cleared, payment recorded
                                           (payment only once the subscription has ended)
    invoice.payment_failed              -> past_due + grace window (never suspends)
    customer.subscription.updated       -> period / price / status refresh, downgrade promotion
    customer.subscription.created       -> same as updated
    customer.subscription.deleted       -> canceled, account suspended
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Callable

import structlog
from sqlalchemy.orm import Session, sessionmaker

from bms_billing.billing.catalog import PlanCatalog
from bms_billing.billing.errors import DuplicateEventError
from bms_billing.billing.ledger import IdempotencyLedger
from bms_billing.billing.projection import ProjectionStore, apply_plan, touch
from bms_billing.billing.provider import BillingProviderGateway, LiveSubscription
from bms_billing.billing.schemas import WebhookEvent, WebhookOutcome, WebhookOutcomeKind
from bms_billing.core.db import SessionLocal, session_scope
from bms_billing.core.instrumentation import WEBHOOK_EVENTS
from bms_billing.core.models import AccountProjection
from bms_billing.core.states import AccountStatus, SubscriptionStatus, transition_account
from bms_billing.core.utils import as_utc, ts_to_dt, utcnow

logger = structlog.get_logger()

CORRELATION_KEY = "tenant_id"

# Provider statuses after which the subscription can no longer become active
TERMINAL_LIVE_STATUSES = frozenset({"canceled", "cancelled", "incomplete_expired"})

# A handler returns the touched projection, None for an unknown tenant, or
# IGNORED for an event that carries nothing to reconcile.
Handler = Callable[[Session, WebhookEvent, datetime], "AccountProjection | WebhookOutcomeKind | None"]


def _id_of(value: Any) -> str | None:
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def invoice_subscription_id(invoice: dict[str, Any]) -> str | None:
    """Newer API versions moved the reference under ``parent.subscription_details``."""
    sub_id = _id_of(invoice.get("subscription"))
    if sub_id:
        return sub_id
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return _id_of(details.get("subscription"))


def invoice_correlation_id(invoice: dict[str, Any]) -> str | None:
    for details in (
        invoice.get("subscription_details"),
        (invoice.get("parent") or {}).get("subscription_details"),
    ):
        tenant_id = ((details or {}).get("metadata") or {}).get(CORRELATION_KEY)
        if tenant_id:
            return tenant_id
    return None


def in_future_trial(live: LiveSubscription, now: datetime) -> bool:
    return live.status == SubscriptionStatus.TRIALING.value and live.trial_end is not None and live.trial_end > now


class WebhookProcessor:
    """Verify, dedupe, dispatch and record provider events."""

    def __init__(
        self,
        gateway: BillingProviderGateway,
        webhook_secret: str,
        *,
        session_factory: sessionmaker = SessionLocal,
        grace_period_days: int = 3,
        catalog: PlanCatalog | None = None,
        store: ProjectionStore | None = None,
        ledger: IdempotencyLedger | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.gateway = gateway
        self.webhook_secret = webhook_secret
        self.session_factory = session_factory
        self.grace_period = timedelta(days=grace_period_days)
        self.catalog = catalog or PlanCatalog()
        self.store = store or ProjectionStore()
        self.ledger = ledger or IdempotencyLedger()
        self.clock = clock
        self.handlers: dict[str, Handler] = {
            "checkout.session.completed": self.on_checkout_completed,
            "invoice.payment_succeeded": self.on_payment_succeeded,
            "invoice.paid": self.on_payment_succeeded,
            "invoice.payment_failed": self.on_payment_failed,
            "customer.subscription.created": self.on_subscription_updated,
            "customer.subscription.updated": self.on_subscription_updated,
            "customer.subscription.deleted": self.on_subscription_deleted,
        }

    def process(self, payload: bytes, signature: str) -> WebhookOutcome:
        """Apply one delivery. Raises ``SignatureError`` or the handler's error."""
        event = self.gateway.verify(payload, signature, self.webhook_secret)
        structlog.contextvars.bind_contextvars(event_id=event.id, event_type=event.type)
        try:
            outcome = self._apply(event)
        except Exception as exc:
            WEBHOOK_EVENTS.labels(event_type=event.type, outcome="error").inc()
            logger.error("billing.webhook.handler_failed", error=str(exc), error_type=type(exc).__name__)
            raise
        finally:
            structlog.contextvars.unbind_contextvars("event_id", "event_type")
        WEBHOOK_EVENTS.labels(event_type=event.type, outcome=outcome.outcome.value).inc()
        return outcome

    def _apply(self, event: WebhookEvent) -> WebhookOutcome:
        logger.info("billing.webhook.received")
        handler = self.handlers.get(event.type)
        if handler is None:
            logger.info("billing.webhook.ignored")
            return self._outcome(event, WebhookOutcomeKind.IGNORED)

        with session_scope(self.session_factory) as db:
            if self.ledger.has_processed(db, event.id):
                logger.info("billing.webhook.duplicate")
                return self._outcome(event, WebhookOutcomeKind.DUPLICATE)

            projection = handler(db, event, self.clock())
            # Surface projection write errors here, not as a ledger duplicate
            db.flush()
            try:
                self.ledger.mark_processed(db, event.id, event.type)
            except DuplicateEventError:
                db.rollback()
                return self._outcome(event, WebhookOutcomeKind.DUPLICATE)

            if projection is WebhookOutcomeKind.IGNORED:
                return self._outcome(event, WebhookOutcomeKind.IGNORED)
            if projection is None:
                logger.warning("billing.webhook.tenant_not_found")
                return self._outcome(event, WebhookOutcomeKind.TENANT_NOT_FOUND)

            logger.info(
                "billing.webhook.processed",
                tenant_id=projection.tenant_id,
                account_status=projection.account_status.value,
                subscription_status=projection.subscription_status.value,
            )
            return self._outcome(event, WebhookOutcomeKind.PROCESSED, projection.tenant_id)

    @staticmethod
    def _outcome(event: WebhookEvent, kind: WebhookOutcomeKind, tenant_id: str | None = None) -> WebhookOutcome:
        return WebhookOutcome(event_id=event.id, event_type=event.type, outcome=kind, tenant_id=tenant_id)

    # ── Handlers ──────────────────────────────────────────────────────────────

    def on_checkout_completed(self, db: Session, event: WebhookEvent, now: datetime) -> AccountProjection | None:
        session = event.data_object
        metadata = event.metadata
        correlation_id = metadata.get(CORRELATION_KEY) or session.get("client_reference_id")
        subscription_id = _id_of(session.get("subscription"))

        projection = self.store.resolve(db, subscription_id=subscription_id, correlation_id=correlation_id)
        if projection is None:
            return None
        if not subscription_id:
            logger.warning("billing.webhook.checkout_without_subscription", tenant_id=projection.tenant_id)
            return projection

        live = self.gateway.get_subscription(subscription_id)
        self._refresh_from_live(db, projection, live, now, plan_id_hint=metadata.get("plan_id"))
        projection.customer_id = live.customer_id or _id_of(session.get("customer")) or projection.customer_id
        projection.trial_end = live.trial_end if live.status == SubscriptionStatus.TRIALING.value else None
        self._apply_live_status(projection, live, now)
        touch(projection, now)
        return projection

    def on_payment_succeeded(
        self, db: Session, event: WebhookEvent, now: datetime
    ) -> AccountProjection | WebhookOutcomeKind | None:
        invoice = event.data_object
        subscription_id = invoice_subscription_id(invoice)
        if not subscription_id:
            logger.info("billing.webhook.invoice_without_subscription", invoice_id=invoice.get("id"))
            return WebhookOutcomeKind.IGNORED
        projection = self.store.resolve(
            db,
            subscription_id=subscription_id,
            correlation_id=invoice_correlation_id(invoice),
        )
        if projection is None:
            return None

        live = self.gateway.get_subscription(subscription_id)
        if live.status in TERMINAL_LIVE_STATUSES:
            # A late invoice never revives an ended subscription
            self._record_payment(projection, invoice, now)
            touch(projection, now)
            logger.info(
                "billing.webhook.payment_after_end",
                tenant_id=projection.tenant_id,
                live_status=live.status,
                invoice_id=invoice.get("id"),
            )
            return projection
        self._refresh_from_live(db, projection, live, now)

        # A zero-amount trial invoice is paid while the trial still runs
        if in_future_trial(live, now):
            projection.subscription_status = SubscriptionStatus.TRIALING
            projection.trial_end = live.trial_end
            target = AccountStatus.ACTIVE_TRIAL
        else:
            projection.subscription_status = SubscriptionStatus.ACTIVE
            trial_end = as_utc(projection.trial_end)
            if trial_end is not None and trial_end <= now:
                projection.trial_end = None
            target = AccountStatus.ACTIVE
        projection.grace_until = None
        projection.payment_failure_reason = None
        if transition_account(projection, target):
            projection.clear_suspension()

        self._record_payment(projection, invoice, now)
        touch(projection, now)
        return projection

    @staticmethod
    def _record_payment(projection: AccountProjection, invoice: dict[str, Any], now: datetime) -> None:
        paid_at = (invoice.get("status_transitions") or {}).get("paid_at")
        projection.last_invoice_id = invoice.get("id")
        projection.last_payment_date = ts_to_dt(paid_at) or now
        projection.last_payment_amount_cents = invoice.get("amount_paid")

    def on_payment_failed(self, db: Session, event: WebhookEvent, now: datetime) -> AccountProjection | None:
        invoice = event.data_object
        projection = self.store.resolve(
            db,
            subscription_id=invoice_subscription_id(invoice),
            correlation_id=invoice_correlation_id(invoice),
        )
        if projection is None:
            return None

        already_past_due = projection.subscription_status == SubscriptionStatus.PAST_DUE
        if not already_past_due or projection.grace_until is None:
            projection.grace_until = now + self.grace_period
        projection.subscription_status = SubscriptionStatus.PAST_DUE
        transition_account(projection, AccountStatus.PAST_DUE_GRACE)

        error = invoice.get("last_finalization_error") or {}
        projection.payment_failure_reason = error.get("message") or "Payment failed"
        projection.last_invoice_id = invoice.get("id")
        touch(projection, now)
        logger.info(
            "billing.webhook.grace_started",
            tenant_id=projection.tenant_id,
            grace_until=as_utc(projection.grace_until).isoformat(),
            repeated=already_past_due,
        )
        return projection

    def on_subscription_updated(self, db: Session, event: WebhookEvent, now: datetime) -> AccountProjection | None:
        obj = event.data_object
        subscription_id = obj.get("id")
        projection = self.store.resolve(
            db,
            subscription_id=subscription_id,
            correlation_id=event.metadata.get(CORRELATION_KEY),
        )
        if projection is None:
            return None

        # Events arrive out of order; the live object is authoritative
        live = self.gateway.get_subscription(subscription_id)
        self._refresh_from_live(db, projection, live, now)
        projection.trial_end = live.trial_end if live.status == SubscriptionStatus.TRIALING.value else None
        self._apply_live_status(projection, live, now)
        touch(projection, now)
        return projection

    def on_subscription_deleted(self, db: Session, event: WebhookEvent, now: datetime) -> AccountProjection | None:
        obj = event.data_object
        projection = self.store.resolve(
            db,
            subscription_id=obj.get("id"),
            correlation_id=event.metadata.get(CORRELATION_KEY),
        )
        if projection is None:
            return None

        projection.subscription_status = SubscriptionStatus.CANCELED
        projection.cancel_at_period_end = True
        projection.grace_until = None
        projection.schedule_id = None
        projection.pending_downgrade = None
        if transition_account(projection, AccountStatus.SUSPENDED):
            projection.suspended_reason = "Subscription canceled"
            projection.suspended_at = now
        touch(projection, now)
        return projection

    # ── Shared ────────────────────────────────────────────────────────────────

    def _apply_live_status(self, projection: AccountProjection, live: LiveSubscription, now: datetime) -> None:
        """Mirror the live status. Only a payment-succeeded event lifts ``past_due``."""
        status = SubscriptionStatus.from_provider(live.status)
        is_past_due = projection.subscription_status == SubscriptionStatus.PAST_DUE
        if status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING):
            if is_past_due:
                logger.info("billing.webhook.past_due_kept", tenant_id=projection.tenant_id, live_status=live.status)
            else:
                projection.subscription_status = status
                target = AccountStatus.ACTIVE_TRIAL if in_future_trial(live, now) else AccountStatus.ACTIVE
                if transition_account(projection, target):
                    projection.clear_suspension()
        elif status in (SubscriptionStatus.PAST_DUE, SubscriptionStatus.UNPAID):
            if not is_past_due:
                projection.subscription_status = SubscriptionStatus.PAST_DUE
                projection.grace_until = now + self.grace_period
                transition_account(projection, AccountStatus.PAST_DUE_GRACE)
        elif status == SubscriptionStatus.CANCELED:
            projection.subscription_status = status
            projection.grace_until = None

    def _refresh_from_live(
        self,
        db: Session,
        projection: AccountProjection,
        live: LiveSubscription,
        now: datetime,
        plan_id_hint: str | None = None,
    ) -> None:
        """Copy provider references, period and price; promote a due downgrade."""
        projection.subscription_id = live.id
        if live.customer_id:
            projection.customer_id = live.customer_id
        if live.current_period_start:
            projection.current_period_start = live.current_period_start
        if live.current_period_end:
            projection.current_period_end = live.current_period_end
        projection.cancel_at_period_end = live.cancel_at_period_end

        if not live.current_price_id:
            return
        pending = projection.pending_downgrade
        entry = self.catalog.resolve_price(db, live.current_price_id, live.price_plan_id or plan_id_hint)
        if pending is not None and pending.price_id == live.current_price_id:
            projection.plan_id = pending.plan_id
            projection.plan_key = entry.plan_key if entry and entry.plan_key else pending.plan_id
            projection.plan_name = pending.plan_name
            projection.price_label = pending.price_label
            projection.branch_limit = pending.branch_limit
            projection.staff_limit = pending.staff_limit
            projection.price_id = pending.price_id
            projection.pending_downgrade = None
            projection.schedule_id = None
            logger.info(
                "billing.webhook.downgrade_promoted",
                tenant_id=projection.tenant_id,
                plan_id=pending.plan_id,
                price_id=pending.price_id,
            )
        elif entry is not None and entry.plan_id != projection.plan_id:
            apply_plan(projection, entry, live.current_price_id)
            logger.info("billing.webhook.plan_synced", tenant_id=projection.tenant_id, plan_id=entry.plan_id)
        else:
            projection.price_id = live.current_price_id
