"""Webhook reconciliation: idempotency, handlers, precedence and promotion."""

import json
from datetime import timedelta

import pytest

from bms_billing.billing.errors import ProviderError, SignatureError
from bms_billing.billing.schemas import WebhookOutcomeKind
from bms_billing.core.db import session_scope
from bms_billing.core.models import AccountProjection, PendingDowngrade, ProcessedWebhookEvent
from bms_billing.core.states import AccountStatus, SubscriptionStatus
from bms_billing.core.utils import as_utc, dt_to_ts
from tests.fakes import NOW, make_event, signed, stripe_signature


def deliver(processor, event):
    return processor.process(*signed(event))


def invoice(sub_id="sub_1", invoice_id="in_1", **extra):
    return {"id": invoice_id, "object": "invoice", "subscription": sub_id, "amount_paid": 5900, **extra}


def ledger_count(session_factory):
    with session_scope(session_factory) as db:
        return db.query(ProcessedWebhookEvent).count()


# ── Verification & dedupe ──────────────────────────────────────────────────────

def test_bad_signature_changes_nothing(processor, make_account, load_account, session_factory):
    make_account()
    payload = json.dumps(make_event("invoice.payment_failed", invoice())).encode()
    with pytest.raises(SignatureError):
        processor.process(payload, stripe_signature(payload, secret="whsec_wrong_secret_000000"))
    assert load_account().subscription_status == SubscriptionStatus.ACTIVE
    assert ledger_count(session_factory) == 0


def test_missing_signature_rejected(processor):
    payload = json.dumps(make_event("invoice.paid", invoice())).encode()
    with pytest.raises(SignatureError):
        processor.process(payload, "")


def test_duplicate_delivery_is_applied_once(processor, gateway, make_account, load_account, session_factory):
    make_account()
    gateway.add_subscription("sub_1", price_id="price_current")
    event = make_event("invoice.payment_failed", invoice(), event_id="evt_failed_1")

    first = deliver(processor, event)
    after_first = load_account()
    processor.clock = lambda: NOW + timedelta(days=1)
    second = deliver(processor, event)
    after_second = load_account()

    assert first.outcome == WebhookOutcomeKind.PROCESSED
    assert second.outcome == WebhookOutcomeKind.DUPLICATE
    assert as_utc(after_second.grace_until) == as_utc(after_first.grace_until) == NOW + timedelta(days=3)
    assert ledger_count(session_factory) == 1


def test_unknown_event_type_is_ignored_and_not_recorded(processor, session_factory):
    outcome = deliver(processor, make_event("customer.created", {"id": "cus_1"}))
    assert outcome.outcome == WebhookOutcomeKind.IGNORED
    assert ledger_count(session_factory) == 0


def test_unknown_tenant_is_recorded_no_op(processor, session_factory):
    outcome = deliver(processor, make_event("invoice.payment_failed", invoice("sub_nobody")))
    assert outcome.outcome == WebhookOutcomeKind.TENANT_NOT_FOUND
    assert ledger_count(session_factory) == 1


def test_handler_failure_rolls_back_and_is_not_recorded(processor, gateway, make_account, load_account, session_factory):
    make_account(account_status=AccountStatus.PAST_DUE_GRACE, subscription_status=SubscriptionStatus.PAST_DUE)
    gateway.add_subscription("sub_1")
    gateway.failures["get_subscription"] = ProviderError("boom")

    with pytest.raises(ProviderError):
        deliver(processor, make_event("invoice.payment_succeeded", invoice()))

    assert load_account().subscription_status == SubscriptionStatus.PAST_DUE
    assert ledger_count(session_factory) == 0


# ── Payment failed / succeeded ─────────────────────────────────────────────────

def test_grace_then_recovery(processor, gateway, make_account, load_account):
    make_account()
    gateway.add_subscription("sub_1", price_id="price_current")

    deliver(processor, make_event("invoice.payment_failed", invoice()))
    failed = load_account()
    assert failed.subscription_status == SubscriptionStatus.PAST_DUE
    assert failed.account_status == AccountStatus.PAST_DUE_GRACE
    assert as_utc(failed.grace_until) == NOW + timedelta(days=3)
    assert failed.payment_failure_reason

    deliver(processor, make_event("invoice.payment_succeeded", invoice(invoice_id="in_2")))
    recovered = load_account()
    assert recovered.subscription_status == SubscriptionStatus.ACTIVE
    assert recovered.account_status == AccountStatus.ACTIVE
    assert recovered.grace_until is None
    assert recovered.last_invoice_id == "in_2"
    assert recovered.last_payment_amount_cents == 5900


def test_repeated_failure_keeps_original_grace(processor, gateway, make_account, load_account):
    make_account()
    deliver(processor, make_event("invoice.payment_failed", invoice()))
    processor.clock = lambda: NOW + timedelta(days=2)
    deliver(processor, make_event("invoice.payment_failed", invoice(invoice_id="in_2")))
    assert as_utc(load_account().grace_until) == NOW + timedelta(days=3)


def test_payment_failed_never_suspends(processor, make_account, load_account):
    make_account()
    processor.clock = lambda: NOW + timedelta(days=30)
    deliver(processor, make_event("invoice.payment_failed", invoice()))
    assert load_account().account_status == AccountStatus.PAST_DUE_GRACE


def test_invoice_subscription_under_parent_details(processor, gateway, make_account, load_account):
    make_account(account_status=AccountStatus.PAST_DUE_GRACE, subscription_status=SubscriptionStatus.PAST_DUE,
                 grace_until=NOW)
    gateway.add_subscription("sub_1")
    obj = {
        "id": "in_9",
        "amount_paid": 5900,
        "parent": {"subscription_details": {"subscription": "sub_1", "metadata": {"tenant_id": "tenant-1"}}},
    }
    deliver(processor, make_event("invoice.paid", obj))
    assert load_account().subscription_status == SubscriptionStatus.ACTIVE


def test_zero_amount_trial_invoice_keeps_trial(processor, gateway, make_account, load_account):
    trial_end = NOW + timedelta(days=10)
    make_account(account_status=AccountStatus.PENDING_PAYMENT, subscription_status=SubscriptionStatus.PENDING)
    gateway.add_subscription("sub_1", status="trialing", trial_end=trial_end)

    deliver(processor, make_event("invoice.payment_succeeded", invoice(amount_paid=0)))
    projection = load_account()
    assert projection.subscription_status == SubscriptionStatus.TRIALING
    assert projection.account_status == AccountStatus.ACTIVE_TRIAL
    assert as_utc(projection.trial_end) == trial_end


def test_payment_succeeded_lifts_suspension(processor, gateway, make_account, load_account):
    make_account(
        account_status=AccountStatus.SUSPENDED,
        subscription_status=SubscriptionStatus.PAST_DUE,
        suspended_reason="Payment past due - grace period expired",
        suspended_at=NOW - timedelta(days=1),
    )
    gateway.add_subscription("sub_1")
    deliver(processor, make_event("invoice.payment_succeeded", invoice()))
    projection = load_account()
    assert projection.account_status == AccountStatus.ACTIVE
    assert projection.suspended_reason is None


# ── Checkout ───────────────────────────────────────────────────────────────────

def test_checkout_completed_with_trial(processor, gateway, make_account, load_account):
    make_account(subscription_id=None, account_status=AccountStatus.PENDING_PAYMENT,
                 subscription_status=SubscriptionStatus.PENDING, plan_id=None, branch_limit=None, staff_limit=None)
    trial_end = NOW + timedelta(days=14)
    gateway.add_subscription("sub_new", price_id="price_starter", status="trialing", trial_end=trial_end)

    session = {
        "id": "cs_1",
        "subscription": "sub_new",
        "customer": "cus_1",
        "metadata": {"tenant_id": "tenant-1", "plan_id": "starter"},
    }
    deliver(processor, make_event("checkout.session.completed", session))
    projection = load_account()
    assert projection.subscription_id == "sub_new"
    assert projection.account_status == AccountStatus.ACTIVE_TRIAL
    assert projection.subscription_status == SubscriptionStatus.TRIALING
    assert as_utc(projection.trial_end) == trial_end
    assert projection.plan_id == "starter"
    assert (projection.branch_limit, projection.staff_limit) == (1, 3)


def test_checkout_completed_without_trial(processor, gateway, make_account, load_account):
    make_account(subscription_id=None, account_status=AccountStatus.PENDING_PAYMENT,
                 subscription_status=SubscriptionStatus.PENDING, trial_end=NOW - timedelta(days=1))
    gateway.add_subscription("sub_new", price_id="price_pro")

    session = {"id": "cs_2", "subscription": "sub_new", "client_reference_id": "tenant-1", "metadata": {}}
    deliver(processor, make_event("checkout.session.completed", session))
    projection = load_account()
    assert projection.account_status == AccountStatus.ACTIVE
    assert projection.subscription_status == SubscriptionStatus.ACTIVE
    assert projection.trial_end is None
    assert projection.plan_id == "pro"
    assert projection.branch_limit == -1


# ── Subscription updated ───────────────────────────────────────────────────────

def sub_event(event_type="customer.subscription.updated", sub_id="sub_1", **extra):
    return make_event(event_type, {"id": sub_id, "object": "subscription", **extra})


def test_late_active_update_does_not_clear_past_due(processor, gateway, make_account, load_account):
    grace = NOW + timedelta(days=2)
    make_account(account_status=AccountStatus.PAST_DUE_GRACE, subscription_status=SubscriptionStatus.PAST_DUE,
                 grace_until=grace)
    gateway.add_subscription("sub_1", status="active")

    deliver(processor, sub_event())
    projection = load_account()
    assert projection.subscription_status == SubscriptionStatus.PAST_DUE
    assert projection.account_status == AccountStatus.PAST_DUE_GRACE
    assert as_utc(projection.grace_until) == grace


def test_past_due_update_starts_grace_once(processor, gateway, make_account, load_account):
    make_account()
    gateway.add_subscription("sub_1", status="past_due")

    deliver(processor, sub_event())
    processor.clock = lambda: NOW + timedelta(days=1)
    deliver(processor, sub_event())
    projection = load_account()
    assert projection.subscription_status == SubscriptionStatus.PAST_DUE
    assert as_utc(projection.grace_until) == NOW + timedelta(days=3)


def test_update_refreshes_period_and_cancel_flag(processor, gateway, make_account, load_account):
    make_account()
    live = gateway.add_subscription("sub_1")
    gateway.set_price("sub_1", "price_current", cancel_at_period_end=True)

    deliver(processor, sub_event())
    projection = load_account()
    assert projection.cancel_at_period_end is True
    assert as_utc(projection.current_period_end) == live.current_period_end


def test_pending_downgrade_not_promoted_before_period_end(processor, gateway, make_account, load_account):
    make_account(schedule_id="sub_sched_1")
    with session_scope(processor.session_factory) as db:
        db.get(AccountProjection, "tenant-1").pending_downgrade = PendingDowngrade(
            plan_id="starter", price_id="price_down", effective_date=NOW + timedelta(days=18),
            branch_limit=1, staff_limit=3, plan_name="Starter",
        )
    gateway.add_subscription("sub_1", price_id="price_current", schedule_id="sub_sched_1")

    deliver(processor, sub_event())
    projection = load_account()
    assert projection.plan_id == "growth"
    assert (projection.branch_limit, projection.staff_limit) == (3, 10)
    assert projection.pending_downgrade.plan_id == "starter"


def test_pending_downgrade_promoted_at_period_end(processor, gateway, make_account, load_account):
    make_account(schedule_id="sub_sched_1")
    with session_scope(processor.session_factory) as db:
        db.get(AccountProjection, "tenant-1").pending_downgrade = PendingDowngrade(
            plan_id="starter", price_id="price_down", effective_date=NOW,
            branch_limit=1, staff_limit=3, plan_name="Starter", price_label="AU$29/mo",
        )
    gateway.add_subscription("sub_1", price_id="price_current")
    gateway.set_price("sub_1", "price_down", current_period_start=NOW, current_period_end=NOW + timedelta(days=28))

    deliver(processor, sub_event())
    projection = load_account()
    assert projection.plan_id == "starter"
    assert projection.price_id == "price_down"
    assert (projection.branch_limit, projection.staff_limit) == (1, 3)
    assert projection.pending_downgrade is None
    assert projection.schedule_id is None


# ── Subscription deleted ───────────────────────────────────────────────────────

def test_subscription_deleted_suspends(processor, make_account, load_account):
    make_account(schedule_id="sub_sched_1", grace_until=NOW, subscription_status=SubscriptionStatus.PAST_DUE,
                 account_status=AccountStatus.PAST_DUE_GRACE)
    deliver(processor, sub_event("customer.subscription.deleted", status="canceled",
                                 canceled_at=dt_to_ts(NOW)))
    projection = load_account()
    assert projection.subscription_status == SubscriptionStatus.CANCELED
    assert projection.account_status == AccountStatus.SUSPENDED
    assert projection.cancel_at_period_end is True
    assert projection.suspended_reason == "Subscription canceled"
    assert projection.grace_until is None
    assert projection.schedule_id is None


def test_late_payment_after_deletion_keeps_account_ended(processor, gateway, make_account, load_account):
    make_account()
    gateway.add_subscription("sub_1", status="canceled")
    deliver(processor, sub_event("customer.subscription.deleted", status="canceled"))

    outcome = deliver(processor, make_event("invoice.payment_succeeded", invoice(invoice_id="in_late")))

    assert outcome.outcome == WebhookOutcomeKind.PROCESSED
    projection = load_account()
    assert projection.subscription_status == SubscriptionStatus.CANCELED
    assert projection.account_status == AccountStatus.SUSPENDED
    assert projection.suspended_reason == "Subscription canceled"
    assert projection.last_invoice_id == "in_late"
    assert projection.last_payment_amount_cents == 5900


def test_redelivered_checkout_keeps_grace(processor, gateway, make_account, load_account):
    grace = NOW + timedelta(days=2)
    make_account(account_status=AccountStatus.PAST_DUE_GRACE, subscription_status=SubscriptionStatus.PAST_DUE,
                 grace_until=grace)
    gateway.add_subscription("sub_1", status="past_due")

    session = {"id": "cs_3", "subscription": "sub_1", "metadata": {"tenant_id": "tenant-1"}}
    deliver(processor, make_event("checkout.session.completed", session))
    projection = load_account()
    assert projection.subscription_status == SubscriptionStatus.PAST_DUE
    assert projection.account_status == AccountStatus.PAST_DUE_GRACE
    assert as_utc(projection.grace_until) == grace


def test_invoice_without_subscription_is_ignored(processor, make_account, load_account, session_factory):
    make_account()
    outcome = deliver(processor, make_event("invoice.payment_succeeded", invoice(sub_id=None)))
    assert outcome.outcome == WebhookOutcomeKind.IGNORED
    assert load_account().last_invoice_id is None
    assert ledger_count(session_factory) == 1


def test_concurrent_duplicate_is_rolled_back(processor, gateway, make_account, load_account, session_factory,
                                             monkeypatch):
    make_account()
    gateway.add_subscription("sub_1")
    event = make_event("invoice.payment_failed", invoice(), event_id="evt_race_1")
    assert deliver(processor, event).outcome == WebhookOutcomeKind.PROCESSED

    with session_scope(session_factory) as db:
        projection = db.get(AccountProjection, "tenant-1")
        projection.account_status = AccountStatus.ACTIVE
        projection.subscription_status = SubscriptionStatus.ACTIVE
        projection.grace_until = None
    # The second delivery gets past the ledger check as a concurrent one would
    monkeypatch.setattr(processor.ledger, "has_processed", lambda db, event_id: False)

    outcome = deliver(processor, event)

    assert outcome.outcome == WebhookOutcomeKind.DUPLICATE
    assert ledger_count(session_factory) == 1
    projection = load_account()
    assert projection.subscription_status == SubscriptionStatus.ACTIVE
    assert projection.account_status == AccountStatus.ACTIVE
    assert projection.grace_until is None
