"""Ledger, plan catalog and projection store."""

from datetime import timedelta

import pytest

from bms_billing.billing.catalog import PlanCatalog
from bms_billing.billing.errors import BillingValidationError, DuplicateEventError, PlanNotFoundError
from bms_billing.billing.ledger import IdempotencyLedger
from bms_billing.billing.projection import ProjectionStore
from bms_billing.core.db import session_scope
from bms_billing.core.models import ProcessedWebhookEvent
from bms_billing.core.states import AccountStatus, SubscriptionStatus
from bms_billing.core.utils import as_utc
from tests.fakes import NOW


# ── Ledger ─────────────────────────────────────────────────────────────────────

def test_ledger_marks_event_once(session_factory):
    ledger = IdempotencyLedger()
    with session_scope(session_factory) as db:
        assert not ledger.has_processed(db, "evt_1")
        ledger.mark_processed(db, "evt_1", "invoice.paid")
    with session_scope(session_factory) as db:
        assert ledger.has_processed(db, "evt_1")


def test_ledger_duplicate_insert_raises(session_factory):
    ledger = IdempotencyLedger()
    with session_scope(session_factory) as db:
        ledger.mark_processed(db, "evt_dup", "invoice.paid")

    db = session_factory()
    try:
        with pytest.raises(DuplicateEventError):
            ledger.mark_processed(db, "evt_dup", "invoice.paid")
        db.rollback()
        assert db.query(ProcessedWebhookEvent).count() == 1
    finally:
        db.close()


# ── Catalog ────────────────────────────────────────────────────────────────────

def test_catalog_lookup_by_id_and_price(session_factory):
    catalog = PlanCatalog()
    with session_scope(session_factory) as db:
        plan = catalog.get_plan_by_id(db, "growth")
        assert plan.branch_limit == 3
        assert plan.is_paid
        assert catalog.get_plan_by_price_id(db, "price_pro").plan_id == "pro"
        assert catalog.get_plan_by_price_id(db, "price_unknown") is None


def test_catalog_missing_plan(session_factory):
    with session_scope(session_factory) as db:
        with pytest.raises(PlanNotFoundError):
            PlanCatalog().get_plan_by_id(db, "platinum")


def test_resolve_price_falls_back_to_plan_tag(session_factory):
    catalog = PlanCatalog()
    with session_scope(session_factory) as db:
        assert catalog.resolve_price(db, "price_new_7", "starter").plan_id == "starter"
        assert catalog.resolve_price(db, "price_new_7") is None


# ── Projection store ───────────────────────────────────────────────────────────

def test_create_pending_payment_account(session_factory):
    store = ProjectionStore()
    with session_scope(session_factory) as db:
        plan = PlanCatalog().get_plan_by_id(db, "growth")
        projection = store.create(db, "tenant-new", plan=plan, now=NOW)
        assert projection.account_status == AccountStatus.PENDING_PAYMENT
        assert projection.subscription_status == SubscriptionStatus.PENDING
        assert projection.branch_limit == 3


def test_create_free_trial_account_and_start_it(session_factory):
    store = ProjectionStore()
    with session_scope(session_factory) as db:
        plan = PlanCatalog().get_plan_by_id(db, "starter")
        projection = store.create(db, "tenant-trial", plan=plan, free_trial=True, now=NOW)
        assert projection.account_status == AccountStatus.FREE_TRIAL_PENDING
        assert projection.trial_end == NOW + timedelta(days=14)

    with session_scope(session_factory) as db:
        projection = store.start_trial(db, "tenant-trial", now=NOW)
        assert projection.account_status == AccountStatus.ACTIVE_TRIAL
        assert projection.subscription_status == SubscriptionStatus.TRIALING
        assert as_utc(projection.trial_end) == NOW + timedelta(days=14)


def test_create_rejects_existing_tenant(session_factory, make_account):
    make_account("tenant-1")
    with session_scope(session_factory) as db:
        with pytest.raises(BillingValidationError):
            ProjectionStore().create(db, "tenant-1")


def test_free_trial_requires_trial_days(session_factory):
    with session_scope(session_factory) as db:
        plan = PlanCatalog().get_plan_by_id(db, "pro")
        with pytest.raises(BillingValidationError):
            ProjectionStore().create(db, "tenant-x", plan=plan, free_trial=True)


def test_resolve_prefers_subscription_then_correlation(session_factory, make_account):
    make_account("tenant-1", subscription_id="sub_1")
    make_account("tenant-2", subscription_id=None)
    store = ProjectionStore()
    with session_scope(session_factory) as db:
        assert store.resolve(db, subscription_id="sub_1", correlation_id="tenant-2").tenant_id == "tenant-1"
        assert store.resolve(db, subscription_id="sub_unknown", correlation_id="tenant-2").tenant_id == "tenant-2"
        assert store.resolve(db, subscription_id="sub_unknown") is None
