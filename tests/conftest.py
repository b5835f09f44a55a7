"""BMS Billing – Pytest Configuration.

Shared fixtures for all tests.
"""

import os

# Force testing mode to allow the SQLite engine in bms_billing/core/db.py
os.environ["ENVIRONMENT"] = "testing"
if "DATABASE_URL" in os.environ:
    del os.environ["DATABASE_URL"]
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret_1234567890abcdef"
os.environ["INTERNAL_API_TOKEN"] = "test-internal-token"
os.environ["CRON_SECRET"] = "test-cron-secret"

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.orm import sessionmaker

from bms_billing.billing.catalog import PlanCatalog, PlanCatalogEntry
from bms_billing.billing.plan_change import PlanChangeService
from bms_billing.billing.sweeper import GraceSweeper, TrialSweeper
from bms_billing.billing.webhooks import WebhookProcessor
from bms_billing.core.db import build_engine, run_migrations, session_scope
from bms_billing.core.models import AccountProjection
from bms_billing.core.states import AccountStatus, SubscriptionStatus
from bms_billing.gateway import dependencies
from bms_billing.gateway.main import app
from tests.fakes import NOW, WEBHOOK_SECRET, FakeGateway

PLANS = [
    PlanCatalogEntry(plan_id="starter", plan_key="starter", name="Starter", price_id="price_starter",
                     monthly_price_cents=2900, trial_days=14, branch_limit=1, staff_limit=3),
    PlanCatalogEntry(plan_id="growth", plan_key="growth", name="Growth", price_id="price_growth",
                     monthly_price_cents=5900, trial_days=14, branch_limit=3, staff_limit=10),
    PlanCatalogEntry(plan_id="pro", plan_key="pro", name="Pro", price_id="price_pro",
                     monthly_price_cents=9900, branch_limit=-1, staff_limit=-1),
    PlanCatalogEntry(plan_id="free", plan_key="free", name="Free", monthly_price_cents=0,
                     branch_limit=1, staff_limit=1),
]


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def session_factory():
    """Fresh in-memory database per test."""
    engine = build_engine("sqlite://")
    run_migrations(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    with session_scope(factory) as db:
        catalog = PlanCatalog()
        for entry in PLANS:
            catalog.upsert(db, entry)
    yield factory
    engine.dispose()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def processor(gateway, session_factory):
    return WebhookProcessor(gateway, WEBHOOK_SECRET, session_factory=session_factory, clock=lambda: NOW)


@pytest.fixture
def plan_service(gateway, session_factory):
    return PlanChangeService(gateway, session_factory=session_factory, clock=lambda: NOW)


@pytest.fixture
def make_account(session_factory):
    """Insert a projection; defaults describe an active ``growth`` subscriber."""

    def _make(tenant_id: str = "tenant-1", **fields):
        values = {
            "account_status": AccountStatus.ACTIVE,
            "subscription_status": SubscriptionStatus.ACTIVE,
            "plan_id": "growth",
            "plan_key": "growth",
            "plan_name": "Growth",
            "price_id": "price_current",
            "branch_limit": 3,
            "staff_limit": 10,
            "subscription_id": "sub_1",
            "customer_id": "cus_1",
            "cancel_at_period_end": False,
        }
        values.update(fields)
        with session_scope(session_factory) as db:
            db.add(AccountProjection(tenant_id=tenant_id, **values))
        return tenant_id

    return _make


@pytest.fixture
def load_account(session_factory):
    def _load(tenant_id: str = "tenant-1") -> AccountProjection:
        db = session_factory()
        try:
            projection = db.get(AccountProjection, tenant_id)
            db.expunge_all()
            return projection
        finally:
            db.close()

    return _load


@pytest.fixture
async def client(processor, plan_service, session_factory):
    """Async test client wired to the in-memory database and fake provider."""
    app.dependency_overrides = {
        dependencies.get_webhook_processor: lambda: processor,
        dependencies.get_plan_change_service: lambda: plan_service,
        dependencies.get_trial_sweeper: lambda: TrialSweeper(session_factory=session_factory),
        dependencies.get_grace_sweeper: lambda: GraceSweeper(session_factory=session_factory),
    }
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides = {}
