from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Enum as SAEnum, Integer, String, Text

from bms_billing.core.db import Base
from bms_billing.core.states import AccountStatus, SubscriptionStatus


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class PendingDowngrade:
    """Plan change staged by a subscription schedule, effective at period end."""

    plan_id: str
    price_id: str
    effective_date: datetime
    branch_limit: int
    staff_limit: int
    plan_name: str | None = None
    price_label: str | None = None


class Plan(Base):
    """Plan catalog row: price, trial length and resource limits."""

    __tablename__ = "plans"

    id = Column(String, primary_key=True)                       # "basic", "pro", ...
    plan_key = Column(String, nullable=True)
    name = Column(String, nullable=False)
    price_label = Column(String, nullable=True)                 # "AU$49/mo"
    stripe_price_id = Column(String, nullable=True, index=True)  # catalog price (checkout)
    monthly_price_cents = Column(Integer, nullable=False, default=0)  # 0 = free
    trial_days = Column(Integer, nullable=False, default=0)
    branch_limit = Column(Integer, nullable=False, default=-1)  # -1 = unlimited
    staff_limit = Column(Integer, nullable=False, default=-1)   # -1 = unlimited
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class AccountProjection(Base):
    """Per-tenant read model of the provider's subscription state."""

    __tablename__ = "account_projections"

    tenant_id = Column(String, primary_key=True)

    account_status = Column(
        SAEnum(AccountStatus, native_enum=False, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=AccountStatus.PENDING_PAYMENT,
    )
    subscription_status = Column(
        SAEnum(SubscriptionStatus, native_enum=False, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=SubscriptionStatus.PENDING,
    )

    # Current (active) plan
    plan_id = Column(String, nullable=True)
    plan_key = Column(String, nullable=True)
    price_id = Column(String, nullable=True)
    plan_name = Column(String, nullable=True)
    price_label = Column(String, nullable=True)
    branch_limit = Column(Integer, nullable=True)
    staff_limit = Column(Integer, nullable=True)

    # Provider references
    customer_id = Column(String, nullable=True)
    subscription_id = Column(String, nullable=True, unique=True, index=True)
    schedule_id = Column(String, nullable=True)

    current_period_start = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    trial_end = Column(DateTime(timezone=True), nullable=True)
    grace_until = Column(DateTime(timezone=True), nullable=True)  # only while past_due
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    cancellation_requested_at = Column(DateTime(timezone=True), nullable=True)

    # Staged downgrade (promoted on the period-end transition)
    pending_plan_id = Column(String, nullable=True)
    pending_price_id = Column(String, nullable=True)
    pending_effective_date = Column(DateTime(timezone=True), nullable=True)
    pending_branch_limit = Column(Integer, nullable=True)
    pending_staff_limit = Column(Integer, nullable=True)
    pending_plan_name = Column(String, nullable=True)
    pending_price_label = Column(String, nullable=True)

    last_invoice_id = Column(String, nullable=True)
    last_payment_date = Column(DateTime(timezone=True), nullable=True)
    last_payment_amount_cents = Column(Integer, nullable=True)
    payment_failure_reason = Column(Text, nullable=True)

    suspended_reason = Column(String, nullable=True)
    suspended_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    @property
    def pending_downgrade(self) -> PendingDowngrade | None:
        if not self.pending_plan_id:
            return None
        return PendingDowngrade(
            plan_id=self.pending_plan_id,
            price_id=self.pending_price_id,
            effective_date=self.pending_effective_date,
            branch_limit=self.pending_branch_limit,
            staff_limit=self.pending_staff_limit,
            plan_name=self.pending_plan_name,
            price_label=self.pending_price_label,
        )

    @pending_downgrade.setter
    def pending_downgrade(self, value: PendingDowngrade | None) -> None:
        self.pending_plan_id = value.plan_id if value else None
        self.pending_price_id = value.price_id if value else None
        self.pending_effective_date = value.effective_date if value else None
        self.pending_branch_limit = value.branch_limit if value else None
        self.pending_staff_limit = value.staff_limit if value else None
        self.pending_plan_name = value.plan_name if value else None
        self.pending_price_label = value.price_label if value else None

    def clear_suspension(self) -> None:
        self.suspended_reason = None
        self.suspended_at = None


class ProcessedWebhookEvent(Base):
    """Idempotency ledger: one row per provider event id that was applied."""

    __tablename__ = "processed_webhook_events"

    event_id = Column(String, primary_key=True)
    event_type = Column(String, nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
