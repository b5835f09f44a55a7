"""Plan catalog: read-only lookup of price, trial length and limits.

Prices created at plan-change time are new provider objects, so a live price
id is not always in the ``plans`` table. Those prices carry a ``plan_id``
metadata tag, and :meth:`PlanCatalog.resolve_price` falls back to it.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from bms_billing.billing.errors import PlanNotFoundError
from bms_billing.core.models import Plan


class PlanCatalogEntry(BaseModel):
    """Immutable snapshot of a plan row."""

    plan_id: str
    plan_key: str | None = None
    price_id: str | None = None
    name: str
    price_label: str | None = None
    monthly_price_cents: int = Field(default=0, ge=0)
    trial_days: int = Field(default=0, ge=0)
    branch_limit: int = -1
    staff_limit: int = -1
    is_active: bool = True

    model_config = ConfigDict(frozen=True)

    @property
    def is_paid(self) -> bool:
        return self.monthly_price_cents > 0

    @property
    def display_price(self) -> str:
        return self.price_label or f"AU${self.monthly_price_cents / 100:g}/mo"

    @classmethod
    def from_row(cls, row: Plan) -> "PlanCatalogEntry":
        return cls(
            plan_id=row.id,
            plan_key=row.plan_key,
            price_id=row.stripe_price_id,
            name=row.name,
            price_label=row.price_label,
            monthly_price_cents=row.monthly_price_cents or 0,
            trial_days=row.trial_days or 0,
            branch_limit=row.branch_limit if row.branch_limit is not None else -1,
            staff_limit=row.staff_limit if row.staff_limit is not None else -1,
            is_active=bool(row.is_active),
        )


class PlanCatalog:

    def get_plan_by_id(self, db: Session, plan_id: str) -> PlanCatalogEntry:
        row = db.get(Plan, plan_id)
        if row is None or not row.is_active:
            raise PlanNotFoundError(f"Plan '{plan_id}' not found")
        return PlanCatalogEntry.from_row(row)

    def get_plan_by_price_id(self, db: Session, price_id: str | None) -> PlanCatalogEntry | None:
        if not price_id:
            return None
        row = db.query(Plan).filter(Plan.stripe_price_id == price_id).first()
        return PlanCatalogEntry.from_row(row) if row else None

    def resolve_price(
        self,
        db: Session,
        price_id: str | None,
        plan_id_hint: str | None = None,
    ) -> PlanCatalogEntry | None:
        """Catalog price match first, then the ``plan_id`` tag on the price."""
        entry = self.get_plan_by_price_id(db, price_id)
        if entry is not None:
            return entry
        if plan_id_hint:
            row = db.get(Plan, plan_id_hint)
            if row is not None:
                return PlanCatalogEntry.from_row(row)
        return None

    def upsert(self, db: Session, entry: PlanCatalogEntry) -> PlanCatalogEntry:
        row = db.get(Plan, entry.plan_id)
        if row is None:
            row = Plan(id=entry.plan_id)
            db.add(row)
        row.plan_key = entry.plan_key
        row.name = entry.name
        row.price_label = entry.price_label
        row.stripe_price_id = entry.price_id
        row.monthly_price_cents = entry.monthly_price_cents
        row.trial_days = entry.trial_days
        row.branch_limit = entry.branch_limit
        row.staff_limit = entry.staff_limit
        row.is_active = entry.is_active
        db.flush()
        return PlanCatalogEntry.from_row(row)
