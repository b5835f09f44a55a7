"""BMS Billing – Schemas.

Pydantic models for verified provider events, the command endpoints and the
sweep results.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class WebhookEvent(BaseModel):
    """A verified provider event, reduced to what the handlers read."""

    id: str = Field(..., description="Provider event id (idempotency key)")
    type: str = Field(..., description="Event type, e.g. invoice.payment_failed")
    created: int | None = Field(default=None, description="Unix timestamp of the event")
    data_object: dict[str, Any] = Field(default_factory=dict, description="event.data.object")

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "WebhookEvent":
        if not isinstance(payload, dict) or not payload.get("id") or not payload.get("type"):
            raise ValueError("event id and type are required")
        data = payload.get("data") or {}
        return cls(
            id=payload["id"],
            type=payload["type"],
            created=payload.get("created"),
            data_object=data.get("object") or {},
        )

    @property
    def metadata(self) -> dict[str, Any]:
        return self.data_object.get("metadata") or {}


class WebhookOutcomeKind(str, Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    TENANT_NOT_FOUND = "tenant_not_found"


class WebhookOutcome(BaseModel):
    event_id: str
    event_type: str
    outcome: WebhookOutcomeKind
    tenant_id: str | None = None


class PlanChangeRequest(BaseModel):
    tenant_id: str = Field(..., min_length=1)
    plan_id: str = Field(..., min_length=1)


class CheckoutRequest(BaseModel):
    tenant_id: str = Field(..., min_length=1)
    plan_id: str = Field(..., min_length=1)
    email: str | None = None
    success_url: str = ""
    cancel_url: str = ""


class CheckoutResult(BaseModel):
    tenant_id: str
    plan_id: str
    customer_id: str
    session_id: str
    url: str | None = None


class CancelRequest(BaseModel):
    tenant_id: str = Field(..., min_length=1)


class PlanChangeResult(BaseModel):
    tenant_id: str
    kind: str  # upgrade | downgrade | cancel
    plan_id: str | None = None
    price_id: str | None = None
    schedule_id: str | None = None
    effective_date: datetime | None = None
    account_status: str
    subscription_status: str


class TrialSweepResult(BaseModel):
    expired: list[str] = Field(default_factory=list)
    expiring_soon: list[str] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)  # lapsed, but the account status cannot expire
