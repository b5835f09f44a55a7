"""Billing provider gateway.

``BillingProviderGateway`` is the contract the engine consumes;
``StripeGateway`` implements it on top of the ``stripe`` SDK and translates
SDK errors into the billing error taxonomy:

    stripe.RateLimitError / APIConnectionError / APIError -> TransientProviderError
    schedule state errors                                   -> ScheduleConflictError
    any other stripe.StripeError                            -> ProviderError
    stripe.SignatureVerificationError                       -> SignatureError

Provider objects are flattened into small dataclasses so nothing outside this
module touches SDK types.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from functools import wraps
from typing import Any, Callable, Protocol, TypeVar

import stripe
import structlog

from bms_billing.billing.errors import (
    ProviderError,
    ScheduleConflictError,
    SignatureError,
    TransientProviderError,
)
from bms_billing.billing.schemas import WebhookEvent
from bms_billing.core.states import ScheduleStatus
from bms_billing.core.utils import dt_to_ts, ts_to_dt

logger = structlog.get_logger()

T = TypeVar("T")


@dataclass(frozen=True)
class LiveSubscription:
    id: str
    status: str
    current_price_id: str | None
    current_period_start: datetime | None
    current_period_end: datetime | None
    trial_end: datetime | None = None
    schedule_id: str | None = None
    cancel_at_period_end: bool = False
    customer_id: str | None = None
    item_id: str | None = None
    price_plan_id: str | None = None  # ``plan_id`` tag on the price
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class SchedulePhase:
    price_id: str
    start: datetime | None
    end: datetime | None = None  # None = open-ended


@dataclass(frozen=True)
class LiveSchedule:
    id: str
    status: ScheduleStatus
    subscription_id: str | None = None
    phases: tuple[SchedulePhase, ...] = ()


@dataclass(frozen=True)
class CheckoutSession:
    id: str
    url: str | None
    customer_id: str


class BillingProviderGateway(Protocol):
    """External subscription provider operations used by the engine."""

    def create_customer(self, tenant_id: str, *, email: str | None = None, name: str | None = None) -> str:
        ...

    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        tenant_id: str,
        plan_id: str,
        *,
        success_url: str,
        cancel_url: str,
        plan_name: str | None = None,
    ) -> CheckoutSession:
        ...

    def create_price(
        self,
        plan_id: str,
        amount_cents: int,
        currency: str,
        interval_days: int,
        metadata: dict[str, str],
        product_name: str | None = None,
    ) -> str:
        ...

    def get_subscription(self, subscription_id: str) -> LiveSubscription:
        ...

    def update_subscription(
        self,
        subscription_id: str,
        *,
        new_price_id: str | None = None,
        end_trial_now: bool = False,
        reset_billing_anchor: bool = False,
        proration_behavior: str | None = None,
        cancel_at_period_end: bool | None = None,
        metadata: dict[str, str] | None = None,
    ) -> None:
        ...

    def get_schedule(self, schedule_id: str) -> LiveSchedule:
        ...

    def create_schedule_from_subscription(self, subscription_id: str) -> str:
        ...

    def update_schedule(
        self,
        schedule_id: str,
        phases: list[SchedulePhase],
        end_behavior: str,
        metadata: dict[str, str],
    ) -> None:
        ...

    def release_schedule(self, schedule_id: str) -> None:
        """Release; an already released / finished / missing schedule is success."""

    def verify(self, payload: bytes, signature: str, secret: str) -> WebhookEvent:
        ...


# ── Stripe implementation ─────────────────────────────────────────────────────

_SCHEDULE_CLOSED_HINTS = ("released", "completed", "canceled", "cancelled", "not active", "no longer")


def _is_schedule_state_error(exc: stripe.StripeError) -> bool:
    message = (getattr(exc, "user_message", None) or str(exc) or "").lower()
    return "schedule" in message and any(hint in message for hint in _SCHEDULE_CLOSED_HINTS)


def _is_missing(exc: stripe.StripeError) -> bool:
    return getattr(exc, "code", None) == "resource_missing" or getattr(exc, "http_status", None) == 404


def translate_stripe_errors(operation: str) -> Callable[[Callable[..., T]], Callable[..., T]]:
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapped(*args: Any, **kwargs: Any) -> T:
            try:
                return func(*args, **kwargs)
            except (stripe.RateLimitError, stripe.APIConnectionError, stripe.APIError) as exc:
                logger.warning(
                    "billing.provider.transient_error",
                    operation=operation,
                    http_status=getattr(exc, "http_status", None),
                    error=str(exc),
                )
                raise TransientProviderError(f"{operation}: {exc}") from exc
            except stripe.StripeError as exc:
                logger.error(
                    "billing.provider.error",
                    operation=operation,
                    http_status=getattr(exc, "http_status", None),
                    code=getattr(exc, "code", None),
                    error=str(exc),
                )
                if operation.startswith("schedule.") and _is_schedule_state_error(exc):
                    raise ScheduleConflictError(f"{operation}: {exc}") from exc
                raise ProviderError(f"{operation}: {exc}") from exc

        return wrapped

    return decorator


def _as_dict(obj: Any) -> dict[str, Any]:
    """Plain dict for a StripeObject; newer SDKs no longer subclass dict."""
    if isinstance(obj, dict):
        return obj
    return obj.to_dict()


def _price_of(item: dict[str, Any]) -> dict[str, Any]:
    price = item.get("price") or {}
    return price if isinstance(price, dict) else {"id": price}


def _id_of(value: Any) -> str | None:
    """Expandable fields arrive either as an id string or as an object."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return value.get("id")


def subscription_from_stripe(obj: Any) -> LiveSubscription:
    obj = _as_dict(obj)
    items = (obj.get("items") or {}).get("data") or []
    first = items[0] if items else {}
    price = _price_of(first) if first else {}
    # Newer API versions report the period on the subscription item
    period_start = first.get("current_period_start") or obj.get("current_period_start")
    period_end = first.get("current_period_end") or obj.get("current_period_end")
    return LiveSubscription(
        id=obj["id"],
        status=obj.get("status") or "",
        current_price_id=price.get("id"),
        current_period_start=ts_to_dt(period_start),
        current_period_end=ts_to_dt(period_end),
        trial_end=ts_to_dt(obj.get("trial_end")),
        schedule_id=_id_of(obj.get("schedule")),
        cancel_at_period_end=bool(obj.get("cancel_at_period_end")),
        customer_id=_id_of(obj.get("customer")),
        item_id=first.get("id"),
        price_plan_id=(price.get("metadata") or {}).get("plan_id"),
        metadata={str(k): str(v) for k, v in (obj.get("metadata") or {}).items()},
    )


def schedule_from_stripe(obj: Any) -> LiveSchedule:
    obj = _as_dict(obj)
    phases = []
    for phase in obj.get("phases") or []:
        items = phase.get("items") or []
        price_id = _id_of(items[0].get("price")) if items else None
        phases.append(
            SchedulePhase(
                price_id=price_id or "",
                start=ts_to_dt(phase.get("start_date")),
                end=ts_to_dt(phase.get("end_date")),
            )
        )
    return LiveSchedule(
        id=obj["id"],
        status=ScheduleStatus(obj.get("status") or ScheduleStatus.ACTIVE.value),
        subscription_id=_id_of(obj.get("subscription")),
        phases=tuple(phases),
    )


def phase_to_stripe(phase: SchedulePhase) -> dict[str, Any]:
    payload: dict[str, Any] = {"items": [{"price": phase.price_id, "quantity": 1}]}
    if phase.start is not None:
        payload["start_date"] = dt_to_ts(phase.start)
    if phase.end is not None:
        payload["end_date"] = dt_to_ts(phase.end)
    return payload


class StripeGateway:
    """``BillingProviderGateway`` backed by the Stripe API."""

    def __init__(
        self,
        api_key: str,
        *,
        timeout_seconds: int = 20,
        max_network_retries: int = 2,
        webhook_tolerance_seconds: int = 300,
    ) -> None:
        self.api_key = api_key
        self.webhook_tolerance_seconds = webhook_tolerance_seconds
        stripe.max_network_retries = max_network_retries
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout_seconds)

    @translate_stripe_errors("customer.create")
    def create_customer(self, tenant_id: str, *, email: str | None = None, name: str | None = None) -> str:
        customer = stripe.Customer.create(
            email=email,
            name=name or f"Tenant {tenant_id}",
            metadata={"tenant_id": tenant_id},
            api_key=self.api_key,
        )
        logger.info("billing.provider.customer_created", tenant_id=tenant_id, customer_id=customer["id"])
        return customer["id"]

    @translate_stripe_errors("checkout.create")
    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        tenant_id: str,
        plan_id: str,
        *,
        success_url: str,
        cancel_url: str,
        plan_name: str | None = None,
    ) -> CheckoutSession:
        tags = {"tenant_id": tenant_id, "plan_id": plan_id}
        if plan_name:
            tags["plan_name"] = plan_name
        session = _as_dict(
            stripe.checkout.Session.create(
                mode="subscription",
                customer=customer_id,
                client_reference_id=tenant_id,
                line_items=[{"price": price_id, "quantity": 1}],
                success_url=success_url,
                cancel_url=cancel_url,
                metadata=tags,
                subscription_data={"metadata": dict(tags)},
                allow_promotion_codes=True,
                billing_address_collection="auto",
                api_key=self.api_key,
            )
        )
        logger.info("billing.provider.checkout_created", tenant_id=tenant_id, session_id=session["id"])
        return CheckoutSession(id=session["id"], url=session.get("url"), customer_id=customer_id)

    @translate_stripe_errors("price.create")
    def create_price(
        self,
        plan_id: str,
        amount_cents: int,
        currency: str,
        interval_days: int,
        metadata: dict[str, str],
        product_name: str | None = None,
    ) -> str:
        tags = {"plan_id": plan_id, **metadata}
        price = stripe.Price.create(
            currency=currency,
            unit_amount=amount_cents,
            recurring={"interval": "day", "interval_count": interval_days},
            product_data={"name": product_name or "BMS Pro Subscription", "metadata": tags},
            metadata=tags,
            api_key=self.api_key,
        )
        logger.info("billing.provider.price_created", plan_id=plan_id, price_id=price["id"])
        return price["id"]

    @translate_stripe_errors("subscription.retrieve")
    def get_subscription(self, subscription_id: str) -> LiveSubscription:
        obj = stripe.Subscription.retrieve(
            subscription_id,
            expand=["items.data.price"],
            api_key=self.api_key,
        )
        return subscription_from_stripe(obj)

    @translate_stripe_errors("subscription.modify")
    def update_subscription(
        self,
        subscription_id: str,
        *,
        new_price_id: str | None = None,
        end_trial_now: bool = False,
        reset_billing_anchor: bool = False,
        proration_behavior: str | None = None,
        cancel_at_period_end: bool | None = None,
        metadata: dict[str, str] | None = None,
    ) -> None:
        params: dict[str, Any] = {}
        if new_price_id:
            current = _as_dict(stripe.Subscription.retrieve(subscription_id, api_key=self.api_key))
            items = (current.get("items") or {}).get("data") or []
            if not items:
                raise ProviderError(f"Subscription {subscription_id} has no items")
            params["items"] = [{"id": items[0]["id"], "price": new_price_id}]
        if end_trial_now:
            params["trial_end"] = "now"
        if reset_billing_anchor:
            params["billing_cycle_anchor"] = "now"
        if proration_behavior:
            params["proration_behavior"] = proration_behavior
        if cancel_at_period_end is not None:
            params["cancel_at_period_end"] = cancel_at_period_end
        if metadata:
            params["metadata"] = metadata
        stripe.Subscription.modify(subscription_id, api_key=self.api_key, **params)

    @translate_stripe_errors("schedule.retrieve")
    def get_schedule(self, schedule_id: str) -> LiveSchedule:
        obj = stripe.SubscriptionSchedule.retrieve(schedule_id, api_key=self.api_key)
        return schedule_from_stripe(obj)

    @translate_stripe_errors("schedule.create")
    def create_schedule_from_subscription(self, subscription_id: str) -> str:
        schedule = stripe.SubscriptionSchedule.create(
            from_subscription=subscription_id,
            api_key=self.api_key,
        )
        logger.info(
            "billing.provider.schedule_created",
            subscription_id=subscription_id,
            schedule_id=schedule["id"],
        )
        return schedule["id"]

    @translate_stripe_errors("schedule.modify")
    def update_schedule(
        self,
        schedule_id: str,
        phases: list[SchedulePhase],
        end_behavior: str,
        metadata: dict[str, str],
    ) -> None:
        stripe.SubscriptionSchedule.modify(
            schedule_id,
            end_behavior=end_behavior,
            phases=[phase_to_stripe(p) for p in phases],
            metadata=metadata,
            api_key=self.api_key,
        )

    @translate_stripe_errors("schedule.release")
    def release_schedule(self, schedule_id: str) -> None:
        try:
            stripe.SubscriptionSchedule.release(schedule_id, api_key=self.api_key)
        except stripe.InvalidRequestError as exc:
            if _is_missing(exc) or _is_schedule_state_error(exc):
                logger.info("billing.provider.schedule_already_released", schedule_id=schedule_id)
                return
            raise

    def verify(self, payload: bytes, signature: str, secret: str) -> WebhookEvent:
        if not secret:
            raise SignatureError("webhook secret not configured")
        if not signature:
            raise SignatureError("missing stripe-signature header")
        try:
            text = payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(
                text,
                signature,
                secret,
                tolerance=self.webhook_tolerance_seconds,
            )
        except UnicodeDecodeError as exc:
            raise SignatureError("payload is not valid UTF-8") from exc
        except stripe.SignatureVerificationError as exc:
            raise SignatureError(str(exc)) from exc
        try:
            return WebhookEvent.from_payload(json.loads(text))
        except ValueError as exc:
            raise SignatureError(f"invalid payload: {exc}") from exc
