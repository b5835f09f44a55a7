"""Shared dependencies for the billing routers.

Services are built lazily and cached; tests replace them through
``app.dependency_overrides``.
"""

import hmac
from functools import lru_cache

import structlog
from fastapi import Header, HTTPException

from bms_billing.billing.plan_change import PlanChangeService
from bms_billing.billing.provider import BillingProviderGateway, StripeGateway
from bms_billing.billing.sweeper import GraceSweeper, TrialSweeper
from bms_billing.billing.webhooks import WebhookProcessor
from config.settings import get_settings

logger = structlog.get_logger()


@lru_cache
def get_provider_gateway() -> BillingProviderGateway:
    settings = get_settings()
    if not settings.stripe_secret_key:
        logger.warning("gateway.stripe.missing_secret_key")
    return StripeGateway(
        settings.stripe_secret_key,
        timeout_seconds=settings.stripe_timeout_seconds,
        max_network_retries=settings.stripe_max_network_retries,
        webhook_tolerance_seconds=settings.stripe_webhook_tolerance_seconds,
    )


@lru_cache
def get_webhook_processor() -> WebhookProcessor:
    settings = get_settings()
    return WebhookProcessor(
        get_provider_gateway(),
        settings.stripe_webhook_secret,
        grace_period_days=settings.grace_period_days,
    )


@lru_cache
def get_plan_change_service() -> PlanChangeService:
    settings = get_settings()
    return PlanChangeService(
        get_provider_gateway(),
        currency=settings.billing_currency,
        interval_days=settings.billing_interval_days,
        public_app_url=settings.public_app_url,
    )


@lru_cache
def get_trial_sweeper() -> TrialSweeper:
    return TrialSweeper(warning_days=get_settings().trial_warning_days)


@lru_cache
def get_grace_sweeper() -> GraceSweeper:
    return GraceSweeper()


def _matches(given: str, expected: str) -> bool:
    return hmac.compare_digest(given.encode(), expected.encode())


def require_internal_token(x_internal_token: str = Header(default="")) -> None:
    """Command endpoints are closed unless INTERNAL_API_TOKEN is configured."""
    expected = get_settings().internal_api_token
    if not expected or not _matches(x_internal_token, expected):
        logger.warning("gateway.auth.internal_token_rejected")
        raise HTTPException(status_code=401, detail="Unauthorized")


def require_cron_secret(
    x_cron_secret: str = Header(default=""),
    authorization: str = Header(default=""),
) -> None:
    """Accepts ``x-cron-secret`` or ``Authorization: Bearer``; open when CRON_SECRET is unset."""
    expected = get_settings().cron_secret
    if not expected:
        return
    bearer = authorization[7:] if authorization.startswith("Bearer ") else ""
    if not (_matches(x_cron_secret, expected) or _matches(bearer, expected)):
        logger.warning("gateway.auth.cron_secret_rejected")
        raise HTTPException(status_code=401, detail="Unauthorized")
