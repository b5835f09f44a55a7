"""bms_billing/gateway/routers/billing.py — Stripe webhook, plan changes and sweeps.

Endpoints:
    POST /billing/webhook                → Stripe webhook (signature verified)
    POST /billing/checkout               → hosted checkout for a new subscription (x-internal-token)
    POST /billing/upgrade                → immediate upgrade        (x-internal-token)
    POST /billing/downgrade              → downgrade at period end  (x-internal-token)
    POST /billing/cancel                 → cancel at period end     (x-internal-token)
    POST /billing/cron/trial-sweep       → expire lapsed free trials (x-cron-secret)
    POST /billing/cron/suspend-overdue   → suspend after grace       (x-cron-secret)

Webhook responses: 400 on a bad signature (never retried), 500 when a handler
fails so Stripe redelivers, 200 for processed / duplicate / ignored events.
Provider calls block, so every service call runs in a worker thread.
"""
from __future__ import annotations

import asyncio
from functools import partial
from typing import Any, Callable

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from bms_billing.billing.errors import (
    BillingError,
    BillingValidationError,
    PlanNotFoundError,
    ProviderError,
    SignatureError,
    TenantNotFoundError,
    TransientProviderError,
)
from bms_billing.billing.plan_change import PlanChangeService
from bms_billing.billing.schemas import (
    CancelRequest,
    CheckoutRequest,
    CheckoutResult,
    PlanChangeRequest,
    PlanChangeResult,
    TrialSweepResult,
)
from bms_billing.billing.sweeper import GraceSweeper, TrialSweeper
from bms_billing.billing.webhooks import WebhookProcessor
from bms_billing.gateway.dependencies import (
    get_grace_sweeper,
    get_plan_change_service,
    get_trial_sweeper,
    get_webhook_processor,
    require_cron_secret,
    require_internal_token,
)

logger = structlog.get_logger()

router = APIRouter(tags=["billing"])


# ── Webhook ────────────────────────────────────────────────────────────────────

@router.post("/billing/webhook", include_in_schema=False)
async def stripe_webhook(
    request: Request,
    processor: WebhookProcessor = Depends(get_webhook_processor),
) -> JSONResponse:
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature", "")
    try:
        outcome = await asyncio.to_thread(processor.process, payload, sig_header)
    except SignatureError as exc:
        logger.warning("billing.webhook.sig_invalid", error=str(exc))
        return JSONResponse({"error": "invalid signature"}, status_code=400)
    except Exception as exc:
        logger.error("billing.webhook.handler_error", error=str(exc), error_type=type(exc).__name__)
        return JSONResponse({"error": "webhook handler failed"}, status_code=500)
    return JSONResponse({"received": True, "outcome": outcome.outcome.value})


# ── Commands ───────────────────────────────────────────────────────────────────

def _status_for(exc: BillingError) -> int:
    if isinstance(exc, (TenantNotFoundError, PlanNotFoundError)):
        return 404
    if isinstance(exc, BillingValidationError):
        return 400
    if isinstance(exc, TransientProviderError):
        return 503
    if isinstance(exc, ProviderError):
        return 502
    return 500


async def _run_command(action: str, call: Callable[..., Any], *args: Any) -> Any:
    try:
        return await asyncio.to_thread(call, *args)
    except BillingError as exc:
        status = _status_for(exc)
        log = logger.error if status >= 500 else logger.info
        log(f"billing.{action}.rejected", status=status, error=str(exc))
        raise HTTPException(status_code=status, detail=str(exc)) from exc


@router.post("/billing/checkout", dependencies=[Depends(require_internal_token)])
async def checkout(
    req: CheckoutRequest,
    service: PlanChangeService = Depends(get_plan_change_service),
) -> CheckoutResult:
    return await _run_command(
        "checkout",
        partial(
            service.request_checkout,
            req.tenant_id,
            req.plan_id,
            email=req.email,
            success_url=req.success_url,
            cancel_url=req.cancel_url,
        ),
    )


@router.post("/billing/upgrade", dependencies=[Depends(require_internal_token)])
async def upgrade(
    req: PlanChangeRequest,
    service: PlanChangeService = Depends(get_plan_change_service),
) -> PlanChangeResult:
    return await _run_command("upgrade", service.request_upgrade, req.tenant_id, req.plan_id)


@router.post("/billing/downgrade", dependencies=[Depends(require_internal_token)])
async def downgrade(
    req: PlanChangeRequest,
    service: PlanChangeService = Depends(get_plan_change_service),
) -> PlanChangeResult:
    return await _run_command("downgrade", service.request_downgrade, req.tenant_id, req.plan_id)


@router.post("/billing/cancel", dependencies=[Depends(require_internal_token)])
async def cancel(
    req: CancelRequest,
    service: PlanChangeService = Depends(get_plan_change_service),
) -> PlanChangeResult:
    return await _run_command("cancel", service.request_cancellation, req.tenant_id)


# ── Cron ───────────────────────────────────────────────────────────────────────

@router.post("/billing/cron/trial-sweep", dependencies=[Depends(require_cron_secret)])
async def trial_sweep(sweeper: TrialSweeper = Depends(get_trial_sweeper)) -> TrialSweepResult:
    return await asyncio.to_thread(sweeper.run)


@router.post("/billing/cron/suspend-overdue", dependencies=[Depends(require_cron_secret)])
async def suspend_overdue(sweeper: GraceSweeper = Depends(get_grace_sweeper)) -> dict[str, Any]:
    suspended = await asyncio.to_thread(sweeper.run)
    return {"success": True, "suspended_count": len(suspended), "suspended": suspended}
