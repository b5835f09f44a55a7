"""BMS Billing – Instrumentation.

Structured logging (structlog, JSON) with secret masking and Prometheus
metrics for HTTP traffic, webhook reconciliation, plan changes and sweeps.
"""

import logging
import re
import time
from typing import Any, Callable

import structlog
from fastapi import APIRouter, FastAPI, Request, Response
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    Counter,
    Histogram,
    generate_latest,
)

router = APIRouter(tags=["monitoring"])

REQUEST_COUNT = Counter(
    "bms_billing_http_requests_total",
    "Total HTTP requests by method, endpoint and status",
    ["method", "endpoint", "status"],
)

REQUEST_LATENCY = Histogram(
    "bms_billing_http_request_duration_seconds",
    "HTTP request latency by method and endpoint",
    ["method", "endpoint"],
)

WEBHOOK_EVENTS = Counter(
    "bms_billing_webhook_events_total",
    "Provider webhook events by type and outcome",
    ["event_type", "outcome"],
)

PLAN_CHANGES = Counter(
    "bms_billing_plan_changes_total",
    "Plan change commands by kind (upgrade|downgrade|cancel) and result",
    ["kind", "result"],
)

SWEEP_TRANSITIONS = Counter(
    "bms_billing_sweep_transitions_total",
    "Accounts transitioned by scheduled sweeps",
    ["sweep"],
)


@router.get("/metrics")
def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# ──────────────────────────────────────────
# Secret masking (log safety)
# ──────────────────────────────────────────

SECRET_PATTERNS: dict[str, re.Pattern[str]] = {
    "stripe_key": re.compile(r"\b(sk|rk|pk)_(live|test)_[A-Za-z0-9]{6,}"),
    "webhook_secret": re.compile(r"\bwhsec_[A-Za-z0-9]{6,}"),
    "signature": re.compile(r"\bv1=[0-9a-f]{16,}"),
}

SENSITIVE_KEYS = {"signature", "stripe_signature", "secret", "api_key", "authorization", "x-internal-token"}


def mask_secrets(text: str) -> str:
    """Keep the prefix of a credential, mask the rest."""

    def _mask(match: re.Match[str]) -> str:
        value = match.group(0)
        return value[:8] + "****" if len(value) > 8 else "****"

    for pattern in SECRET_PATTERNS.values():
        text = pattern.sub(_mask, text)
    return text


def filter_log_record(_logger: Any, _method: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """structlog processor: redact credentials before rendering."""
    for key, value in list(event_dict.items()):
        if key.lower() in SENSITIVE_KEYS:
            event_dict[key] = "****"
        elif isinstance(value, str):
            event_dict[key] = mask_secrets(value)
    return event_dict


def setup_logging(log_level: str = "info") -> None:
    """Configure structlog with secret masking."""
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            filter_log_record,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def setup_instrumentation(app: FastAPI, log_level: str = "info") -> None:
    """Attach logging config and the request metrics middleware."""
    setup_logging(log_level)

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next: Callable) -> Response:
        start_time = time.time()
        path = request.url.path
        status = "500"
        try:
            response = await call_next(request)
            status = str(response.status_code)
        finally:
            duration = time.time() - start_time
            REQUEST_COUNT.labels(method=request.method, endpoint=path, status=status).inc()
            REQUEST_LATENCY.labels(method=request.method, endpoint=path).observe(duration)
        return response

    app.include_router(router)
