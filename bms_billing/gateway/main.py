"""BMS Billing – Gateway.

FastAPI app hosting the Stripe webhook, the internal plan-change commands and
the cron sweeps.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

import structlog
from fastapi import FastAPI

from bms_billing.core.db import run_migrations
from bms_billing.core.instrumentation import setup_instrumentation
from bms_billing.gateway.routers.billing import router as billing_router
from config.settings import Settings, get_settings

logger = structlog.get_logger()

VERSION = "1.0.0"

settings: Settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):  # type: ignore[type-arg]
    """Create tables on startup."""
    run_migrations()
    logger.info("bms_billing.gateway.startup", version=VERSION, env=settings.environment)
    yield
    logger.info("bms_billing.gateway.shutdown")


app = FastAPI(
    title="BMS Billing",
    description="Subscription billing state machine and Stripe webhook reconciliation",
    version=VERSION,
    lifespan=lifespan,
)

setup_instrumentation(app, settings.log_level)

app.include_router(billing_router)


@app.get("/health")
async def health_check() -> dict[str, Any]:
    return {
        "status": "ok",
        "service": "bms-billing",
        "version": VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
