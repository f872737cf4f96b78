"""
FastAPI application entry point for the entitlement engine.

The authenticating gateway in front of this service forwards the verified
user id in X-User-Id. Webhooks use HMAC verification and the sweep trigger
uses a shared secret.
"""

import os
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from entitlement_engine.api.routes import health
from entitlement_engine.api.routes import internal_jobs
from entitlement_engine.api.routes import subscription
from entitlement_engine.api.routes import webhooks_razorpay
from entitlement_engine.config.plan_limits import get_plan_limits_loader

# Configure structured logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    logger.info("Starting entitlement engine API")

    # Database connectivity check - surface misconfigurations in deploy logs
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        logger.error(
            "DATABASE_URL is not set. Webhook, sync and status endpoints will return 503."
        )
        app.state.database_configured = False
    else:
        # Mask credentials for safe logging
        masked = database_url.split("@")[-1] if "@" in database_url else "(no @ found)"
        logger.info("DATABASE_URL configured", extra={"host_db": masked})
        app.state.database_configured = True

    provider_vars = ["RAZORPAY_KEY_ID", "RAZORPAY_KEY_SECRET", "RAZORPAY_WEBHOOK_SECRET"]
    missing_vars = [var for var in provider_vars if not os.getenv(var)]
    app.state.webhook_configured = bool(os.getenv("RAZORPAY_WEBHOOK_SECRET"))
    if missing_vars:
        logger.warning(
            f"Razorpay not fully configured (missing: {missing_vars}). "
            "Webhooks return 503 without a secret; sync returns 503 without API keys."
        )
    else:
        logger.info("Razorpay configured")

    if not os.getenv("EXPIRY_SWEEP_SECRET"):
        logger.warning("EXPIRY_SWEEP_SECRET not set; the sweep trigger endpoint is disabled")

    logger.info("Plan limits loaded", extra={"plan_limits": get_plan_limits_loader().get_all()})

    yield

    # Shutdown
    logger.info("Shutting down entitlement engine API")


# Create FastAPI app
app = FastAPI(
    title="Entitlement Engine API",
    description="Reconciles Razorpay subscription signals into user entitlements and AI credits",
    version="1.0.0",
    lifespan=lifespan
)

# Include health route (bypasses authentication)
app.include_router(health.router)

# Include Razorpay webhook routes (uses HMAC verification, not user auth)
app.include_router(webhooks_razorpay.router)

# Include subscription sync and status routes (requires X-User-Id)
app.include_router(subscription.router)

# Include internal job triggers (shared-secret protected)
app.include_router(internal_jobs.router)


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8000))
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=port,
        reload=os.getenv("ENV") == "development"
    )
