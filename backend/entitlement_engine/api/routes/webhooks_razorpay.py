"""
Razorpay webhook handler for subscription billing events.

SECURITY: All webhooks MUST verify the HMAC signature before processing.
Razorpay signs the raw body with the webhook secret configured in the
dashboard (hex HMAC-SHA256 in X-Razorpay-Signature).

Acknowledgment policy:
- 200: applied, unchanged, duplicate, or ignored (unknown event / no user)
- 400: bad signature or unparseable body, nothing changed
- 500: persistence failure, Razorpay redelivers

Documentation: https://razorpay.com/docs/webhooks/
"""

import json
import logging
import os
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import sessionmaker

from entitlement_engine.api.schemas.subscription import WebhookResponse
from entitlement_engine.database.session import get_db_session_factory
from entitlement_engine.errors import (
    PersistenceError,
    SignatureVerificationError,
    TemporaryReconciliationFailure,
)
from entitlement_engine.services.billing_webhook_handler import (
    BillingWebhookHandler,
    payload_sha256,
    verify_signature,
)
from entitlement_engine.services.reconciliation_service import get_reconciliation_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks/razorpay", tags=["webhooks"])


def get_webhook_secret() -> str:
    """Webhook secret, or 503 when not configured."""
    secret = os.getenv("RAZORPAY_WEBHOOK_SECRET")
    if not secret:
        logger.error("RAZORPAY_WEBHOOK_SECRET not configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Webhook verification not configured",
        )
    return secret


def get_webhook_handler(
    session_factory: sessionmaker = Depends(get_db_session_factory),
) -> BillingWebhookHandler:
    return BillingWebhookHandler(session_factory, get_reconciliation_service())


async def get_verified_webhook_body(
    request: Request,
    secret: str,
    signature: Optional[str],
) -> tuple[dict, bytes]:
    """
    Read, verify and parse the webhook body.

    Returns:
        Tuple of (parsed body dict, raw body bytes)

    Raises:
        HTTPException: 400 if verification or parsing fails
    """
    body = await request.body()

    try:
        verify_signature(body, signature, secret)
    except SignatureVerificationError as e:
        logger.warning("Invalid Razorpay webhook signature", extra={"error": e.message})
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=e.message,
        )

    try:
        data = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        logger.error("Invalid JSON in webhook body")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid JSON body",
        )
    if not isinstance(data, dict):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid webhook payload",
        )

    return data, body


@router.post("", response_model=WebhookResponse)
async def handle_razorpay_webhook(
    request: Request,
    x_razorpay_signature: Optional[str] = Header(None, alias="X-Razorpay-Signature"),
    x_razorpay_event_id: Optional[str] = Header(None, alias="X-Razorpay-Event-Id"),
    secret: str = Depends(get_webhook_secret),
    handler: BillingWebhookHandler = Depends(get_webhook_handler),
):
    """
    Handle a Razorpay subscription or payment webhook.

    Subscription events (activated, charged, cancelled, paused, resumed,
    halted, completed, pending) and payment.failed are reconciled into the
    user's entitlement. Other events are acknowledged and ignored.

    SECURITY: Verifies HMAC signature before processing.
    """
    data, body = await get_verified_webhook_body(request, secret, x_razorpay_signature)

    logger.info("Razorpay webhook received", extra={
        "event_type": data.get("event"),
        "provider_event_id": x_razorpay_event_id,
    })

    try:
        result = await handler.handle(
            data,
            provider_event_id=x_razorpay_event_id,
            payload_hash=payload_sha256(body),
        )
    except (PersistenceError, TemporaryReconciliationFailure) as e:
        logger.error("Webhook processing failed, requesting redelivery", extra={
            "event_type": data.get("event"),
            "provider_event_id": x_razorpay_event_id,
            "error": e.message,
        })
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed",
        )

    return WebhookResponse(status=result.status, message=result.message)
