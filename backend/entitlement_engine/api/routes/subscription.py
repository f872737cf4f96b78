"""
Subscription sync and status API routes.

- POST /api/subscription/sync: fetch the subscription from Razorpay and
  reconcile it (closes the checkout -> webhook gap)
- POST /api/subscription/sync-entitlements: rebuild the entitlement from the
  stored subscription record
- GET /api/subscription/status: entitlement, usage and subscription summary
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session, sessionmaker

from entitlement_engine.api.dependencies.auth import get_current_user_id
from entitlement_engine.api.schemas.subscription import (
    EntitlementStatusResponse,
    EntitlementSummary,
    SyncSubscriptionRequest,
)
from entitlement_engine.database.session import get_db_session, get_db_session_factory
from entitlement_engine.errors import (
    PersistenceError,
    SubscriptionNotFound,
    TemporaryReconciliationFailure,
)
from entitlement_engine.integrations.razorpay.exceptions import RazorpayError
from entitlement_engine.services.access_service import AccessService
from entitlement_engine.services.reconciliation_service import get_reconciliation_service
from entitlement_engine.services.resync_service import SubscriptionResyncService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/subscription", tags=["subscription"])


def get_resync_service(
    session_factory: sessionmaker = Depends(get_db_session_factory),
) -> SubscriptionResyncService:
    return SubscriptionResyncService(session_factory, get_reconciliation_service())


def _reconciliation_failed(user_id: str, error: Exception) -> HTTPException:
    logger.error("Subscription sync failed", extra={"user_id": user_id, "error": str(error)})
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="Subscription sync failed, please retry",
    )


@router.post("/sync", response_model=EntitlementSummary)
async def sync_subscription(
    body: Optional[SyncSubscriptionRequest] = None,
    user_id: str = Depends(get_current_user_id),
    resync: SubscriptionResyncService = Depends(get_resync_service),
):
    """
    Fetch the subscription from Razorpay and apply it to the entitlement.

    Called by the frontend right after checkout so access does not wait for
    the webhook.
    """
    subscription_id = body.subscription_id if body else None

    try:
        result = await resync.sync_from_provider(user_id, subscription_id)
    except SubscriptionNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)
    except ValueError as e:
        # Razorpay credentials missing
        logger.error("Razorpay client not configured", extra={"error": str(e)})
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Billing provider not configured",
        )
    except RazorpayError as e:
        logger.error("Razorpay fetch failed during sync", extra={
            "user_id": user_id,
            "subscription_id": subscription_id,
            "error": e.message,
            "status_code": e.status_code,
        })
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Billing provider request failed",
        )
    except (PersistenceError, TemporaryReconciliationFailure) as e:
        raise _reconciliation_failed(user_id, e)

    return EntitlementSummary(**result.to_dict())


@router.post("/sync-entitlements", response_model=EntitlementSummary)
async def sync_entitlements(
    user_id: str = Depends(get_current_user_id),
    resync: SubscriptionResyncService = Depends(get_resync_service),
):
    """Rebuild the entitlement from the stored subscription record."""
    try:
        result = await resync.sync_from_stored_record(user_id)
    except SubscriptionNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)
    except (PersistenceError, TemporaryReconciliationFailure) as e:
        raise _reconciliation_failed(user_id, e)

    return EntitlementSummary(**result.to_dict())


@router.get("/status", response_model=EntitlementStatusResponse)
async def get_subscription_status(
    user_id: str = Depends(get_current_user_id),
    db_session: Session = Depends(get_db_session),
):
    """Current entitlement, usage and subscription for the caller."""
    service = AccessService(db_session, user_id)
    service.ensure_entitlement_exists()
    return EntitlementStatusResponse(**service.get_status())
