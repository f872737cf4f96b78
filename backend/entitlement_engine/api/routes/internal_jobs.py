"""
Internal job triggers for the scheduler.

Protected by a shared secret in X-Sweep-Secret rather than user auth.
"""

import hmac
import logging
import os
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status
from sqlalchemy.orm import sessionmaker

from entitlement_engine.api.schemas.subscription import ExpirySweepResponse
from entitlement_engine.database.session import get_db_session_factory
from entitlement_engine.jobs.expiry_sweep import run_expiry_sweep

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/internal", tags=["internal"])


def verify_sweep_secret(
    x_sweep_secret: Optional[str] = Header(None, alias="X-Sweep-Secret"),
) -> None:
    expected = os.getenv("EXPIRY_SWEEP_SECRET")
    if not expected:
        logger.error("EXPIRY_SWEEP_SECRET not configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Expiry sweep not configured",
        )
    if not x_sweep_secret or not hmac.compare_digest(expected, x_sweep_secret):
        logger.warning("Expiry sweep trigger rejected")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid sweep secret",
        )


@router.post(
    "/expiry-sweep",
    response_model=ExpirySweepResponse,
    dependencies=[Depends(verify_sweep_secret)],
)
def trigger_expiry_sweep(
    session_factory: sessionmaker = Depends(get_db_session_factory),
):
    """Downgrade every lapsed entitlement and report per-user failures."""
    return ExpirySweepResponse(**run_expiry_sweep(session_factory))
