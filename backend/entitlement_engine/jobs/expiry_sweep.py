"""
Entitlement expiry sweep.

Downgrades users whose paid access has lapsed. Each user is handled in its
own transaction with a conditional UPDATE that re-checks valid_until < now
at write time, so a renewal committed between selection and write wins.
A failure for one user is recorded and the sweep moves on.

Usage:
    python -m entitlement_engine.jobs.expiry_sweep

Triggered by a scheduler, or via POST /api/internal/expiry-sweep.
"""

import logging
import sys
from datetime import datetime, timezone
from typing import Callable, List, Optional

from sqlalchemy.orm import sessionmaker

from entitlement_engine.constants.billing import BillingEventType
from entitlement_engine.models.base import utc_now
from entitlement_engine.models.billing_event import BillingEvent
from entitlement_engine.repositories.entitlement_repository import EntitlementRepository
from entitlement_engine.services.usage_ledger import UsageLedger

logger = logging.getLogger(__name__)

# Maximum entitlements to downgrade per run
MAX_ENTITLEMENTS_PER_SWEEP = 1000


class ExpirySweepStats:
    """Track sweep run statistics."""

    def __init__(self):
        self.checked = 0
        self.downgraded = 0
        self.skipped = 0
        self.errors: List[dict] = []
        self.start_time = datetime.now(timezone.utc)

    def to_dict(self) -> dict:
        duration = (datetime.now(timezone.utc) - self.start_time).total_seconds()
        return {
            "downgraded_count": self.downgraded,
            "skipped_count": self.skipped,
            "checked_count": self.checked,
            "errors": self.errors,
            "duration_seconds": duration,
        }


def downgrade_user(session_factory: sessionmaker, user_id: str, now: datetime) -> bool:
    """
    Downgrade one user to FREE if still expired.

    Entitlement downgrade, usage reset and audit row commit together.
    Returns False when the entitlement was renewed before the write.
    """
    session = session_factory()
    try:
        entitlements = EntitlementRepository(session, user_id)
        if not entitlements.downgrade_if_expired(now):
            session.rollback()
            return False

        UsageLedger(session, user_id).initialize_free(commit=False)
        session.add(BillingEvent(
            user_id=user_id,
            event_type=BillingEventType.SUBSCRIPTION_EXPIRED,
            source="sweep",
            extra_metadata={"swept_at": now.isoformat()},
            description="Paid access expired, downgraded to FREE",
            occurred_at=now,
            created_at=now,
        ))
        session.commit()
        return True
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def run_expiry_sweep(
    session_factory: sessionmaker,
    now: Optional[datetime] = None,
    limit: int = MAX_ENTITLEMENTS_PER_SWEEP,
    downgrade: Callable[[sessionmaker, str, datetime], bool] = downgrade_user,
) -> dict:
    """
    Run the expiry sweep.

    Args:
        session_factory: Session factory for the target database
        now: Sweep instant (default: current UTC time)
        limit: Maximum users to process
        downgrade: Per-user downgrade function

    Returns:
        {"downgraded_count", "skipped_count", "checked_count", "errors", "duration_seconds"}
    """
    now = now or utc_now()
    stats = ExpirySweepStats()

    logger.info("Starting entitlement expiry sweep", extra={"now": now.isoformat()})

    session = session_factory()
    try:
        user_ids = EntitlementRepository.find_expired_user_ids(session, now, limit)
    finally:
        session.close()

    logger.info("Found expired entitlements", extra={"user_count": len(user_ids)})

    for user_id in user_ids:
        stats.checked += 1
        try:
            if downgrade(session_factory, user_id, now):
                stats.downgraded += 1
                logger.info("Entitlement downgraded to FREE", extra={"user_id": user_id})
            else:
                stats.skipped += 1
                logger.info("Entitlement renewed before downgrade, skipped", extra={"user_id": user_id})
        except Exception as e:
            logger.error("Failed to downgrade entitlement", extra={
                "user_id": user_id,
                "error": str(e),
            })
            stats.errors.append({"user_id": user_id, "error": str(e)})

    result = stats.to_dict()
    logger.info("Expiry sweep completed", extra=result)
    return result


def main():
    """Entry point for running the sweep from the command line."""
    from entitlement_engine.database.session import get_session_factory

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    try:
        result = run_expiry_sweep(get_session_factory())
        print(f"Expiry sweep completed: {result}")
        sys.exit(1 if result["errors"] else 0)
    except Exception as e:
        print(f"Expiry sweep failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
