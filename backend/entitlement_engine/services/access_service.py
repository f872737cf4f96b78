"""
Access queries for collaborators.

Answers "does this user have paid access" and "can they spend credits"
from durable state only. No provider calls happen on this path.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from entitlement_engine.config.plan_limits import get_plan_limits_loader
from entitlement_engine.constants.billing import EntitlementTier
from entitlement_engine.models.base import utc_now
from entitlement_engine.repositories.entitlement_repository import (
    EntitlementRepository,
    UsageRepository,
)
from entitlement_engine.repositories.subscription_repository import SubscriptionRepository
from entitlement_engine.services.entitlement_state import EntitlementState, UsageState, free_usage

logger = logging.getLogger(__name__)


class AccessService:
    """
    Read-side service for a single user's entitlement.

    Args:
        db_session: Database session
        user_id: User identifier from the authenticating gateway
        clock: Returns the current UTC time
    """

    def __init__(
        self,
        db_session: Session,
        user_id: str,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db_session
        self.user_id = user_id
        self._clock = clock
        self._entitlements = EntitlementRepository(db_session, user_id)
        self._usage = UsageRepository(db_session, user_id)

    def ensure_entitlement_exists(self) -> EntitlementState:
        """
        Create the FREE entitlement and usage rows on first authentication.

        Idempotent: existing rows are left untouched.
        """
        entitlement = self._entitlements.get()
        usage = self._usage.get()
        if entitlement is not None and usage is not None:
            return EntitlementRepository.to_state(entitlement)

        try:
            entitlement = self._entitlements.get_or_create()
            self._usage.get_or_create(
                free_usage(get_plan_limits_loader().get_free_drafts(EntitlementTier.FREE))
            )
            self.db.commit()
            logger.info("Initialized FREE entitlement", extra={"user_id": self.user_id})
        except IntegrityError:
            # Another request initialized the same user first
            self.db.rollback()
            entitlement = self._entitlements.get()
        return EntitlementRepository.to_state(entitlement)

    def get_entitlement(self) -> EntitlementState:
        """Return the entitlement snapshot (FREE when no row exists)."""
        return EntitlementRepository.to_state(self._entitlements.get())

    def get_usage(self) -> UsageState:
        return UsageRepository.to_state(self._usage.get())

    def has_premium_access(self) -> bool:
        """tier != FREE and valid_until > now."""
        return self.get_entitlement().has_premium_access(self._clock())

    def is_entitlement_expired(self) -> bool:
        """Paid tier still on record but past valid_until (awaiting the sweep)."""
        return self.get_entitlement().is_expired(self._clock())

    def get_user_tier(self) -> EntitlementTier:
        """Effective tier: FREE once the paid period has ended."""
        entitlement = self.get_entitlement()
        if entitlement.has_premium_access(self._clock()):
            return entitlement.tier
        return EntitlementTier.FREE

    def can_generate_ai(self, cost: int = 1) -> bool:
        """Paid access and at least `cost` credits left."""
        if not self.has_premium_access():
            return False
        return self.get_usage().ai_credits_remaining >= cost

    def get_status(self) -> dict:
        """Entitlement, usage and subscription summary for the status endpoint."""
        now = self._clock()
        entitlement = self.get_entitlement()
        usage = self.get_usage()
        subscription = SubscriptionRepository.to_state(
            SubscriptionRepository(self.db, self.user_id).get()
        )
        return {
            "user_id": self.user_id,
            "tier": entitlement.tier.value,
            "effective_tier": self.get_user_tier().value,
            "has_premium_access": entitlement.has_premium_access(now),
            "is_expired": entitlement.is_expired(now),
            "valid_from": _iso(entitlement.valid_from),
            "valid_until": _iso(entitlement.valid_until),
            "usage": {
                "ai_credits_remaining": usage.ai_credits_remaining,
                "monthly_limit": usage.monthly_limit,
                "refill_at": _iso(usage.refill_at),
                "free_drafts_remaining": usage.free_drafts_remaining,
            },
            "subscription": None if subscription is None else {
                "subscription_id": subscription.provider_subscription_id,
                "status": subscription.status.value,
                "tier": subscription.tier.value,
                "billing_interval": subscription.billing_interval,
                "current_period_end": _iso(subscription.current_period_end),
                "cancelled_at": _iso(subscription.cancelled_at),
                "last_payment_failed_at": _iso(subscription.last_payment_failed_at),
            },
        }


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None
