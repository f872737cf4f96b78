"""
Immutable state snapshots used by the reconciler and the usage ledger.

Everything here is pure: no database access, no clock. Services convert
ORM rows to these snapshots, hand them to the reconciler, and write back
whatever differs.
"""

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Optional

from entitlement_engine.constants.billing import (
    EntitlementTier,
    EventKind,
    EventSource,
    SubscriptionStatus,
)
from entitlement_engine.errors import InsufficientCredits


@dataclass(frozen=True)
class EntitlementState:
    """Access grant for one user."""

    tier: EntitlementTier = EntitlementTier.FREE
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None

    @classmethod
    def free(cls) -> "EntitlementState":
        return cls(tier=EntitlementTier.FREE, valid_from=None, valid_until=None)

    def has_premium_access(self, now: datetime) -> bool:
        return (
            self.tier.is_paid
            and self.valid_until is not None
            and self.valid_until > now
        )

    def is_expired(self, now: datetime) -> bool:
        """True when a paid tier is still recorded but its period has ended."""
        return (
            self.tier.is_paid
            and self.valid_until is not None
            and self.valid_until < now
        )


@dataclass(frozen=True)
class UsageState:
    """AI credit balance for one user."""

    ai_credits_remaining: int = 0
    monthly_limit: int = 0
    refill_at: Optional[datetime] = None
    free_drafts_remaining: int = 0


@dataclass(frozen=True)
class SubscriptionState:
    """Provider-tracked subscription for one user."""

    provider_subscription_id: Optional[str]
    tier: EntitlementTier
    status: SubscriptionStatus
    provider_customer_id: Optional[str] = None
    billing_interval: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    last_payment_failed_at: Optional[datetime] = None
    last_event_at: Optional[datetime] = None


@dataclass(frozen=True)
class InboundEvent:
    """
    A provider signal translated into reconciler terms.

    tier is None when the provider payload did not say; the reconciler then
    falls back to the stored subscription tier or the default paid tier.
    """

    kind: EventKind
    user_id: str
    tier: Optional[EntitlementTier] = None
    billing_interval: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    provider_subscription_id: Optional[str] = None
    provider_customer_id: Optional[str] = None
    provider_status: Optional[str] = None
    occurred_at: Optional[datetime] = None
    provider_event_id: Optional[str] = None
    event_type: Optional[str] = None
    source: EventSource = EventSource.WEBHOOK


# ---------------------------------------------------------------------------
# Usage arithmetic
# ---------------------------------------------------------------------------

def free_usage(free_drafts: int = 2) -> UsageState:
    """Usage for a FREE user: no credits, a small draft allowance."""
    return UsageState(
        ai_credits_remaining=0,
        monthly_limit=0,
        refill_at=None,
        free_drafts_remaining=free_drafts,
    )


def premium_usage(monthly_limit: int, refill_at: Optional[datetime] = None) -> UsageState:
    """Usage for a freshly activated paid tier: a full quota, no free drafts."""
    if monthly_limit < 0:
        raise ValueError("monthly_limit must be non-negative")
    return UsageState(
        ai_credits_remaining=monthly_limit,
        monthly_limit=monthly_limit,
        refill_at=refill_at,
        free_drafts_remaining=0,
    )


def refill_usage(
    usage: UsageState,
    amount: Optional[int] = None,
    refill_at: Optional[datetime] = None,
) -> UsageState:
    """
    Add credits, capped at the monthly limit.

    amount defaults to the monthly limit. refill_at is left unchanged when
    not given.
    """
    if amount is None:
        amount = usage.monthly_limit
    if amount < 0:
        raise ValueError("refill amount must be non-negative")
    credits = min(usage.ai_credits_remaining + amount, usage.monthly_limit)
    return replace(
        usage,
        ai_credits_remaining=credits,
        refill_at=refill_at if refill_at is not None else usage.refill_at,
    )


def deduct_usage(user_id: str, usage: UsageState, amount: int = 1) -> UsageState:
    """Subtract credits or raise InsufficientCredits; never partially deducts."""
    if amount <= 0:
        raise ValueError("deduction amount must be positive")
    if usage.ai_credits_remaining < amount:
        raise InsufficientCredits(
            user_id=user_id,
            required=amount,
            available=usage.ai_credits_remaining,
        )
    return replace(usage, ai_credits_remaining=usage.ai_credits_remaining - amount)
