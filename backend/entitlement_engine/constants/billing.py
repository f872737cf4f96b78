"""
Billing constants shared by models, the reconciler and the HTTP layer.
"""

from enum import Enum
from typing import Optional


class EntitlementTier(str, Enum):
    """Access tier held by a user."""

    FREE = "FREE"
    PREMIUM = "PREMIUM"
    ENTERPRISE = "ENTERPRISE"

    @property
    def is_paid(self) -> bool:
        return self is not EntitlementTier.FREE

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["EntitlementTier"]:
        """Parse a tier name case-insensitively. Returns None when unrecognized."""
        if not value:
            return None
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            return None


class SubscriptionStatus(str, Enum):
    """Internal subscription status, the closed set every provider status maps to."""

    PENDING = "pending"
    ACTIVE = "active"
    CANCELLED = "cancelled"


class EventKind(str, Enum):
    """Kinds of inbound billing events understood by the reconciler."""

    ACTIVATED = "activated"
    CHARGED = "charged"
    CANCELLED = "cancelled"
    PAUSED = "paused"
    RESUMED = "resumed"
    PAYMENT_FAILED = "payment_failed"


class EventSource(str, Enum):
    """Where an inbound event came from."""

    WEBHOOK = "webhook"
    RESYNC = "resync"
    STORED = "stored"


class BillingEventType:
    """Billing audit event type constants."""

    SUBSCRIPTION_ACTIVATED = "subscription_activated"
    SUBSCRIPTION_RENEWED = "subscription_renewed"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    SUBSCRIPTION_SUPERSEDED = "subscription_superseded"
    SUBSCRIPTION_EXPIRED = "subscription_expired"
    TIER_CHANGED = "tier_changed"
    CREDITS_RESET = "credits_reset"
    CREDITS_REFILLED = "credits_refilled"
    PAYMENT_FAILED = "payment_failed"
    STALE_EVENT_IGNORED = "stale_event_ignored"


# Default key in Razorpay subscription notes carrying our user id
USER_ID_NOTE_KEY = "clerk_user_id"
