"""
Database models for entitlements, usage, subscriptions and billing audit.

Importing this package registers every table on Base.metadata.
"""

from entitlement_engine.models.base import TimestampMixin, UTCDateTime
from entitlement_engine.models.entitlement import Entitlement
from entitlement_engine.models.usage import UsageLimits
from entitlement_engine.models.subscription import SubscriptionRecord
from entitlement_engine.models.webhook_event import WebhookEvent
from entitlement_engine.models.billing_event import BillingEvent

__all__ = [
    "TimestampMixin",
    "UTCDateTime",
    "Entitlement",
    "UsageLimits",
    "SubscriptionRecord",
    "WebhookEvent",
    "BillingEvent",
]
