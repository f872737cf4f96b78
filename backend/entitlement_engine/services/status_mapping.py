"""
Provider status and event-name mapping.

Both tables are total: unrecognized statuses map to pending, unrecognized
event names raise UnknownEventKind, which the webhook acknowledges as a
no-op. Nothing here touches the database.
"""

import logging
from typing import Dict, Optional

from entitlement_engine.constants.billing import EventKind, SubscriptionStatus
from entitlement_engine.errors import UnknownEventKind

logger = logging.getLogger(__name__)


PROVIDER_STATUS_MAP: Dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.ACTIVE,
    "authenticated": SubscriptionStatus.ACTIVE,
    "cancelled": SubscriptionStatus.CANCELLED,
    "paused": SubscriptionStatus.CANCELLED,
    "halted": SubscriptionStatus.CANCELLED,
    "completed": SubscriptionStatus.CANCELLED,
    "created": SubscriptionStatus.PENDING,
    "pending": SubscriptionStatus.PENDING,
}

PROVIDER_EVENT_MAP: Dict[str, EventKind] = {
    "subscription.activated": EventKind.ACTIVATED,
    "subscription.authenticated": EventKind.ACTIVATED,
    "subscription.updated": EventKind.ACTIVATED,
    "subscription.charged": EventKind.CHARGED,
    "subscription.cancelled": EventKind.CANCELLED,
    "subscription.completed": EventKind.CANCELLED,
    "subscription.paused": EventKind.PAUSED,
    "subscription.halted": EventKind.PAUSED,
    "subscription.resumed": EventKind.RESUMED,
    "subscription.pending": EventKind.PAYMENT_FAILED,
    "payment.failed": EventKind.PAYMENT_FAILED,
}

# Provider status implied by an event kind when the payload carries none.
# payment_failed implies no status change.
KIND_DEFAULT_STATUS: Dict[EventKind, str] = {
    EventKind.ACTIVATED: "active",
    EventKind.CHARGED: "active",
    EventKind.RESUMED: "active",
    EventKind.CANCELLED: "cancelled",
    EventKind.PAUSED: "paused",
}


def map_provider_status(provider_status: Optional[str]) -> SubscriptionStatus:
    """
    Map a raw provider status onto the internal status enum.

    active | authenticated -> active
    cancelled | paused | halted | completed -> cancelled
    anything else -> pending (logged)
    """
    key = (provider_status or "").strip().lower()
    mapped = PROVIDER_STATUS_MAP.get(key)
    if mapped is None:
        logger.warning(
            "Unknown provider subscription status, treating as pending",
            extra={"provider_status": provider_status},
        )
        return SubscriptionStatus.PENDING
    return mapped


def map_event_kind(event_type: Optional[str]) -> EventKind:
    """Map a provider event name to an EventKind or raise UnknownEventKind."""
    key = (event_type or "").strip().lower()
    kind = PROVIDER_EVENT_MAP.get(key)
    if kind is None:
        raise UnknownEventKind(event_type)
    return kind


def effective_provider_status(kind: EventKind, provider_status: Optional[str]) -> Optional[str]:
    """Return the payload status, else the status implied by the event kind."""
    if provider_status:
        return provider_status
    return KIND_DEFAULT_STATUS.get(kind)


def kind_for_status(provider_status: Optional[str]) -> EventKind:
    """
    Event kind used when a resync synthesizes an event from a status.

    The status carried on the event decides the outcome; the kind only
    labels it for logs and the audit trail.
    """
    key = (provider_status or "").strip().lower()
    if key in ("paused", "halted"):
        return EventKind.PAUSED
    status = map_provider_status(provider_status)
    if status == SubscriptionStatus.ACTIVE:
        return EventKind.CHARGED
    if status == SubscriptionStatus.CANCELLED:
        return EventKind.CANCELLED
    return EventKind.ACTIVATED
