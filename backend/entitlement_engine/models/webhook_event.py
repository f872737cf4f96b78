"""
WebhookEvent model for tracking processed Razorpay webhooks.

Used for idempotency - ensures each delivery is applied at most once.
"""

import uuid

from sqlalchemy import Column, String, Index

from entitlement_engine.db_base import Base
from entitlement_engine.models.base import UTCDateTime, utc_now


class WebhookEvent(Base):
    """
    Tracks processed Razorpay webhook events for deduplication.

    Razorpay retries deliveries until acknowledged. The row is written in the
    same transaction as the entitlement changes, so a committed row means the
    event was fully applied.
    """

    __tablename__ = "webhook_events"

    id = Column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
        comment="Primary key (UUID)"
    )

    provider_event_id = Column(
        String(255),
        nullable=False,
        unique=True,
        index=True,
        comment="Razorpay event id (X-Razorpay-Event-Id header)"
    )

    event_type = Column(
        String(100),
        nullable=False,
        comment="Razorpay event name (e.g. subscription.charged)"
    )

    user_id = Column(
        String(255),
        nullable=True,
        index=True,
        comment="Resolved user, NULL when the event could not be attributed"
    )

    payload_hash = Column(
        String(64),
        nullable=True,
        comment="SHA-256 hash of payload for debugging"
    )

    outcome = Column(
        String(32),
        nullable=False,
        comment="applied, unchanged or ignored"
    )

    processed_at = Column(
        UTCDateTime(),
        nullable=False,
        default=utc_now,
        comment="When the webhook was processed"
    )

    __table_args__ = (
        Index("idx_webhook_events_processed", "processed_at"),
    )

    def __repr__(self) -> str:
        return f"<WebhookEvent(event_id={self.provider_event_id}, type={self.event_type})>"
