"""
BillingEvent model for immutable audit trail.

CRITICAL: This table is APPEND-ONLY.
Never update or delete billing events - only insert new ones.
"""

from sqlalchemy import Column, String, JSON, Text, Index

from entitlement_engine.db_base import Base
from entitlement_engine.models.base import UTCDateTime, generate_uuid, utc_now


class BillingEvent(Base):
    """
    Immutable audit log of reconciliation outcomes.

    Records every applied change, superseded subscription id, payment
    failure and sweep downgrade.

    NOTE: Does not use TimestampMixin - uses occurred_at for event time
    and has separate created_at for record insertion time.
    """

    __tablename__ = "billing_events"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    user_id = Column(
        String(255),
        nullable=False,
        index=True
    )

    event_type = Column(
        String(64),
        nullable=False,
        index=True,
        comment="See BillingEventType"
    )

    provider_subscription_id = Column(
        String(100),
        nullable=True,
        comment="Razorpay subscription id the event refers to"
    )

    source = Column(
        String(32),
        nullable=False,
        comment="webhook, resync, stored or sweep"
    )

    extra_metadata = Column(
        "metadata",
        JSON,
        nullable=True,
        comment="Additional event data"
    )

    description = Column(
        Text,
        nullable=True,
        comment="Human-readable event description"
    )

    occurred_at = Column(
        UTCDateTime(),
        nullable=False,
        default=utc_now,
        comment="When the event occurred"
    )
    created_at = Column(
        UTCDateTime(),
        nullable=False,
        default=utc_now,
        comment="When the record was created (may differ from occurred_at)"
    )

    __table_args__ = (
        Index("ix_billing_events_user_time", "user_id", "occurred_at"),
        Index("ix_billing_events_type_time", "event_type", "occurred_at"),
    )

    def __repr__(self) -> str:
        return f"<BillingEvent(id={self.id}, type={self.event_type}, occurred_at={self.occurred_at})>"
