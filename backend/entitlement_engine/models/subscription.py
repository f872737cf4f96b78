"""
Subscription record model: the provider's view of a user's subscription.

CRITICAL: One record per user. A new provider subscription id replaces the
previous one; superseded ids survive only in the billing event log.
Mutated exclusively by the reconciler.
"""

from sqlalchemy import Column, String, Integer, Index

from entitlement_engine.constants.billing import EntitlementTier, SubscriptionStatus
from entitlement_engine.db_base import Base
from entitlement_engine.models.base import TimestampMixin, UTCDateTime, generate_uuid


class SubscriptionRecord(Base, TimestampMixin):
    """
    Tracks the provider subscription backing a user's entitlement.

    This row reflects what the provider reports, not what the user may
    access. Access decisions read the Entitlement table.
    """

    __tablename__ = "user_subscriptions"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    user_id = Column(
        String(255),
        nullable=False,
        unique=True,
        index=True,
        comment="One subscription record per user"
    )

    provider_subscription_id = Column(
        String(100),
        nullable=True,
        index=True,
        comment="Razorpay subscription id (sub_...)"
    )

    provider_customer_id = Column(
        String(100),
        nullable=True,
        comment="Razorpay customer id (cust_...)"
    )

    tier = Column(
        String(20),
        nullable=False,
        default=EntitlementTier.PREMIUM.value,
        comment="Paid tier purchased"
    )

    billing_interval = Column(
        String(20),
        nullable=True,
        comment="monthly or yearly, from subscription notes"
    )

    status = Column(
        String(20),
        nullable=False,
        default=SubscriptionStatus.PENDING.value,
        index=True,
        comment="pending, active or cancelled"
    )

    current_period_start = Column(UTCDateTime(), nullable=True)
    current_period_end = Column(UTCDateTime(), nullable=True)

    cancelled_at = Column(
        UTCDateTime(),
        nullable=True,
        comment="When the provider reported cancellation"
    )

    last_payment_failed_at = Column(
        UTCDateTime(),
        nullable=True,
        comment="Most recent payment failure signal"
    )

    last_event_at = Column(
        UTCDateTime(),
        nullable=True,
        comment="Provider timestamp of the newest applied event"
    )

    version = Column(
        Integer,
        nullable=False,
        default=1,
        comment="Optimistic concurrency counter"
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_user_subscriptions_status_period_end", "status", "current_period_end"),
    )

    def __repr__(self) -> str:
        return (
            f"<SubscriptionRecord(user_id={self.user_id}, "
            f"subscription={self.provider_subscription_id}, status={self.status})>"
        )
