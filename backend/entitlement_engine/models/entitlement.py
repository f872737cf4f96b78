"""
Entitlement model: the source of truth for paid access.

CRITICAL: Exactly one row per user, created at first authentication and
never deleted. tier = FREE if and only if valid_until IS NULL.
"""

from sqlalchemy import Column, String, Integer, CheckConstraint, Index

from entitlement_engine.constants.billing import EntitlementTier
from entitlement_engine.db_base import Base
from entitlement_engine.models.base import TimestampMixin, UTCDateTime


class Entitlement(Base, TimestampMixin):
    """
    Per-user access grant.

    valid_until only moves forward for writes driven by active subscription
    events. The expiry sweep is the only writer allowed to clear it, and only
    once it is already in the past.
    """

    __tablename__ = "entitlements"

    user_id = Column(
        String(255),
        primary_key=True,
        comment="User identifier from the authentication gateway"
    )

    tier = Column(
        String(20),
        nullable=False,
        default=EntitlementTier.FREE.value,
        comment="FREE, PREMIUM or ENTERPRISE"
    )

    valid_from = Column(
        UTCDateTime(),
        nullable=True,
        comment="Start of the paid period that granted the current tier"
    )

    valid_until = Column(
        UTCDateTime(),
        nullable=True,
        comment="End of paid access; NULL for FREE"
    )

    version = Column(
        Integer,
        nullable=False,
        default=1,
        comment="Optimistic concurrency counter"
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint(
            "(tier = 'FREE' AND valid_until IS NULL) OR "
            "(tier <> 'FREE' AND valid_until IS NOT NULL)",
            name="ck_entitlements_tier_valid_until",
        ),
        Index("ix_entitlements_tier_valid_until", "tier", "valid_until"),
    )

    @property
    def tier_enum(self) -> EntitlementTier:
        return EntitlementTier(self.tier)

    def __repr__(self) -> str:
        return (
            f"<Entitlement(user_id={self.user_id}, tier={self.tier}, "
            f"valid_until={self.valid_until})>"
        )
