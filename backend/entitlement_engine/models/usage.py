"""
Usage ledger model: per-user AI credit balance and quota.
"""

from sqlalchemy import Column, String, Integer, CheckConstraint

from entitlement_engine.db_base import Base
from entitlement_engine.models.base import TimestampMixin, UTCDateTime


class UsageLimits(Base, TimestampMixin):
    """
    AI credit balance for one user.

    The CHECK constraint backs the ledger operations: a balance can never go
    negative or exceed the monthly quota.
    """

    __tablename__ = "usage_limits"

    user_id = Column(
        String(255),
        primary_key=True,
        comment="User identifier from the authentication gateway"
    )

    ai_credits_remaining = Column(
        Integer,
        nullable=False,
        default=0,
        comment="Credits left in the current period"
    )

    monthly_limit = Column(
        Integer,
        nullable=False,
        default=0,
        comment="Credits granted per billing period"
    )

    refill_at = Column(
        UTCDateTime(),
        nullable=True,
        comment="When the next refill is expected; NULL for FREE"
    )

    free_drafts_remaining = Column(
        Integer,
        nullable=False,
        default=2,
        comment="Drafts available without spending credits"
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
            "ai_credits_remaining >= 0 AND ai_credits_remaining <= monthly_limit",
            name="ck_usage_limits_credit_bounds",
        ),
        CheckConstraint(
            "free_drafts_remaining >= 0",
            name="ck_usage_limits_free_drafts",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<UsageLimits(user_id={self.user_id}, "
            f"credits={self.ai_credits_remaining}/{self.monthly_limit})>"
        )
