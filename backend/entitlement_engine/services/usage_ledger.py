"""
Usage ledger: AI credit balance operations for one user.

deduct_credits and refill_credits are single conditional UPDATE statements,
so concurrent callers can never drive the balance below zero or above the
monthly limit, and a failed deduction leaves the balance untouched.

Usage:
    ledger = UsageLedger(db_session, user_id)
    remaining = ledger.deduct_credits(5)
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import case, update
from sqlalchemy.orm import Session

from entitlement_engine.config.plan_limits import get_plan_limits_loader
from entitlement_engine.constants.billing import EntitlementTier
from entitlement_engine.errors import InsufficientCredits
from entitlement_engine.models.base import utc_now
from entitlement_engine.models.usage import UsageLimits
from entitlement_engine.repositories.entitlement_repository import UsageRepository
from entitlement_engine.services.entitlement_state import (
    UsageState,
    free_usage,
    premium_usage,
)

logger = logging.getLogger(__name__)


class UsageLedger:
    """
    Credit balance operations scoped to a single user.

    Public operations commit by default. Pass commit=False to enlist the
    change in a larger transaction owned by the caller.
    """

    def __init__(self, db_session: Session, user_id: str):
        self.db = db_session
        self.user_id = user_id
        self._repo = UsageRepository(db_session, user_id)
        self._limits = get_plan_limits_loader()

    def get_usage(self) -> UsageState:
        """Return the current usage snapshot (zeros if never initialized)."""
        return UsageRepository.to_state(self._repo.get())

    def deduct_credits(self, amount: int = 1, commit: bool = True) -> int:
        """
        Atomically subtract credits.

        Args:
            amount: Credits to spend (positive)
            commit: Commit the transaction on success

        Returns:
            Remaining balance after the deduction

        Raises:
            InsufficientCredits: If the balance is below amount. Nothing is
                deducted in that case.
        """
        if amount <= 0:
            raise ValueError("deduction amount must be positive")

        stmt = (
            update(UsageLimits)
            .where(
                UsageLimits.user_id == self.user_id,
                UsageLimits.ai_credits_remaining >= amount,
            )
            .values(
                ai_credits_remaining=UsageLimits.ai_credits_remaining - amount,
                version=UsageLimits.version + 1,
                updated_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)

        if result.rowcount != 1:
            available = self._current_balance()
            logger.info(
                "AI credit deduction refused",
                extra={"user_id": self.user_id, "required": amount, "available": available},
            )
            raise InsufficientCredits(user_id=self.user_id, required=amount, available=available)

        if commit:
            self.db.commit()

        remaining = self._current_balance()
        logger.info(
            "AI credits deducted",
            extra={"user_id": self.user_id, "amount": amount, "remaining": remaining},
        )
        return remaining

    def refill_credits(self, amount: Optional[int] = None, commit: bool = True) -> int:
        """
        Add credits, capped at monthly_limit.

        Args:
            amount: Credits to add; defaults to monthly_limit
            commit: Commit the transaction on success

        Returns:
            Balance after the refill
        """
        if amount is not None and amount < 0:
            raise ValueError("refill amount must be non-negative")

        if amount is None:
            new_balance = UsageLimits.monthly_limit
        else:
            new_balance = case(
                (
                    UsageLimits.ai_credits_remaining + amount > UsageLimits.monthly_limit,
                    UsageLimits.monthly_limit,
                ),
                else_=UsageLimits.ai_credits_remaining + amount,
            )

        stmt = (
            update(UsageLimits)
            .where(UsageLimits.user_id == self.user_id)
            .values(
                ai_credits_remaining=new_balance,
                version=UsageLimits.version + 1,
                updated_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        if result.rowcount == 0:
            logger.warning("Refill skipped, usage not initialized", extra={"user_id": self.user_id})

        if commit:
            self.db.commit()

        balance = self._current_balance()
        logger.info(
            "AI credits refilled",
            extra={"user_id": self.user_id, "amount": amount, "balance": balance},
        )
        return balance

    def initialize_free(self, commit: bool = True) -> UsageState:
        """Reset to FREE limits: 0 credits, 0 quota, free drafts restored."""
        state = free_usage(self._limits.get_free_drafts(EntitlementTier.FREE))
        return self._write(state, commit)

    def initialize_premium(
        self,
        monthly_limit: Optional[int] = None,
        refill_at: Optional[datetime] = None,
        commit: bool = True,
    ) -> UsageState:
        """Reset to a full paid quota. monthly_limit defaults to the PREMIUM quota."""
        if monthly_limit is None:
            monthly_limit = self._limits.get_monthly_limit(EntitlementTier.PREMIUM)
        state = premium_usage(monthly_limit, refill_at=refill_at)
        return self._write(state, commit)

    def _current_balance(self) -> int:
        # Column query bypasses the identity map, which Core UPDATEs leave stale
        balance = (
            self.db.query(UsageLimits.ai_credits_remaining)
            .filter(UsageLimits.user_id == self.user_id)
            .scalar()
        )
        return balance or 0

    def _write(self, state: UsageState, commit: bool) -> UsageState:
        row = self._repo.get()
        if row is None:
            self._repo.get_or_create(state)
        else:
            UsageRepository.apply_state(row, state)
            self.db.flush()
        if commit:
            self.db.commit()
        logger.info(
            "Usage initialized",
            extra={
                "user_id": self.user_id,
                "monthly_limit": state.monthly_limit,
                "free_drafts": state.free_drafts_remaining,
            },
        )
        return state
