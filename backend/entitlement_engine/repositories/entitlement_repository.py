"""
Entitlement and usage repositories.
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from entitlement_engine.constants.billing import EntitlementTier
from entitlement_engine.models.entitlement import Entitlement
from entitlement_engine.models.usage import UsageLimits
from entitlement_engine.repositories.base_repo import BaseRepository, assign_changed
from entitlement_engine.services.entitlement_state import EntitlementState, UsageState


class EntitlementRepository(BaseRepository[Entitlement]):
    """Reads and writes the entitlement row for one user."""

    def _get_model_class(self) -> type:
        return Entitlement

    def get_or_create(self) -> Entitlement:
        """Return the entitlement row, creating a FREE one if missing."""
        entitlement = self.get()
        if entitlement is None:
            entitlement = self.add(Entitlement(
                user_id=self.user_id,
                tier=EntitlementTier.FREE.value,
                valid_from=None,
                valid_until=None,
            ))
        return entitlement

    @staticmethod
    def to_state(entitlement: Optional[Entitlement]) -> EntitlementState:
        if entitlement is None:
            return EntitlementState.free()
        return EntitlementState(
            tier=EntitlementTier(entitlement.tier),
            valid_from=entitlement.valid_from,
            valid_until=entitlement.valid_until,
        )

    @staticmethod
    def apply_state(entitlement: Entitlement, state: EntitlementState) -> bool:
        """Copy changed fields onto the row. Returns True if anything changed."""
        return assign_changed(entitlement, {
            "tier": state.tier.value,
            "valid_from": state.valid_from,
            "valid_until": state.valid_until,
        })

    @staticmethod
    def find_expired_user_ids(db_session: Session, now: datetime, limit: int) -> List[str]:
        """User ids holding a paid tier whose valid_until is before now."""
        rows = (
            db_session.query(Entitlement.user_id)
            .filter(
                Entitlement.tier != EntitlementTier.FREE.value,
                Entitlement.valid_until.isnot(None),
                Entitlement.valid_until < now,
            )
            .order_by(Entitlement.valid_until)
            .limit(limit)
            .all()
        )
        return [row.user_id for row in rows]

    def downgrade_if_expired(self, now: datetime) -> bool:
        """
        Conditionally downgrade to FREE.

        The WHERE clause re-checks expiry at write time, so a renewal that
        committed after selection leaves the row untouched. Returns True
        when the row was downgraded.
        """
        stmt = (
            update(Entitlement)
            .where(
                Entitlement.user_id == self.user_id,
                Entitlement.tier != EntitlementTier.FREE.value,
                Entitlement.valid_until < now,
            )
            .values(
                tier=EntitlementTier.FREE.value,
                valid_from=None,
                valid_until=None,
                version=Entitlement.version + 1,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = self.db_session.execute(stmt)
        return result.rowcount == 1


class UsageRepository(BaseRepository[UsageLimits]):
    """Reads and writes the usage ledger row for one user."""

    def _get_model_class(self) -> type:
        return UsageLimits

    def get_or_create(self, initial: UsageState) -> UsageLimits:
        """Return the usage row, creating it from `initial` if missing."""
        usage = self.get()
        if usage is None:
            usage = self.add(UsageLimits(
                user_id=self.user_id,
                ai_credits_remaining=initial.ai_credits_remaining,
                monthly_limit=initial.monthly_limit,
                refill_at=initial.refill_at,
                free_drafts_remaining=initial.free_drafts_remaining,
            ))
        return usage

    @staticmethod
    def to_state(usage: Optional[UsageLimits]) -> UsageState:
        if usage is None:
            return UsageState()
        return UsageState(
            ai_credits_remaining=usage.ai_credits_remaining,
            monthly_limit=usage.monthly_limit,
            refill_at=usage.refill_at,
            free_drafts_remaining=usage.free_drafts_remaining,
        )

    @staticmethod
    def apply_state(usage: UsageLimits, state: UsageState) -> bool:
        """Copy changed fields onto the row. Returns True if anything changed."""
        return assign_changed(usage, {
            "ai_credits_remaining": state.ai_credits_remaining,
            "monthly_limit": state.monthly_limit,
            "refill_at": state.refill_at,
            "free_drafts_remaining": state.free_drafts_remaining,
        })
