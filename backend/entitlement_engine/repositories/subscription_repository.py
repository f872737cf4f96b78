"""
Subscription record repository.
"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from entitlement_engine.constants.billing import EntitlementTier, SubscriptionStatus
from entitlement_engine.models.subscription import SubscriptionRecord
from entitlement_engine.repositories.base_repo import BaseRepository, assign_changed
from entitlement_engine.services.entitlement_state import SubscriptionState

logger = logging.getLogger(__name__)


class SubscriptionRepository(BaseRepository[SubscriptionRecord]):
    """Reads and writes the single subscription record for one user."""

    def _get_model_class(self) -> type:
        return SubscriptionRecord

    @staticmethod
    def find_user_id_by_provider_subscription_id(
        db_session: Session,
        provider_subscription_id: str,
    ) -> Optional[str]:
        """
        Resolve the user owning a provider subscription id.

        Used when a webhook payload carries no user reference in its notes.
        Only the current record is searched; superseded ids are not mapped.
        """
        if not provider_subscription_id:
            return None
        row = (
            db_session.query(SubscriptionRecord.user_id)
            .filter(SubscriptionRecord.provider_subscription_id == provider_subscription_id)
            .first()
        )
        return row.user_id if row else None

    @staticmethod
    def to_state(record: Optional[SubscriptionRecord]) -> Optional[SubscriptionState]:
        if record is None:
            return None
        return SubscriptionState(
            provider_subscription_id=record.provider_subscription_id,
            tier=EntitlementTier(record.tier),
            status=SubscriptionStatus(record.status),
            provider_customer_id=record.provider_customer_id,
            billing_interval=record.billing_interval,
            current_period_start=record.current_period_start,
            current_period_end=record.current_period_end,
            cancelled_at=record.cancelled_at,
            last_payment_failed_at=record.last_payment_failed_at,
            last_event_at=record.last_event_at,
        )

    def upsert_state(
        self,
        record: Optional[SubscriptionRecord],
        state: SubscriptionState,
    ) -> bool:
        """
        Write the state onto the existing record, or insert one.

        Returns True when a row was inserted or any field changed.
        """
        values = {
            "provider_subscription_id": state.provider_subscription_id,
            "provider_customer_id": state.provider_customer_id,
            "tier": state.tier.value,
            "billing_interval": state.billing_interval,
            "status": state.status.value,
            "current_period_start": state.current_period_start,
            "current_period_end": state.current_period_end,
            "cancelled_at": state.cancelled_at,
            "last_payment_failed_at": state.last_payment_failed_at,
            "last_event_at": state.last_event_at,
        }
        if record is None:
            self.add(SubscriptionRecord(user_id=self.user_id, **values))
            return True
        return assign_changed(record, values)
