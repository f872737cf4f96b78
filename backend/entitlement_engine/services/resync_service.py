"""
Subscription resync.

Closes the gap between "payment succeeded" and "webhook delivered" by
reading state directly and feeding it through the same reconciliation path
as webhooks:

- sync_from_provider: fetch the subscription from Razorpay
- sync_from_stored_record: rebuild entitlement from the stored
  subscription record without calling the provider
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.orm import sessionmaker

from entitlement_engine.constants.billing import EventSource, EntitlementTier, USER_ID_NOTE_KEY
from entitlement_engine.errors import SubscriptionNotFound
from entitlement_engine.integrations.razorpay.client import RazorpayClient, get_razorpay_client
from entitlement_engine.integrations.razorpay.exceptions import RazorpayNotFoundError
from entitlement_engine.integrations.razorpay.models import RazorpaySubscription
from entitlement_engine.models.base import utc_now
from entitlement_engine.repositories.subscription_repository import SubscriptionRepository
from entitlement_engine.services.entitlement_state import InboundEvent, SubscriptionState
from entitlement_engine.services.reconciliation_service import (
    ReconciliationResult,
    ReconciliationService,
)
from entitlement_engine.services.status_mapping import kind_for_status

logger = logging.getLogger(__name__)


class SubscriptionResyncService:
    """
    Rebuilds a user's entitlement from provider or stored subscription state.

    Args:
        session_factory: Used to read the stored subscription record
        reconciliation_service: Applies the synthesized event
        client_factory: Creates a RazorpayClient (tests inject fakes)
        clock: Returns the current UTC time
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        reconciliation_service: ReconciliationService,
        client_factory: Callable[[], RazorpayClient] = get_razorpay_client,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._session_factory = session_factory
        self._service = reconciliation_service
        self._client_factory = client_factory
        self._clock = clock

    def _stored_subscription(self, user_id: str) -> Optional[SubscriptionState]:
        session = self._session_factory()
        try:
            record = SubscriptionRepository(session, user_id).get()
            return SubscriptionRepository.to_state(record)
        finally:
            session.close()

    async def sync_from_provider(
        self,
        user_id: str,
        subscription_id: Optional[str] = None,
    ) -> ReconciliationResult:
        """
        Fetch the subscription from Razorpay and reconcile it.

        Args:
            user_id: Authenticated user
            subscription_id: Subscription to sync; defaults to the stored one

        Raises:
            SubscriptionNotFound: Nothing to sync, or the subscription does
                not belong to this user
            RazorpayError: Provider call failed
        """
        stored = self._stored_subscription(user_id)
        if not subscription_id:
            subscription_id = stored.provider_subscription_id if stored else None
        if not subscription_id:
            raise SubscriptionNotFound("No subscription found for user", user_id=user_id)

        async with self._client_factory() as client:
            try:
                subscription = await client.fetch_subscription(subscription_id)
            except RazorpayNotFoundError:
                raise SubscriptionNotFound(
                    f"Subscription {subscription_id} not found at provider", user_id=user_id
                )

        self._check_ownership(user_id, subscription, stored)

        event = self._event_from_provider(user_id, subscription)
        logger.info(
            "Resyncing subscription from provider",
            extra={
                "user_id": user_id,
                "subscription_id": subscription.id,
                "provider_status": subscription.status,
            },
        )
        return await self._service.reconcile(event)

    async def sync_from_stored_record(self, user_id: str) -> ReconciliationResult:
        """
        Re-apply the stored subscription record to the entitlement.

        Raises:
            SubscriptionNotFound: The user has no subscription record
        """
        stored = self._stored_subscription(user_id)
        if stored is None:
            raise SubscriptionNotFound("No subscription found for user", user_id=user_id)

        event = InboundEvent(
            kind=kind_for_status(stored.status.value),
            user_id=user_id,
            tier=stored.tier,
            billing_interval=stored.billing_interval,
            period_start=stored.current_period_start,
            period_end=stored.current_period_end,
            provider_subscription_id=stored.provider_subscription_id,
            provider_customer_id=stored.provider_customer_id,
            provider_status=stored.status.value,
            source=EventSource.STORED,
        )
        logger.info(
            "Rebuilding entitlement from stored subscription",
            extra={"user_id": user_id, "status": stored.status.value},
        )
        return await self._service.reconcile(event)

    @staticmethod
    def _check_ownership(
        user_id: str,
        subscription: RazorpaySubscription,
        stored: Optional[SubscriptionState],
    ) -> None:
        """A user may only sync a subscription tagged with their id or already on record."""
        owner = subscription.notes.get(USER_ID_NOTE_KEY)
        if owner:
            if str(owner) == user_id:
                return
        elif stored is not None and stored.provider_subscription_id == subscription.id:
            return
        logger.warning(
            "Resync refused for subscription owned by another user",
            extra={"user_id": user_id, "subscription_id": subscription.id},
        )
        raise SubscriptionNotFound(f"Subscription {subscription.id} not found", user_id=user_id)

    def _event_from_provider(self, user_id: str, subscription: RazorpaySubscription) -> InboundEvent:
        return InboundEvent(
            kind=kind_for_status(subscription.status),
            user_id=user_id,
            tier=EntitlementTier.parse(subscription.notes.get("tier")),
            billing_interval=subscription.notes.get("interval"),
            period_start=subscription.current_start,
            period_end=subscription.current_end,
            provider_subscription_id=subscription.id,
            provider_customer_id=subscription.customer_id,
            provider_status=subscription.status,
            # webhook timestamps are whole seconds
            occurred_at=self._clock().replace(microsecond=0),
            event_type=f"resync.{subscription.status}",
            source=EventSource.RESYNC,
        )
