"""
Razorpay billing webhook handler.

Processes Razorpay subscription and payment webhooks with:
- HMAC-SHA256 signature verification over the raw body
- Event deduplication using the Razorpay event id
- User resolution from subscription notes, falling back to the stored
  subscription record
- Translation into an InboundEvent applied by ReconciliationService

Unknown event types and events that cannot be attributed to a user are
acknowledged without state changes.
"""

import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy.orm import sessionmaker

from entitlement_engine.constants.billing import EntitlementTier, EventSource, USER_ID_NOTE_KEY
from entitlement_engine.errors import (
    MissingUserReference,
    SignatureVerificationError,
    UnknownEventKind,
)
from entitlement_engine.integrations.razorpay.models import RazorpayWebhookEnvelope
from entitlement_engine.repositories.subscription_repository import SubscriptionRepository
from entitlement_engine.services.entitlement_state import InboundEvent
from entitlement_engine.services.reconciliation_service import (
    ReconcileStatus,
    ReconciliationService,
)
from entitlement_engine.services.status_mapping import map_event_kind

logger = logging.getLogger(__name__)


def compute_signature(body: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of the raw body, as Razorpay computes it."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: Optional[str], secret: str) -> None:
    """
    Verify the X-Razorpay-Signature header.

    Raises:
        SignatureVerificationError: If the signature is missing or wrong
    """
    if not signature:
        raise SignatureVerificationError("Missing webhook signature")
    expected = compute_signature(body, secret)
    # Constant-time comparison to prevent timing attacks
    if not hmac.compare_digest(expected, signature.strip()):
        raise SignatureVerificationError("Invalid webhook signature")


def payload_sha256(body: bytes) -> str:
    """SHA-256 of the raw body, stored for debugging redeliveries."""
    return hashlib.sha256(body).hexdigest()


@dataclass
class WebhookProcessingResult:
    """Result of webhook processing."""
    processed: bool
    status: str
    message: str
    user_id: Optional[str] = None
    skipped_reason: Optional[str] = None


class BillingWebhookHandler:
    """
    Handler for Razorpay billing webhooks.

    Each delivery is translated into an InboundEvent and applied through
    ReconciliationService, which owns locking, CAS retries, dedup and the
    single commit.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        reconciliation_service: ReconciliationService,
    ):
        self._session_factory = session_factory
        self._service = reconciliation_service

    def _lookup_user(self, provider_subscription_id: Optional[str]) -> Optional[str]:
        if not provider_subscription_id:
            return None
        session = self._session_factory()
        try:
            return SubscriptionRepository.find_user_id_by_provider_subscription_id(
                session, provider_subscription_id
            )
        finally:
            session.close()

    def translate(
        self,
        envelope: RazorpayWebhookEnvelope,
        provider_event_id: Optional[str] = None,
    ) -> InboundEvent:
        """
        Convert a webhook envelope to an InboundEvent.

        Raises:
            UnknownEventKind: Event name has no mapping
            MissingUserReference: No user in notes and no stored record
        """
        kind = map_event_kind(envelope.event)
        notes = envelope.notes
        subscription_id = envelope.subscription_id

        user_id = notes.get(USER_ID_NOTE_KEY) or self._lookup_user(subscription_id)
        if not user_id:
            raise MissingUserReference(subscription_id, envelope.event)

        subscription = envelope.subscription
        payment = envelope.payment
        customer_id = None
        if subscription is not None:
            customer_id = subscription.customer_id
        if customer_id is None and payment is not None:
            customer_id = payment.customer_id

        return InboundEvent(
            kind=kind,
            user_id=str(user_id),
            tier=EntitlementTier.parse(notes.get("tier")),
            billing_interval=notes.get("interval"),
            period_start=subscription.current_start if subscription else None,
            period_end=subscription.current_end if subscription else None,
            provider_subscription_id=subscription_id,
            provider_customer_id=customer_id,
            provider_status=subscription.status if subscription else None,
            occurred_at=envelope.created_at,
            provider_event_id=provider_event_id,
            event_type=envelope.event,
            source=EventSource.WEBHOOK,
        )

    async def handle(
        self,
        payload: Dict[str, Any],
        provider_event_id: Optional[str] = None,
        payload_hash: Optional[str] = None,
    ) -> WebhookProcessingResult:
        """
        Apply one verified webhook delivery.

        Raises:
            PersistenceError, TemporaryReconciliationFailure: The delivery must
                not be acknowledged
        """
        envelope = RazorpayWebhookEnvelope.from_dict(payload)

        try:
            event = self.translate(envelope, provider_event_id)
        except UnknownEventKind as e:
            logger.info("Unhandled Razorpay event type", extra={
                "event_type": envelope.event,
                "provider_event_id": provider_event_id,
            })
            self._service.record_ignored(provider_event_id, envelope.event, payload_hash)
            return WebhookProcessingResult(
                processed=False,
                status=ReconcileStatus.IGNORED.value,
                message=e.message,
                skipped_reason=e.code,
            )
        except MissingUserReference as e:
            logger.warning("Webhook could not be attributed to a user", extra={
                "event_type": envelope.event,
                "provider_event_id": provider_event_id,
                "subscription_id": e.provider_subscription_id,
            })
            self._service.record_ignored(provider_event_id, envelope.event, payload_hash)
            return WebhookProcessingResult(
                processed=False,
                status=ReconcileStatus.IGNORED.value,
                message=e.message,
                skipped_reason=e.code,
            )

        result = await self._service.reconcile(event, payload_hash=payload_hash)

        return WebhookProcessingResult(
            processed=result.status == ReconcileStatus.APPLIED,
            status=result.status.value,
            message=result.message,
            user_id=result.user_id,
            skipped_reason="duplicate" if result.status == ReconcileStatus.DUPLICATE else None,
        )
