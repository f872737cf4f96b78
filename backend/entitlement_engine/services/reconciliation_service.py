"""
Reconciliation service: applies inbound events to persisted state.

For each event:
1. Take the per-user lock.
2. Open a transaction, read entitlement, usage and subscription rows.
3. Run the pure Reconciler.
4. Write back only what changed, plus the webhook dedup row and billing
   audit rows, and commit once.

Every row carries a version column. If another writer committed between
read and write, the flush raises StaleDataError; the transaction is rolled
back and the whole cycle retried, up to MAX_RECONCILE_ATTEMPTS times. No
path commits a subset of the three records.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Optional, Tuple

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from entitlement_engine.config.plan_limits import get_plan_limits_loader
from entitlement_engine.constants.billing import BillingEventType, EntitlementTier
from entitlement_engine.errors import (
    ConcurrentWriteConflict,
    PersistenceError,
    TemporaryReconciliationFailure,
)
from entitlement_engine.models.base import utc_now
from entitlement_engine.models.billing_event import BillingEvent
from entitlement_engine.models.webhook_event import WebhookEvent
from entitlement_engine.repositories.entitlement_repository import (
    EntitlementRepository,
    UsageRepository,
)
from entitlement_engine.repositories.subscription_repository import SubscriptionRepository
from entitlement_engine.services.entitlement_state import (
    EntitlementState,
    InboundEvent,
    UsageState,
    free_usage,
)
from entitlement_engine.services.reconciler import ReconcileOutcome, Reconciler, SideEffect
from entitlement_engine.services.user_locks import UserLockRegistry, get_user_locks

logger = logging.getLogger(__name__)

# Bounded compare-and-swap retries before giving up and letting the
# provider redeliver
MAX_RECONCILE_ATTEMPTS = 3


class ReconcileStatus(str, Enum):
    """Explicit result of a reconciliation."""

    APPLIED = "applied"
    UNCHANGED = "unchanged"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"


@dataclass
class ReconciliationResult:
    """Result of applying one inbound event."""

    status: ReconcileStatus
    message: str
    user_id: Optional[str] = None
    entitlement: Optional[EntitlementState] = None
    usage: Optional[UsageState] = None
    side_effects: Tuple[SideEffect, ...] = field(default_factory=tuple)
    attempts: int = 0

    def to_dict(self) -> dict:
        data = {
            "status": self.status.value,
            "message": self.message,
            "user_id": self.user_id,
            "side_effects": [e.value for e in self.side_effects],
        }
        if self.entitlement is not None:
            data["tier"] = self.entitlement.tier.value
            data["valid_until"] = (
                self.entitlement.valid_until.isoformat() if self.entitlement.valid_until else None
            )
        if self.usage is not None:
            data["ai_credits_remaining"] = self.usage.ai_credits_remaining
        return data


# Side effect -> audit event type. TIER_CHANGED is resolved per event.
_AUDIT_EVENT_TYPES = {
    SideEffect.ENTITLEMENT_EXTENDED: BillingEventType.SUBSCRIPTION_RENEWED,
    SideEffect.USAGE_RESET: BillingEventType.CREDITS_RESET,
    SideEffect.USAGE_REFILLED: BillingEventType.CREDITS_REFILLED,
    SideEffect.SUBSCRIPTION_UPDATED: BillingEventType.SUBSCRIPTION_UPDATED,
    SideEffect.SUBSCRIPTION_SUPERSEDED: BillingEventType.SUBSCRIPTION_SUPERSEDED,
    SideEffect.SUBSCRIPTION_CANCELLED: BillingEventType.SUBSCRIPTION_CANCELLED,
    SideEffect.PAYMENT_FAILED: BillingEventType.PAYMENT_FAILED,
    SideEffect.STALE_EVENT_IGNORED: BillingEventType.STALE_EVENT_IGNORED,
}


class ReconciliationService:
    """
    Serialized, atomic application of inbound events.

    Args:
        session_factory: Opens one session per attempt
        reconciler: Pure decision logic (default: configured Reconciler)
        locks: Per-user lock registry (default: process-wide registry)
        max_attempts: Compare-and-swap attempts before TemporaryReconciliationFailure
        clock: Returns the current UTC time
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        reconciler: Optional[Reconciler] = None,
        locks: Optional[UserLockRegistry] = None,
        max_attempts: int = MAX_RECONCILE_ATTEMPTS,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._session_factory = session_factory
        self._reconciler = reconciler or Reconciler()
        self._locks = locks or get_user_locks()
        self._max_attempts = max_attempts
        self._clock = clock

    async def reconcile(
        self,
        event: InboundEvent,
        payload_hash: Optional[str] = None,
    ) -> ReconciliationResult:
        """
        Apply an event under the user's lock with bounded CAS retries.

        Raises:
            PersistenceError: Database rejected the write
            TemporaryReconciliationFailure: CAS retries exhausted
        """
        async with self._locks.hold(event.user_id):
            for attempt in range(1, self._max_attempts + 1):
                try:
                    result = self._attempt(event, payload_hash)
                except ConcurrentWriteConflict as e:
                    logger.warning(
                        "Concurrent write detected, retrying reconciliation",
                        extra={
                            "user_id": event.user_id,
                            "attempt": attempt,
                            "max_attempts": self._max_attempts,
                            "error": e.message,
                        },
                    )
                    continue
                result.attempts = attempt
                logger.info(
                    "Reconciliation finished",
                    extra={
                        "user_id": event.user_id,
                        "kind": event.kind.value,
                        "source": event.source.value,
                        "provider_event_id": event.provider_event_id,
                        "status": result.status.value,
                        "side_effects": [e.value for e in result.side_effects],
                        "attempts": attempt,
                    },
                )
                return result

        logger.error(
            "Reconciliation retries exhausted",
            extra={"user_id": event.user_id, "attempts": self._max_attempts},
        )
        raise TemporaryReconciliationFailure(event.user_id, self._max_attempts)

    def record_ignored(
        self,
        provider_event_id: Optional[str],
        event_type: Optional[str],
        payload_hash: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> None:
        """Record an acknowledged no-op delivery in the webhook event log."""
        if not provider_event_id:
            return
        session = self._session_factory()
        try:
            if self._already_processed(session, provider_event_id):
                return
            session.add(WebhookEvent(
                provider_event_id=provider_event_id,
                event_type=event_type or "unknown",
                user_id=user_id,
                payload_hash=payload_hash,
                outcome=ReconcileStatus.IGNORED.value,
                processed_at=self._clock(),
            ))
            session.commit()
        except IntegrityError:
            # Recorded concurrently by another delivery
            session.rollback()
            logger.info(
                "Ignored webhook already recorded",
                extra={"provider_event_id": provider_event_id},
            )
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Failed to record ignored webhook: {e}") from e
        finally:
            session.close()

    def _attempt(self, event: InboundEvent, payload_hash: Optional[str]) -> ReconciliationResult:
        session = self._session_factory()
        try:
            if event.provider_event_id and self._already_processed(session, event.provider_event_id):
                logger.info(
                    "Duplicate webhook skipped",
                    extra={"provider_event_id": event.provider_event_id, "user_id": event.user_id},
                )
                return ReconciliationResult(
                    status=ReconcileStatus.DUPLICATE,
                    message="Duplicate event - already processed",
                    user_id=event.user_id,
                )

            now = self._clock()
            entitlements = EntitlementRepository(session, event.user_id)
            usage_limits = UsageRepository(session, event.user_id)
            subscriptions = SubscriptionRepository(session, event.user_id)

            entitlement_row = entitlements.get_or_create()
            usage_row = usage_limits.get_or_create(
                free_usage(get_plan_limits_loader().get_free_drafts(EntitlementTier.FREE))
            )
            subscription_row = subscriptions.get()

            current_entitlement = EntitlementRepository.to_state(entitlement_row)
            outcome = self._reconciler.apply(
                current_entitlement,
                UsageRepository.to_state(usage_row),
                SubscriptionRepository.to_state(subscription_row),
                event,
                now,
            )

            entitlement_changed = EntitlementRepository.apply_state(entitlement_row, outcome.entitlement)
            usage_changed = UsageRepository.apply_state(usage_row, outcome.usage)
            subscription_changed = False
            if outcome.subscription is not None:
                subscription_changed = subscriptions.upsert_state(subscription_row, outcome.subscription)

            changed = entitlement_changed or usage_changed or subscription_changed
            status = ReconcileStatus.APPLIED if changed else ReconcileStatus.UNCHANGED

            if changed:
                self._record_billing_events(session, event, outcome, current_entitlement, now)
            if event.provider_event_id:
                session.add(WebhookEvent(
                    provider_event_id=event.provider_event_id,
                    event_type=event.event_type or event.kind.value,
                    user_id=event.user_id,
                    payload_hash=payload_hash,
                    outcome=status.value,
                    processed_at=now,
                ))

            session.commit()

            return ReconciliationResult(
                status=status,
                message="Event applied" if changed else "No state change",
                user_id=event.user_id,
                entitlement=outcome.entitlement,
                usage=outcome.usage,
                side_effects=outcome.side_effects,
            )

        except (StaleDataError, IntegrityError) as e:
            session.rollback()
            raise ConcurrentWriteConflict(str(e), user_id=event.user_id) from e
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(
                "Reconciliation persistence failed",
                extra={"user_id": event.user_id, "error": str(e)},
            )
            raise PersistenceError(f"Failed to persist reconciliation: {e}", user_id=event.user_id) from e
        finally:
            session.close()

    @staticmethod
    def _already_processed(session: Session, provider_event_id: str) -> bool:
        existing = session.query(WebhookEvent.id).filter(
            WebhookEvent.provider_event_id == provider_event_id
        ).first()
        return existing is not None

    @staticmethod
    def _record_billing_events(
        session: Session,
        event: InboundEvent,
        outcome: ReconcileOutcome,
        previous: EntitlementState,
        now: datetime,
    ) -> None:
        """Append one audit row per side effect."""
        metadata = {
            "kind": event.kind.value,
            "provider_event_id": event.provider_event_id,
            "provider_status": event.provider_status,
            "from_tier": previous.tier.value,
            "to_tier": outcome.entitlement.tier.value,
            "valid_until": (
                outcome.entitlement.valid_until.isoformat() if outcome.entitlement.valid_until else None
            ),
            "side_effects": [e.value for e in outcome.side_effects],
        }
        for effect in outcome.side_effects:
            if effect == SideEffect.TIER_CHANGED:
                event_type = (
                    BillingEventType.SUBSCRIPTION_ACTIVATED
                    if not previous.tier.is_paid
                    else BillingEventType.TIER_CHANGED
                )
            else:
                event_type = _AUDIT_EVENT_TYPES[effect]

            subscription_id = event.provider_subscription_id
            description = None
            if effect == SideEffect.SUBSCRIPTION_SUPERSEDED:
                subscription_id = outcome.superseded_subscription_id
                description = (
                    f"Subscription {outcome.superseded_subscription_id} "
                    f"superseded by {event.provider_subscription_id}"
                )

            session.add(BillingEvent(
                user_id=event.user_id,
                event_type=event_type,
                provider_subscription_id=subscription_id,
                source=event.source.value,
                extra_metadata=metadata,
                description=description,
                occurred_at=event.occurred_at or now,
                created_at=now,
            ))


_service: Optional[ReconciliationService] = None


def get_reconciliation_service() -> ReconciliationService:
    """Return the process-wide service bound to the configured database."""
    global _service
    if _service is None:
        from entitlement_engine.database.session import get_session_factory

        _service = ReconciliationService(get_session_factory())
    return _service
