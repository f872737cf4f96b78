"""
Reconciler: pure decision logic for entitlement state.

apply(entitlement, usage, subscription, event, now) -> ReconcileOutcome

Rules:
- Active events with a period end extend access to
  max(current valid_until, period end). valid_until never moves backwards.
- A new paid tier (from FREE or a different tier) resets usage to the
  tier's full quota. A same-tier event that advances the period refills
  credits, capped at the quota. A same-tier event that does not advance
  the period changes nothing, so redeliveries never double-refill.
- Same-tier events whose period end is older than the current grant, or
  whose merged valid_until is already in the past, leave entitlement and
  usage alone.
- A change of paid tier takes effect even when the new period ends before
  the current grant: the tier switches, valid_until stays at the later of
  the two ends, and usage resets. A foreign subscription on a different
  paid tier supersedes the stored record for the same reason. Tier changes
  carried by events older than the stored record are ignored.
- Cancelled and pending events touch only the subscription record; access
  runs until its natural expiry and the sweep downgrades it.
- payment_failed records a failure timestamp and nothing else.

The reconciler never reads the clock or the database. Given the same inputs
it returns the same outcome, which is what makes replays idempotent.
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional, Tuple

from entitlement_engine.constants.billing import EntitlementTier, EventKind, SubscriptionStatus
from entitlement_engine.services.entitlement_state import (
    EntitlementState,
    InboundEvent,
    SubscriptionState,
    UsageState,
    premium_usage,
    refill_usage,
)
from entitlement_engine.services.status_mapping import (
    effective_provider_status,
    map_provider_status,
)

logger = logging.getLogger(__name__)


class SideEffect(str, Enum):
    """What a reconciliation did, in addition to the returned states."""

    TIER_CHANGED = "tier_changed"
    ENTITLEMENT_EXTENDED = "entitlement_extended"
    USAGE_RESET = "usage_reset"
    USAGE_REFILLED = "usage_refilled"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_SUPERSEDED = "subscription_superseded"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    PAYMENT_FAILED = "payment_failed"
    STALE_EVENT_IGNORED = "stale_event_ignored"


@dataclass(frozen=True)
class ReconcileOutcome:
    """Next states for all three records plus the side effects produced."""

    entitlement: EntitlementState
    usage: UsageState
    subscription: Optional[SubscriptionState]
    status: Optional[SubscriptionStatus]
    side_effects: Tuple[SideEffect, ...] = ()
    superseded_subscription_id: Optional[str] = None

    def has(self, effect: SideEffect) -> bool:
        return effect in self.side_effects


class Reconciler:
    """
    Merges an inbound event into the current per-user state.

    Args:
        monthly_limit_for: Credit quota for a paid tier
        default_paid_tier: Tier assumed when neither the event nor the stored
            subscription names one
    """

    def __init__(
        self,
        monthly_limit_for: Optional[Callable[[EntitlementTier], int]] = None,
        default_paid_tier: Optional[EntitlementTier] = None,
    ):
        if monthly_limit_for is None or default_paid_tier is None:
            from entitlement_engine.config.plan_limits import get_plan_limits_loader

            loader = get_plan_limits_loader()
            monthly_limit_for = monthly_limit_for or loader.get_monthly_limit
            default_paid_tier = default_paid_tier or loader.get_default_paid_tier()
        self._monthly_limit_for = monthly_limit_for
        self._default_paid_tier = default_paid_tier

    def apply(
        self,
        entitlement: EntitlementState,
        usage: UsageState,
        subscription: Optional[SubscriptionState],
        event: InboundEvent,
        now: datetime,
    ) -> ReconcileOutcome:
        raw_status = effective_provider_status(event.kind, event.provider_status)
        status = map_provider_status(raw_status) if raw_status is not None else None
        tier = self._resolve_tier(event, subscription)
        effects: List[SideEffect] = []

        next_subscription, superseded_id, record_stale = self._next_subscription(
            subscription, event, status, tier, now
        )
        if record_stale:
            effects.append(SideEffect.STALE_EVENT_IGNORED)
        effects.extend(self._subscription_effects(subscription, next_subscription, event, superseded_id))

        next_entitlement, next_usage = entitlement, usage
        if status == SubscriptionStatus.ACTIVE and event.period_end is not None:
            next_entitlement, next_usage, grant_effects = self._apply_active(
                entitlement, usage, event, tier, now, record_stale
            )
            effects.extend(grant_effects)

        outcome = ReconcileOutcome(
            entitlement=next_entitlement,
            usage=next_usage,
            subscription=next_subscription,
            status=status,
            side_effects=tuple(dict.fromkeys(effects)),
            superseded_subscription_id=superseded_id,
        )

        logger.debug(
            "Reconciled event",
            extra={
                "user_id": event.user_id,
                "kind": event.kind.value,
                "status": status.value if status else None,
                "side_effects": [e.value for e in outcome.side_effects],
            },
        )
        return outcome

    # ------------------------------------------------------------------
    # Entitlement and usage
    # ------------------------------------------------------------------

    def _apply_active(
        self,
        entitlement: EntitlementState,
        usage: UsageState,
        event: InboundEvent,
        tier: EntitlementTier,
        now: datetime,
        record_stale: bool = False,
    ) -> Tuple[EntitlementState, UsageState, List[SideEffect]]:
        candidate = event.period_end
        current_until = entitlement.valid_until if entitlement.tier.is_paid else None

        if current_until is not None:
            if entitlement.tier == tier and candidate < current_until:
                return entitlement, usage, [SideEffect.STALE_EVENT_IGNORED]
            # A late event must not switch the tier back
            if entitlement.tier != tier and record_stale:
                return entitlement, usage, [SideEffect.STALE_EVENT_IGNORED]

        final = candidate if current_until is None else max(current_until, candidate)

        # A period that has already ended must not resurrect access
        if final <= now:
            return entitlement, usage, [SideEffect.STALE_EVENT_IGNORED]

        monthly_limit = self._monthly_limit_for(tier)

        if not entitlement.tier.is_paid or entitlement.tier != tier:
            next_entitlement = EntitlementState(
                tier=tier,
                valid_from=event.period_start or event.occurred_at or now,
                valid_until=final,
            )
            effects = [SideEffect.TIER_CHANGED, SideEffect.USAGE_RESET]
            if final != current_until:
                effects.insert(1, SideEffect.ENTITLEMENT_EXTENDED)
            return next_entitlement, premium_usage(monthly_limit, refill_at=final), effects

        if candidate > current_until:
            next_entitlement = EntitlementState(
                tier=tier,
                valid_from=event.period_start or entitlement.valid_from,
                valid_until=final,
            )
            if usage.monthly_limit != monthly_limit:
                return next_entitlement, premium_usage(monthly_limit, refill_at=final), [
                    SideEffect.ENTITLEMENT_EXTENDED,
                    SideEffect.USAGE_RESET,
                ]
            return next_entitlement, refill_usage(usage, refill_at=final), [
                SideEffect.ENTITLEMENT_EXTENDED,
                SideEffect.USAGE_REFILLED,
            ]

        # Same tier, same period: a redelivery
        return entitlement, usage, []

    def _resolve_tier(
        self,
        event: InboundEvent,
        subscription: Optional[SubscriptionState],
    ) -> EntitlementTier:
        if event.tier is not None and event.tier.is_paid:
            return event.tier
        if (
            subscription is not None
            and subscription.tier.is_paid
            and _same_subscription(subscription, event)
        ):
            return subscription.tier
        return self._default_paid_tier

    # ------------------------------------------------------------------
    # Subscription record
    # ------------------------------------------------------------------

    def _next_subscription(
        self,
        current: Optional[SubscriptionState],
        event: InboundEvent,
        status: Optional[SubscriptionStatus],
        tier: EntitlementTier,
        now: datetime,
    ) -> Tuple[Optional[SubscriptionState], Optional[str], bool]:
        """Return (next record, superseded subscription id, stale flag)."""
        if current is None:
            return self._new_subscription(event, status, tier, now), None, False

        if (
            event.occurred_at is not None
            and current.last_event_at is not None
            and event.occurred_at < current.last_event_at
        ):
            return current, None, True

        if not _same_subscription(current, event):
            newer_period = (
                event.period_end is None
                or current.current_period_end is None
                or event.period_end >= current.current_period_end
            )
            tier_change = (
                event.tier is not None
                and event.tier.is_paid
                and event.tier != current.tier
            )
            if (
                (status == SubscriptionStatus.ACTIVE and (newer_period or tier_change))
                or current.status != SubscriptionStatus.ACTIVE
            ):
                return (
                    self._new_subscription(event, status, tier, now),
                    current.provider_subscription_id,
                    False,
                )
            return current, None, True

        if (
            status == SubscriptionStatus.ACTIVE
            and event.period_end is not None
            and current.current_period_end is not None
            and event.period_end < current.current_period_end
        ):
            return current, None, True

        return self._merge_subscription(current, event, status, now), None, False

    def _new_subscription(
        self,
        event: InboundEvent,
        status: Optional[SubscriptionStatus],
        tier: EntitlementTier,
        now: datetime,
    ) -> SubscriptionState:
        status = status or SubscriptionStatus.PENDING
        return SubscriptionState(
            provider_subscription_id=event.provider_subscription_id,
            tier=tier,
            status=status,
            provider_customer_id=event.provider_customer_id,
            billing_interval=event.billing_interval,
            current_period_start=event.period_start,
            current_period_end=event.period_end,
            cancelled_at=(event.occurred_at or now) if status == SubscriptionStatus.CANCELLED else None,
            last_payment_failed_at=(
                (event.occurred_at or now) if event.kind == EventKind.PAYMENT_FAILED else None
            ),
            last_event_at=event.occurred_at,
        )

    def _merge_subscription(
        self,
        current: SubscriptionState,
        event: InboundEvent,
        status: Optional[SubscriptionStatus],
        now: datetime,
    ) -> SubscriptionState:
        next_status = status or current.status

        if next_status == SubscriptionStatus.CANCELLED:
            if current.status == SubscriptionStatus.CANCELLED and current.cancelled_at is not None:
                cancelled_at = current.cancelled_at
            else:
                cancelled_at = event.occurred_at or now
        elif next_status == SubscriptionStatus.ACTIVE:
            cancelled_at = None
        else:
            cancelled_at = current.cancelled_at

        failed_at = current.last_payment_failed_at
        if event.kind == EventKind.PAYMENT_FAILED:
            failed_at = event.occurred_at or failed_at or now

        period_start, period_end = current.current_period_start, current.current_period_end
        if event.period_end is not None and (period_end is None or event.period_end >= period_end):
            period_end = event.period_end
            period_start = event.period_start or period_start

        last_event_at = current.last_event_at
        if event.occurred_at is not None and (last_event_at is None or event.occurred_at > last_event_at):
            last_event_at = event.occurred_at

        return replace(
            current,
            provider_subscription_id=event.provider_subscription_id or current.provider_subscription_id,
            provider_customer_id=event.provider_customer_id or current.provider_customer_id,
            tier=event.tier if event.tier is not None and event.tier.is_paid else current.tier,
            billing_interval=event.billing_interval or current.billing_interval,
            status=next_status,
            current_period_start=period_start,
            current_period_end=period_end,
            cancelled_at=cancelled_at,
            last_payment_failed_at=failed_at,
            last_event_at=last_event_at,
        )

    @staticmethod
    def _subscription_effects(
        current: Optional[SubscriptionState],
        nxt: Optional[SubscriptionState],
        event: InboundEvent,
        superseded_id: Optional[str],
    ) -> List[SideEffect]:
        if nxt is None or nxt == current:
            return []
        effects: List[SideEffect] = []
        if superseded_id is not None:
            effects.append(SideEffect.SUBSCRIPTION_SUPERSEDED)
        if nxt.status == SubscriptionStatus.CANCELLED and (
            current is None or current.status != SubscriptionStatus.CANCELLED or superseded_id
        ):
            effects.append(SideEffect.SUBSCRIPTION_CANCELLED)
        if event.kind == EventKind.PAYMENT_FAILED and nxt.last_payment_failed_at is not None and (
            current is None or nxt.last_payment_failed_at != current.last_payment_failed_at
        ):
            effects.append(SideEffect.PAYMENT_FAILED)
        if not effects:
            effects.append(SideEffect.SUBSCRIPTION_UPDATED)
        return effects


def _same_subscription(subscription: SubscriptionState, event: InboundEvent) -> bool:
    return (
        event.provider_subscription_id is None
        or subscription.provider_subscription_id is None
        or subscription.provider_subscription_id == event.provider_subscription_id
    )
