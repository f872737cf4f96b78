"""
Regression tests for the full subscription lifecycle.

Walks one user from sign-up through activation, renewal, cancellation,
expiry and a late redelivery, checking entitlement and usage after each
step. Time is driven by a mutable clock shared by every component.
"""

from datetime import timedelta

import pytest

from conftest import NOW, PREMIUM_LIMIT, days
from entitlement_engine.constants.billing import EntitlementTier, EventKind, SubscriptionStatus
from entitlement_engine.jobs.expiry_sweep import run_expiry_sweep
from entitlement_engine.models.entitlement import Entitlement
from entitlement_engine.models.subscription import SubscriptionRecord
from entitlement_engine.models.usage import UsageLimits
from entitlement_engine.services.access_service import AccessService
from entitlement_engine.services.reconciliation_service import ReconcileStatus, ReconciliationService
from entitlement_engine.services.usage_ledger import UsageLedger

USER_ID = "user_lifecycle"


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return Clock(NOW)


@pytest.fixture
def lifecycle_service(session_factory, reconciler, locks, clock):
    return ReconciliationService(session_factory, reconciler=reconciler, locks=locks, clock=clock)


def _has_access(session_factory, clock):
    session = session_factory()
    try:
        return AccessService(session, USER_ID, clock=clock).has_premium_access()
    finally:
        session.close()


def _snapshot(session_factory):
    session = session_factory()
    try:
        entitlement = session.query(Entitlement).filter_by(user_id=USER_ID).one()
        usage = session.query(UsageLimits).filter_by(user_id=USER_ID).one()
        subscription = session.query(SubscriptionRecord).filter_by(user_id=USER_ID).first()
        return {
            "tier": entitlement.tier,
            "valid_until": entitlement.valid_until,
            "credits": usage.ai_credits_remaining,
            "monthly_limit": usage.monthly_limit,
            "free_drafts": usage.free_drafts_remaining,
            "subscription_status": subscription.status if subscription else None,
        }
    finally:
        session.close()


def _deduct(session_factory, amount):
    session = session_factory()
    try:
        return UsageLedger(session, USER_ID).deduct_credits(amount)
    finally:
        session.close()


@pytest.mark.slow
class TestSubscriptionLifecycle:

    @pytest.mark.asyncio
    async def test_full_lifecycle(self, session_factory, lifecycle_service, clock, make_event):
        # 1. New user
        session = session_factory()
        try:
            AccessService(session, USER_ID, clock=clock).ensure_entitlement_exists()
        finally:
            session.close()
        assert _snapshot(session_factory) == {
            "tier": EntitlementTier.FREE.value,
            "valid_until": None,
            "credits": 0,
            "monthly_limit": 0,
            "free_drafts": 2,
            "subscription_status": None,
        }
        assert _has_access(session_factory, clock) is False

        # 2. Activation for 30 days
        activation = make_event(
            kind=EventKind.ACTIVATED,
            user_id=USER_ID,
            period_start=NOW,
            period_end=days(30),
            occurred_at=NOW,
            provider_event_id="evt_activated",
        )
        result = await lifecycle_service.reconcile(activation)
        assert result.status == ReconcileStatus.APPLIED
        state = _snapshot(session_factory)
        assert state["tier"] == EntitlementTier.PREMIUM.value
        assert state["valid_until"] == days(30)
        assert (state["credits"], state["monthly_limit"]) == (PREMIUM_LIMIT, PREMIUM_LIMIT)
        assert _has_access(session_factory, clock) is True

        assert _deduct(session_factory, 150) == PREMIUM_LIMIT - 150

        # 3. Renewal 30 days later extends to day 60 and refills
        clock.now = days(30)
        await lifecycle_service.reconcile(make_event(
            kind=EventKind.CHARGED,
            user_id=USER_ID,
            period_start=days(30),
            period_end=days(60),
            occurred_at=days(30),
            provider_event_id="evt_charged",
        ))
        state = _snapshot(session_factory)
        assert state["valid_until"] == days(60)
        assert state["credits"] == PREMIUM_LIMIT

        # 4. Cancellation the same day keeps access until day 60
        await lifecycle_service.reconcile(make_event(
            kind=EventKind.CANCELLED,
            user_id=USER_ID,
            provider_status="cancelled",
            period_start=days(30),
            period_end=days(60),
            occurred_at=days(30) + timedelta(hours=2),
            provider_event_id="evt_cancelled",
        ))
        state = _snapshot(session_factory)
        assert state["subscription_status"] == SubscriptionStatus.CANCELLED.value
        assert state["valid_until"] == days(60)
        assert _has_access(session_factory, clock) is True
        clock.now = days(59)
        assert _has_access(session_factory, clock) is True

        # 5. Sweep on day 61
        clock.now = days(61)
        assert _has_access(session_factory, clock) is False
        sweep = run_expiry_sweep(session_factory, now=clock.now)
        assert sweep["downgraded_count"] == 1
        assert _snapshot(session_factory) == {
            "tier": EntitlementTier.FREE.value,
            "valid_until": None,
            "credits": 0,
            "monthly_limit": 0,
            "free_drafts": 2,
            "subscription_status": SubscriptionStatus.CANCELLED.value,
        }

        # 6. Activation redelivered a week later changes nothing
        clock.now = days(68)
        before = _snapshot(session_factory)
        result = await lifecycle_service.reconcile(activation)
        assert result.status == ReconcileStatus.DUPLICATE
        assert _snapshot(session_factory) == before

    @pytest.mark.asyncio
    async def test_redelivery_without_event_id_does_not_refill(
        self, session_factory, lifecycle_service, clock, make_event
    ):
        activation = make_event(user_id=USER_ID, period_end=days(30), occurred_at=NOW)
        await lifecycle_service.reconcile(activation)
        _deduct(session_factory, 400)

        clock.now = days(7)
        result = await lifecycle_service.reconcile(activation)

        assert result.status == ReconcileStatus.UNCHANGED
        assert _snapshot(session_factory)["credits"] == PREMIUM_LIMIT - 400

    @pytest.mark.asyncio
    async def test_lapsed_period_does_not_resurrect_access(
        self, session_factory, lifecycle_service, clock, make_event
    ):
        activation = make_event(user_id=USER_ID, period_end=days(30), occurred_at=NOW)
        await lifecycle_service.reconcile(activation)
        run_expiry_sweep(session_factory, now=days(31))

        clock.now = days(38)
        await lifecycle_service.reconcile(activation)

        state = _snapshot(session_factory)
        assert state["tier"] == EntitlementTier.FREE.value
        assert state["credits"] == 0
        assert _has_access(session_factory, clock) is False

    @pytest.mark.asyncio
    async def test_out_of_order_renewals(self, session_factory, lifecycle_service, make_event):
        await lifecycle_service.reconcile(make_event(
            kind=EventKind.CHARGED, user_id=USER_ID, period_end=days(60), occurred_at=days(1)
        ))
        await lifecycle_service.reconcile(make_event(
            kind=EventKind.ACTIVATED, user_id=USER_ID, period_end=days(30), occurred_at=NOW
        ))
        assert _snapshot(session_factory)["valid_until"] == days(60)
