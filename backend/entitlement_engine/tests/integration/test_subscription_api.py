"""
API tests for subscription sync, status and entitlement check dependencies.
"""

import asyncio
import itertools
from datetime import timedelta

import httpx
import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

from conftest import NOW, PREMIUM_LIMIT, days
from entitlement_engine.api.dependencies.entitlements import (
    require_ai_generate_credits,
    require_premium_access,
)
from entitlement_engine.api.routes import subscription
from entitlement_engine.constants.billing import EntitlementTier, EventKind, SubscriptionStatus
from entitlement_engine.database.session import get_db_session
from entitlement_engine.integrations.razorpay import RazorpayClient
from entitlement_engine.models.base import utc_now
from entitlement_engine.models.entitlement import Entitlement
from entitlement_engine.models.subscription import SubscriptionRecord
from entitlement_engine.services.reconciliation_service import ReconcileStatus
from entitlement_engine.services.resync_service import SubscriptionResyncService

USER = {"X-User-Id": "user_1"}


def _provider_subscription(owner="user_1", status="active", sub_id="sub_1"):
    return {
        "id": sub_id,
        "entity": "subscription",
        "customer_id": "cust_1",
        "status": status,
        "current_start": int(days(0).timestamp()),
        "current_end": int(days(30).timestamp()),
        "notes": {"clerk_user_id": owner, "tier": "premium"} if owner else [],
    }


class FakeProvider:
    """Serves canned Razorpay responses through httpx.MockTransport."""

    def __init__(self):
        self.status_code = 200
        self.body = _provider_subscription()
        self.requested = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requested.append(request.url.path)
        return httpx.Response(self.status_code, json=self.body)

    def client_factory(self) -> RazorpayClient:
        return RazorpayClient(
            key_id="rzp_test_key",
            key_secret="secret",
            base_url="https://api.razorpay.test/v1",
            transport=httpx.MockTransport(self.handler),
        )


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def app(session_factory, service, provider):
    app = FastAPI()
    app.include_router(subscription.router)

    @app.get("/premium-feature")
    def premium_feature(db=Depends(require_premium_access)):
        return {"ok": True}

    @app.post("/ai-generate")
    def ai_generate(db=Depends(require_ai_generate_credits)):
        return {"ok": True}

    def override_db_session():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db_session] = override_db_session
    app.dependency_overrides[subscription.get_resync_service] = lambda: SubscriptionResyncService(
        session_factory, service, client_factory=provider.client_factory
    )
    return app


@pytest.fixture
def client(app):
    return TestClient(app)


class TestSyncFromProvider:

    def test_sync_grants_access(self, client, provider):
        response = client.post("/api/subscription/sync", json={"subscription_id": "sub_1"}, headers=USER)

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "applied"
        assert data["tier"] == EntitlementTier.PREMIUM.value
        assert data["valid_until"] == days(30).isoformat()
        assert data["ai_credits_remaining"] == PREMIUM_LIMIT
        assert provider.requested == ["/v1/subscriptions/sub_1"]

    def test_sync_twice_does_not_refill(self, app, client, session_factory, service, provider):
        ticks = (NOW + timedelta(seconds=n) for n in itertools.count())
        app.dependency_overrides[subscription.get_resync_service] = lambda: SubscriptionResyncService(
            session_factory, service, client_factory=provider.client_factory, clock=lambda: next(ticks)
        )
        client.post("/api/subscription/sync", json={"subscription_id": "sub_1"}, headers=USER)
        response = client.post("/api/subscription/sync", json={"subscription_id": "sub_1"}, headers=USER)

        data = response.json()
        # only the subscription record's last_event_at moves
        assert data["side_effects"] == ["subscription_updated"]
        assert data["valid_until"] == days(30).isoformat()
        assert data["ai_credits_remaining"] == PREMIUM_LIMIT

    def test_webhook_in_same_second_as_resync_is_applied(
        self, app, client, session_factory, service, provider, make_event
    ):
        app.dependency_overrides[subscription.get_resync_service] = lambda: SubscriptionResyncService(
            session_factory,
            service,
            client_factory=provider.client_factory,
            clock=lambda: NOW + timedelta(milliseconds=700),
        )
        client.post("/api/subscription/sync", json={"subscription_id": "sub_1"}, headers=USER)

        # Razorpay created_at has no sub-second part
        result = asyncio.run(service.reconcile(make_event(
            kind=EventKind.CANCELLED,
            provider_status="cancelled",
            period_start=NOW,
            period_end=days(30),
            occurred_at=NOW,
        )))

        assert result.status == ReconcileStatus.APPLIED
        session = session_factory()
        try:
            record = session.query(SubscriptionRecord).filter_by(user_id="user_1").one()
        finally:
            session.close()
        assert record.status == SubscriptionStatus.CANCELLED.value
        assert record.last_event_at == NOW

    def test_defaults_to_stored_subscription(self, client, provider, seed_user):
        seed_user(subscription_status=SubscriptionStatus.PENDING, subscription_id="sub_1")
        response = client.post("/api/subscription/sync", headers=USER)
        assert response.status_code == 200
        assert provider.requested == ["/v1/subscriptions/sub_1"]

    def test_nothing_to_sync(self, client, provider):
        response = client.post("/api/subscription/sync", headers=USER)
        assert response.status_code == 404
        assert provider.requested == []

    def test_other_users_subscription_refused(self, client, provider, session_factory):
        provider.body = _provider_subscription(owner="user_2")
        response = client.post("/api/subscription/sync", json={"subscription_id": "sub_1"}, headers=USER)

        assert response.status_code == 404
        session = session_factory()
        try:
            assert session.query(Entitlement).filter_by(user_id="user_1").first() is None
        finally:
            session.close()

    def test_provider_not_found(self, client, provider):
        provider.status_code, provider.body = 404, {"error": {"description": "not found"}}
        response = client.post("/api/subscription/sync", json={"subscription_id": "sub_x"}, headers=USER)
        assert response.status_code == 404

    def test_provider_failure(self, client, provider):
        provider.status_code, provider.body = 502, {}
        response = client.post("/api/subscription/sync", json={"subscription_id": "sub_1"}, headers=USER)
        assert response.status_code == 502

    def test_provider_not_configured(self, app, session_factory, service, monkeypatch):
        monkeypatch.delenv("RAZORPAY_KEY_ID", raising=False)
        monkeypatch.delenv("RAZORPAY_KEY_SECRET", raising=False)
        app.dependency_overrides[subscription.get_resync_service] = lambda: SubscriptionResyncService(
            session_factory, service, client_factory=RazorpayClient
        )
        response = TestClient(app).post(
            "/api/subscription/sync", json={"subscription_id": "sub_1"}, headers=USER
        )
        assert response.status_code == 503

    def test_requires_user(self, client):
        response = client.post("/api/subscription/sync", json={"subscription_id": "sub_1"})
        assert response.status_code == 401


class TestSyncFromStoredRecord:

    def test_rebuilds_entitlement(self, client, seed_user):
        seed_user(subscription_status=SubscriptionStatus.ACTIVE, period_end=days(30))

        response = client.post("/api/subscription/sync-entitlements", headers=USER)

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "applied"
        assert data["tier"] == EntitlementTier.PREMIUM.value
        assert data["valid_until"] == days(30).isoformat()

    def test_no_stored_record(self, client):
        response = client.post("/api/subscription/sync-entitlements", headers=USER)
        assert response.status_code == 404


class TestStatus:

    def test_first_call_initializes_free(self, client, session_factory):
        response = client.get("/api/subscription/status", headers={"X-User-Id": "new_user"})

        assert response.status_code == 200
        data = response.json()
        assert data["tier"] == EntitlementTier.FREE.value
        assert data["effective_tier"] == EntitlementTier.FREE.value
        assert data["has_premium_access"] is False
        assert data["usage"]["ai_credits_remaining"] == 0
        assert data["usage"]["free_drafts_remaining"] == 2
        assert data["subscription"] is None

        session = session_factory()
        try:
            assert session.query(Entitlement).filter_by(user_id="new_user").count() == 1
        finally:
            session.close()

    def test_paid_user(self, client, seed_user):
        valid_until = utc_now() + timedelta(days=10)
        seed_user(
            tier=EntitlementTier.PREMIUM,
            valid_until=valid_until,
            credits=150,
            subscription_status=SubscriptionStatus.CANCELLED,
        )
        data = client.get("/api/subscription/status", headers=USER).json()

        assert data["tier"] == EntitlementTier.PREMIUM.value
        assert data["has_premium_access"] is True
        assert data["usage"]["ai_credits_remaining"] == 150
        assert data["subscription"]["status"] == SubscriptionStatus.CANCELLED.value

    def test_requires_user(self, client):
        assert client.get("/api/subscription/status").status_code == 401


class TestEntitlementChecks:

    def test_free_user_gets_402(self, client, seed_user):
        seed_user()
        response = client.get("/premium-feature", headers=USER)
        assert response.status_code == 402
        assert response.json()["detail"] == "This feature requires a paid plan"

    def test_expired_paid_user_gets_402(self, client, seed_user):
        seed_user(tier=EntitlementTier.PREMIUM, valid_until=utc_now() - timedelta(days=1), credits=500)
        assert client.get("/premium-feature", headers=USER).status_code == 402

    def test_paid_user_allowed(self, client, seed_user):
        seed_user(tier=EntitlementTier.PREMIUM, valid_until=utc_now() + timedelta(days=5), credits=500)
        assert client.get("/premium-feature", headers=USER).status_code == 200

    def test_insufficient_credits(self, client, seed_user):
        seed_user(tier=EntitlementTier.PREMIUM, valid_until=utc_now() + timedelta(days=5), credits=3)
        response = client.post("/ai-generate", headers=USER)
        assert response.status_code == 402
        assert response.json()["detail"] == "Not enough AI credits for AI review generation"

    def test_enough_credits(self, client, seed_user):
        seed_user(tier=EntitlementTier.PREMIUM, valid_until=utc_now() + timedelta(days=5), credits=5)
        assert client.post("/ai-generate", headers=USER).status_code == 200
