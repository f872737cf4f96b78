"""
Tests for the Razorpay API client using httpx.MockTransport.
"""

import json
from datetime import datetime, timezone

import httpx
import pytest

from entitlement_engine.integrations.razorpay import (
    RazorpayAuthenticationError,
    RazorpayClient,
    RazorpayConnectionError,
    RazorpayError,
    RazorpayNotFoundError,
    RazorpayRateLimitError,
    RazorpayWebhookEnvelope,
)

SUBSCRIPTION_BODY = {
    "id": "sub_ABC",
    "entity": "subscription",
    "plan_id": "plan_1",
    "customer_id": "cust_1",
    "status": "active",
    "current_start": 1772366400,
    "current_end": 1774958400,
    "paid_count": 1,
    "notes": {"clerk_user_id": "user_1", "tier": "premium"},
}


def _client(handler) -> RazorpayClient:
    return RazorpayClient(
        key_id="rzp_test_key",
        key_secret="secret",
        base_url="https://api.razorpay.test/v1",
        transport=httpx.MockTransport(handler),
    )


class TestFetchSubscription:

    @pytest.mark.asyncio
    async def test_parses_subscription(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("Authorization")
            return httpx.Response(200, json=SUBSCRIPTION_BODY)

        async with _client(handler) as client:
            subscription = await client.fetch_subscription("sub_ABC")

        assert seen["url"] == "https://api.razorpay.test/v1/subscriptions/sub_ABC"
        assert seen["auth"].startswith("Basic ")
        assert subscription.id == "sub_ABC"
        assert subscription.status == "active"
        assert subscription.customer_id == "cust_1"
        assert subscription.current_end == datetime.fromtimestamp(1774958400, tz=timezone.utc)
        assert subscription.notes["clerk_user_id"] == "user_1"

    @pytest.mark.asyncio
    async def test_empty_notes_list(self):
        body = dict(SUBSCRIPTION_BODY, notes=[])
        async with _client(lambda request: httpx.Response(200, json=body)) as client:
            subscription = await client.fetch_subscription("sub_ABC")
        assert subscription.notes == {}

    @pytest.mark.asyncio
    async def test_requires_subscription_id(self):
        async with _client(lambda request: httpx.Response(200, json={})) as client:
            with pytest.raises(ValueError):
                await client.fetch_subscription("")


class TestErrorMapping:

    @pytest.mark.asyncio
    async def test_401_is_authentication_error(self):
        async with _client(lambda request: httpx.Response(401, json={})) as client:
            with pytest.raises(RazorpayAuthenticationError):
                await client.fetch_subscription("sub_ABC")

    @pytest.mark.asyncio
    async def test_429_is_rate_limit_with_retry_after(self):
        def handler(request):
            return httpx.Response(429, headers={"Retry-After": "30"}, json={})

        async with _client(handler) as client:
            with pytest.raises(RazorpayRateLimitError) as exc_info:
                await client.fetch_subscription("sub_ABC")
        assert exc_info.value.retry_after == 30

    @pytest.mark.asyncio
    async def test_404_is_not_found(self):
        async with _client(lambda request: httpx.Response(404, json={})) as client:
            with pytest.raises(RazorpayNotFoundError):
                await client.fetch_subscription("sub_missing")

    @pytest.mark.asyncio
    async def test_bad_request_does_not_exist_is_not_found(self):
        body = {"error": {"code": "BAD_REQUEST_ERROR", "description": "The id provided does not exist"}}
        async with _client(lambda request: httpx.Response(400, json=body)) as client:
            with pytest.raises(RazorpayNotFoundError) as exc_info:
                await client.fetch_subscription("sub_missing")
        assert exc_info.value.code == "BAD_REQUEST_ERROR"

    @pytest.mark.asyncio
    async def test_server_error(self):
        async with _client(lambda request: httpx.Response(502, text="bad gateway")) as client:
            with pytest.raises(RazorpayError) as exc_info:
                await client.fetch_subscription("sub_ABC")
        assert exc_info.value.status_code == 502
        assert not isinstance(exc_info.value, RazorpayNotFoundError)

    @pytest.mark.asyncio
    async def test_timeout_is_connection_error(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        async with _client(handler) as client:
            with pytest.raises(RazorpayConnectionError):
                await client.fetch_subscription("sub_ABC")

    @pytest.mark.asyncio
    async def test_connect_error_is_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        async with _client(handler) as client:
            with pytest.raises(RazorpayConnectionError):
                await client.fetch_subscription("sub_ABC")


class TestClientConfiguration:

    def test_missing_credentials(self, monkeypatch):
        monkeypatch.delenv("RAZORPAY_KEY_ID", raising=False)
        monkeypatch.delenv("RAZORPAY_KEY_SECRET", raising=False)
        with pytest.raises(ValueError):
            RazorpayClient()

    @pytest.mark.asyncio
    async def test_credentials_from_environment(self, monkeypatch):
        monkeypatch.setenv("RAZORPAY_KEY_ID", "rzp_env")
        monkeypatch.setenv("RAZORPAY_KEY_SECRET", "env_secret")
        monkeypatch.setenv("RAZORPAY_BASE_URL", "https://example.test/v1/")
        client = RazorpayClient()
        try:
            assert client.key_id == "rzp_env"
            assert client.base_url == "https://example.test/v1"
        finally:
            await client.close()


class TestWebhookEnvelope:

    def test_payment_failed_envelope(self):
        envelope = RazorpayWebhookEnvelope.from_dict(json.loads(json.dumps({
            "event": "payment.failed",
            "created_at": 1772366400,
            "payload": {"payment": {"entity": {
                "id": "pay_1",
                "status": "failed",
                "subscription_id": "sub_ABC",
                "customer_id": "cust_1",
                "notes": {"clerk_user_id": "user_1"},
            }}},
        })))
        assert envelope.subscription is None
        assert envelope.subscription_id == "sub_ABC"
        assert envelope.notes == {"clerk_user_id": "user_1"}
        assert envelope.created_at == datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def test_subscription_notes_take_precedence(self):
        envelope = RazorpayWebhookEnvelope.from_dict({
            "event": "subscription.charged",
            "payload": {
                "subscription": {"entity": dict(SUBSCRIPTION_BODY)},
                "payment": {"entity": {"id": "pay_1", "status": "captured", "notes": {"x": "y"}}},
            },
        })
        assert envelope.notes["clerk_user_id"] == "user_1"
        assert envelope.subscription_id == "sub_ABC"

    def test_missing_payload(self):
        envelope = RazorpayWebhookEnvelope.from_dict({"event": "subscription.charged"})
        assert envelope.subscription is None
        assert envelope.payment is None
        assert envelope.subscription_id is None
        assert envelope.notes == {}
