"""
Razorpay API client for subscription lookups.

Used by the polling resync to read authoritative subscription state when a
webhook may not have arrived yet.

Documentation: https://razorpay.com/docs/api/payments/subscriptions/
"""

import logging
import os
from typing import Any, Dict, Optional

import httpx

from entitlement_engine.integrations.razorpay.exceptions import (
    RazorpayAuthenticationError,
    RazorpayConnectionError,
    RazorpayError,
    RazorpayNotFoundError,
    RazorpayRateLimitError,
)
from entitlement_engine.integrations.razorpay.models import RazorpaySubscription

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_BASE_URL = "https://api.razorpay.com/v1"
DEFAULT_TIMEOUT_SECONDS = 15.0
DEFAULT_CONNECT_TIMEOUT_SECONDS = 5.0


class RazorpayClient:
    """
    Async client for the Razorpay REST API.

    SECURITY: The key secret must be stored securely and never logged.
    """

    def __init__(
        self,
        key_id: Optional[str] = None,
        key_secret: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize Razorpay client.

        Args:
            key_id: API key id (default: RAZORPAY_KEY_ID)
            key_secret: API key secret (default: RAZORPAY_KEY_SECRET)
            base_url: API base URL (default: RAZORPAY_BASE_URL or live URL)
            timeout: Request timeout in seconds
            connect_timeout: Connection timeout in seconds
            transport: Optional httpx transport (tests)
        """
        self.base_url = (
            base_url or os.getenv("RAZORPAY_BASE_URL") or DEFAULT_BASE_URL
        ).rstrip("/")
        self.key_id = key_id or os.getenv("RAZORPAY_KEY_ID")
        key_secret = key_secret or os.getenv("RAZORPAY_KEY_SECRET")

        if not self.key_id or not key_secret:
            raise ValueError(
                "Razorpay credentials are required. Set RAZORPAY_KEY_ID and "
                "RAZORPAY_KEY_SECRET environment variables or pass them explicitly."
            )

        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=connect_timeout),
            auth=(self.key_id, key_secret),
            headers={"Accept": "application/json"},
            transport=transport,
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> "RazorpayClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def _request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Make an HTTP request to the Razorpay API.

        Raises:
            RazorpayError: On API errors
        """
        url = f"{self.base_url}/{endpoint.lstrip('/')}"

        try:
            response = await self._client.request(method=method, url=url, params=params)
        except httpx.TimeoutException as e:
            logger.error("Razorpay API timeout", extra={"endpoint": endpoint, "error": str(e)})
            raise RazorpayConnectionError(f"Request timeout: {e}")
        except httpx.RequestError as e:
            logger.error("Razorpay API connection error", extra={"endpoint": endpoint, "error": str(e)})
            raise RazorpayConnectionError(f"Connection error: {e}")

        if response.status_code == 401:
            logger.error(
                "Razorpay API authentication failed",
                extra={"status_code": 401, "endpoint": endpoint},
            )
            raise RazorpayAuthenticationError()

        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            logger.warning(
                "Razorpay API rate limited",
                extra={"endpoint": endpoint, "retry_after": retry_after},
            )
            raise RazorpayRateLimitError(
                retry_after=int(retry_after) if retry_after and retry_after.isdigit() else None
            )

        if response.status_code >= 400:
            error_body = _json_or_empty(response)
            error = error_body.get("error") if isinstance(error_body.get("error"), dict) else {}
            description = error.get("description") or ""

            # Razorpay answers unknown ids with 400 BAD_REQUEST_ERROR
            if response.status_code == 404 or "does not exist" in description.lower():
                raise RazorpayNotFoundError(
                    message=f"Resource not found: {endpoint}",
                    code=error.get("code"),
                    response=error_body,
                )

            logger.error(
                "Razorpay API error",
                extra={
                    "status_code": response.status_code,
                    "endpoint": endpoint,
                    "response": str(error_body)[:500],
                },
            )
            raise RazorpayError(
                message=f"Razorpay API error: {response.status_code} {description}".strip(),
                status_code=response.status_code,
                code=error.get("code"),
                response=error_body,
            )

        return response.json()

    async def fetch_subscription(self, subscription_id: str) -> RazorpaySubscription:
        """
        Fetch a subscription by id.

        Args:
            subscription_id: Razorpay subscription id (sub_...)

        Raises:
            RazorpayNotFoundError: If the subscription does not exist
            RazorpayError: On other API errors
        """
        if not subscription_id:
            raise ValueError("subscription_id is required")

        data = await self._request("GET", f"/subscriptions/{subscription_id}")
        subscription = RazorpaySubscription.from_dict(data)

        logger.info(
            "Fetched Razorpay subscription",
            extra={"subscription_id": subscription.id, "status": subscription.status},
        )
        return subscription


def _json_or_empty(response: httpx.Response) -> Dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def get_razorpay_client(
    key_id: Optional[str] = None,
    key_secret: Optional[str] = None,
    base_url: Optional[str] = None,
) -> RazorpayClient:
    """
    Factory function to create a RazorpayClient.

    Args:
        key_id: Override API key id
        key_secret: Override API key secret
        base_url: Override API base URL

    Returns:
        Configured RazorpayClient instance
    """
    return RazorpayClient(key_id=key_id, key_secret=key_secret, base_url=base_url)
