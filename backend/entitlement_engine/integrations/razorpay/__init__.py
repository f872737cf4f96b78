"""
Razorpay integration for subscription billing.

Provides an API client for subscription lookups and parsers for webhook
payloads.
"""

from entitlement_engine.integrations.razorpay.client import RazorpayClient, get_razorpay_client
from entitlement_engine.integrations.razorpay.exceptions import (
    RazorpayError,
    RazorpayAuthenticationError,
    RazorpayRateLimitError,
    RazorpayConnectionError,
    RazorpayNotFoundError,
)
from entitlement_engine.integrations.razorpay.models import (
    RazorpaySubscription,
    RazorpayPayment,
    RazorpayWebhookEnvelope,
)

__all__ = [
    # Client
    "RazorpayClient",
    "get_razorpay_client",
    # Exceptions
    "RazorpayError",
    "RazorpayAuthenticationError",
    "RazorpayRateLimitError",
    "RazorpayConnectionError",
    "RazorpayNotFoundError",
    # Models
    "RazorpaySubscription",
    "RazorpayPayment",
    "RazorpayWebhookEnvelope",
]
