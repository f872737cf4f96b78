"""
Data models for Razorpay API responses and webhook payloads.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional


def from_unix(value: Any) -> Optional[datetime]:
    """Convert Razorpay unix seconds to an aware UTC datetime. 0/None -> None."""
    if value in (None, "", 0):
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def _notes(value: Any) -> Dict[str, Any]:
    # Razorpay serializes empty notes as [] rather than {}
    return value if isinstance(value, dict) else {}


@dataclass
class RazorpaySubscription:
    """Subscription entity as returned by the API or embedded in webhooks."""

    id: str
    status: Optional[str]
    plan_id: Optional[str] = None
    customer_id: Optional[str] = None
    current_start: Optional[datetime] = None
    current_end: Optional[datetime] = None
    charge_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    paid_count: int = 0
    notes: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RazorpaySubscription":
        return cls(
            id=data.get("id", ""),
            status=data.get("status"),
            plan_id=data.get("plan_id"),
            customer_id=data.get("customer_id"),
            current_start=from_unix(data.get("current_start")),
            current_end=from_unix(data.get("current_end")),
            charge_at=from_unix(data.get("charge_at")),
            ended_at=from_unix(data.get("ended_at")),
            paid_count=int(data.get("paid_count") or 0),
            notes=_notes(data.get("notes")),
        )


@dataclass
class RazorpayPayment:
    """Payment entity embedded in subscription.charged and payment.failed webhooks."""

    id: str
    status: Optional[str]
    subscription_id: Optional[str] = None
    customer_id: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    error_code: Optional[str] = None
    error_description: Optional[str] = None
    created_at: Optional[datetime] = None
    notes: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RazorpayPayment":
        return cls(
            id=data.get("id", ""),
            status=data.get("status"),
            subscription_id=data.get("subscription_id"),
            customer_id=data.get("customer_id"),
            amount=data.get("amount"),
            currency=data.get("currency"),
            error_code=data.get("error_code"),
            error_description=data.get("error_description"),
            created_at=from_unix(data.get("created_at")),
            notes=_notes(data.get("notes")),
        )


@dataclass
class RazorpayWebhookEnvelope:
    """Top-level webhook body: event name, timestamp and embedded entities."""

    event: str
    created_at: Optional[datetime] = None
    account_id: Optional[str] = None
    subscription: Optional[RazorpaySubscription] = None
    payment: Optional[RazorpayPayment] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RazorpayWebhookEnvelope":
        payload = data.get("payload") or {}
        subscription_entity = (payload.get("subscription") or {}).get("entity")
        payment_entity = (payload.get("payment") or {}).get("entity")
        return cls(
            event=data.get("event") or "",
            created_at=from_unix(data.get("created_at")),
            account_id=data.get("account_id"),
            subscription=(
                RazorpaySubscription.from_dict(subscription_entity) if subscription_entity else None
            ),
            payment=RazorpayPayment.from_dict(payment_entity) if payment_entity else None,
        )

    @property
    def subscription_id(self) -> Optional[str]:
        if self.subscription is not None and self.subscription.id:
            return self.subscription.id
        if self.payment is not None:
            return self.payment.subscription_id
        return None

    @property
    def notes(self) -> Dict[str, Any]:
        """Subscription notes, falling back to payment notes."""
        if self.subscription is not None and self.subscription.notes:
            return self.subscription.notes
        if self.payment is not None:
            return self.payment.notes
        return {}
