"""
Structured error classes for entitlement reconciliation.

Routes translate these to HTTP responses; the webhook acknowledgment policy
depends on which class is raised:

- SignatureVerificationError: 400, no state change
- UnknownEventKind, MissingUserReference: acknowledged no-op
- PersistenceError, TemporaryReconciliationFailure: not acknowledged,
  the provider redelivers
"""

from typing import Optional


class ReconciliationError(Exception):
    """Base exception for entitlement reconciliation errors."""

    code = "reconciliation_error"

    def __init__(self, message: str, user_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.user_id = user_id

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON response."""
        return {
            "error": self.code,
            "message": self.message,
        }


class SignatureVerificationError(ReconciliationError):
    """Raised when a webhook signature is missing or does not match."""

    code = "invalid_signature"

    def __init__(self, message: str = "Invalid webhook signature"):
        super().__init__(message)


class UnknownEventKind(ReconciliationError):
    """Raised for provider events the reconciler has no mapping for."""

    code = "unknown_event_kind"

    def __init__(self, event_type: Optional[str]):
        super().__init__(f"Unhandled event type: {event_type}")
        self.event_type = event_type


class MissingUserReference(ReconciliationError):
    """Raised when an event cannot be attributed to a user."""

    code = "missing_user_reference"

    def __init__(self, provider_subscription_id: Optional[str], event_type: Optional[str] = None):
        super().__init__(
            f"No user found for subscription {provider_subscription_id}"
        )
        self.provider_subscription_id = provider_subscription_id
        self.event_type = event_type


class PersistenceError(ReconciliationError):
    """Raised when the database rejects a write for reasons other than a CAS miss."""

    code = "persistence_error"


class InsufficientCredits(ReconciliationError):
    """Raised when a credit deduction exceeds the remaining balance."""

    code = "insufficient_credits"

    def __init__(self, user_id: str, required: int, available: int):
        super().__init__(
            f"Insufficient AI credits: {required} required, {available} available",
            user_id=user_id,
        )
        self.required = required
        self.available = available

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["required"] = self.required
        data["available"] = self.available
        return data


class ConcurrentWriteConflict(ReconciliationError):
    """Raised internally when a compare-and-swap write loses a race."""

    code = "concurrent_write_conflict"


class TemporaryReconciliationFailure(ReconciliationError):
    """Raised when the compare-and-swap loop exhausts its attempts."""

    code = "temporary_failure"

    def __init__(self, user_id: str, attempts: int):
        super().__init__(
            f"Reconciliation for user {user_id} did not converge after {attempts} attempts",
            user_id=user_id,
        )
        self.attempts = attempts


class SubscriptionNotFound(ReconciliationError):
    """Raised when a resync has no subscription to read from."""

    code = "subscription_not_found"
