"""
Pydantic schemas for subscription and webhook API endpoints.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class WebhookResponse(BaseModel):
    """Standard webhook response."""
    received: bool = True
    status: str = Field("applied", description="applied, unchanged, duplicate or ignored")
    message: str = "Webhook processed"


class SyncSubscriptionRequest(BaseModel):
    """Request body for a provider resync."""
    subscription_id: Optional[str] = Field(
        None, description="Provider subscription id; defaults to the stored subscription"
    )


class EntitlementSummary(BaseModel):
    """Entitlement state after a reconciliation."""
    status: str = Field(..., description="applied, unchanged, duplicate or ignored")
    message: str
    user_id: Optional[str] = None
    tier: Optional[str] = None
    valid_until: Optional[str] = None
    ai_credits_remaining: Optional[int] = None
    side_effects: List[str] = Field(default_factory=list)


class UsageSummary(BaseModel):
    ai_credits_remaining: int
    monthly_limit: int
    refill_at: Optional[str] = None
    free_drafts_remaining: int


class SubscriptionSummary(BaseModel):
    subscription_id: Optional[str] = None
    status: str
    tier: str
    billing_interval: Optional[str] = None
    current_period_end: Optional[str] = None
    cancelled_at: Optional[str] = None
    last_payment_failed_at: Optional[str] = None


class EntitlementStatusResponse(BaseModel):
    """Response for GET /api/subscription/status."""
    user_id: str
    tier: str
    effective_tier: str
    has_premium_access: bool
    is_expired: bool
    valid_from: Optional[str] = None
    valid_until: Optional[str] = None
    usage: UsageSummary
    subscription: Optional[SubscriptionSummary] = None


class ExpirySweepResponse(BaseModel):
    """Response for the expiry sweep trigger."""
    downgraded_count: int
    skipped_count: int = 0
    checked_count: int = 0
    errors: List[Dict[str, Any]] = Field(default_factory=list)
    duration_seconds: float = 0.0
