"""
Root test configuration and fixtures.

Each test gets its own file-backed SQLite database so that competing
sessions use separate connections, the way two workers would against
PostgreSQL.

Shared fixtures:
- db_engine / session_factory / db_session: fresh schema per test
- service: ReconciliationService with a fixed clock and private lock registry
- make_event: InboundEvent factory
- seed_user: pre-create entitlement, usage and subscription rows
- make_yaml_config: write a plan limits YAML to a temp dir
"""

import os
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Generator, Optional

import pytest
import yaml
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from entitlement_engine.config.plan_limits import reset_plan_limits_loader
from entitlement_engine.constants.billing import (
    EntitlementTier,
    EventKind,
    EventSource,
    SubscriptionStatus,
)
from entitlement_engine.db_base import Base
from entitlement_engine.models.entitlement import Entitlement
from entitlement_engine.models.subscription import SubscriptionRecord
from entitlement_engine.models.usage import UsageLimits
from entitlement_engine.services.entitlement_state import InboundEvent
from entitlement_engine.services.reconciler import Reconciler
from entitlement_engine.services.reconciliation_service import ReconciliationService
from entitlement_engine.services.user_locks import UserLockRegistry

# Set test environment
os.environ.setdefault("ENV", "test")

# Fixed instant used as "now" throughout the suite
NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
DAY = timedelta(days=1)
PREMIUM_LIMIT = 2000


def days(n: int) -> datetime:
    """NOW shifted by n days."""
    return NOW + timedelta(days=n)


@pytest.fixture(autouse=True)
def _reset_plan_limits(monkeypatch):
    """Every test starts from the repository's config/plan_limits.yml."""
    monkeypatch.delenv("PLAN_LIMITS_CONFIG", raising=False)
    reset_plan_limits_loader()
    yield
    reset_plan_limits_loader()


@pytest.fixture
def db_engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'entitlements.db'}",
        connect_args={"check_same_thread": False},
    )
    import entitlement_engine.models  # noqa: F401 - registers all model metadata

    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def db_session(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def locks() -> UserLockRegistry:
    return UserLockRegistry()


@pytest.fixture
def reconciler() -> Reconciler:
    return Reconciler(
        monthly_limit_for=lambda tier: PREMIUM_LIMIT,
        default_paid_tier=EntitlementTier.PREMIUM,
    )


@pytest.fixture
def service(session_factory, reconciler, locks) -> ReconciliationService:
    return ReconciliationService(
        session_factory,
        reconciler=reconciler,
        locks=locks,
        clock=lambda: NOW,
    )


@pytest.fixture
def make_event():
    """Factory for InboundEvent with sensible defaults for an activation."""

    def _make(
        kind: EventKind = EventKind.ACTIVATED,
        user_id: str = "user_1",
        period_end: Optional[datetime] = None,
        period_start: Optional[datetime] = None,
        provider_status: Optional[str] = "active",
        tier: Optional[EntitlementTier] = EntitlementTier.PREMIUM,
        subscription_id: Optional[str] = "sub_1",
        occurred_at: Optional[datetime] = None,
        provider_event_id: Optional[str] = None,
        source: EventSource = EventSource.WEBHOOK,
    ) -> InboundEvent:
        return InboundEvent(
            kind=kind,
            user_id=user_id,
            tier=tier,
            billing_interval="monthly",
            period_start=period_start,
            period_end=period_end,
            provider_subscription_id=subscription_id,
            provider_customer_id="cust_1",
            provider_status=provider_status,
            occurred_at=occurred_at,
            provider_event_id=provider_event_id,
            event_type=f"subscription.{kind.value}",
            source=source,
        )

    return _make


@pytest.fixture
def seed_user(session_factory):
    """
    Pre-create a user's rows.

    Returns a function (user_id, tier, valid_until, credits, subscription_status)
    that commits the rows and returns nothing.
    """

    def _seed(
        user_id: str = "user_1",
        tier: EntitlementTier = EntitlementTier.FREE,
        valid_until: Optional[datetime] = None,
        credits: int = 0,
        monthly_limit: Optional[int] = None,
        free_drafts: int = 2,
        subscription_status: Optional[SubscriptionStatus] = None,
        subscription_id: str = "sub_1",
        period_end: Optional[datetime] = None,
    ) -> None:
        session = session_factory()
        try:
            session.add(Entitlement(
                user_id=user_id,
                tier=tier.value,
                valid_from=NOW - 10 * DAY if tier.is_paid else None,
                valid_until=valid_until,
            ))
            if monthly_limit is None:
                monthly_limit = PREMIUM_LIMIT if tier.is_paid else 0
            session.add(UsageLimits(
                user_id=user_id,
                ai_credits_remaining=credits,
                monthly_limit=monthly_limit,
                refill_at=valid_until,
                free_drafts_remaining=free_drafts,
            ))
            if subscription_status is not None:
                session.add(SubscriptionRecord(
                    user_id=user_id,
                    provider_subscription_id=subscription_id,
                    provider_customer_id="cust_1",
                    tier=(tier if tier.is_paid else EntitlementTier.PREMIUM).value,
                    billing_interval="monthly",
                    status=subscription_status.value,
                    current_period_start=NOW - 10 * DAY,
                    current_period_end=period_end or valid_until,
                ))
            session.commit()
        finally:
            session.close()

    return _seed


@pytest.fixture
def make_yaml_config(tmp_path):
    """
    Factory fixture that writes a YAML config file and returns its path.

    Usage:
        config_path = make_yaml_config("plan_limits.yml", {"tiers": {...}})
    """
    def _make(filename: str, config: dict) -> Path:
        config_path = tmp_path / filename
        with open(config_path, "w") as f:
            yaml.dump(config, f)
        return config_path
    return _make


# =============================================================================
# Markers
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "security: mark test as security-focused")
    config.addinivalue_line("markers", "slow: mark test as slow-running")
