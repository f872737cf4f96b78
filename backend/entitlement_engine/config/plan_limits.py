"""
Plan limits configuration loader.

Loads per-tier credit quotas, free draft allowances and per-action credit
costs from config/plan_limits.yml.

Consumers:
  - UsageLedger: initialize_free / initialize_premium
  - Reconciler: monthly quota on activation and renewal
  - require_ai_credits dependency: action costs

Usage:
    from entitlement_engine.config.plan_limits import get_plan_limits_loader

    loader = get_plan_limits_loader()
    limit = loader.get_monthly_limit(EntitlementTier.PREMIUM)  # 2000
    cost = loader.get_action_cost("ai_generate")  # 5
"""

import logging
import os
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Optional

import yaml

from entitlement_engine.constants.billing import EntitlementTier

logger = logging.getLogger(__name__)

# Fallbacks used when the YAML is missing or a tier is not listed
_FALLBACK_TIERS: Dict[str, Dict[str, int]] = {
    "free": {"monthly_ai_credits": 0, "free_drafts": 2},
    "premium": {"monthly_ai_credits": 2000, "free_drafts": 0},
    "enterprise": {"monthly_ai_credits": 2000, "free_drafts": 0},
}
_FALLBACK_ACTION_COST = 1


class PlanLimitsLoader:
    """
    Thread-safe singleton loader for config/plan_limits.yml.
    """

    _instance: Optional["PlanLimitsLoader"] = None
    _lock = Lock()

    def __new__(cls, config_path: Optional[str] = None):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self, config_path: Optional[str] = None):
        if self._initialized:
            return

        self._config_path = config_path or os.getenv("PLAN_LIMITS_CONFIG")
        self._raw: Dict[str, Any] = {}
        self._load_lock = Lock()

        self._load()
        self._initialized = True

    def _resolve_path(self) -> Path:
        if self._config_path:
            return Path(self._config_path)

        candidates = [
            Path(__file__).parent.parent.parent.parent / "config" / "plan_limits.yml",
            Path(os.getcwd()) / "config" / "plan_limits.yml",
            Path(os.getcwd()) / ".." / "config" / "plan_limits.yml",
        ]

        for p in candidates:
            resolved = p.resolve()
            if resolved.exists():
                return resolved

        raise FileNotFoundError(
            f"plan_limits.yml not found in: {[str(p) for p in candidates]}"
        )

    def _load(self) -> None:
        with self._load_lock:
            try:
                path = self._resolve_path()
                logger.info("Loading plan limits from %s", path)

                with open(path, "r") as f:
                    self._raw = yaml.safe_load(f) or {}

                logger.info(
                    "Loaded plan limits: tiers=%s, actions=%s",
                    list(self._raw.get("tiers", {}).keys()),
                    list(self._raw.get("action_costs", {}).keys()),
                )
            except FileNotFoundError:
                logger.warning("plan_limits.yml not found, using fallback defaults")
                self._raw = {}

    def reload(self) -> None:
        """Re-read the YAML from disk."""
        self._load()

    def _tier_config(self, tier: EntitlementTier) -> Dict[str, Any]:
        key = tier.value.lower()
        tiers = self._raw.get("tiers", {})
        return tiers.get(key) or _FALLBACK_TIERS[key]

    def get_monthly_limit(self, tier: EntitlementTier) -> int:
        """Return the per-period AI credit quota for a tier."""
        return int(self._tier_config(tier).get("monthly_ai_credits", 0))

    def get_free_drafts(self, tier: EntitlementTier = EntitlementTier.FREE) -> int:
        """Return the free draft allowance for a tier."""
        return int(self._tier_config(tier).get("free_drafts", 0))

    def get_default_paid_tier(self) -> EntitlementTier:
        """Tier assumed for paid subscriptions whose notes carry no tier."""
        tier = EntitlementTier.parse(self._raw.get("default_paid_tier"))
        if tier is None or not tier.is_paid:
            return EntitlementTier.PREMIUM
        return tier

    def get_action_cost(self, action: str) -> int:
        """Return the credit cost of an action, 1 when not configured."""
        costs = self._raw.get("action_costs", {})
        return int(costs.get(action, _FALLBACK_ACTION_COST))

    def get_all(self) -> Dict[str, Any]:
        """Return the effective config for API exposure."""
        return {
            "version": self._raw.get("version", 1),
            "default_paid_tier": self.get_default_paid_tier().value,
            "tiers": {
                tier.value: {
                    "monthly_ai_credits": self.get_monthly_limit(tier),
                    "free_drafts": self.get_free_drafts(tier),
                }
                for tier in EntitlementTier
            },
            "action_costs": dict(self._raw.get("action_costs", {})),
        }


def get_plan_limits_loader(config_path: Optional[str] = None) -> PlanLimitsLoader:
    """Return the singleton PlanLimitsLoader."""
    return PlanLimitsLoader(config_path)


def reset_plan_limits_loader() -> None:
    """Reset singleton (for tests only)."""
    PlanLimitsLoader._instance = None
