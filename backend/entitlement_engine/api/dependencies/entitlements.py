"""
Entitlement check dependencies.

Reusable FastAPI dependencies for collaborator routes that need paid access
or AI credits. Checks read durable state only.
"""

import logging
from typing import Callable, Optional

from fastapi import Depends, HTTPException, status

from entitlement_engine.api.dependencies.auth import get_current_user_id
from entitlement_engine.config.plan_limits import get_plan_limits_loader
from entitlement_engine.database.session import get_db_session
from entitlement_engine.services.access_service import AccessService


logger = logging.getLogger(__name__)


def create_entitlement_check(
    feature_name: str,
    action: Optional[str] = None,
) -> Callable:
    """
    Factory function to create an entitlement check dependency.

    Args:
        feature_name: Human-readable name for error messages (e.g., "AI review drafts")
        action: When set, also require enough AI credits for this action's cost

    Returns:
        A FastAPI dependency function that checks entitlement and returns db_session
    """

    def check_entitlement(
        user_id: str = Depends(get_current_user_id),
        db_session=Depends(get_db_session),
    ):
        """
        Dependency to check paid access (and credits when an action is set).

        Raises 402 Payment Required if the user is not entitled.
        Returns db_session if entitled.
        """
        service = AccessService(db_session, user_id)

        if not service.has_premium_access():
            logger.warning(
                f"{feature_name} access denied - no paid access",
                extra={
                    "user_id": user_id,
                    "current_tier": service.get_entitlement().tier.value,
                },
            )
            raise HTTPException(
                status_code=status.HTTP_402_PAYMENT_REQUIRED,
                detail=f"{feature_name} requires a paid plan",
            )

        if action is not None:
            cost = get_plan_limits_loader().get_action_cost(action)
            if not service.can_generate_ai(cost):
                logger.warning(
                    f"{feature_name} access denied - insufficient credits",
                    extra={
                        "user_id": user_id,
                        "action": action,
                        "required": cost,
                        "available": service.get_usage().ai_credits_remaining,
                    },
                )
                raise HTTPException(
                    status_code=status.HTTP_402_PAYMENT_REQUIRED,
                    detail=f"Not enough AI credits for {feature_name}",
                )

        return db_session

    return check_entitlement


def require_ai_credits(action: str, feature_name: str = "AI generation") -> Callable:
    """Dependency requiring paid access and credits for `action`."""
    return create_entitlement_check(feature_name=feature_name, action=action)


# Pre-configured checks for common features
require_premium_access = create_entitlement_check(feature_name="This feature")

require_ai_generate_credits = require_ai_credits("ai_generate", "AI review generation")

require_screenshot_credits = require_ai_credits("screenshot", "Screenshot analysis")
