"""
Caller identity dependency.

Authentication happens upstream; the gateway forwards the verified user id
in the X-User-Id header.
"""

import logging
from typing import Optional

from fastapi import Header, HTTPException, status

logger = logging.getLogger(__name__)

USER_ID_HEADER = "X-User-Id"


def get_current_user_id(
    x_user_id: Optional[str] = Header(None, alias=USER_ID_HEADER),
) -> str:
    """Return the authenticated user id or raise 401."""
    user_id = (x_user_id or "").strip()
    if not user_id:
        logger.warning("Request without authenticated user id")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
        )
    return user_id
