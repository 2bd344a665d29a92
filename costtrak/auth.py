"""
Request authentication and role checks.

The API sits behind the auth proxy, which validates the session and passes
the user's profile id in the X-User-Id header. Here we only resolve that id
to a profile and check its role.
"""

import logging
from typing import Optional

from fastapi import Depends, Header, HTTPException
from sqlalchemy.orm import Session

from .config import USER_ID_HEADER
from .database import get_db
from .models import Profile

logger = logging.getLogger(__name__)


def get_current_user(
    user_id: Optional[str] = Header(None, alias=USER_ID_HEADER),
    db: Session = Depends(get_db),
) -> Profile:
    """Resolve the calling user, 401 if there isn't one."""
    if not user_id or not user_id.strip().isdigit():
        raise HTTPException(status_code=401, detail="Unauthorized")

    profile = db.get(Profile, int(user_id))
    if profile is None:
        logger.warning(f"Request with unknown user id {user_id}")
        raise HTTPException(status_code=401, detail="Unauthorized")
    return profile


def require_roles(*roles: str):
    """Dependency factory: the current user must hold one of `roles`."""

    def check_role(user: Profile = Depends(get_current_user)) -> Profile:
        if user.role not in roles:
            logger.info(f"User {user.id} ({user.role}) denied; requires one of {roles}")
            raise HTTPException(
                status_code=403,
                detail=f"Insufficient permissions. Requires one of: {', '.join(roles)}",
            )
        return user

    return check_role
