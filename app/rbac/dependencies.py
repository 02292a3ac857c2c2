"""
RBAC dependencies — role enforcement on top of session validation.

`require_role` is a *dependency factory*: call it with one or more
roles and it returns a FastAPI dependency that will:

1. Validate the JWT and the single-session lock (via
   `get_current_user_token`).
2. Load the User.
3. Reject disabled accounts (403).
4. Verify the user's role is one of the allowed roles (403, no detail).

Usage in a route:
    @router.get("/presence")
    async def presence(user: User = Depends(require_role(UserRole.ADMIN))): ...
"""

import logging
from typing import Any

from fastapi import Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.core.security import get_current_user_token, parse_user_id
from app.models.user import User, UserRole

logger = logging.getLogger("rbac")


async def _load_user(token_payload: dict[str, Any], db: AsyncSession) -> User:
    user = await db.get(User, parse_user_id(token_payload))
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")
    # Disabled users must never pass
    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Account disabled",
        )
    return user


class require_role:
    """
    Dependency factory.

    Can be used as:
        Depends(require_role(UserRole.ADMIN))
        Depends(require_role(UserRole.ADMIN, UserRole.USER))
    """

    def __init__(self, *roles: UserRole):
        self.allowed = set(roles)

    async def __call__(
        self,
        token_payload: dict[str, Any] = Depends(get_current_user_token),
        db: AsyncSession = Depends(get_db),
    ) -> User:
        user = await _load_user(token_payload, db)

        if user.role not in self.allowed:
            logger.warning(
                "Role denied for user %s — required one of: %s, has: %s",
                user.id,
                sorted(r.value for r in self.allowed),
                user.role.value,
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Not allowed",
            )

        return user


async def get_current_active_user(
    token_payload: dict[str, Any] = Depends(get_current_user_token),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Dependency that returns the current user WITHOUT role checks.
    Useful for routes that only need authentication, not authorization."""
    return await _load_user(token_payload, db)
