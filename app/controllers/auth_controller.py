"""
Auth controller — login, logout & current user.

Login is PUBLIC.  Logout needs a correctly signed credential from the
current boot epoch (it works for disabled accounts).  /me requires a
live session.
"""

from fastapi import APIRouter, Depends, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.client_ip import get_client_ip
from app.core.database import get_db
from app.core.security import oauth2_scheme
from app.models.user import User
from app.rbac.dependencies import get_current_active_user
from app.realtime.hub import ConnectionHub, get_hub
from app.realtime.presence import PresenceCoordinator, get_presence
from app.schemas import LoginRequest, TokenResponse, UserOut
from app.services import auth_service

router = APIRouter(prefix="/api", tags=["Auth"])


@router.post("/login", response_model=TokenResponse)
async def login(
    body: LoginRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    presence: PresenceCoordinator = Depends(get_presence),
    hub: ConnectionHub = Depends(get_hub),
):
    """Authenticate by username (+ password when the account has one) → JWT."""
    return await auth_service.login(
        body.username,
        body.password,
        ip=get_client_ip(request),
        presence=presence,
        hub=hub,
        db=db,
    )


@router.post("/logout", status_code=status.HTTP_204_NO_CONTENT)
async def logout(
    token: str = Depends(oauth2_scheme),
    db: AsyncSession = Depends(get_db),
    hub: ConnectionHub = Depends(get_hub),
):
    """Release the session bound to this credential (server-side logout)."""
    await auth_service.logout(token, hub=hub, db=db)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/me", response_model=UserOut)
async def me(user: User = Depends(get_current_active_user)):
    return UserOut.model_validate(user)
