"""
Admin controller — presence, user management, force-kick, event feed.

Every route uses `Depends(require_role(UserRole.ADMIN))`.
Controllers are THIN — they delegate to services and return schemas.

Mutations write an audit record (best-effort, detached) and notify
connected administrators in real time.

Accounts named in PROTECTED_USERNAMES are hidden from, and cannot be
managed by, administrators who are not protected themselves.
"""

import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.client_ip import get_client_ip
from app.core.database import async_session_factory, get_db
from app.models.user import User, UserRole
from app.rbac.dependencies import require_role
from app.realtime.hub import ConnectionHub, get_hub
from app.realtime.presence import PresenceCoordinator, get_presence
from app.schemas import (
    ActivityEventOut,
    AdminUserOut,
    CreateUserRequest,
    KickResponse,
    MessageResponse,
    PresenceOut,
    UpdateUserRequest,
)
from app.services import activity_service, user_service

router = APIRouter(prefix="/api/admin", tags=["Admin"])

require_admin = require_role(UserRole.ADMIN)


def _admin_view(user: User, presence: PresenceCoordinator) -> AdminUserOut:
    out = AdminUserOut.model_validate(user)
    out.online = presence.is_online(user.id)
    out.has_session = bool(user.session_id)
    return out


# ── Presence ─────────────────────────────────────────────────────────
@router.get("/presence", response_model=PresenceOut)
async def presence_snapshot(
    admin: User = Depends(require_admin),
    presence: PresenceCoordinator = Depends(get_presence),
):
    return PresenceOut(online=presence.online_user_ids())


# ── Users ────────────────────────────────────────────────────────────
@router.get("/users", response_model=list[AdminUserOut])
async def list_users(
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    presence: PresenceCoordinator = Depends(get_presence),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
):
    users = await user_service.list_users(db, skip, limit, actor=admin)
    return [_admin_view(u, presence) for u in users]


@router.post("/users", response_model=AdminUserOut, status_code=201)
async def create_user(
    body: CreateUserRequest,
    request: Request,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    presence: PresenceCoordinator = Depends(get_presence),
    hub: ConnectionHub = Depends(get_hub),
):
    """Create an account allowed to log in."""
    ip = get_client_ip(request)
    user_service.ensure_may_manage(admin, body.username)
    user = await user_service.create_user(
        username=body.username,
        role=body.role,
        is_active=body.is_active,
        password=body.password,
        db=db,
    )
    await db.commit()

    activity_service.log_in_background(activity_service.audit(
        actor=admin,
        actor_ip=ip,
        action="CREATE_USER",
        target=user,
        details={"role": user.role.value, "isActive": user.is_active},
    ))
    await hub.emit_admin_event({
        "type": "USER_CREATED",
        "userId": str(user.id),
        "username": user.username,
        "role": user.role.value,
        "isActive": user.is_active,
        "ip": ip,
    })
    return _admin_view(user, presence)


@router.patch("/users/{user_id}", response_model=MessageResponse)
async def update_user(
    user_id: uuid.UUID,
    body: UpdateUserRequest,
    request: Request,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    hub: ConnectionHub = Depends(get_hub),
):
    """Enable / disable, change role or rename.  Disabling kicks the user."""
    ip = get_client_ip(request)
    user = await user_service.get_user_by_id(user_id, db)
    user_service.ensure_may_manage(admin, user.username, body.username)
    changes = await user_service.update_user(
        user,
        db=db,
        is_active=body.is_active,
        role=body.role,
        username=body.username,
    )
    await db.commit()

    if changes:
        activity_service.log_in_background(activity_service.audit(
            actor=admin,
            actor_ip=ip,
            action="UPDATE_USER",
            target=user,
            details={"changes": changes},
        ))

    if changes.get("isActive", {}).get("to") is False:
        await user_service.kick_user(
            user.id,
            reason="disabled",
            hub=hub,
            session_factory=async_session_factory,
            username=user.username,
            ip=ip,
        )

    await hub.emit_admin_event({
        "type": "USER_UPDATED",
        "userId": str(user.id),
        "username": user.username,
        "role": user.role.value,
        "isActive": user.is_active,
        "ip": ip,
    })
    return MessageResponse(detail="User updated")


@router.delete("/users/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_user(
    user_id: uuid.UUID,
    request: Request,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    hub: ConnectionHub = Depends(get_hub),
):
    """Permanently delete an account; a logged-in user is kicked first."""
    ip = get_client_ip(request)
    if user_id == admin.id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="You cannot delete your own account",
        )
    user = await user_service.get_user_by_id(user_id, db)
    user_service.ensure_may_manage(admin, user.username)
    username = user.username

    activity_service.log_in_background(activity_service.audit(
        actor=admin, actor_ip=ip, action="DELETE_USER", target=user,
    ))
    await user_service.kick_user(
        user.id,
        reason="deleted",
        hub=hub,
        session_factory=async_session_factory,
        username=username,
        ip=ip,
    )
    await user_service.delete_user(user, db)
    await db.commit()

    await hub.emit_admin_event({
        "type": "USER_DELETED",
        "userId": str(user_id),
        "username": username,
        "ip": ip,
    })


@router.post("/users/{user_id}/kick", response_model=KickResponse, status_code=202)
async def kick_user(
    user_id: uuid.UUID,
    request: Request,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    hub: ConnectionHub = Depends(get_hub),
):
    """Disconnect every live connection of a user, then clear their session."""
    ip = get_client_ip(request)
    user = await user_service.get_user_by_id(user_id, db)
    user_service.ensure_may_manage(admin, user.username)

    activity_service.log_in_background(activity_service.audit(
        actor=admin, actor_ip=ip, action="KICK_USER", target=user,
    ))
    closed = await user_service.kick_user(
        user.id,
        reason="kicked",
        hub=hub,
        session_factory=async_session_factory,
        username=user.username,
        ip=ip,
    )
    return KickResponse(detail="User kicked", connections_closed=closed)


# ── Events ───────────────────────────────────────────────────────────
@router.get("/events", response_model=list[ActivityEventOut])
async def list_events(
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    limit: int | None = Query(None),
):
    """Recent LOGIN / LOGOUT / admin actions, newest first."""
    return await activity_service.list_recent_events(
        db, activity_service.clamp_feed_limit(limit),
    )
