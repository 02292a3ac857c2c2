"""
User service — account CRUD, protected accounts, force-kick and the
bootstrap admin.

Force-kick ordering is disconnect first, ledger second: the kicked
client sees its live connection drop (a hard failure) before its
session disappears, never a silent session loss mid-request.
"""

import logging
import uuid

from fastapi import HTTPException, status
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.background import spawn_detached
from app.core.config import settings
from app.core.security import hash_password
from app.models.activity import LogoutEvent, LogoutReason
from app.models.base import utcnow
from app.models.user import User, UserRole
from app.realtime.hub import ConnectionHub
from app.services import session_service

logger = logging.getLogger(__name__)


# ── Protected accounts ───────────────────────────────────────────────


def is_protected_username(username: str | None) -> bool:
    return bool(username) and username.strip().lower() in settings.protected_username_set


def _hidden_from(actor: User | None) -> set[str]:
    if actor is not None and is_protected_username(actor.username):
        return set()
    return settings.protected_username_set


def ensure_may_manage(actor: User, *usernames: str | None) -> None:
    """
    Only a protected account may create, change, delete or kick a
    protected one (or rename someone to a protected name).
    """
    if is_protected_username(actor.username):
        return
    if any(is_protected_username(name) for name in usernames):
        logger.warning("%s was refused access to a protected account", actor.username)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed")


# ── Accounts ─────────────────────────────────────────────────────────


async def get_user_by_id(
    user_id: uuid.UUID,
    db: AsyncSession,
) -> User:
    user = await db.get(User, user_id)
    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return user


async def get_user_by_username(username: str, db: AsyncSession) -> User | None:
    """Case-insensitive exact match."""
    stmt = select(User).where(func.lower(User.username) == username.strip().lower())
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def list_users(
    db: AsyncSession,
    skip: int = 0,
    limit: int = 50,
    *,
    actor: User | None = None,
) -> list[User]:
    """Newest first.  Protected accounts are left out unless `actor` is one."""
    stmt = select(User)
    hidden = _hidden_from(actor)
    if hidden:
        stmt = stmt.where(func.lower(User.username).not_in(hidden))
    stmt = stmt.order_by(User.created_at.desc()).offset(skip).limit(limit)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def _ensure_username_free(
    username: str,
    db: AsyncSession,
    *,
    exclude_id: uuid.UUID | None = None,
) -> None:
    existing = await get_user_by_username(username, db)
    if existing is not None and existing.id != exclude_id:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="User already exists")


async def _flush_unique(db: AsyncSession) -> None:
    # A concurrent create that passed the lookup fails on lower(username).
    try:
        await db.flush()
    except IntegrityError:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="User already exists")


async def create_user(
    *,
    username: str,
    role: UserRole,
    is_active: bool,
    password: str | None,
    db: AsyncSession,
) -> User:
    name = username.strip()
    if not name:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Username is required")
    await _ensure_username_free(name, db)

    user = User(
        id=uuid.uuid4(),
        username=name,
        role=role,
        is_active=is_active,
        password_hash=hash_password(password) if password else None,
    )
    db.add(user)
    await _flush_unique(db)
    return user


async def update_user(
    user: User,
    *,
    db: AsyncSession,
    is_active: bool | None = None,
    role: UserRole | None = None,
    username: str | None = None,
) -> dict[str, dict]:
    """Apply the given changes; return `{field: {"from": old, "to": new}}`."""
    changes: dict[str, dict] = {}

    if is_active is not None and is_active != user.is_active:
        changes["isActive"] = {"from": user.is_active, "to": is_active}
        user.is_active = is_active

    if role is not None and role != user.role:
        changes["role"] = {"from": user.role.value, "to": role.value}
        user.role = role

    if username is not None:
        name = username.strip()
        if not name:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Username is required")
        if name != user.username:
            await _ensure_username_free(name, db, exclude_id=user.id)
            changes["username"] = {"from": user.username, "to": name}
            user.username = name

    await _flush_unique(db)
    return changes


async def delete_user(user: User, db: AsyncSession) -> None:
    await db.delete(user)
    await db.flush()


# ── Force-kick ───────────────────────────────────────────────────────


async def _release_after_kick(
    user_id: uuid.UUID,
    session_factory: async_sessionmaker,
) -> None:
    now = utcnow()
    async with session_factory() as db:
        held = await session_service.force_release(user_id, now=now, db=db)
        if held:
            db.add(LogoutEvent(user_id=user_id, reason=LogoutReason.KICK, created_at=now))
        await db.commit()
    logger.info("Kick of user %s cleared session: %s", user_id, held)


async def kick_user(
    user_id: uuid.UUID,
    *,
    reason: str,
    hub: ConnectionHub,
    session_factory: async_sessionmaker,
    username: str | None = None,
    ip: str | None = None,
) -> int:
    """
    Force a user out: notify, disconnect every live connection, then
    clear the session lock in a detached task.  Returns how many
    connections were closed.
    """
    await hub.emit_user_event(user_id, {"type": "FORCE_LOGOUT", "reason": reason})
    closed = await hub.disconnect_user(user_id)
    await hub.emit_admin_event({
        "type": "KICKED",
        "userId": str(user_id),
        "username": username,
        "reason": reason,
        "ip": ip,
    })
    spawn_detached(
        _release_after_kick(user_id, session_factory),
        name=f"kick-release:{user_id}",
    )
    return closed


# ── Bootstrap ────────────────────────────────────────────────────────


async def ensure_bootstrap_admin(
    session_factory: async_sessionmaker,
    *,
    username: str | None = None,
    password: str | None = None,
) -> User | None:
    """
    Create the first admin if no account with that username exists.

    Idempotent: an existing account is left untouched.  Returns the new
    user, or None when nothing was created.
    """
    username = (username if username is not None else settings.BOOTSTRAP_ADMIN_USERNAME).strip()
    password = password if password is not None else settings.BOOTSTRAP_ADMIN_PASSWORD
    if not username:
        return None

    async with session_factory() as db:
        if await get_user_by_username(username, db) is not None:
            logger.debug("Bootstrap admin '%s' already exists", username)
            return None
        user = await create_user(
            username=username,
            role=UserRole.ADMIN,
            is_active=True,
            password=password or None,
            db=db,
        )
        await db.commit()
    logger.warning("Bootstrap admin user created: username=%s", user.username)
    return user
