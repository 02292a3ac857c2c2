"""
Authentication service — the login arbiter.

Handles:
- Login with single-session enforcement (grant / reject / take over)
- Logout that only clears the session the credential belongs to

Concurrency rules (every account, every role):
- At most one session at a time.  Acquisition is a compare-and-set on
  the user row (see session_service), so concurrent logins for the same
  account cannot both win.
- A held session from a previous boot epoch, or older than
  SESSION_STALE_AFTER_HOURS, does not block a login.
- A held, current, fresh session blocks a login only while its holder
  is live (has an open connection).  Otherwise the lock is presumed
  abandoned (crashed tab, closed laptop) and the new login takes over.
  The takeover is conditioned on the lock it saw, so of several logins
  racing for an abandoned lock only one wins; the others get 409.

All business logic lives here — controllers call service methods
and return the result.
"""

import logging
import secrets
from datetime import timedelta
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import boot
from app.core.config import settings
from app.core.security import create_access_token, decode_access_token, parse_user_id, verify_password
from app.models.activity import LoginEvent, LogoutEvent, LogoutReason
from app.models.base import utcnow
from app.models.user import User
from app.realtime.hub import ConnectionHub
from app.realtime.presence import PresenceCoordinator
from app.services import activity_service, session_service, user_service

logger = logging.getLogger(__name__)

SESSION_ID_BYTES = 18


def new_session_id() -> str:
    return secrets.token_hex(SESSION_ID_BYTES)


def _invalid_credentials() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid credentials",
    )


def _password_ok(user: User, password: str | None) -> bool:
    if not user.password_hash:
        return True
    return bool(password) and verify_password(password, user.password_hash)


# ── Login ────────────────────────────────────────────────────────────

async def login(
    username: str,
    password: str | None,
    *,
    ip: str,
    presence: PresenceCoordinator,
    hub: ConnectionHub,
    db: AsyncSession,
) -> dict[str, Any]:
    """
    Validate the account, acquire (or take over) the session lock and
    return a bearer credential bound to the new session id.
    """
    name = (username or "").strip()
    if not name:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Username is required")

    user = await user_service.get_user_by_username(name, db)
    if user is None or not user.is_active or not _password_ok(user, password):
        raise _invalid_credentials()

    if not settings.SECRET_KEY:
        logger.error("SECRET_KEY is not defined")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Server configuration error",
        )

    now = utcnow()
    session_id = new_session_id()
    boot_sec = boot.boot_sec()

    acquired = await session_service.try_acquire_session(
        user.id,
        session_id=session_id,
        boot_sec=boot_sec,
        now=now,
        stale_after=timedelta(hours=settings.SESSION_STALE_AFTER_HOURS),
        db=db,
    )

    took_over = False
    if not acquired:
        if presence.is_online(user.id):
            await db.rollback()
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="User already logged in",
            )
        held = await session_service.find_active_session(user.id, db)
        took_over = await session_service.take_over_session(
            user.id,
            expected_session_id=held.session_id if held else None,
            session_id=session_id,
            boot_sec=boot_sec,
            now=now,
            db=db,
        )
        if not took_over:
            # Another login replaced the lock we saw (or the account was
            # disabled) between the read and the update.
            await db.rollback()
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="User already logged in",
            )
        logger.info("Login for %s took over an abandoned session", user.username)

    await db.commit()

    access_token = create_access_token(
        user_id=user.id,
        role=user.role.value,
        username=user.username,
        session_id=session_id,
    )

    records: list = [LoginEvent(user_id=user.id, ip=ip or None, created_at=now)]
    if took_over:
        # The displaced session never logged out; record it as a takeover.
        records.insert(0, LogoutEvent(user_id=user.id, reason=LogoutReason.TAKEOVER, created_at=now))
    activity_service.log_in_background(*records)

    if took_over:
        await hub.emit_admin_event({
            "type": "LOGOUT",
            "userId": str(user.id),
            "username": user.username,
            "reason": LogoutReason.TAKEOVER.value,
        })
    await hub.emit_admin_event({
        "type": "LOGIN",
        "userId": str(user.id),
        "username": user.username,
        "ip": ip or None,
    })

    return {
        "access_token": access_token,
        "token_type": "bearer",
        "user_id": str(user.id),
        "username": user.username,
        "role": user.role.value,
    }


# ── Logout ───────────────────────────────────────────────────────────

async def logout(
    token: str,
    *,
    hub: ConnectionHub,
    db: AsyncSession,
) -> bool:
    """
    Release the session the credential was issued for.

    Disabled accounts may still log out; pre-restart credentials are
    rejected (401).  A credential whose session was already replaced
    releases nothing.
    Returns True when a session was actually cleared.
    """
    payload = decode_access_token(token)
    user_id = parse_user_id(payload)
    session_id = payload.get("sid")
    now = utcnow()

    cleared = await session_service.release_session(
        user_id, str(session_id) if session_id else None, now=now, db=db,
    )
    await db.commit()

    # Only announce a logout that actually cleared the current session.
    if cleared:
        activity_service.log_in_background(
            LogoutEvent(user_id=user_id, reason=LogoutReason.LOGOUT, created_at=now),
        )
        await hub.emit_admin_event({
            "type": "LOGOUT",
            "userId": str(user_id),
            "username": payload.get("username") or None,
        })
    return cleared
