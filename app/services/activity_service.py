"""
Activity service — login / logout / audit records and the admin feed.

Records written from the hot path go through `log_in_background`: they
are persisted by a detached task on a session of their own, so a failed
insert is logged and never fails the login, logout or admin action that
produced it.
"""

from collections.abc import Iterable
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.background import spawn_detached
from app.core.database import async_session_factory
from app.models.activity import AuditEvent, LoginEvent, LogoutEvent
from app.models.user import User
from app.services.session_service import as_utc


FEED_MIN_LIMIT = 20
FEED_MAX_LIMIT = 500


async def _persist(rows: list, session_factory: async_sessionmaker) -> None:
    async with session_factory() as db:
        db.add_all(rows)
        await db.commit()


def log_in_background(
    *rows: Any,
    session_factory: async_sessionmaker = async_session_factory,
) -> None:
    """Persist activity rows without making the caller wait or fail."""
    spawn_detached(
        _persist(list(rows), session_factory),
        name=f"activity:{'+'.join(type(r).__name__ for r in rows)}",
    )


def audit(
    *,
    actor: User,
    actor_ip: str,
    action: str,
    target: User | None = None,
    details: dict | None = None,
) -> AuditEvent:
    return AuditEvent(
        actor_id=actor.id,
        actor_username=actor.username,
        actor_ip=actor_ip or "",
        action=action,
        target_id=target.id if target is not None else None,
        target_username=target.username if target is not None else None,
        details=details or {},
    )


def clamp_feed_limit(limit: int | None) -> int:
    if limit is None:
        return 200
    return min(FEED_MAX_LIMIT, max(FEED_MIN_LIMIT, limit))


def _iso(value: datetime) -> str:
    return as_utc(value).isoformat(timespec="microseconds")


async def _usernames(ids: Iterable, db: AsyncSession) -> dict[str, str]:
    ids = {i for i in ids if i is not None}
    if not ids:
        return {}
    rows = await db.execute(select(User.id, User.username).where(User.id.in_(ids)))
    return {str(r.id): r.username for r in rows}


async def list_recent_events(db: AsyncSession, limit: int) -> list[dict[str, Any]]:
    """
    Merge the newest LOGIN, LOGOUT and audit records into one feed,
    newest first, at most `limit` entries.
    """
    logins = (
        await db.execute(select(LoginEvent).order_by(LoginEvent.created_at.desc()).limit(limit))
    ).scalars().all()
    logouts = (
        await db.execute(select(LogoutEvent).order_by(LogoutEvent.created_at.desc()).limit(limit))
    ).scalars().all()
    audits = (
        await db.execute(select(AuditEvent).order_by(AuditEvent.created_at.desc()).limit(limit))
    ).scalars().all()

    names = await _usernames(
        [e.user_id for e in logins] + [e.user_id for e in logouts], db,
    )

    events: list[dict[str, Any]] = []
    for e in logins:
        events.append({
            "id": str(e.id),
            "type": "LOGIN",
            "createdAt": _iso(e.created_at),
            "userId": str(e.user_id),
            "username": names.get(str(e.user_id)),
            "ip": e.ip,
        })
    for e in logouts:
        events.append({
            "id": str(e.id),
            "type": "LOGOUT",
            "createdAt": _iso(e.created_at),
            "userId": str(e.user_id),
            "username": names.get(str(e.user_id)),
            "reason": e.reason.value,
        })
    for e in audits:
        events.append({
            "id": str(e.id),
            "type": e.action,
            "createdAt": _iso(e.created_at),
            "userId": str(e.target_id) if e.target_id else None,
            "username": e.target_username,
            "actorUsername": e.actor_username,
            "ip": e.actor_ip or None,
            "metadata": e.details or {},
        })

    events.sort(key=lambda ev: ev["createdAt"], reverse=True)
    return events[:limit]
