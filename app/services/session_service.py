"""
Session service — the single-session lock stored on the user row.

Handles:
- Reading the held session (for display / auditing)
- Acquiring the lock at login (atomic compare-and-set)
- Taking over an abandoned lock
- Releasing the lock (logout, confirmed offline) and force release (kick)

Every write is ONE conditional UPDATE keyed by user id (and, where it
matters, the expected session id).  Never read-then-write: two logins
racing for the same account must not both succeed, including across
processes sharing the database.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.user import User

_CLEARED = {
    "session_id": None,
    "session_boot_sec": None,
    "session_created_at": None,
}


@dataclass(frozen=True)
class ActiveSession:
    session_id: str
    boot_sec: int | None
    created_at: datetime | None


def as_uuid(user_id: uuid.UUID | str) -> uuid.UUID:
    return user_id if isinstance(user_id, uuid.UUID) else uuid.UUID(str(user_id))


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; everything here is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


async def find_active_session(
    user_id: uuid.UUID | str,
    db: AsyncSession,
) -> ActiveSession | None:
    """Return the held session, whatever its epoch, or None."""
    stmt = select(
        User.session_id, User.session_boot_sec, User.session_created_at,
    ).where(User.id == as_uuid(user_id))
    row = (await db.execute(stmt)).one_or_none()
    if row is None or not row.session_id:
        return None
    return ActiveSession(
        session_id=row.session_id,
        boot_sec=row.session_boot_sec,
        created_at=as_utc(row.session_created_at),
    )


async def try_acquire_session(
    user_id: uuid.UUID | str,
    *,
    session_id: str,
    boot_sec: int,
    now: datetime,
    stale_after: timedelta,
    db: AsyncSession,
) -> bool:
    """
    Compare-and-set the lock.

    Succeeds only for an active account whose lock is free: no session,
    a session from another boot epoch, or one older than `stale_after`.
    Returns True when this call now holds the lock.
    """
    cutoff = now - stale_after
    stmt = (
        update(User)
        .where(
            User.id == as_uuid(user_id),
            User.is_active == True,  # noqa: E712
            or_(
                User.session_id.is_(None),
                User.session_boot_sec.is_(None),
                User.session_boot_sec != boot_sec,
                User.session_created_at < cutoff,
            ),
        )
        .values(
            session_id=session_id,
            session_boot_sec=boot_sec,
            session_created_at=now,
            last_login=now,
        )
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    return result.rowcount == 1


async def take_over_session(
    user_id: uuid.UUID | str,
    *,
    expected_session_id: str | None,
    session_id: str,
    boot_sec: int,
    now: datetime,
    db: AsyncSession,
) -> bool:
    """
    Overwrite an abandoned lock.

    Applies only while `expected_session_id` (the lock the caller saw,
    or None for no lock) is still the one held, so of several logins
    racing to take over the same lock at most one wins.  Still refuses
    inactive accounts.
    """
    held = (
        User.session_id == str(expected_session_id)
        if expected_session_id
        else User.session_id.is_(None)
    )
    stmt = (
        update(User)
        .where(
            User.id == as_uuid(user_id),
            User.is_active == True,  # noqa: E712
            held,
        )
        .values(
            session_id=session_id,
            session_boot_sec=boot_sec,
            session_created_at=now,
            last_login=now,
        )
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    return result.rowcount == 1


async def release_session(
    user_id: uuid.UUID | str,
    expected_session_id: str | None,
    *,
    now: datetime,
    db: AsyncSession,
) -> bool:
    """
    Clear the lock and stamp `last_logout`.

    With `expected_session_id` the clear only applies while that session
    is still the one held, so a late logout cannot clobber a newer
    session.  Returns True when a row changed.
    """
    conditions = [User.id == as_uuid(user_id)]
    if expected_session_id:
        conditions.append(User.session_id == str(expected_session_id))
    stmt = (
        update(User)
        .where(*conditions)
        .values(last_logout=now, **_CLEARED)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    return result.rowcount > 0


async def force_release(
    user_id: uuid.UUID | str,
    *,
    now: datetime,
    db: AsyncSession,
) -> bool:
    """Clear any held lock (admin kick).  Returns True if one was held."""
    stmt = (
        update(User)
        .where(
            User.id == as_uuid(user_id),
            User.session_id.is_not(None),
        )
        .values(last_logout=now, **_CLEARED)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    return result.rowcount > 0


async def get_last_logout(
    user_id: uuid.UUID | str,
    db: AsyncSession,
) -> datetime | None:
    stmt = select(User.last_logout).where(User.id == as_uuid(user_id))
    return as_utc((await db.execute(stmt)).scalar_one_or_none())
