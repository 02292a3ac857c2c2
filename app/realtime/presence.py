"""
Presence coordinator — live connections → one online/offline signal.

The coordinator is the only owner of the connection registry:

    _counts[user_id]          live connections (entry removed at zero)
    _offline_timers[user_id]  pending "went offline" task (at most one)

Disconnects are debounced: a page reload closes and reopens the socket
within milliseconds and must not read as a logout.  Only when the count
has stayed at zero for the debounce window is the user declared
offline, and then the session lock is released on a best-effort basis.

The registry lives in process memory and starts empty; after a restart
every user is offline until they reconnect.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from fastapi import Request, WebSocket
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.core.security import decode_credential
from app.models.activity import LogoutEvent, LogoutReason
from app.models.base import utcnow
from app.realtime.hub import ADMINS_ROOM, PRESENCE_SNAPSHOT, ConnectionHub, user_room
from app.services import session_service

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Identity:
    """Who is on the other end of a live connection (from the credential)."""

    user_id: str
    role: str
    username: str
    session_id: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @classmethod
    def from_claims(cls, claims: dict[str, Any]) -> "Identity":
        return cls(
            user_id=str(claims["user_id"]),
            role=str(claims.get("role") or "user"),
            username=str(claims.get("username") or ""),
            session_id=str(claims["sid"]) if claims.get("sid") else None,
        )


class PresenceCoordinator:
    def __init__(
        self,
        hub: ConnectionHub,
        session_factory: async_sessionmaker,
        *,
        debounce_seconds: float,
        dedup_window_seconds: float,
    ) -> None:
        self._hub = hub
        self._session_factory = session_factory
        self._debounce = debounce_seconds
        self._dedup_window = timedelta(seconds=dedup_window_seconds)
        self._counts: dict[str, int] = {}
        self._offline_timers: dict[str, asyncio.Task] = {}

    # ── Queries ──────────────────────────────────────────────────────

    def is_online(self, user_id: Any) -> bool:
        return self._counts.get(str(user_id), 0) > 0

    def online_user_ids(self) -> list[str]:
        return [uid for uid, n in self._counts.items() if n > 0]

    def connection_count(self, user_id: Any) -> int:
        return self._counts.get(str(user_id), 0)

    # ── Connection lifecycle ─────────────────────────────────────────

    def authenticate(self, token: str | None) -> Identity:
        """
        Validate a live-connection credential.

        Raises `CredentialError` (bad, expired or pre-restart token) or
        `ConfigurationError` (no signing secret); both are terminal.
        """
        return Identity.from_claims(decode_credential(token))

    async def on_connection_opened(self, identity: Identity, ws: WebSocket | None = None) -> None:
        uid = identity.user_id
        self._cancel_offline_timer(uid)

        if ws is not None:
            self._hub.join(ws, user_room(uid))
            if identity.is_admin:
                # Snapshot excludes this connection; its PRESENCE event follows.
                self._hub.join(ws, ADMINS_ROOM)
                await self._hub.send(ws, PRESENCE_SNAPSHOT, self.online_user_ids())

        count = self._counts.get(uid, 0) + 1
        self._counts[uid] = count

        if count == 1:
            logger.info("User %s came online", uid)
            await self._hub.emit_admin_event({"type": "PRESENCE", "userId": uid, "online": True})
        else:
            logger.debug("User %s opened connection %d", uid, count)

    async def on_connection_closed(self, identity: Identity, ws: WebSocket | None = None) -> None:
        uid = identity.user_id
        if ws is not None:
            self._hub.leave(ws)

        count = self._counts.get(uid, 0) - 1
        if count > 0:
            self._counts[uid] = count
            logger.debug("User %s closed a connection (%d remaining)", uid, count)
            return

        self._counts.pop(uid, None)
        self._cancel_offline_timer(uid)
        self._offline_timers[uid] = asyncio.get_running_loop().create_task(
            self._expire(identity), name=f"presence-offline:{uid}",
        )

    def shutdown(self) -> None:
        """Abandon pending timers.  Nothing is flushed."""
        for task in self._offline_timers.values():
            task.cancel()
        self._offline_timers.clear()
        self._counts.clear()

    # ── Debounce ─────────────────────────────────────────────────────

    def _cancel_offline_timer(self, uid: str) -> None:
        task = self._offline_timers.pop(uid, None)
        if task is not None:
            task.cancel()

    async def _expire(self, identity: Identity) -> None:
        uid = identity.user_id
        await asyncio.sleep(self._debounce)

        if self._offline_timers.get(uid) is asyncio.current_task():
            del self._offline_timers[uid]
        if self.is_online(uid):
            return

        logger.info("User %s went offline", uid)
        await self._hub.emit_admin_event({"type": "PRESENCE", "userId": uid, "online": False})

        try:
            cleared = await self._release_after_disconnect(identity)
        except Exception:
            logger.exception("Presence logout bookkeeping failed for user %s", uid)
            return
        if cleared:
            await self._hub.emit_admin_event({
                "type": "LOGOUT",
                "userId": uid,
                "username": identity.username or None,
            })

    async def _release_after_disconnect(self, identity: Identity) -> bool:
        uid = identity.user_id
        now = utcnow()
        async with self._session_factory() as db:
            last_logout = await session_service.get_last_logout(uid, db)
            if last_logout is not None and now - last_logout < self._dedup_window:
                # An explicit logout (or kick) already recorded this.
                return False
            if self.is_online(uid):
                return False

            cleared = await session_service.release_session(
                uid, identity.session_id, now=now, db=db,
            )
            if cleared and self.is_online(uid):
                # Reconnected while the release was in flight.
                await db.rollback()
                return False
            if cleared:
                db.add(LogoutEvent(
                    user_id=session_service.as_uuid(uid),
                    reason=LogoutReason.DISCONNECT,
                    created_at=now,
                ))
            await db.commit()
            return cleared


def get_presence(request: Request) -> PresenceCoordinator:
    return request.app.state.presence
