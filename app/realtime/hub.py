"""
Connection hub — room addressing over live WebSocket connections.

Rooms:
    admins          every connected administrator
    user:<id>       every connection of one user

Delivery is at-most-once to whoever is attached right now.  A send that
fails (socket already gone) is logged and dropped; there is no backlog
or replay.  Messages are JSON objects `{"event": <name>, "data": ...}`.
"""

import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any

from fastapi import Request, WebSocket

logger = logging.getLogger(__name__)

ADMINS_ROOM = "admins"

ADMIN_EVENT = "admin:event"
USER_EVENT = "user:event"
PRESENCE_SNAPSHOT = "admin:presence_snapshot"

KICKED_CLOSE_CODE = 4001


def user_room(user_id: Any) -> str:
    return f"user:{user_id}"


def stamp(event: dict[str, Any]) -> dict[str, Any]:
    """Copy of `event` with `at` filled in (ISO-8601 UTC) when missing."""
    return {**event, "at": event.get("at") or datetime.now(timezone.utc).isoformat()}


class ConnectionHub:
    def __init__(self) -> None:
        self._rooms: dict[str, set[WebSocket]] = defaultdict(set)
        self._memberships: dict[WebSocket, set[str]] = defaultdict(set)

    # ── Membership ───────────────────────────────────────────────────

    def join(self, ws: WebSocket, room: str) -> None:
        self._rooms[room].add(ws)
        self._memberships[ws].add(room)

    def leave(self, ws: WebSocket) -> None:
        for room in self._memberships.pop(ws, set()):
            members = self._rooms.get(room)
            if members is None:
                continue
            members.discard(ws)
            if not members:
                del self._rooms[room]

    def members(self, room: str) -> list[WebSocket]:
        return list(self._rooms.get(room, ()))

    # ── Delivery ─────────────────────────────────────────────────────

    async def send(self, ws: WebSocket, event: str, data: Any) -> bool:
        try:
            await ws.send_json({"event": event, "data": data})
            return True
        except Exception as e:
            logger.debug("Dropped %s to a closed connection: %s", event, e)
            return False

    async def broadcast(self, room: str, event: str, data: Any) -> int:
        delivered = 0
        for ws in self.members(room):
            if await self.send(ws, event, data):
                delivered += 1
        return delivered

    async def emit_admin_event(self, event: dict[str, Any]) -> int:
        return await self.broadcast(ADMINS_ROOM, ADMIN_EVENT, stamp(event))

    async def emit_user_event(self, user_id: Any, event: dict[str, Any]) -> int:
        if not user_id:
            return 0
        return await self.broadcast(user_room(user_id), USER_EVENT, stamp(event))

    async def disconnect_user(self, user_id: Any, *, code: int = KICKED_CLOSE_CODE) -> int:
        """Close every connection of one user.  Returns how many were closed."""
        closed = 0
        for ws in self.members(user_room(user_id)):
            try:
                await ws.close(code=code)
                closed += 1
            except Exception as e:
                logger.debug("Close failed for user %s: %s", user_id, e)
            self.leave(ws)
        return closed


def get_hub(request: Request) -> ConnectionHub:
    return request.app.state.hub
