"""
Realtime controller — the live connection every signed-in tab keeps open.

The credential comes from the `token` query parameter or an
`Authorization: Bearer` header.  Authentication failures close the
socket before it is accepted:

    4401  unauthorized (bad, expired or pre-restart credential)
    4500  server misconfigured (no signing secret)

Client messages are ignored; the connection only carries presence and
server-pushed events.
"""

import logging

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from app.core.security import ConfigurationError, CredentialError
from app.realtime.presence import PresenceCoordinator

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Realtime"])

UNAUTHORIZED_CLOSE_CODE = 4401
MISCONFIGURED_CLOSE_CODE = 4500


def _bearer(header: str | None) -> str | None:
    if not header:
        return None
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


@router.websocket("/ws")
async def live_connection(websocket: WebSocket, token: str | None = Query(None)):
    presence: PresenceCoordinator = websocket.app.state.presence
    raw = token or _bearer(websocket.headers.get("authorization"))

    try:
        identity = presence.authenticate(raw)
    except ConfigurationError:
        await websocket.close(code=MISCONFIGURED_CLOSE_CODE, reason="server_misconfigured")
        return
    except CredentialError as e:
        logger.debug("Rejected live connection: %s", e)
        await websocket.close(code=UNAUTHORIZED_CLOSE_CODE, reason="unauthorized")
        return

    await websocket.accept()
    await presence.on_connection_opened(identity, websocket)
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        await presence.on_connection_closed(identity, websocket)
