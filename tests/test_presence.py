import asyncio

import pytest
import pytest_asyncio
from sqlalchemy import select

from app.core import boot
from app.core.background import drain_detached
from app.core.config import settings
from app.core.security import ConfigurationError, CredentialError, create_access_token
from app.models import LogoutEvent, LogoutReason, User
from app.models.base import utcnow
from app.realtime.hub import ADMINS_ROOM, KICKED_CLOSE_CODE, ConnectionHub, user_room
from app.realtime.presence import Identity, PresenceCoordinator
from app.services import session_service, user_service

DEBOUNCE = 0.1
SETTLE = DEBOUNCE + 0.2


class FakeWebSocket:
    """Records what the hub sends; optionally runs a hook when closed."""

    def __init__(self, on_close=None):
        self.sent = []
        self.close_code = None
        self._on_close = on_close

    async def send_json(self, data):
        if self.close_code is not None:
            raise RuntimeError("socket closed")
        self.sent.append(data)

    async def close(self, code=1000, reason=None):
        if self._on_close is not None:
            await self._on_close()
        self.close_code = code

    def events(self, name="admin:event"):
        return [m["data"] for m in self.sent if m["event"] == name]


@pytest_asyncio.fixture
async def hub():
    return ConnectionHub()


@pytest_asyncio.fixture
async def watcher(hub):
    ws = FakeWebSocket()
    hub.join(ws, ADMINS_ROOM)
    return ws


@pytest_asyncio.fixture
async def presence(hub, session_factory):
    coordinator = PresenceCoordinator(
        hub, session_factory, debounce_seconds=DEBOUNCE, dedup_window_seconds=4,
    )
    yield coordinator
    coordinator.shutdown()


def _presence_events(ws):
    return [(e["userId"], e["online"]) for e in ws.events() if e["type"] == "PRESENCE"]


async def _row(factory, user_id) -> User:
    async with factory() as db:
        return (await db.execute(select(User).where(User.id == user_id))).scalar_one()


async def _logout_reasons(factory, user_id) -> list[LogoutReason]:
    async with factory() as db:
        rows = await db.execute(select(LogoutEvent.reason).where(LogoutEvent.user_id == user_id))
        return list(rows.scalars())


# ── Registry ─────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_online_announced_once_per_user(presence, watcher, seed_user):
    uid = await seed_user(session_id="s1")
    me = Identity(user_id=str(uid), role="user", username="ann", session_id="s1")

    await presence.on_connection_opened(me, FakeWebSocket())
    await presence.on_connection_opened(me, FakeWebSocket())

    assert presence.is_online(uid)
    assert presence.connection_count(uid) == 2
    assert presence.online_user_ids() == [str(uid)]
    assert _presence_events(watcher) == [(str(uid), True)]


@pytest.mark.asyncio
async def test_admin_connection_receives_snapshot(presence, hub):
    other = Identity(user_id="u-1", role="user", username="ann")
    admin = Identity(user_id="u-2", role="admin", username="root")
    await presence.on_connection_opened(other)

    admin_ws = FakeWebSocket()
    await presence.on_connection_opened(admin, admin_ws)

    assert admin_ws.sent[0] == {"event": "admin:presence_snapshot", "data": ["u-1"]}
    assert _presence_events(admin_ws) == [("u-2", True)]
    assert admin_ws in hub.members(ADMINS_ROOM)
    assert admin_ws in hub.members(user_room("u-2"))


@pytest.mark.asyncio
async def test_closing_an_unknown_connection_does_not_go_negative(presence):
    ghost = Identity(user_id="u-9", role="user", username="ghost")
    await presence.on_connection_closed(ghost)
    assert presence.connection_count("u-9") == 0
    assert not presence.is_online("u-9")


# ── Debounce ─────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_reconnect_within_window_is_silent(presence, watcher, session_factory, seed_user):
    uid = await seed_user(session_id="s1")
    me = Identity(user_id=str(uid), role="user", username="ann", session_id="s1")

    ws = FakeWebSocket()
    await presence.on_connection_opened(me, ws)
    await presence.on_connection_closed(me, ws)
    await asyncio.sleep(DEBOUNCE / 4)
    await presence.on_connection_opened(me, FakeWebSocket())
    await asyncio.sleep(SETTLE)

    assert _presence_events(watcher) == [(str(uid), True)]
    assert (await _row(session_factory, uid)).session_id == "s1"
    assert await _logout_reasons(session_factory, uid) == []


@pytest.mark.asyncio
async def test_offline_after_window_releases_session(presence, watcher, session_factory, seed_user):
    uid = await seed_user(session_id="s1")
    me = Identity(user_id=str(uid), role="user", username="ann", session_id="s1")

    ws = FakeWebSocket()
    await presence.on_connection_opened(me, ws)
    await presence.on_connection_closed(me, ws)
    await asyncio.sleep(SETTLE)

    assert _presence_events(watcher) == [(str(uid), True), (str(uid), False)]
    logouts = [e for e in watcher.events() if e["type"] == "LOGOUT"]
    assert len(logouts) == 1
    assert logouts[0]["username"] == "ann"

    row = await _row(session_factory, uid)
    assert row.session_id is None
    assert row.last_logout is not None
    assert await _logout_reasons(session_factory, uid) == [LogoutReason.DISCONNECT]


@pytest.mark.asyncio
async def test_many_connections_closing_yield_one_offline(presence, watcher, session_factory, seed_user):
    uid = await seed_user(session_id="s1")
    me = Identity(user_id=str(uid), role="user", username="ann", session_id="s1")
    sockets = [FakeWebSocket() for _ in range(3)]

    for ws in sockets:
        await presence.on_connection_opened(me, ws)
    for ws in sockets:
        await presence.on_connection_closed(me, ws)
    await asyncio.sleep(SETTLE)

    assert _presence_events(watcher) == [(str(uid), True), (str(uid), False)]
    assert await _logout_reasons(session_factory, uid) == [LogoutReason.DISCONNECT]


@pytest.mark.asyncio
async def test_recent_logout_is_not_recorded_twice(presence, watcher, session_factory, seed_user):
    uid = await seed_user(last_logout=utcnow())
    me = Identity(user_id=str(uid), role="user", username="ann", session_id="s1")

    await presence.on_connection_opened(me)
    await presence.on_connection_closed(me)
    await asyncio.sleep(SETTLE)

    assert (str(uid), False) in _presence_events(watcher)
    assert not [e for e in watcher.events() if e["type"] == "LOGOUT"]
    assert await _logout_reasons(session_factory, uid) == []


@pytest.mark.asyncio
async def test_disconnect_never_clears_a_newer_session(presence, watcher, session_factory, seed_user):
    uid = await seed_user(session_id="s2")
    stale = Identity(user_id=str(uid), role="user", username="ann", session_id="s1")

    await presence.on_connection_opened(stale)
    await presence.on_connection_closed(stale)
    await asyncio.sleep(SETTLE)

    assert (str(uid), False) in _presence_events(watcher)
    assert not [e for e in watcher.events() if e["type"] == "LOGOUT"]
    assert (await _row(session_factory, uid)).session_id == "s2"


@pytest.mark.asyncio
async def test_reconnect_during_release_keeps_the_session(
    presence, watcher, session_factory, seed_user, monkeypatch,
):
    uid = await seed_user(session_id="s1")
    me = Identity(user_id=str(uid), role="user", username="ann", session_id="s1")
    real_release = session_service.release_session

    async def release_then_reconnect(*args, **kwargs):
        cleared = await real_release(*args, **kwargs)
        await presence.on_connection_opened(me)
        return cleared

    monkeypatch.setattr(session_service, "release_session", release_then_reconnect)

    await presence.on_connection_opened(me)
    await presence.on_connection_closed(me)
    await asyncio.sleep(SETTLE)

    assert presence.is_online(uid)
    assert not [e for e in watcher.events() if e["type"] == "LOGOUT"]
    assert (await _row(session_factory, uid)).session_id == "s1"
    assert await _logout_reasons(session_factory, uid) == []


@pytest.mark.asyncio
async def test_shutdown_abandons_pending_offline(presence, watcher, session_factory, seed_user):
    uid = await seed_user(session_id="s1")
    me = Identity(user_id=str(uid), role="user", username="ann", session_id="s1")

    await presence.on_connection_opened(me)
    await presence.on_connection_closed(me)
    presence.shutdown()
    await asyncio.sleep(SETTLE)

    assert _presence_events(watcher) == [(str(uid), True)]
    assert (await _row(session_factory, uid)).session_id == "s1"


# ── Credentials ──────────────────────────────────────────────────────


def _token(**overrides):
    return create_access_token(
        user_id=overrides.get("user_id", "00000000-0000-0000-0000-000000000001"),
        role=overrides.get("role", "admin"),
        username=overrides.get("username", "root"),
        session_id=overrides.get("session_id", "s1"),
    )


@pytest.mark.asyncio
async def test_authenticate_returns_identity(presence, monkeypatch):
    monkeypatch.setattr(boot, "_boot_sec", boot.now_sec() - 10)

    identity = presence.authenticate(_token())

    assert identity.user_id == "00000000-0000-0000-0000-000000000001"
    assert identity.is_admin
    assert identity.username == "root"
    assert identity.session_id == "s1"


@pytest.mark.asyncio
async def test_authenticate_rejects_token_from_previous_boot(presence, monkeypatch):
    token = _token()
    monkeypatch.setattr(boot, "_boot_sec", boot.now_sec() + 10)

    with pytest.raises(CredentialError):
        presence.authenticate(token)


@pytest.mark.asyncio
async def test_authenticate_without_secret_is_configuration_error(presence, monkeypatch):
    token = _token()
    monkeypatch.setattr(settings, "SECRET_KEY", "")

    with pytest.raises(ConfigurationError):
        presence.authenticate(token)


# ── Force-kick ───────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_kick_disconnects_before_releasing_session(hub, watcher, session_factory, seed_user):
    uid = await seed_user(session_id="s1", session_boot_sec=1)
    held_at_close = []

    async def record_session():
        async with session_factory() as db:
            held_at_close.append(await session_service.find_active_session(uid, db))

    ws = FakeWebSocket(on_close=record_session)
    hub.join(ws, user_room(uid))

    closed = await user_service.kick_user(
        uid, reason="kicked", hub=hub, session_factory=session_factory, username="ann",
    )
    await drain_detached()

    assert closed == 1
    assert ws.events("user:event")[0]["type"] == "FORCE_LOGOUT"
    assert ws.close_code == KICKED_CLOSE_CODE
    assert held_at_close[0].session_id == "s1"
    assert hub.members(user_room(uid)) == []

    kicked = [e for e in watcher.events() if e["type"] == "KICKED"]
    assert kicked[0]["userId"] == str(uid)
    assert kicked[0]["reason"] == "kicked"

    assert (await _row(session_factory, uid)).session_id is None
    assert await _logout_reasons(session_factory, uid) == [LogoutReason.KICK]


@pytest.mark.asyncio
async def test_kick_survives_a_dead_socket(hub, session_factory, seed_user):
    uid = await seed_user(session_id="s1", session_boot_sec=1)

    class DeadSocket(FakeWebSocket):
        async def close(self, code=1000, reason=None):
            raise RuntimeError("already gone")

    hub.join(DeadSocket(), user_room(uid))

    closed = await user_service.kick_user(
        uid, reason="kicked", hub=hub, session_factory=session_factory,
    )
    await drain_detached()

    assert closed == 0
    assert (await _row(session_factory, uid)).session_id is None
