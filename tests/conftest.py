"""Pytest fixtures: app client on a throwaway SQLite file, DB helpers."""
import os
import tempfile
import uuid
from datetime import datetime

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

# Must be set before the app (and its settings / engine) is imported.
_DB_DIR = tempfile.mkdtemp(prefix="chat-presence-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_DB_DIR}/test.db")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("PRESENCE_OFFLINE_DEBOUNCE_MS", "100")
os.environ.setdefault("LOGOUT_DEDUP_WINDOW_SECONDS", "4")

from sqlalchemy import update  # noqa: E402
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from app.core.background import drain_detached  # noqa: E402
from app.core.database import async_session_factory, engine  # noqa: E402
from app.core.security import hash_password  # noqa: E402
from app.main import app  # noqa: E402
from app.models import Base, User, UserRole  # noqa: E402


async def reset_schema() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)


async def _insert_user(username: str, role: UserRole, password: str | None, is_active: bool) -> str:
    async with async_session_factory() as db:
        user = User(
            id=uuid.uuid4(),
            username=username,
            role=role,
            is_active=is_active,
            password_hash=hash_password(password) if password else None,
        )
        db.add(user)
        await db.commit()
        return str(user.id)


async def _load_user(user_id: str) -> User | None:
    async with async_session_factory() as db:
        return await db.get(User, uuid.UUID(user_id))


async def _set_session_created_at(user_id: str, value: datetime) -> None:
    async with async_session_factory() as db:
        await db.execute(
            update(User).where(User.id == uuid.UUID(user_id)).values(session_created_at=value)
        )
        await db.commit()


@pytest.fixture
def client():
    """TestClient with startup/shutdown run and an empty schema."""
    with TestClient(app) as c:
        c.portal.call(reset_schema)
        yield c
        c.portal.call(drain_detached)


@pytest.fixture
def create_user(client):
    """create_user("alice", role=UserRole.ADMIN, password=None, is_active=True) -> id"""

    def _create(username, role=UserRole.USER, password=None, is_active=True):
        return client.portal.call(_insert_user, username, role, password, is_active)

    return _create


@pytest.fixture
def load_user(client):
    def _load(user_id):
        return client.portal.call(_load_user, user_id)

    return _load


@pytest.fixture
def age_session(client):
    def _age(user_id, value):
        client.portal.call(_set_session_created_at, user_id, value)

    return _age


@pytest.fixture
def drain(client):
    """Wait for detached bookkeeping (activity rows, kick release)."""

    def _drain():
        client.portal.call(drain_detached)

    return _drain


@pytest.fixture
def login(client):
    def _login(username, password=None):
        body = {"username": username}
        if password is not None:
            body["password"] = password
        return client.post("/api/login", json=body)

    return _login


def bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def auth_headers():
    return bearer


@pytest_asyncio.fixture
async def session_factory():
    """Private in-memory database for coroutine-level tests (no app)."""
    test_engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(test_engine, expire_on_commit=False)
    await drain_detached()
    await test_engine.dispose()


@pytest_asyncio.fixture
async def seed_user(session_factory):
    """await seed_user("ann", session_id="s1", session_boot_sec=1, ...) -> uuid"""

    async def _seed(username="ann", **fields):
        async with session_factory() as db:
            fields.setdefault("role", UserRole.USER)
            user = User(id=uuid.uuid4(), username=username, **fields)
            db.add(user)
            await db.commit()
            return user.id

    return _seed
