"""
Async database engine & session dependency.

One engine per process.  Request handlers receive an `AsyncSession`
through `get_db`, which commits when the handler returns and rolls back
when it raises.  Work that outlives a request (presence write-back,
force-kick bookkeeping) opens its own session from `async_session_factory`.
"""

from collections.abc import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.core.config import settings


def _engine_kwargs(url: str) -> dict:
    # In-memory SQLite (tests): one shared connection so every session
    # sees the same tables.
    if url.startswith("sqlite") and (":memory:" in url or url.endswith("://")):
        return {"poolclass": StaticPool, "connect_args": {"check_same_thread": False}}
    return {"pool_pre_ping": True}


engine = create_async_engine(
    settings.DATABASE_URL,
    echo=False,
    **_engine_kwargs(settings.DATABASE_URL),
)

async_session_factory = async_sessionmaker(engine, expire_on_commit=False)


async def get_db() -> AsyncIterator[AsyncSession]:
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
