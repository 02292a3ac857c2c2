"""
One-time bootstrap script — creates the first ADMIN user.

Usage:
    uv run python -m app.scripts.create_admin

You only need this ONCE (or set BOOTSTRAP_ADMIN_USERNAME and let the
app do it on startup).  After the first admin exists, all other
accounts are created from the admin API.
"""

import asyncio
import getpass

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from app.core.config import settings
from app.services.user_service import ensure_bootstrap_admin


async def create_admin() -> None:
    engine = create_async_engine(settings.DATABASE_URL, echo=False)
    session_factory = async_sessionmaker(engine, expire_on_commit=False)

    # ── Collect input ────────────────────────────────────────────────
    print("\n🔧  Chat Presence Backend — First Admin Setup\n")
    username = input("  Admin username: ").strip()
    password = getpass.getpass("  Password (empty = username-only login): ")
    if password:
        confirm = getpass.getpass("  Confirm:        ")
        if password != confirm:
            print("\n❌  Passwords do not match.")
            await engine.dispose()
            return

    if not username:
        print("\n❌  Username is required.")
        await engine.dispose()
        return

    try:
        admin_user = await ensure_bootstrap_admin(
            session_factory, username=username, password=password,
        )
    finally:
        await engine.dispose()

    if admin_user is None:
        print(f"\n❌  User '{username}' already exists.")
        return

    print("\n✅  Admin user created successfully!")
    print(f"    ID:       {admin_user.id}")
    print(f"    Username: {admin_user.username}")
    print("    Role:     admin")
    print("\n   You can now log in via POST /api/login\n")


if __name__ == "__main__":
    asyncio.run(create_admin())
