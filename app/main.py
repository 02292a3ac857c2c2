"""
FastAPI application factory.

Assembles the app, registers all routers, and wires up lifecycle
events.  Database schema is managed by Alembic — NOT create_all.

Startup marks a new boot epoch: every credential issued by a previous
run stops working and every previously held session becomes acquirable.
The connection hub and presence coordinator are created per app and
live on `app.state`.
"""

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.controllers.admin_controller import router as admin_router
from app.controllers.auth_controller import router as auth_router
from app.controllers.realtime_controller import router as realtime_router
from app.core import boot
from app.core.config import settings
from app.core.database import async_session_factory, engine
from app.models import Base  # noqa: F401 — ensures all models are registered
from app.realtime.hub import ConnectionHub
from app.realtime.presence import PresenceCoordinator

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list,
        allow_methods=["GET", "POST", "PATCH", "DELETE"],
        allow_headers=["*"],
    )

    # ── Register routers ─────────────────────────────────────────────
    app.include_router(auth_router)
    app.include_router(admin_router)
    app.include_router(realtime_router)

    # ── Startup / Shutdown ───────────────────────────────────────────
    @app.on_event("startup")
    async def on_startup() -> None:
        """New boot epoch, fresh presence registry, optional first admin.

        NOTE: Database schema is managed by Alembic migrations.
        Run `alembic upgrade head` before starting the app.
        """
        boot.mark_boot()

        hub = ConnectionHub()
        app.state.hub = hub
        app.state.presence = PresenceCoordinator(
            hub,
            async_session_factory,
            debounce_seconds=settings.PRESENCE_OFFLINE_DEBOUNCE_MS / 1000,
            dedup_window_seconds=settings.LOGOUT_DEDUP_WINDOW_SECONDS,
        )

        if not settings.SECRET_KEY:
            logger.error("SECRET_KEY is not set; login and live connections will fail.")

        if settings.BOOTSTRAP_ADMIN_USERNAME:
            from app.services.user_service import ensure_bootstrap_admin

            await ensure_bootstrap_admin(async_session_factory)

    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        # Pending offline timers are abandoned, not flushed.
        app.state.presence.shutdown()
        await engine.dispose()
        logger.info("Database engine disposed.")

    # ── Health check ─────────────────────────────────────────────────
    @app.get("/health", tags=["Health"])
    async def health():
        return {"status": "ok"}

    return app


app = create_app()
