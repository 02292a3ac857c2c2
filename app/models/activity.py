"""
Activity records — durable history behind the admin event feed.

Realtime admin events are fire-and-forget; these rows are what survives.
Login / logout rows are written best-effort and never block the action
they describe.
"""

import enum
import uuid
from datetime import datetime

from sqlalchemy import JSON, DateTime, Enum, ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base, UUIDPrimaryKeyMixin, utcnow


class LogoutReason(str, enum.Enum):
    LOGOUT = "logout"
    DISCONNECT = "disconnect"
    KICK = "kick"
    # Lock taken over by a new login; no real logout happened.
    TAKEOVER = "takeover"


class LoginEvent(Base, UUIDPrimaryKeyMixin):
    __tablename__ = "login_events"

    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    ip: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False, index=True
    )


class LogoutEvent(Base, UUIDPrimaryKeyMixin):
    __tablename__ = "logout_events"

    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    reason: Mapped[LogoutReason] = mapped_column(
        Enum(LogoutReason, name="logout_reason"),
        default=LogoutReason.LOGOUT,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False, index=True
    )


class AuditEvent(Base, UUIDPrimaryKeyMixin):
    """Administrator action.  Target columns are kept after the target is deleted."""

    __tablename__ = "audit_events"

    actor_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True, index=True)
    actor_username: Mapped[str] = mapped_column(String(64), nullable=False)
    actor_ip: Mapped[str] = mapped_column(String(64), default="", nullable=False)
    action: Mapped[str] = mapped_column(String(32), nullable=False)
    target_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True)
    target_username: Mapped[str | None] = mapped_column(String(64), nullable=True)
    details: Mapped[dict] = mapped_column("metadata", JSON, default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False, index=True
    )
