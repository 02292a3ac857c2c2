"""
Models package — import every model so SQLAlchemy's Base.metadata
knows about all tables (critical for `create_all` / Alembic).
"""

from app.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin
from app.models.user import User, UserRole
from app.models.activity import AuditEvent, LoginEvent, LogoutEvent, LogoutReason

__all__ = [
    "Base",
    "TimestampMixin",
    "UUIDPrimaryKeyMixin",
    "User",
    "UserRole",
    "AuditEvent",
    "LoginEvent",
    "LogoutEvent",
    "LogoutReason",
]
