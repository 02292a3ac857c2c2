"""
User model.

Design decisions:
- Usernames are unique ignoring case (index on lower(username)) and
  matched case-insensitively at login.
- `password_hash` is optional: admin-created accounts without a password
  log in by username alone.
- The single-session lock is embedded in the row (`session_*` columns)
  so acquiring it is one conditional UPDATE on one row.  The three
  columns are set together and cleared together; all NULL means no
  session is held.
"""

import enum
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Enum, Index, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin


class UserRole(str, enum.Enum):
    ADMIN = "admin"
    USER = "user"


class User(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    __tablename__ = "users"

    username: Mapped[str] = mapped_column(String(64), unique=True, index=True, nullable=False)
    password_hash: Mapped[str | None] = mapped_column(String(512), nullable=True)
    role: Mapped[UserRole] = mapped_column(
        Enum(UserRole, name="user_role"),
        default=UserRole.USER,
        nullable=False,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    last_login: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_logout: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # ── Single-session lock ──────────────────────────────────────────
    session_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    session_boot_sec: Mapped[int | None] = mapped_column(Integer, nullable=True)
    session_created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<User {self.username}>"


Index("uq_users_username_lower", func.lower(User.username), unique=True)
