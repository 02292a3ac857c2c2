"""
Pydantic schemas for request / response serialization.

Kept in a single file for now — split per-domain when it grows.
Schemas are deliberately decoupled from SQLAlchemy models so the
API surface can evolve independently of the DB layer.
"""

import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from app.models.user import UserRole


# ── Auth ─────────────────────────────────────────────────────────────
class LoginRequest(BaseModel):
    username: str
    password: str | None = None


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user_id: str
    username: str
    role: str


# ── User ─────────────────────────────────────────────────────────────
class UserOut(BaseModel):
    id: uuid.UUID
    username: str
    role: UserRole
    is_active: bool
    last_login: datetime | None = None
    last_logout: datetime | None = None
    created_at: datetime

    model_config = {"from_attributes": True}


class AdminUserOut(UserOut):
    online: bool = False
    has_session: bool = False


class CreateUserRequest(BaseModel):
    username: str = Field(min_length=1, max_length=64)
    role: UserRole = UserRole.USER
    is_active: bool = True
    password: str | None = Field(default=None, min_length=8)


class UpdateUserRequest(BaseModel):
    username: str | None = Field(default=None, max_length=64)
    role: UserRole | None = None
    is_active: bool | None = None


# ── Presence / events ────────────────────────────────────────────────
class PresenceOut(BaseModel):
    online: list[str]


class KickResponse(BaseModel):
    detail: str
    connections_closed: int


class ActivityEventOut(BaseModel):
    id: str
    type: str
    createdAt: str
    userId: str | None = None
    username: str | None = None
    ip: str | None = None
    reason: str | None = None
    actorUsername: str | None = None
    metadata: dict[str, Any] | None = None


# ── Generic ──────────────────────────────────────────────────────────
class MessageResponse(BaseModel):
    detail: str
