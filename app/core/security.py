"""
Password hashing & JWT helpers.

- Passwords are hashed with bcrypt directly (passlib is unmaintained
  and broken with bcrypt>=4.1).  Accounts created without a password
  log in by username alone.
- JWTs carry user_id, role, username, session id (`sid`) and `iat`.
- Token verification validates against the single-session lock on the
  user row on EVERY request (hybrid stateful JWT):
    * tokens issued before the current boot epoch are rejected, which
      forces a re-login after every restart;
    * a token whose `sid` no longer matches the held session has been
      superseded (logout, kick, takeover) and is rejected.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

import bcrypt
from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import boot
from app.core.config import settings
from app.core.database import get_db
from app.models.user import User

logger = logging.getLogger(__name__)


class CredentialError(Exception):
    """Bad, expired or pre-restart credential.  Terminal; re-authenticate."""


class ConfigurationError(Exception):
    """The signing secret is not configured."""


# ── Password hashing ────────────────────────────────────────────────


def hash_password(plain: str) -> str:
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))


# ── JWT ──────────────────────────────────────────────────────────────
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/login")


def _secret() -> str:
    if not settings.SECRET_KEY:
        logger.error("SECRET_KEY is not configured")
        raise ConfigurationError("SECRET_KEY is not configured")
    return settings.SECRET_KEY


def create_access_token(
    *,
    user_id: uuid.UUID | str,
    role: str,
    username: str,
    session_id: str,
    expires_delta: timedelta | None = None,
) -> str:
    issued_at = boot.now_sec()
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    payload: dict[str, Any] = {
        "sub": str(user_id),
        "user_id": str(user_id),
        "role": role,
        "username": username,
        "sid": session_id,
        "iat": issued_at,
        "exp": expire,
    }
    return jwt.encode(payload, _secret(), algorithm=settings.JWT_ALGORITHM)


def decode_credential(token: str | None) -> dict[str, Any]:
    """
    Verify a bearer token and return its claims.

    Raises `CredentialError` for a missing, malformed or expired token, or one
    issued before the current boot epoch.
    Raises `ConfigurationError` when no secret is configured.
    """
    secret = _secret()
    if not token:
        raise CredentialError("missing token")
    try:
        payload = jwt.decode(token, secret, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as e:
        raise CredentialError(str(e)) from e

    if not payload.get("user_id"):
        raise CredentialError("token has no user_id")
    issued_at = payload.get("iat")
    if not isinstance(issued_at, int) or issued_at < boot.boot_sec():
        raise CredentialError("token predates the current boot epoch")
    return payload


def decode_access_token(token: str) -> dict[str, Any]:
    """HTTP flavour of `decode_credential`: raises HTTPException on failure."""
    try:
        return decode_credential(token)
    except ConfigurationError:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Server configuration error",
        )
    except CredentialError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Session expired",
            headers={"WWW-Authenticate": "Bearer"},
        )


def parse_user_id(payload: dict[str, Any]) -> uuid.UUID:
    try:
        return uuid.UUID(str(payload.get("user_id")))
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
            headers={"WWW-Authenticate": "Bearer"},
        )


# ── Per-request session validation ──────────────────────────────────


async def get_current_user_token(
    token: str = Depends(oauth2_scheme),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    """
    FastAPI dependency — decodes the JWT **and** validates it against
    the single-session lock stored on the user row.

    Checks performed on every protected request:
      1. JWT signature & expiry.
      2. Issued at or after the current boot epoch.
      3. User exists (401) and is active (403).
      4. Token `sid` equals the session currently held.
    """
    payload = decode_access_token(token)
    user = await db.get(User, parse_user_id(payload))

    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Account disabled",
        )

    token_sid = str(payload.get("sid") or "")
    if not token_sid or not user.session_id or token_sid != user.session_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Session expired",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return payload
