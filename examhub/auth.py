"""Bearer-token authentication.

A single :class:`TokenService` is built by ``create_app`` and kept on
``app.extensions``; it only knows the signing secret, never the database.
Flask-Login's request loader uses it to turn the ``Authorization`` header into
the current user.

Tokens carry the user's ``token_version``. Logging out or changing the password
bumps that column, which retires every token issued before.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import wraps
from typing import Any

import jwt
from flask import current_app, request
from flask_login import current_user

from .errors import AuthenticationError, PermissionDenied

ALGORITHM = "HS256"
ACCESS = "access"
REFRESH = "refresh"


@dataclass(frozen=True, slots=True)
class TokenClaims:
    user_id: int
    role: str
    expires_at: datetime
    kind: str = ACCESS
    version: int = 0

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


@dataclass(frozen=True, slots=True)
class TokenPair:
    access_token: str
    access_expires_at: datetime
    refresh_token: str
    refresh_expires_at: datetime


class TokenService:
    def __init__(
        self, secret: str, *, ttl_minutes: int = 120, refresh_ttl_minutes: int = 7 * 24 * 60
    ) -> None:
        if not secret:
            raise ValueError("A signing secret is required.")
        self._secret = secret
        self.ttl = timedelta(minutes=ttl_minutes)
        self.refresh_ttl = timedelta(minutes=refresh_ttl_minutes)

    def issue(
        self, user: Any, *, now: datetime | None = None, kind: str = ACCESS
    ) -> tuple[str, datetime]:
        issued = now or datetime.now(timezone.utc)
        if issued.tzinfo is None:
            issued = issued.replace(tzinfo=timezone.utc)
        expires = issued + (self.refresh_ttl if kind == REFRESH else self.ttl)
        payload = {
            "sub": str(user.id),
            "role": user.role,
            "typ": kind,
            "ver": user.token_version or 0,
            "iat": int(issued.timestamp()),
            "exp": int(expires.timestamp()),
        }
        token = jwt.encode(payload, self._secret, algorithm=ALGORITHM)
        return token, expires

    def issue_pair(self, user: Any, *, now: datetime | None = None) -> TokenPair:
        access, access_expires = self.issue(user, now=now)
        refresh, refresh_expires = self.issue(user, now=now, kind=REFRESH)
        return TokenPair(access, access_expires, refresh, refresh_expires)

    def decode(self, token: str, *, kind: str = ACCESS) -> TokenClaims:
        try:
            payload = jwt.decode(token, self._secret, algorithms=[ALGORITHM])
            user_id = int(payload["sub"])
            version = int(payload.get("ver", 0))
        except (jwt.PyJWTError, KeyError, ValueError, TypeError) as exc:
            raise AuthenticationError("Invalid or expired token.", code="INVALID_TOKEN") from exc
        if payload.get("typ", ACCESS) != kind:
            raise AuthenticationError("Invalid or expired token.", code="INVALID_TOKEN")
        return TokenClaims(
            user_id=user_id,
            role=payload.get("role", "user"),
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            kind=kind,
            version=version,
        )


def get_token_service() -> TokenService:
    return current_app.extensions["token_service"]


def bearer_token() -> str | None:
    header = request.headers.get("Authorization", "")
    if header.lower().startswith("bearer "):
        return header[7:].strip() or None
    return None


def admin_required(func):
    @wraps(func)
    def wrapper(*args: Any, **kwargs: Any):
        if not current_user.is_authenticated:
            raise AuthenticationError()
        if not current_user.is_admin:
            raise PermissionDenied()
        return func(*args, **kwargs)

    return wrapper


__all__ = [
    "ACCESS",
    "REFRESH",
    "TokenClaims",
    "TokenPair",
    "TokenService",
    "admin_required",
    "bearer_token",
    "get_token_service",
]
