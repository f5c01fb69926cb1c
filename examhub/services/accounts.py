"""Accounts: registration, credential checks, token sessions and user administration."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from flask import current_app
from flask_sqlalchemy.pagination import Pagination
from sqlalchemy import or_

from .. import db
from ..auth import REFRESH, get_token_service
from ..errors import (
    AccountExists,
    AuthenticationError,
    TooManyAttempts,
    UserNotFound,
    ValidationError,
)
from ..models import USER_ROLES, User, utcnow
from .persistence import commit_or_fail
from .throttle import LOGIN_SCOPE, current_window

logger = logging.getLogger(__name__)

EMAIL_REGEX = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MIN_PASSWORD_LENGTH = 6


@dataclass(slots=True)
class UserUpdate:
    """Fields to change on a user; ``None`` leaves a field alone."""

    email: str | None = None
    username: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    role: str | None = None
    is_active: bool | None = None


def _normalise_email(email: str | None) -> str:
    return (email or "").strip().lower()


def _check_email(email: str) -> str:
    email = _normalise_email(email)
    if not EMAIL_REGEX.match(email):
        raise ValidationError("A valid email address is required.")
    return email


def _check_username(username: str | None) -> str:
    username = (username or "").strip()
    if not 3 <= len(username) <= 50:
        raise ValidationError("Username must be between 3 and 50 characters.")
    return username


def _check_password(password: str | None) -> str:
    if len(password or "") < MIN_PASSWORD_LENGTH:
        raise ValidationError(
            f"Password must be at least {MIN_PASSWORD_LENGTH} characters long."
        )
    return password


def register_user(
    *,
    email: str,
    username: str,
    password: str,
    first_name: str = "",
    last_name: str = "",
    role: str = "user",
) -> User:
    email = _check_email(email)
    username = _check_username(username)
    _check_password(password)

    existing = User.query.filter(or_(User.email == email, User.username == username)).first()
    if existing:
        raise AccountExists()

    user = User(
        email=email,
        username=username,
        first_name=(first_name or "").strip(),
        last_name=(last_name or "").strip(),
        role=role,
        is_active=True,
    )
    user.set_password(password)
    db.session.add(user)
    commit_or_fail("create user")
    logger.info("User registered", extra={"user_id": user.id, "role": role})
    return user


def authenticate(email: str, password: str, *, now: datetime | None = None) -> User:
    """Return the active user for these credentials.

    Failed attempts are counted per email; once the configured limit is reached
    within the window every attempt is refused until the window rolls over.
    """

    email = _normalise_email(email)
    if not email or not password:
        raise ValidationError("Email and password are required.")

    now = now or utcnow()
    window = current_window(
        LOGIN_SCOPE,
        email,
        length=timedelta(minutes=current_app.config["LOGIN_WINDOW_MINUTES"]),
        now=now,
    )
    if window.attempt_count >= current_app.config["LOGIN_ATTEMPT_LIMIT"]:
        commit_or_fail("record login attempt")
        raise TooManyAttempts()

    user = User.query.filter_by(email=email).first()
    if not user or not user.is_active or not user.check_password(password):
        window.attempt_count += 1
        commit_or_fail("record login attempt")
        raise AuthenticationError("Invalid credentials.", code="INVALID_CREDENTIALS")

    window.attempt_count = 0
    window.window_started_at = now
    user.last_login_at = now
    commit_or_fail("record login")
    logger.info("Login success", extra={"user_id": user.id})
    return user


def refresh_session(refresh_token: str) -> User:
    """Resolve a refresh token to its still-valid, active user."""

    if not refresh_token:
        raise ValidationError("refreshToken is required.")
    try:
        claims = get_token_service().decode(refresh_token, kind=REFRESH)
    except AuthenticationError as exc:
        raise AuthenticationError(
            "Invalid or expired refresh token.", code="INVALID_REFRESH_TOKEN"
        ) from exc
    user = db.session.get(User, claims.user_id)
    if not user or not user.is_active or user.token_version != claims.version:
        raise AuthenticationError(
            "Invalid or expired refresh token.", code="INVALID_REFRESH_TOKEN"
        )
    return user


def revoke_tokens(user: User) -> None:
    user.token_version = (user.token_version or 0) + 1
    commit_or_fail("revoke tokens", user_id=user.id)
    logger.info("Tokens revoked", extra={"user_id": user.id})


def change_password(user: User, current_password: str, new_password: str) -> User:
    if not user.check_password(current_password or ""):
        raise ValidationError("Current password is incorrect.", code="INVALID_PASSWORD")
    user.set_password(_check_password(new_password))
    user.token_version = (user.token_version or 0) + 1
    commit_or_fail("change password", user_id=user.id)
    logger.info("Password changed", extra={"user_id": user.id})
    return user


def _ensure_unique(user: User, *, email: str | None, username: str | None) -> None:
    if email and User.query.filter(User.email == email, User.id != user.id).first():
        raise AccountExists("Email already taken.")
    if username and User.query.filter(User.username == username, User.id != user.id).first():
        raise AccountExists("Username already taken.")


def parse_user_payload(data: dict[str, Any], *, admin: bool) -> UserUpdate:
    """Read a partial user update; only admins may change email, role or status."""

    update = UserUpdate()
    if "username" in data:
        update.username = _check_username(data.get("username"))
    if "firstName" in data:
        update.first_name = (data.get("firstName") or "").strip()
    if "lastName" in data:
        update.last_name = (data.get("lastName") or "").strip()
    if not admin:
        return update

    if "email" in data:
        update.email = _check_email(data.get("email"))
    if data.get("role") is not None:
        if data["role"] not in USER_ROLES:
            raise ValidationError(f"Role must be one of: {', '.join(USER_ROLES)}.")
        update.role = data["role"]
    if data.get("isActive") is not None:
        if not isinstance(data["isActive"], bool):
            raise ValidationError("isActive must be a boolean.")
        update.is_active = data["isActive"]
    return update


def _apply_user_update(user: User, data: UserUpdate) -> None:
    _ensure_unique(user, email=data.email, username=data.username)
    for attribute in ("email", "username", "first_name", "last_name", "role", "is_active"):
        value = getattr(data, attribute)
        if value is not None:
            setattr(user, attribute, value)


def update_profile(user: User, data: UserUpdate) -> User:
    profile = UserUpdate(
        username=data.username, first_name=data.first_name, last_name=data.last_name
    )
    _apply_user_update(user, profile)
    commit_or_fail("update profile", user_id=user.id)
    logger.info("Profile updated", extra={"user_id": user.id})
    return user


def get_user(user_id: int) -> User:
    user = db.session.get(User, user_id)
    if not user:
        raise UserNotFound()
    return user


def list_users(
    *,
    page: int = 1,
    page_size: int = 10,
    search: str | None = None,
    role: str | None = None,
    is_active: bool | None = None,
) -> Pagination:
    query = User.query
    if search:
        pattern = f"%{search.strip()}%"
        query = query.filter(
            or_(
                User.email.ilike(pattern),
                User.username.ilike(pattern),
                User.first_name.ilike(pattern),
                User.last_name.ilike(pattern),
            )
        )
    if role:
        query = query.filter(User.role == role)
    if is_active is not None:
        query = query.filter(User.is_active.is_(is_active))
    return query.order_by(User.created_at.desc(), User.id.desc()).paginate(
        page=page, per_page=page_size, error_out=False
    )


def _guard_self_lockout(user: User, acting: User, data: UserUpdate) -> None:
    if user.id != acting.id:
        return
    if data.is_active is False:
        raise ValidationError("Administrators cannot deactivate their own account.")
    if data.role is not None and data.role != "admin":
        raise ValidationError("Administrators cannot remove their own admin role.")


def update_user(user_id: int, data: UserUpdate, *, acting: User) -> User:
    user = get_user(user_id)
    _guard_self_lockout(user, acting, data)
    _apply_user_update(user, data)
    commit_or_fail("update user", user_id=user_id)
    logger.info(
        "User updated",
        extra={"user_id": user_id, "role": user.role, "admin_id": acting.id},
    )
    return user


def set_user_active(user_id: int, active: bool, *, acting: User) -> User:
    """Activate or deactivate an account. Deactivated users keep their history."""

    user = get_user(user_id)
    _guard_self_lockout(user, acting, UserUpdate(is_active=active))
    user.is_active = active
    commit_or_fail("activate user" if active else "deactivate user", user_id=user_id)
    logger.info(
        "User activated" if active else "User deactivated",
        extra={"user_id": user_id, "admin_id": acting.id},
    )
    return user


def active_users_by_id(user_ids: list[int]) -> dict[int, User]:
    users = User.query.filter(User.id.in_(user_ids), User.is_active.is_(True)).all()
    return {user.id: user for user in users}


__all__ = [
    "UserUpdate",
    "active_users_by_id",
    "authenticate",
    "change_password",
    "get_user",
    "list_users",
    "parse_user_payload",
    "refresh_session",
    "register_user",
    "revoke_tokens",
    "set_user_active",
    "update_profile",
    "update_user",
]
