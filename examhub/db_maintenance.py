"""Startup database helpers."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import db

ADMIN_USERNAME = "admin"


def ensure_core_tables(engine: Engine, logger: logging.Logger | None = None) -> None:
    """Create any missing tables for a fresh database."""

    logger = logger or logging.getLogger(__name__)
    try:
        db.create_all()
    except SQLAlchemyError:
        logger.exception("Failed to create core tables during maintenance")
        raise


def ensure_user_token_version_column(engine: Engine, logger: logging.Logger | None = None) -> None:
    """Add ``users.token_version`` to databases created before token revocation existed."""

    inspector = inspect(engine)
    tables: Iterable[str] = inspector.get_table_names()
    if "users" not in tables:
        return

    columns = {col["name"] for col in inspector.get_columns("users")}
    if "token_version" in columns:
        return

    logger = logger or logging.getLogger(__name__)
    logger.warning("Missing users.token_version column detected; applying schema patch.")
    try:
        with engine.begin() as connection:
            connection.execute(
                text("ALTER TABLE users ADD COLUMN token_version INTEGER NOT NULL DEFAULT 0")
            )
    except SQLAlchemyError:
        logger.exception("Failed to add token_version column to users table")
        raise


def ensure_admin_account(
    engine: Engine,
    email: str | None,
    password: str | None,
    logger: logging.Logger | None = None,
) -> None:
    """Make sure the configured bootstrap administrator exists and is an admin.

    An existing account with that email is promoted; its password is left alone.
    """

    if not email or not password:
        return

    logger = logger or logging.getLogger(__name__)

    from .models import User

    email = email.strip().lower()
    try:
        with Session(bind=engine) as session:
            user = session.query(User).filter_by(email=email).first()
            if user is None:
                username = ADMIN_USERNAME
                if session.query(User).filter_by(username=username).first():
                    username = email.split("@", 1)[0]
                user = User(email=email, username=username, role="admin", is_active=True)
                user.set_password(password)
                session.add(user)
            elif user.role == "admin" and user.is_active:
                return
            else:
                user.role = "admin"
                user.is_active = True
            session.commit()
            logger.info("Administrator account ensured: %s", email)
    except SQLAlchemyError:
        logger.exception("Failed to ensure administrator account during maintenance")
        raise


def ensure_database_schema(
    engine: Engine,
    logger: logging.Logger | None = None,
    *,
    admin_email: str | None = None,
    admin_password: str | None = None,
) -> None:
    ensure_core_tables(engine, logger)
    ensure_user_token_version_column(engine, logger)
    ensure_admin_account(engine, admin_email, admin_password, logger)
