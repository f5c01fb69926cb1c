"""Commit helper shared by the service layer."""

from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError

from .. import db
from ..errors import PersistenceFailure

logger = logging.getLogger(__name__)


def commit_or_fail(action: str, **context) -> None:
    """Commit the session, turning storage errors into ``PersistenceFailure``.

    The session is rolled back first so no partial write survives.
    """

    try:
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.exception("Failed to %s", action, extra=context)
        raise PersistenceFailure(f"Failed to {action}.") from exc


__all__ = ["commit_or_fail"]
