"""Fixed-window request throttling stored in ``rate_limit_windows``."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from .. import db
from ..errors import TooManyAttempts
from ..models import RateLimitWindow, utcnow
from .persistence import commit_or_fail

logger = logging.getLogger(__name__)

LOGIN_SCOPE = "login"
SUBMIT_SCOPE = "submit"


def current_window(scope: str, key: str, *, length: timedelta, now: datetime) -> RateLimitWindow:
    """Return the counter for ``(scope, key)``, restarting it once ``length`` has passed."""

    window = RateLimitWindow.query.filter_by(scope=scope, key=key).first()
    if not window:
        window = RateLimitWindow(scope=scope, key=key, attempt_count=0, window_started_at=now)
        db.session.add(window)
    elif now - window.window_started_at >= length:
        window.attempt_count = 0
        window.window_started_at = now
    return window


def consume(
    scope: str,
    key: str,
    *,
    limit: int,
    length: timedelta,
    now: datetime | None = None,
    message: str | None = None,
) -> int:
    """Count one request against the window and return how many remain.

    Raises :class:`TooManyAttempts` without counting once ``limit`` is reached.
    """

    now = now or utcnow()
    window = current_window(scope, key, length=length, now=now)
    if window.attempt_count >= limit:
        commit_or_fail("record throttled request", scope=scope)
        logger.warning("Request throttled", extra={"scope": scope, "key": key})
        raise TooManyAttempts(message)
    window.attempt_count += 1
    commit_or_fail("record request", scope=scope)
    return limit - window.attempt_count


__all__ = ["LOGIN_SCOPE", "SUBMIT_SCOPE", "consume", "current_window"]
