"""State machine for a user's attempt at an exam.

Stored statuses only move forward: ``assigned`` -> ``started`` -> ``completed``.
Expiry is never stored. An attempt whose ``expires_at`` deadline has passed is
treated as expired by every check, whatever its stored status says.

The ``check_*``/``transition`` helpers work on in-memory objects; the
``claim_*`` helpers perform the same transition as a single conditional
``UPDATE`` so that two concurrent requests for one attempt cannot both win.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import or_, update

from .. import db
from ..errors import (
    AttemptExpired,
    AttemptsExhausted,
    CannotStart,
    CannotSubmit,
    InvalidStateTransition,
)
from ..models import UserExam, utcnow

ASSIGNED = "assigned"
STARTED = "started"
COMPLETED = "completed"
EXPIRED = "expired"

START = "start"
SUBMIT = "submit"

TRANSITIONS: dict[str, tuple[str, str]] = {
    START: (ASSIGNED, STARTED),
    SUBMIT: (STARTED, COMPLETED),
}


def is_expired(attempt: UserExam, now: datetime | None = None) -> bool:
    if attempt.expires_at is None:
        return False
    return (now or utcnow()) > attempt.expires_at


def effective_status(attempt: UserExam, now: datetime | None = None) -> str:
    """Stored status, or ``expired`` for unfinished attempts past their deadline."""
    if attempt.status != COMPLETED and is_expired(attempt, now):
        return EXPIRED
    return attempt.status


def attempts_remaining(attempt: UserExam) -> int:
    return max(0, (attempt.max_attempts or 0) - (attempt.attempt_count or 0))


def can_start(attempt: UserExam, now: datetime | None = None) -> bool:
    return (
        attempt.status == ASSIGNED
        and not is_expired(attempt, now)
        and attempts_remaining(attempt) > 0
    )


def can_submit(attempt: UserExam, now: datetime | None = None) -> bool:
    return attempt.status == STARTED and not is_expired(attempt, now)


def check_start(attempt: UserExam, now: datetime | None = None) -> None:
    """Raise the most specific error explaining why the attempt cannot start."""
    if attempt.status != ASSIGNED:
        raise CannotStart(f"Exam cannot be started while the attempt is {attempt.status}.")
    if is_expired(attempt, now):
        raise AttemptExpired()
    if attempts_remaining(attempt) <= 0:
        raise AttemptsExhausted()


def check_submit(attempt: UserExam, now: datetime | None = None) -> None:
    if attempt.status != STARTED:
        raise CannotSubmit(f"Exam cannot be submitted while the attempt is {attempt.status}.")
    if is_expired(attempt, now):
        raise AttemptExpired("The assignment deadline passed before the exam was submitted.")


_GUARDS = {START: check_start, SUBMIT: check_submit}


def transition(attempt: UserExam, event: str, *, now: datetime | None = None) -> UserExam:
    """Apply ``event`` to an in-memory attempt.

    The guard runs first; when it fails nothing on the attempt is touched.
    """

    if event not in TRANSITIONS:
        raise InvalidStateTransition(f"Unknown attempt event '{event}'.")
    now = now or utcnow()
    _GUARDS[event](attempt, now)

    _, target = TRANSITIONS[event]
    attempt.status = target
    if event == START:
        attempt.started_at = now
        attempt.completed_at = None
        attempt.attempt_count = (attempt.attempt_count or 0) + 1
    else:
        attempt.completed_at = now
    return attempt


def _not_expired_clause(now: datetime):
    return or_(UserExam.expires_at.is_(None), UserExam.expires_at >= now)


def _execute_claim(attempt: UserExam, stmt) -> bool:
    result = db.session.execute(stmt.execution_options(synchronize_session=False))
    if result.rowcount != 1:
        return False
    db.session.refresh(attempt)
    return True


def claim_start(attempt: UserExam, *, now: datetime) -> bool:
    """Atomically move ``assigned`` -> ``started``; False if another request got there first.

    Runs inside the caller's transaction; the caller commits or rolls back.
    """

    stmt = (
        update(UserExam)
        .where(
            UserExam.id == attempt.id,
            UserExam.status == ASSIGNED,
            UserExam.attempt_count < UserExam.max_attempts,
            _not_expired_clause(now),
        )
        .values(
            status=STARTED,
            started_at=now,
            completed_at=None,
            attempt_count=UserExam.attempt_count + 1,
            updated_at=now,
        )
    )
    return _execute_claim(attempt, stmt)


def claim_submit(attempt: UserExam, *, now: datetime) -> bool:
    """Atomically move ``started`` -> ``completed``."""

    stmt = (
        update(UserExam)
        .where(
            UserExam.id == attempt.id,
            UserExam.status == STARTED,
            _not_expired_clause(now),
        )
        .values(status=COMPLETED, completed_at=now, updated_at=now)
    )
    return _execute_claim(attempt, stmt)


def claim_reset(attempt: UserExam, *, now: datetime) -> bool:
    """Administrative rollback of an abandoned ``started`` attempt to ``assigned``.

    ``attempt_count`` is kept so ``max_attempts`` still bounds restarts.
    """

    stmt = (
        update(UserExam)
        .where(UserExam.id == attempt.id, UserExam.status == STARTED)
        .values(status=ASSIGNED, started_at=None, updated_at=now)
    )
    return _execute_claim(attempt, stmt)


__all__ = [
    "ASSIGNED",
    "COMPLETED",
    "EXPIRED",
    "STARTED",
    "START",
    "SUBMIT",
    "TRANSITIONS",
    "attempts_remaining",
    "can_start",
    "can_submit",
    "check_start",
    "check_submit",
    "claim_reset",
    "claim_start",
    "claim_submit",
    "effective_status",
    "is_expired",
    "transition",
]
