"""Exam attempt lifecycle: assign, start, submit and inspect.

Each operation touches exactly one ``UserExam`` row per user. Start and submit
re-check their guard inside a conditional ``UPDATE`` (see
:mod:`.attempt_state`), so duplicate concurrent requests for the same attempt
cannot both succeed, and a submit writes its status change and its ``Result``
in one transaction.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .. import db
from ..errors import (
    CannotStart,
    CannotSubmit,
    ExamNotFound,
    InvalidStateTransition,
    NotAssigned,
    PermissionDenied,
    PersistenceFailure,
    ValidationError,
)
from ..models import Exam, ExamQuestion, Result, User, UserExam, utcnow
from . import attempt_state
from .accounts import active_users_by_id
from .catalog import exam_items, get_exam
from .grading import GradeReport, SubmittedAnswer, grade_submission
from .persistence import commit_or_fail
from .session_guard import GuardCheck, get_session_guard

logger = logging.getLogger(__name__)

OUTCOME_ASSIGNED = "assigned"
OUTCOME_ALREADY_ASSIGNED = "already_assigned"
OUTCOME_LOCKED = "locked"
OUTCOME_FAILED = "failed"


@dataclass(frozen=True, slots=True)
class AssignmentOutcome:
    user_id: int
    outcome: str
    attempt_id: int | None = None
    reason: str | None = None


@dataclass(frozen=True, slots=True)
class AttemptView:
    attempt: UserExam
    exam: Exam
    status: str
    time_left: int | None


@dataclass(frozen=True, slots=True)
class StartedExam:
    attempt: UserExam
    exam: Exam
    questions: list[ExamQuestion]
    time_left: int


def find_attempt(exam_id: int, user_id: int) -> UserExam | None:
    return UserExam.query.filter_by(exam_id=exam_id, user_id=user_id).first()


def has_attempt(exam_id: int, user_id: int) -> bool:
    return find_attempt(exam_id, user_id) is not None


def _require_attempt(exam_id: int, user_id: int) -> UserExam:
    attempt = find_attempt(exam_id, user_id)
    if attempt is None:
        raise NotAssigned()
    return attempt


def time_left_seconds(attempt: UserExam, exam: Exam, now: datetime) -> int | None:
    if attempt.status != attempt_state.STARTED or attempt.started_at is None:
        return None
    elapsed = int((now - attempt.started_at).total_seconds())
    return max(0, exam.duration_seconds - elapsed)


def attempt_view(attempt: UserExam, *, now: datetime | None = None) -> AttemptView:
    now = now or utcnow()
    return AttemptView(
        attempt=attempt,
        exam=attempt.exam,
        status=attempt_state.effective_status(attempt, now),
        time_left=time_left_seconds(attempt, attempt.exam, now),
    )


def _normalise_user_ids(user_ids: Iterable[int]) -> list[int]:
    ordered: list[int] = []
    for user_id in user_ids:
        if isinstance(user_id, bool) or not isinstance(user_id, int):
            raise ValidationError("User ids must be integers.")
        if user_id not in ordered:
            ordered.append(user_id)
    if not ordered:
        raise ValidationError("At least one user id is required.")
    return ordered


def _assign_one(
    exam: Exam, user_id: int, *, expires_at: datetime | None, max_attempts: int, now: datetime
) -> AssignmentOutcome:
    attempt = find_attempt(exam.id, user_id)
    if attempt is None:
        attempt = UserExam(
            user_id=user_id,
            exam_id=exam.id,
            status=attempt_state.ASSIGNED,
            expires_at=expires_at,
            max_attempts=max_attempts,
            attempt_count=0,
        )
        db.session.add(attempt)
        db.session.flush()
        return AssignmentOutcome(user_id, OUTCOME_ASSIGNED, attempt.id)

    if attempt.status != attempt_state.ASSIGNED:
        return AssignmentOutcome(
            user_id,
            OUTCOME_LOCKED,
            attempt.id,
            reason=f"Attempt is {attempt.status}; reset it explicitly to reassign.",
        )

    # Only an attempt that is still merely assigned may be overwritten.
    updated = db.session.execute(
        update(UserExam)
        .where(UserExam.id == attempt.id, UserExam.status == attempt_state.ASSIGNED)
        .values(expires_at=expires_at, max_attempts=max_attempts, updated_at=now)
        .execution_options(synchronize_session=False)
    ).rowcount
    if not updated:
        return AssignmentOutcome(
            user_id, OUTCOME_LOCKED, attempt.id, reason="Attempt was started concurrently."
        )
    db.session.refresh(attempt)
    return AssignmentOutcome(user_id, OUTCOME_ALREADY_ASSIGNED, attempt.id)


def assign_exam(
    exam_id: int,
    user_ids: Iterable[int],
    *,
    expires_at: datetime | None = None,
    max_attempts: int = 1,
    now: datetime | None = None,
) -> list[AssignmentOutcome]:
    """Assign an exam to users and report what happened for each of them.

    The user ids are validated as a set first: one unknown or inactive user
    rejects the whole batch. After that each user is handled in its own
    savepoint so a storage error for one user does not undo the others.
    """

    now = now or utcnow()
    exam = db.session.get(Exam, exam_id)
    if not exam or not exam.is_live:
        raise ExamNotFound("Exam not found or inactive.")

    if isinstance(max_attempts, bool) or not isinstance(max_attempts, int) or max_attempts < 1:
        raise ValidationError("maxAttempts must be a positive integer.")
    if expires_at is not None and expires_at <= now:
        raise ValidationError("expiresAt must be in the future.")

    ids = _normalise_user_ids(user_ids)
    users = active_users_by_id(ids)
    invalid = [user_id for user_id in ids if user_id not in users]
    if invalid:
        raise ValidationError(
            f"Some users are invalid or inactive: {', '.join(map(str, invalid))}.",
            code="INVALID_USERS",
        )

    outcomes: list[AssignmentOutcome] = []
    for user_id in ids:
        try:
            with db.session.begin_nested():
                outcome = _assign_one(
                    exam, user_id, expires_at=expires_at, max_attempts=max_attempts, now=now
                )
        except SQLAlchemyError:
            logger.exception(
                "Failed to assign exam to user",
                extra={"exam_id": exam_id, "user_id": user_id},
            )
            outcome = AssignmentOutcome(user_id, OUTCOME_FAILED, reason="Could not save assignment.")
        outcomes.append(outcome)

    commit_or_fail("assign exam", exam_id=exam_id)
    logger.info(
        "Exam assigned",
        extra={
            "exam_id": exam_id,
            "user_ids": ids,
            "outcomes": {item.user_id: item.outcome for item in outcomes},
        },
    )
    return outcomes


def start_exam(exam_id: int, user_id: int, *, now: datetime | None = None) -> StartedExam:
    now = now or utcnow()
    attempt = _require_attempt(exam_id, user_id)
    attempt_state.check_start(attempt, now)
    exam = attempt.exam

    try:
        claimed = attempt_state.claim_start(attempt, now=now)
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.exception("Failed to start exam", extra={"exam_id": exam_id, "user_id": user_id})
        raise PersistenceFailure("Failed to start exam.") from exc
    if not claimed:
        db.session.rollback()
        raise CannotStart("Exam cannot be started; the attempt changed meanwhile.")
    commit_or_fail("start exam", exam_id=exam_id, user_id=user_id)

    get_session_guard().record_start(
        user_id, exam_id, started_at=now, duration_seconds=exam.duration_seconds
    )

    logger.info(
        "Exam started",
        extra={"exam_id": exam_id, "user_id": user_id, "attempt_count": attempt.attempt_count},
    )
    return StartedExam(
        attempt=attempt,
        exam=exam,
        questions=list(exam.questions),
        time_left=exam.duration_seconds,
    )


def _submitted_late(attempt: UserExam, exam: Exam, guard: GuardCheck, now: datetime) -> bool:
    if guard.is_late:
        return True
    if attempt.started_at is None:
        return False
    return (now - attempt.started_at).total_seconds() > exam.duration_seconds


def _build_result(
    attempt: UserExam, report: GradeReport, *, started_at: datetime, now: datetime, late: bool
) -> Result:
    return Result(
        user_id=attempt.user_id,
        exam_id=attempt.exam_id,
        user_exam_id=attempt.id,
        score=report.score,
        earned_points=report.earned_points,
        max_points=report.max_points,
        passed=report.passed,
        submitted_late=late,
        answers=[answer.as_record() for answer in report.answers],
        started_at=started_at,
        ended_at=now,
        duration_seconds=max(0, int((now - started_at).total_seconds())),
    )


def submit_exam(
    exam_id: int,
    user_id: int,
    answers: Mapping[int, SubmittedAnswer],
    *,
    now: datetime | None = None,
) -> Result:
    now = now or utcnow()
    attempt = _require_attempt(exam_id, user_id)
    attempt_state.check_submit(attempt, now)
    exam = attempt.exam

    guard = get_session_guard()
    verdict = guard.check(user_id, exam_id, now=now)
    late = _submitted_late(attempt, exam, verdict, now)
    if late:
        logger.warning(
            "Exam submitted after its time limit",
            extra={
                "exam_id": exam_id,
                "user_id": user_id,
                "elapsed": verdict.elapsed_seconds,
                "duration": exam.duration_seconds,
            },
        )

    report = grade_submission(exam_items(exam), answers, exam.pass_score)
    started_at = attempt.started_at or now

    result: Result | None = None
    try:
        if attempt_state.claim_submit(attempt, now=now):
            result = _build_result(attempt, report, started_at=started_at, now=now, late=late)
            db.session.add(result)
            db.session.flush()
    except IntegrityError as exc:
        db.session.rollback()
        raise CannotSubmit("Exam has already been submitted.") from exc
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.exception("Failed to submit exam", extra={"exam_id": exam_id, "user_id": user_id})
        raise PersistenceFailure("Failed to save exam result.") from exc
    if result is None:
        db.session.rollback()
        raise CannotSubmit("Exam cannot be submitted; the attempt changed meanwhile.")
    commit_or_fail("submit exam", exam_id=exam_id, user_id=user_id)

    guard.clear(user_id, exam_id)

    logger.info(
        "Exam submitted",
        extra={
            "exam_id": exam_id,
            "user_id": user_id,
            "score": result.score,
            "passed": result.passed,
            "late": late,
        },
    )
    return result


def get_attempt(exam_id: int, user_id: int, *, now: datetime | None = None) -> AttemptView:
    return attempt_view(_require_attempt(exam_id, user_id), now=now)


def get_exam_for_user(
    exam_id: int, user: User, *, now: datetime | None = None
) -> tuple[Exam, AttemptView | None]:
    """Exam lookup for the read endpoint: admins see any exam, users only assigned ones."""

    exam = get_exam(exam_id)
    if user.is_admin:
        return exam, None
    attempt = find_attempt(exam_id, user.id)
    if attempt is None:
        raise PermissionDenied("Exam not assigned to user.", code="EXAM_NOT_ASSIGNED")
    return exam, attempt_view(attempt, now=now)


def reset_attempt(
    exam_id: int, user_id: int, *, confirm: bool, now: datetime | None = None
) -> UserExam:
    """Put an abandoned in-progress attempt back to ``assigned``.

    Completed attempts are final because their result is immutable.
    """

    if confirm is not True:
        raise ValidationError("Resetting an attempt must be confirmed.")
    now = now or utcnow()
    attempt = _require_attempt(exam_id, user_id)
    if attempt.status == attempt_state.ASSIGNED:
        return attempt
    if attempt.status == attempt_state.COMPLETED:
        raise InvalidStateTransition("Completed attempts cannot be reset.")

    if not attempt_state.claim_reset(attempt, now=now):
        db.session.rollback()
        raise InvalidStateTransition("Attempt changed before it could be reset.")
    commit_or_fail("reset attempt", exam_id=exam_id, user_id=user_id)
    get_session_guard().clear(user_id, exam_id)
    logger.info("Attempt reset", extra={"exam_id": exam_id, "user_id": user_id})
    return attempt


__all__ = [
    "AssignmentOutcome",
    "AttemptView",
    "OUTCOME_ALREADY_ASSIGNED",
    "OUTCOME_ASSIGNED",
    "OUTCOME_FAILED",
    "OUTCOME_LOCKED",
    "StartedExam",
    "assign_exam",
    "attempt_view",
    "find_attempt",
    "get_attempt",
    "get_exam_for_user",
    "has_attempt",
    "reset_attempt",
    "start_exam",
    "submit_exam",
    "time_left_seconds",
]
