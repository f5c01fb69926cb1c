from datetime import datetime, timedelta

import pytest
from sqlalchemy import update

from examhub import db
from examhub.errors import (
    AttemptExpired,
    AttemptsExhausted,
    CannotStart,
    CannotSubmit,
    InvalidStateTransition,
)
from examhub.models import UserExam
from examhub.services import attempt_state as state

NOW = datetime(2026, 3, 1, 9, 0, 0)


class _Attempt:
    """Plain stand-in carrying only the columns the state helpers read."""

    def __init__(self, status="assigned", expires_at=None, attempt_count=0, max_attempts=1):
        self.status = status
        self.expires_at = expires_at
        self.attempt_count = attempt_count
        self.max_attempts = max_attempts
        self.started_at = None
        self.completed_at = None


def test_expiry_is_strictly_after_deadline():
    attempt = _Attempt(expires_at=NOW)
    assert state.is_expired(attempt, NOW) is False
    assert state.is_expired(attempt, NOW + timedelta(seconds=1)) is True
    assert state.is_expired(_Attempt(), NOW + timedelta(days=3650)) is False


def test_effective_status_reports_expired_for_unfinished_attempts():
    past = NOW - timedelta(hours=1)
    assert state.effective_status(_Attempt("assigned", past), NOW) == state.EXPIRED
    assert state.effective_status(_Attempt("started", past), NOW) == state.EXPIRED
    assert state.effective_status(_Attempt("completed", past), NOW) == state.COMPLETED


def test_expired_attempts_cannot_start_or_submit():
    past = NOW - timedelta(minutes=1)
    assert not state.can_start(_Attempt("assigned", past), NOW)
    assert not state.can_submit(_Attempt("started", past), NOW)
    with pytest.raises(AttemptExpired):
        state.check_start(_Attempt("assigned", past), NOW)
    with pytest.raises(AttemptExpired):
        state.check_submit(_Attempt("started", past), NOW)


def test_can_start_requires_remaining_attempts():
    assert state.can_start(_Attempt(attempt_count=0, max_attempts=1), NOW)
    assert not state.can_start(_Attempt(attempt_count=1, max_attempts=1), NOW)
    with pytest.raises(AttemptsExhausted):
        state.check_start(_Attempt(attempt_count=2, max_attempts=2), NOW)


def test_start_then_submit_transitions():
    attempt = _Attempt()
    state.transition(attempt, state.START, now=NOW)
    assert attempt.status == state.STARTED
    assert attempt.started_at == NOW
    assert attempt.attempt_count == 1

    later = NOW + timedelta(minutes=10)
    state.transition(attempt, state.SUBMIT, now=later)
    assert attempt.status == state.COMPLETED
    assert attempt.completed_at == later


def test_completed_attempt_never_restarts():
    attempt = _Attempt("completed", attempt_count=1, max_attempts=1)
    for _ in range(3):
        with pytest.raises(CannotStart):
            state.transition(attempt, state.START, now=NOW)
        with pytest.raises(CannotSubmit):
            state.transition(attempt, state.SUBMIT, now=NOW)
    assert attempt.status == "completed"
    assert attempt.attempt_count == 1


def test_failed_transition_leaves_attempt_untouched():
    attempt = _Attempt("assigned", expires_at=NOW - timedelta(seconds=5))
    with pytest.raises(InvalidStateTransition):
        state.transition(attempt, state.START, now=NOW)
    assert attempt.status == "assigned"
    assert attempt.started_at is None
    assert attempt.attempt_count == 0


def test_unknown_event_is_rejected():
    with pytest.raises(InvalidStateTransition):
        state.transition(_Attempt(), "pause", now=NOW)


@pytest.fixture
def stored_attempt(app, make_user, make_question, make_exam):
    user = make_user("casey")
    exam = make_exam([make_question("Q1")])
    attempt = UserExam(user_id=user.id, exam_id=exam.id, status="assigned")
    db.session.add(attempt)
    db.session.commit()
    return attempt


def test_claim_start_updates_row(stored_attempt):
    assert state.claim_start(stored_attempt, now=NOW) is True
    db.session.commit()
    assert stored_attempt.status == "started"
    assert stored_attempt.started_at == NOW
    assert stored_attempt.attempt_count == 1


def test_claim_start_loses_to_concurrent_start(stored_attempt):
    # Another request moved the row on; this copy still says "assigned".
    db.session.execute(
        update(UserExam)
        .where(UserExam.id == stored_attempt.id)
        .values(status="started", attempt_count=1)
        .execution_options(synchronize_session=False)
    )
    assert stored_attempt.status == "assigned"

    assert state.claim_start(stored_attempt, now=NOW) is False
    count = db.session.execute(
        db.select(UserExam.attempt_count).where(UserExam.id == stored_attempt.id)
    ).scalar_one()
    assert count == 1


def test_claim_submit_only_once(stored_attempt):
    assert state.claim_start(stored_attempt, now=NOW) is True
    stale_copy_status = stored_attempt.status
    assert state.claim_submit(stored_attempt, now=NOW + timedelta(minutes=5)) is True
    assert state.claim_submit(stored_attempt, now=NOW + timedelta(minutes=6)) is False
    assert stale_copy_status == "started"
    assert stored_attempt.status == "completed"


def test_claim_respects_deadline(stored_attempt):
    stored_attempt.expires_at = NOW
    db.session.commit()
    assert state.claim_start(stored_attempt, now=NOW + timedelta(seconds=1)) is False


def test_claim_reset_keeps_attempt_count(stored_attempt):
    state.claim_start(stored_attempt, now=NOW)
    assert state.claim_reset(stored_attempt, now=NOW + timedelta(minutes=1)) is True
    assert stored_attempt.status == "assigned"
    assert stored_attempt.started_at is None
    assert stored_attempt.attempt_count == 1
    assert state.claim_reset(stored_attempt, now=NOW) is False
