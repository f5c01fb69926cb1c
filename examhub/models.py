from __future__ import annotations

from datetime import datetime, timezone

from flask_login import UserMixin
from sqlalchemy import CheckConstraint, Enum, UniqueConstraint, event
from werkzeug.security import check_password_hash, generate_password_hash

from . import db

QUESTION_TYPES = ("multiple_choice", "true_false")
QUESTION_DIFFICULTIES = ("easy", "medium", "hard")
EXAM_STATUSES = ("draft", "active", "completed", "archived")
ATTEMPT_STATUSES = ("assigned", "started", "completed")
USER_ROLES = ("user", "admin")


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how every DateTime column is stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class User(UserMixin, db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(120), unique=True, nullable=False)
    username = db.Column(db.String(50), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    first_name = db.Column(db.String(80), nullable=False, default="")
    last_name = db.Column(db.String(80), nullable=False, default="")
    role = db.Column(Enum(*USER_ROLES, name="user_role"), nullable=False, default="user")
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    # Bumped on logout and password change; tokens carrying an older value are refused.
    token_version = db.Column(db.Integer, nullable=False, default=0, server_default="0")
    last_login_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    attempts = db.relationship("UserExam", back_populates="user", cascade="all, delete-orphan")
    results = db.relationship("Result", back_populates="user")

    def set_password(self, password: str) -> None:
        self.password_hash = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        return check_password_hash(self.password_hash, password)

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class RateLimitWindow(db.Model):
    """Fixed-window counter for one throttled action (``scope``) and caller (``key``)."""

    __tablename__ = "rate_limit_windows"

    id = db.Column(db.Integer, primary_key=True)
    scope = db.Column(db.String(20), nullable=False)
    key = db.Column(db.String(120), nullable=False)
    attempt_count = db.Column(db.Integer, nullable=False, default=0)
    window_started_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    __table_args__ = (UniqueConstraint("scope", "key", name="uq_rate_limit_scope_key"),)


class Question(db.Model):
    """A choice question together with its answer key.

    ``options`` is an ordered list of ``{"id", "text", "is_correct"}`` dicts.
    The correctness flags never leave the model except through
    :meth:`correct_option_ids`, which only privileged callers and the grader use.
    """

    __tablename__ = "questions"

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(255), nullable=False)
    content = db.Column(db.Text, nullable=False)
    type = db.Column(
        Enum(*QUESTION_TYPES, name="question_type"), nullable=False, default="multiple_choice"
    )
    difficulty = db.Column(
        Enum(*QUESTION_DIFFICULTIES, name="question_difficulty"), nullable=False, default="medium"
    )
    options = db.Column(db.JSON, nullable=False, default=list)
    tags = db.Column(db.String(500), nullable=False, default="")  # comma separated
    points = db.Column(db.Integer, nullable=False, default=1)
    time_limit_seconds = db.Column(db.Integer, nullable=False, default=60)
    explanation = db.Column(db.Text, nullable=False, default="")
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_by = db.Column(db.Integer, db.ForeignKey("users.id"))
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    creator = db.relationship("User")
    exam_links = db.relationship("ExamQuestion", back_populates="question")

    def tag_list(self) -> list[str]:
        return [tag.strip() for tag in (self.tags or "").split(",") if tag.strip()]

    def public_options(self) -> list[dict[str, str]]:
        return [{"id": option["id"], "text": option["text"]} for option in self.options or []]

    def correct_option_ids(self) -> frozenset[str]:
        return frozenset(option["id"] for option in self.options or [] if option.get("is_correct"))


class Exam(db.Model):
    __tablename__ = "exams"

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=False, default="")
    duration_minutes = db.Column(db.Integer, nullable=False)
    pass_score = db.Column(db.Integer, nullable=False, default=60)
    status = db.Column(Enum(*EXAM_STATUSES, name="exam_status"), nullable=False, default="draft")
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_by = db.Column(db.Integer, db.ForeignKey("users.id"))
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    creator = db.relationship("User")
    questions = db.relationship(
        "ExamQuestion",
        back_populates="exam",
        cascade="all, delete-orphan",
        order_by="ExamQuestion.position",
    )
    attempts = db.relationship("UserExam", back_populates="exam", cascade="all, delete-orphan")
    results = db.relationship("Result", back_populates="exam")

    __table_args__ = (
        CheckConstraint("duration_minutes >= 1", name="exam_duration_positive"),
        CheckConstraint("pass_score BETWEEN 0 AND 100", name="exam_pass_score_range"),
    )

    @property
    def total_points(self) -> int:
        return sum(link.effective_points for link in self.questions)

    @property
    def duration_seconds(self) -> int:
        return self.duration_minutes * 60

    @property
    def accepts_structural_edits(self) -> bool:
        return self.status in {"draft", "active"}

    @property
    def is_live(self) -> bool:
        return self.is_active and self.status in {"draft", "active"}


class ExamQuestion(db.Model):
    __tablename__ = "exam_questions"

    id = db.Column(db.Integer, primary_key=True)
    exam_id = db.Column(db.Integer, db.ForeignKey("exams.id"), nullable=False)
    question_id = db.Column(db.Integer, db.ForeignKey("questions.id"), nullable=False)
    position = db.Column(db.Integer, nullable=False)
    points = db.Column(db.Integer)  # overrides Question.points when set

    exam = db.relationship("Exam", back_populates="questions")
    question = db.relationship("Question", back_populates="exam_links")

    __table_args__ = (
        UniqueConstraint("exam_id", "question_id", name="uq_exam_question"),
        UniqueConstraint("exam_id", "position", name="uq_exam_position"),
    )

    @property
    def effective_points(self) -> int:
        return self.points if self.points is not None else self.question.points


class UserExam(db.Model):
    """One user's assignment to one exam (an attempt)."""

    __tablename__ = "user_exams"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    exam_id = db.Column(db.Integer, db.ForeignKey("exams.id"), nullable=False)
    status = db.Column(
        Enum(*ATTEMPT_STATUSES, name="attempt_status"), nullable=False, default="assigned"
    )
    started_at = db.Column(db.DateTime)
    completed_at = db.Column(db.DateTime)
    expires_at = db.Column(db.DateTime)
    attempt_count = db.Column(db.Integer, nullable=False, default=0)
    max_attempts = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    user = db.relationship("User", back_populates="attempts")
    exam = db.relationship("Exam", back_populates="attempts")
    result = db.relationship("Result", back_populates="attempt", uselist=False)

    __table_args__ = (
        UniqueConstraint("user_id", "exam_id", name="uq_user_exam"),
        CheckConstraint("max_attempts >= 1", name="attempt_max_positive"),
    )


class Result(db.Model):
    """Immutable outcome of a submitted attempt.

    ``answers`` holds one record per exam question, in exam order:
    ``{"question_id", "selected_options", "is_correct", "points", "time_spent"}``.
    """

    __tablename__ = "results"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    exam_id = db.Column(db.Integer, db.ForeignKey("exams.id"), nullable=False)
    user_exam_id = db.Column(db.Integer, db.ForeignKey("user_exams.id"), nullable=False, unique=True)
    score = db.Column(db.Float, nullable=False)
    earned_points = db.Column(db.Integer, nullable=False)
    max_points = db.Column(db.Integer, nullable=False)
    passed = db.Column(db.Boolean, nullable=False, default=False)
    submitted_late = db.Column(db.Boolean, nullable=False, default=False)
    answers = db.Column(db.JSON, nullable=False, default=list)
    started_at = db.Column(db.DateTime, nullable=False)
    ended_at = db.Column(db.DateTime, nullable=False)
    duration_seconds = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    user = db.relationship("User", back_populates="results")
    exam = db.relationship("Exam", back_populates="results")
    attempt = db.relationship("UserExam", back_populates="result")


@event.listens_for(Result, "before_update")
def _reject_result_update(mapper, connection, target) -> None:
    raise RuntimeError(f"Result {target.id} is immutable once recorded.")


@event.listens_for(Result, "before_delete")
def _reject_result_delete(mapper, connection, target) -> None:
    raise RuntimeError(f"Result {target.id} cannot be deleted.")


__all__ = [
    "ATTEMPT_STATUSES",
    "EXAM_STATUSES",
    "QUESTION_DIFFICULTIES",
    "QUESTION_TYPES",
    "USER_ROLES",
    "Exam",
    "ExamQuestion",
    "Question",
    "RateLimitWindow",
    "Result",
    "User",
    "UserExam",
    "utcnow",
]
