"""Question bank and exam composition.

The attempt engine only reads from here: :func:`exam_items` is the grading view
of an exam (ordered questions, exam points and answer key).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from flask_sqlalchemy.pagination import Pagination
from sqlalchemy import or_

from .. import db
from ..errors import (
    ExamHasResults,
    ExamLocked,
    ExamNotFound,
    QuestionInUse,
    QuestionNotFound,
    ValidationError,
)
from ..models import (
    EXAM_STATUSES,
    QUESTION_DIFFICULTIES,
    QUESTION_TYPES,
    Exam,
    ExamQuestion,
    Question,
    Result,
    User,
    UserExam,
)
from .grading import ExamItem
from .persistence import commit_or_fail

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class QuestionInput:
    title: str
    content: str
    type: str
    difficulty: str
    options: list[dict[str, Any]]
    tags: list[str] = field(default_factory=list)
    points: int = 1
    time_limit_seconds: int = 60
    explanation: str = ""
    is_active: bool | None = None


@dataclass(slots=True)
class ExamQuestionInput:
    question_id: int
    position: int
    points: int | None = None


@dataclass(slots=True)
class ExamInput:
    title: str | None = None
    description: str | None = None
    duration_minutes: int | None = None
    pass_score: int | None = None
    status: str | None = None
    questions: list[ExamQuestionInput] | None = None

    def touches_structure(self) -> bool:
        return any(
            value is not None
            for value in (self.duration_minutes, self.pass_score, self.questions)
        )


def _require_text(data: dict[str, Any], key: str, label: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{label} is required.")
    return value.strip()


def _optional_int(
    data: dict[str, Any], key: str, label: str, *, minimum: int | None = None,
    maximum: int | None = None,
) -> int | None:
    if key not in data or data[key] is None:
        return None
    value = data[key]
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{label} must be an integer.")
    if minimum is not None and value < minimum:
        raise ValidationError(f"{label} must be at least {minimum}.")
    if maximum is not None and value > maximum:
        raise ValidationError(f"{label} must be at most {maximum}.")
    return value


def validate_options(options: Any, question_type: str) -> list[dict[str, Any]]:
    """Check an option list against the answer key rules and normalise it."""

    if not isinstance(options, list) or len(options) < 2:
        raise ValidationError("Question must have at least 2 options.")

    normalised: list[dict[str, Any]] = []
    seen_ids: set[str] = set()
    correct_count = 0
    for option in options:
        if not isinstance(option, dict):
            raise ValidationError("Each option must be an object.")
        option_id = str(option.get("id") or "").strip()
        text = str(option.get("text") or "").strip()
        if not option_id:
            raise ValidationError("Option ID cannot be empty.")
        if not text:
            raise ValidationError("Option text cannot be empty.")
        if option_id in seen_ids:
            raise ValidationError(f"Option ID '{option_id}' is used more than once.")
        seen_ids.add(option_id)
        is_correct = bool(option.get("isCorrect", option.get("is_correct", False)))
        correct_count += int(is_correct)
        normalised.append({"id": option_id, "text": text, "is_correct": is_correct})

    if correct_count == 0:
        raise ValidationError("Question must have at least one correct answer.")
    if question_type == "true_false":
        if len(normalised) != 2:
            raise ValidationError("True/false questions must have exactly 2 options.")
        if correct_count != 1:
            raise ValidationError("True/false questions must have exactly one correct answer.")
    return normalised


def parse_question_payload(data: dict[str, Any]) -> QuestionInput:
    question_type = data.get("type") or "multiple_choice"
    if question_type not in QUESTION_TYPES:
        raise ValidationError(f"Question type must be one of: {', '.join(QUESTION_TYPES)}.")
    difficulty = data.get("difficulty") or "medium"
    if difficulty not in QUESTION_DIFFICULTIES:
        raise ValidationError(
            f"Difficulty must be one of: {', '.join(QUESTION_DIFFICULTIES)}."
        )

    tags = data.get("tags") or []
    if not isinstance(tags, list) or not all(isinstance(tag, str) for tag in tags):
        raise ValidationError("Tags must be a list of strings.")

    is_active = data.get("isActive")
    if is_active is not None and not isinstance(is_active, bool):
        raise ValidationError("isActive must be a boolean.")

    points = _optional_int(data, "points", "Points", minimum=0)
    time_limit = _optional_int(data, "timeLimitSeconds", "Time limit", minimum=10)
    return QuestionInput(
        title=_require_text(data, "title", "Title"),
        content=_require_text(data, "content", "Content"),
        type=question_type,
        difficulty=difficulty,
        options=validate_options(data.get("options"), question_type),
        tags=[tag.strip() for tag in tags if tag.strip()],
        points=1 if points is None else points,
        time_limit_seconds=60 if time_limit is None else time_limit,
        explanation=(data.get("explanation") or "").strip(),
        is_active=is_active,
    )


def _apply_question_input(question: Question, data: QuestionInput) -> None:
    question.title = data.title
    question.content = data.content
    question.type = data.type
    question.difficulty = data.difficulty
    question.options = data.options
    question.tags = ",".join(data.tags)
    question.points = data.points
    question.time_limit_seconds = data.time_limit_seconds
    question.explanation = data.explanation
    if data.is_active is not None:
        question.is_active = data.is_active


def create_question(data: QuestionInput, *, creator: User | None = None) -> Question:
    question = Question(created_by=creator.id if creator else None, is_active=True)
    _apply_question_input(question, data)
    db.session.add(question)
    commit_or_fail("create question")
    logger.info(
        "Question created",
        extra={"question_id": question.id, "created_by": question.created_by},
    )
    return question


def get_question(question_id: int) -> Question:
    question = db.session.get(Question, question_id)
    if not question:
        raise QuestionNotFound()
    return question


def _ensure_not_in_live_exam(question_id: int) -> None:
    live_use = (
        ExamQuestion.query.join(Exam)
        .filter(
            ExamQuestion.question_id == question_id,
            Exam.is_active.is_(True),
            Exam.status.in_(("draft", "active")),
        )
        .first()
    )
    if live_use:
        raise QuestionInUse(f"Question is used by exam {live_use.exam_id}.")


def update_question(question_id: int, data: QuestionInput) -> Question:
    """Replace a question's content; ``is_active`` only changes when given."""

    question = get_question(question_id)
    if data.is_active is False and question.is_active:
        _ensure_not_in_live_exam(question_id)
    _apply_question_input(question, data)
    commit_or_fail("update question", question_id=question_id)
    logger.info("Question updated", extra={"question_id": question_id})
    return question


def delete_question(question_id: int) -> Question:
    """Deactivate a question unless a live exam still uses it.

    Rows are kept so that stored results keep pointing at real questions.
    """

    question = get_question(question_id)
    _ensure_not_in_live_exam(question_id)

    question.is_active = False
    commit_or_fail("delete question", question_id=question_id)
    logger.info("Question deactivated", extra={"question_id": question_id})
    return question


def list_tags(*, include_inactive: bool = False) -> list[str]:
    query = db.session.query(Question.tags).filter(Question.tags != "")
    if not include_inactive:
        query = query.filter(Question.is_active.is_(True))
    tags: set[str] = set()
    for (raw,) in query:
        tags.update(tag.strip() for tag in raw.split(",") if tag.strip())
    return sorted(tags)


def _tag_clause(tag: str):
    return or_(
        Question.tags == tag,
        Question.tags.like(f"{tag},%"),
        Question.tags.like(f"%,{tag}"),
        Question.tags.like(f"%,{tag},%"),
    )


def list_questions(
    *,
    page: int = 1,
    page_size: int = 10,
    difficulty: str | None = None,
    question_type: str | None = None,
    tag: str | None = None,
    search: str | None = None,
    is_active: bool | None = None,
) -> Pagination:
    query = Question.query
    if difficulty:
        query = query.filter(Question.difficulty == difficulty)
    if question_type:
        query = query.filter(Question.type == question_type)
    if tag:
        query = query.filter(_tag_clause(tag.strip()))
    if search:
        pattern = f"%{search.strip()}%"
        query = query.filter(or_(Question.title.ilike(pattern), Question.content.ilike(pattern)))
    if is_active is not None:
        query = query.filter(Question.is_active.is_(is_active))
    return query.order_by(Question.created_at.desc(), Question.id.desc()).paginate(
        page=page, per_page=page_size, error_out=False
    )


def _parse_exam_questions(raw: Any) -> list[ExamQuestionInput]:
    if not isinstance(raw, list) or not raw:
        raise ValidationError("An exam needs at least one question.")

    parsed: list[ExamQuestionInput] = []
    for index, item in enumerate(raw, start=1):
        if not isinstance(item, dict):
            raise ValidationError("Each exam question must be an object.")
        question_id = _optional_int(item, "questionId", "questionId", minimum=1)
        if question_id is None:
            raise ValidationError("Each exam question needs a questionId.")
        position = _optional_int(item, "order", "order", minimum=1)
        points = _optional_int(item, "points", "points", minimum=0)
        parsed.append(
            ExamQuestionInput(
                question_id=question_id,
                position=position if position is not None else index,
                points=points,
            )
        )

    if len({item.question_id for item in parsed}) != len(parsed):
        raise ValidationError("An exam cannot contain the same question twice.")
    if len({item.position for item in parsed}) != len(parsed):
        raise ValidationError("Exam question order values must be unique.")
    return parsed


def parse_exam_payload(data: dict[str, Any], *, partial: bool = False) -> ExamInput:
    exam_input = ExamInput(
        duration_minutes=_optional_int(data, "duration", "Duration", minimum=1),
        pass_score=_optional_int(data, "passScore", "Pass score", minimum=0, maximum=100),
    )
    if "title" in data or not partial:
        exam_input.title = _require_text(data, "title", "Title")
    if "description" in data:
        exam_input.description = (data.get("description") or "").strip()
    if data.get("status") is not None:
        if data["status"] not in EXAM_STATUSES:
            raise ValidationError(f"Status must be one of: {', '.join(EXAM_STATUSES)}.")
        exam_input.status = data["status"]
    if "questions" in data or not partial:
        exam_input.questions = _parse_exam_questions(data.get("questions"))
    if not partial and exam_input.duration_minutes is None:
        raise ValidationError("Duration is required.")
    return exam_input


def _ensure_active_questions(items: list[ExamQuestionInput]) -> dict[int, Question]:
    ids = [item.question_id for item in items]
    found = Question.query.filter(Question.id.in_(ids), Question.is_active.is_(True)).all()
    lookup = {question.id: question for question in found}
    missing = sorted(set(ids) - set(lookup))
    if missing:
        raise ValidationError(
            f"Some questions are invalid or inactive: {', '.join(map(str, missing))}."
        )
    return lookup


def _replace_exam_questions(
    exam: Exam, items: list[ExamQuestionInput], lookup: dict[int, Question]
) -> None:
    exam.questions.clear()
    # Flush the removals first so re-used positions do not trip uq_exam_position.
    db.session.flush()
    for item in sorted(items, key=lambda entry: entry.position):
        exam.questions.append(
            ExamQuestion(
                question=lookup[item.question_id],
                position=item.position,
                points=item.points,
            )
        )


def create_exam(data: ExamInput, *, creator: User | None = None) -> Exam:
    lookup = _ensure_active_questions(data.questions or [])
    exam = Exam(
        title=data.title,
        description=data.description or "",
        duration_minutes=data.duration_minutes,
        pass_score=60 if data.pass_score is None else data.pass_score,
        status=data.status or "draft",
        is_active=True,
        created_by=creator.id if creator else None,
    )
    db.session.add(exam)
    _replace_exam_questions(exam, data.questions or [], lookup)
    commit_or_fail("create exam")
    logger.info(
        "Exam created",
        extra={"exam_id": exam.id, "created_by": exam.created_by},
    )
    return exam


def get_exam(exam_id: int) -> Exam:
    exam = db.session.get(Exam, exam_id)
    if not exam:
        raise ExamNotFound()
    return exam


def _check_status_change(exam: Exam, new_status: str) -> None:
    current = EXAM_STATUSES.index(exam.status)
    target = EXAM_STATUSES.index(new_status)
    if target < current:
        raise ValidationError(f"Exam status cannot move from {exam.status} back to {new_status}.")


def update_exam(exam_id: int, data: ExamInput) -> Exam:
    exam = get_exam(exam_id)
    if data.touches_structure() and not exam.accepts_structural_edits:
        raise ExamLocked(f"Cannot edit a {exam.status} exam.")
    if data.status:
        _check_status_change(exam, data.status)
    lookup = _ensure_active_questions(data.questions) if data.questions is not None else {}

    if data.title is not None:
        exam.title = data.title
    if data.description is not None:
        exam.description = data.description
    if data.duration_minutes is not None:
        exam.duration_minutes = data.duration_minutes
    if data.pass_score is not None:
        exam.pass_score = data.pass_score
    if data.questions is not None:
        _replace_exam_questions(exam, data.questions, lookup)
    if data.status:
        exam.status = data.status

    commit_or_fail("update exam", exam_id=exam_id)
    logger.info("Exam updated", extra={"exam_id": exam_id})
    return exam


def delete_exam(exam_id: int) -> None:
    exam = get_exam(exam_id)
    if Result.query.filter_by(exam_id=exam_id).first():
        raise ExamHasResults()
    db.session.delete(exam)
    commit_or_fail("delete exam", exam_id=exam_id)
    logger.info("Exam deleted", extra={"exam_id": exam_id})


def list_exams(user: User, *, page: int = 1, page_size: int = 10) -> Pagination:
    query = Exam.query
    if not user.is_admin:
        query = query.join(UserExam, UserExam.exam_id == Exam.id).filter(
            UserExam.user_id == user.id
        )
    return query.order_by(Exam.created_at.desc(), Exam.id.desc()).paginate(
        page=page, per_page=page_size, error_out=False
    )


def exam_items(exam: Exam) -> list[ExamItem]:
    return [
        ExamItem(
            question_id=link.question_id,
            points=link.effective_points,
            correct_options=link.question.correct_option_ids(),
        )
        for link in exam.questions
    ]


__all__ = [
    "ExamInput",
    "ExamQuestionInput",
    "QuestionInput",
    "create_exam",
    "create_question",
    "delete_exam",
    "delete_question",
    "exam_items",
    "get_exam",
    "get_question",
    "list_exams",
    "list_questions",
    "list_tags",
    "parse_exam_payload",
    "parse_question_payload",
    "update_exam",
    "update_question",
    "validate_options",
]
