"""Exam results and aggregate statistics."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field

from flask_sqlalchemy.pagination import Pagination
from sqlalchemy import case, func

from .. import db
from ..errors import ResultNotFound
from ..models import Exam, Question, Result, User


@dataclass(frozen=True, slots=True)
class ResultDetail:
    result: Result
    # question id -> correct option ids; only filled in for admins.
    correct_options: dict[int, list[str]] | None = None


@dataclass(frozen=True, slots=True)
class ExamStatistics:
    exam_id: int
    exam_title: str
    total_attempts: int
    passed_attempts: int
    failed_attempts: int
    pass_rate: float
    average_score: float
    highest_score: float
    lowest_score: float
    average_duration: int


@dataclass(frozen=True, slots=True)
class UserStatistics:
    user_id: int
    username: str
    total_exams: int
    passed_exams: int
    failed_exams: int
    pass_rate: float
    average_score: float
    highest_score: float
    lowest_score: float
    total_time_spent: int


@dataclass(frozen=True, slots=True)
class QuestionStatistics:
    question_id: int
    question_title: str
    total_attempts: int
    correct_attempts: int
    wrong_attempts: int
    success_rate: float
    average_time_spent: int


@dataclass(frozen=True, slots=True)
class OverallStatistics:
    total_exams: int
    total_users: int
    total_attempts: int
    average_score: float
    pass_rate: float
    total_time_spent: int
    average_duration: int


@dataclass(frozen=True, slots=True)
class StatisticsReport:
    overall: OverallStatistics
    exams: list[ExamStatistics] = field(default_factory=list)
    users: list[UserStatistics] = field(default_factory=list)
    questions: list[QuestionStatistics] = field(default_factory=list)


USER_STATISTICS_LIMIT = 50
QUESTION_STATISTICS_LIMIT = 100


def list_results(
    user: User, *, exam_id: int | None = None, page: int = 1, page_size: int = 10
) -> Pagination:
    query = Result.query
    if not user.is_admin:
        query = query.filter(Result.user_id == user.id)
    if exam_id is not None:
        query = query.filter(Result.exam_id == exam_id)
    return query.order_by(Result.created_at.desc(), Result.id.desc()).paginate(
        page=page, per_page=page_size, error_out=False
    )


def get_result(result_id: int, user: User) -> ResultDetail:
    result = db.session.get(Result, result_id)
    # Other users' results are reported as missing rather than forbidden.
    if not result or (not user.is_admin and result.user_id != user.id):
        raise ResultNotFound()
    if not user.is_admin:
        return ResultDetail(result)

    question_ids = [answer["question_id"] for answer in result.answers or []]
    questions = Question.query.filter(Question.id.in_(question_ids)).all() if question_ids else []
    return ResultDetail(
        result,
        correct_options={q.id: sorted(q.correct_option_ids()) for q in questions},
    )


def _rate(part: int, whole: int) -> float:
    return round(100.0 * part / whole, 2) if whole else 0.0


def _passed_count():
    return func.coalesce(func.sum(case((Result.passed.is_(True), 1), else_=0)), 0)


def _exam_statistics() -> list[ExamStatistics]:
    rows = (
        db.session.query(
            Exam.id,
            Exam.title,
            func.count(Result.id),
            _passed_count(),
            func.coalesce(func.avg(Result.score), 0),
            func.coalesce(func.max(Result.score), 0),
            func.coalesce(func.min(Result.score), 0),
            func.coalesce(func.avg(Result.duration_seconds), 0),
        )
        .outerjoin(Result, Result.exam_id == Exam.id)
        .group_by(Exam.id, Exam.title)
        .order_by(func.count(Result.id).desc(), Exam.id)
        .all()
    )
    stats = []
    for exam_id, title, total, passed, avg_score, high, low, avg_duration in rows:
        total = int(total or 0)
        passed = int(passed or 0)
        stats.append(
            ExamStatistics(
                exam_id=exam_id,
                exam_title=title,
                total_attempts=total,
                passed_attempts=passed,
                failed_attempts=total - passed,
                pass_rate=_rate(passed, total),
                average_score=round(float(avg_score), 2),
                highest_score=float(high),
                lowest_score=float(low),
                average_duration=int(avg_duration or 0),
            )
        )
    return stats


def _user_statistics() -> list[UserStatistics]:
    rows = (
        db.session.query(
            User.id,
            User.username,
            func.count(Result.id),
            _passed_count(),
            func.avg(Result.score),
            func.max(Result.score),
            func.min(Result.score),
            func.coalesce(func.sum(Result.duration_seconds), 0),
        )
        .join(Result, Result.user_id == User.id)
        .filter(User.role == "user")
        .group_by(User.id, User.username)
        .order_by(func.count(Result.id).desc(), User.id)
        .limit(USER_STATISTICS_LIMIT)
        .all()
    )
    stats = []
    for user_id, username, total, passed, avg_score, high, low, total_time in rows:
        total = int(total)
        passed = int(passed or 0)
        stats.append(
            UserStatistics(
                user_id=user_id,
                username=username,
                total_exams=total,
                passed_exams=passed,
                failed_exams=total - passed,
                pass_rate=_rate(passed, total),
                average_score=round(float(avg_score), 2),
                highest_score=float(high),
                lowest_score=float(low),
                total_time_spent=int(total_time or 0),
            )
        )
    return stats


def _question_statistics() -> list[QuestionStatistics]:
    """Per-question accuracy for active questions, read from the stored answers."""

    totals: dict[int, list[int]] = defaultdict(lambda: [0, 0, 0])  # attempts, correct, time
    for (answers,) in db.session.query(Result.answers).yield_per(200):
        for answer in answers or []:
            bucket = totals[int(answer["question_id"])]
            bucket[0] += 1
            bucket[1] += 1 if answer.get("is_correct") else 0
            bucket[2] += int(answer.get("time_spent") or 0)
    if not totals:
        return []

    titles = dict(
        db.session.query(Question.id, Question.title).filter(
            Question.id.in_(list(totals)), Question.is_active.is_(True)
        )
    )
    stats = [
        QuestionStatistics(
            question_id=question_id,
            question_title=titles.get(question_id, ""),
            total_attempts=attempts,
            correct_attempts=correct,
            wrong_attempts=attempts - correct,
            success_rate=_rate(correct, attempts),
            average_time_spent=time_spent // attempts,
        )
        for question_id, (attempts, correct, time_spent) in totals.items()
        if question_id in titles
    ]
    stats.sort(key=lambda item: (-item.total_attempts, item.question_id))
    return stats[:QUESTION_STATISTICS_LIMIT]


def _overall_statistics() -> OverallStatistics:
    total_attempts, passed, avg_score, total_time, avg_duration = db.session.query(
        func.count(Result.id),
        _passed_count(),
        func.coalesce(func.avg(Result.score), 0),
        func.coalesce(func.sum(Result.duration_seconds), 0),
        func.coalesce(func.avg(Result.duration_seconds), 0),
    ).one()
    total_attempts = int(total_attempts or 0)
    return OverallStatistics(
        total_exams=Exam.query.count(),
        total_users=User.query.filter_by(role="user").count(),
        total_attempts=total_attempts,
        average_score=round(float(avg_score), 2),
        pass_rate=_rate(int(passed or 0), total_attempts),
        total_time_spent=int(total_time or 0),
        average_duration=int(avg_duration or 0),
    )


def get_statistics() -> StatisticsReport:
    return StatisticsReport(
        overall=_overall_statistics(),
        exams=_exam_statistics(),
        users=_user_statistics(),
        questions=_question_statistics(),
    )


__all__ = [
    "ExamStatistics",
    "OverallStatistics",
    "QuestionStatistics",
    "ResultDetail",
    "StatisticsReport",
    "UserStatistics",
    "get_result",
    "get_statistics",
    "list_results",
]
