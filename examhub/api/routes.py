from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from flask import current_app, jsonify, request
from flask_login import current_user, login_required
from werkzeug.exceptions import HTTPException

from .. import db
from ..auth import admin_required, get_token_service
from ..errors import ExamServiceError, QuestionNotFound, ValidationError
from ..logging_config import current_request_id
from ..models import USER_ROLES, Exam, ExamQuestion, Question, Result, User
from ..services import accounts, attempt_state, catalog, throttle
from ..services.attempts import (
    AssignmentOutcome,
    AttemptView,
    assign_exam,
    get_exam_for_user,
    reset_attempt,
    start_exam,
    submit_exam,
)
from ..services.grading import parse_submission
from ..services.results import StatisticsReport, get_result, get_statistics, list_results
from . import api_bp


def _json_error(message: str, status: int = 400, *, code: str | None = None):
    payload = {"error": message, "code": code or "ERROR", "requestId": current_request_id()}
    return jsonify(payload), status


@api_bp.app_errorhandler(ExamServiceError)
def handle_service_error(exc: ExamServiceError):
    if exc.status >= 500:
        current_app.logger.error("Request failed: %s", exc.message, extra={"code": exc.code})
    return _json_error(exc.message, exc.status, code=exc.code)


@api_bp.app_errorhandler(HTTPException)
def handle_http_error(exc: HTTPException):
    code = (exc.name or "error").upper().replace(" ", "_")
    return _json_error(exc.description or exc.name, exc.code or 500, code=code)


@api_bp.app_errorhandler(Exception)
def handle_unexpected_error(exc: Exception):
    db.session.rollback()
    current_app.logger.exception("Unhandled error: %s", exc)
    return _json_error("Internal server error.", 500, code="INTERNAL_ERROR")


def _json_body() -> dict[str, Any]:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object.")
    return data


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_datetime(value: Any, label: str) -> datetime | None:
    """Parse an ISO-8601 timestamp into the naive UTC form the database stores."""

    if value in (None, ""):
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{label} must be an ISO-8601 timestamp.")
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError as exc:
        raise ValidationError(f"{label} must be an ISO-8601 timestamp.") from exc
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _page_args() -> tuple[int, int]:
    default_size = current_app.config["DEFAULT_PAGE_SIZE"]
    max_size = current_app.config["MAX_PAGE_SIZE"]
    page = request.args.get("page", 1, type=int) or 1
    page_size = request.args.get("pageSize", default_size, type=int) or default_size
    return max(page, 1), min(max(page_size, 1), max_size)


def _pagination_payload(pagination, key: str, items: list[dict[str, Any]]) -> dict[str, Any]:
    return {
        key: items,
        "total": pagination.total,
        "page": pagination.page,
        "pageSize": pagination.per_page,
        "totalPages": pagination.pages,
    }


def _serialise_user(user: User) -> dict[str, Any]:
    return {
        "id": user.id,
        "email": user.email,
        "username": user.username,
        "firstName": user.first_name,
        "lastName": user.last_name,
        "role": user.role,
        "isActive": user.is_active,
        "lastLoginAt": _isoformat(user.last_login_at),
        "createdAt": _isoformat(user.created_at),
    }


def _serialise_question(question: Question, *, include_answers: bool = False) -> dict[str, Any]:
    payload = {
        "id": question.id,
        "title": question.title,
        "content": question.content,
        "type": question.type,
        "difficulty": question.difficulty,
        "options": question.public_options(),
        "tags": question.tag_list(),
        "points": question.points,
        "timeLimitSeconds": question.time_limit_seconds,
        "isActive": question.is_active,
        "createdAt": _isoformat(question.created_at),
    }
    if include_answers:
        payload["options"] = [
            {"id": option["id"], "text": option["text"], "isCorrect": bool(option["is_correct"])}
            for option in question.options or []
        ]
        payload["explanation"] = question.explanation
        payload["createdBy"] = question.created_by
    return payload


def _serialise_exam_question(
    link: ExamQuestion, *, include_answers: bool = False
) -> dict[str, Any]:
    # Points are what this exam awards, which may override the question default.
    payload = _serialise_question(link.question, include_answers=include_answers)
    payload["points"] = link.effective_points
    payload["order"] = link.position
    return payload


def _serialise_exam(
    exam: Exam, *, include_questions: bool = False, include_answers: bool = False
) -> dict[str, Any]:
    payload = {
        "id": exam.id,
        "title": exam.title,
        "description": exam.description,
        "duration": exam.duration_minutes,
        "passScore": exam.pass_score,
        "status": exam.status,
        "isActive": exam.is_active,
        "questionCount": len(exam.questions),
        "totalPoints": exam.total_points,
        "createdAt": _isoformat(exam.created_at),
        "updatedAt": _isoformat(exam.updated_at),
    }
    if include_questions:
        payload["questions"] = [
            {
                "questionId": link.question_id,
                "order": link.position,
                "points": link.effective_points,
                "question": _serialise_exam_question(link, include_answers=include_answers),
            }
            for link in exam.questions
        ]
    return payload


def _serialise_attempt(view: AttemptView) -> dict[str, Any]:
    attempt = view.attempt
    return {
        "id": attempt.id,
        "userId": attempt.user_id,
        "examId": attempt.exam_id,
        "status": view.status,
        "startedAt": _isoformat(attempt.started_at),
        "completedAt": _isoformat(attempt.completed_at),
        "expiresAt": _isoformat(attempt.expires_at),
        "attemptCount": attempt.attempt_count,
        "maxAttempts": attempt.max_attempts,
        "attemptsRemaining": attempt_state.attempts_remaining(attempt),
        "timeLeft": view.time_left,
    }


def _serialise_outcome(outcome: AssignmentOutcome) -> dict[str, Any]:
    return {
        "userId": outcome.user_id,
        "outcome": outcome.outcome,
        "attemptId": outcome.attempt_id,
        "reason": outcome.reason,
    }


def _serialise_result(
    result: Result, *, correct_options: dict[int, list[str]] | None = None
) -> dict[str, Any]:
    answers = []
    for answer in result.answers or []:
        entry = {
            "questionId": answer["question_id"],
            "selectedOptions": answer.get("selected_options", []),
            "isCorrect": answer.get("is_correct", False),
            "points": answer.get("points", 0),
            "timeSpent": answer.get("time_spent", 0),
        }
        if correct_options is not None:
            entry["correctOptions"] = correct_options.get(answer["question_id"], [])
        answers.append(entry)
    return {
        "id": result.id,
        "userId": result.user_id,
        "examId": result.exam_id,
        "attemptId": result.user_exam_id,
        "score": result.score,
        "earnedPoints": result.earned_points,
        "maxPoints": result.max_points,
        "passed": result.passed,
        "submittedLate": result.submitted_late,
        "startedAt": _isoformat(result.started_at),
        "endedAt": _isoformat(result.ended_at),
        "duration": result.duration_seconds,
        "createdAt": _isoformat(result.created_at),
        "answers": answers,
    }


def _serialise_statistics(report: StatisticsReport) -> dict[str, Any]:
    overall = report.overall
    return {
        "overall": {
            "totalExams": overall.total_exams,
            "totalUsers": overall.total_users,
            "totalAttempts": overall.total_attempts,
            "averageScore": overall.average_score,
            "passRate": overall.pass_rate,
            "totalTimeSpent": overall.total_time_spent,
            "averageDuration": overall.average_duration,
        },
        "exams": [
            {
                "examId": item.exam_id,
                "examTitle": item.exam_title,
                "totalAttempts": item.total_attempts,
                "passedAttempts": item.passed_attempts,
                "failedAttempts": item.failed_attempts,
                "passRate": item.pass_rate,
                "averageScore": item.average_score,
                "highestScore": item.highest_score,
                "lowestScore": item.lowest_score,
                "averageDuration": item.average_duration,
            }
            for item in report.exams
        ],
        "users": [
            {
                "userId": item.user_id,
                "username": item.username,
                "totalExams": item.total_exams,
                "passedExams": item.passed_exams,
                "failedExams": item.failed_exams,
                "passRate": item.pass_rate,
                "averageScore": item.average_score,
                "highestScore": item.highest_score,
                "lowestScore": item.lowest_score,
                "totalTimeSpent": item.total_time_spent,
            }
            for item in report.users
        ],
        "questions": [
            {
                "questionId": item.question_id,
                "questionTitle": item.question_title,
                "totalAttempts": item.total_attempts,
                "correctAttempts": item.correct_attempts,
                "wrongAttempts": item.wrong_attempts,
                "successRate": item.success_rate,
                "averageTimeSpent": item.average_time_spent,
            }
            for item in report.questions
        ],
    }


def _token_payload(user: User) -> dict[str, Any]:
    pair = get_token_service().issue_pair(user)
    return {
        "token": pair.access_token,
        "expiresAt": pair.access_expires_at.isoformat(),
        "refreshToken": pair.refresh_token,
        "refreshExpiresAt": pair.refresh_expires_at.isoformat(),
        "user": _serialise_user(user),
    }


@api_bp.post("/auth/register")
def register():
    data = _json_body()
    user = accounts.register_user(
        email=data.get("email") or "",
        username=data.get("username") or "",
        password=data.get("password") or "",
        first_name=data.get("firstName") or "",
        last_name=data.get("lastName") or "",
    )
    current_app.logger.info("register success", extra={"user_id": user.id})
    return jsonify(_token_payload(user)), 201


@api_bp.post("/auth/login")
def login():
    data = _json_body()
    user = accounts.authenticate(data.get("email") or "", data.get("password") or "")
    return jsonify(_token_payload(user))


@api_bp.post("/auth/refresh")
def refresh():
    user = accounts.refresh_session(_json_body().get("refreshToken") or "")
    return jsonify(_token_payload(user))


@api_bp.post("/auth/logout")
@login_required
def logout():
    accounts.revoke_tokens(current_user)
    return jsonify({"loggedOut": True})


@api_bp.get("/auth/me")
@login_required
def me():
    return jsonify(_serialise_user(current_user))


def _bool_arg(name: str) -> bool | None:
    raw = request.args.get(name)
    if raw is None or raw == "":
        return None
    return raw.lower() in {"1", "true", "yes"}


@api_bp.get("/users/me")
@login_required
def users_profile():
    return jsonify(_serialise_user(current_user))


@api_bp.put("/users/me")
@login_required
def users_update_profile():
    data = accounts.parse_user_payload(_json_body(), admin=False)
    return jsonify(_serialise_user(accounts.update_profile(current_user, data)))


@api_bp.post("/users/me/password")
@login_required
def users_change_password():
    data = _json_body()
    user = accounts.change_password(
        current_user, data.get("currentPassword") or "", data.get("newPassword") or ""
    )
    # Older tokens stop working, so hand back a fresh pair.
    return jsonify(_token_payload(user))


@api_bp.get("/users")
@admin_required
def users_index():
    page, page_size = _page_args()
    role = request.args.get("role") or None
    if role and role not in USER_ROLES:
        raise ValidationError(f"Role must be one of: {', '.join(USER_ROLES)}.")
    pagination = accounts.list_users(
        page=page,
        page_size=page_size,
        search=request.args.get("search"),
        role=role,
        is_active=_bool_arg("isActive"),
    )
    items = [_serialise_user(user) for user in pagination.items]
    return jsonify(_pagination_payload(pagination, "users", items))


@api_bp.get("/users/<int:user_id>")
@admin_required
def users_show(user_id: int):
    return jsonify(_serialise_user(accounts.get_user(user_id)))


@api_bp.put("/users/<int:user_id>")
@admin_required
def users_update(user_id: int):
    data = accounts.parse_user_payload(_json_body(), admin=True)
    return jsonify(_serialise_user(accounts.update_user(user_id, data, acting=current_user)))


@api_bp.post("/users/<int:user_id>/activate")
@admin_required
def users_activate(user_id: int):
    return jsonify(_serialise_user(accounts.set_user_active(user_id, True, acting=current_user)))


@api_bp.post("/users/<int:user_id>/deactivate")
@api_bp.delete("/users/<int:user_id>")
@admin_required
def users_deactivate(user_id: int):
    # Accounts are never removed; their attempts and results stay on record.
    return jsonify(_serialise_user(accounts.set_user_active(user_id, False, acting=current_user)))


@api_bp.get("/questions")
@login_required
def questions_index():
    page, page_size = _page_args()
    is_admin = current_user.is_admin
    pagination = catalog.list_questions(
        page=page,
        page_size=page_size,
        difficulty=request.args.get("difficulty"),
        question_type=request.args.get("type"),
        tag=request.args.get("tag"),
        search=request.args.get("search"),
        is_active=_bool_arg("isActive") if is_admin else True,
    )
    items = [
        _serialise_question(question, include_answers=is_admin) for question in pagination.items
    ]
    return jsonify(_pagination_payload(pagination, "questions", items))


@api_bp.get("/questions/tags")
@login_required
def questions_tags():
    return jsonify({"tags": catalog.list_tags(include_inactive=current_user.is_admin)})


@api_bp.post("/questions")
@admin_required
def questions_create():
    question = catalog.create_question(
        catalog.parse_question_payload(_json_body()), creator=current_user
    )
    return jsonify(_serialise_question(question, include_answers=True)), 201


@api_bp.get("/questions/<int:question_id>")
@login_required
def questions_show(question_id: int):
    question = catalog.get_question(question_id)
    if not current_user.is_admin and not question.is_active:
        raise QuestionNotFound()
    return jsonify(_serialise_question(question, include_answers=current_user.is_admin))


@api_bp.put("/questions/<int:question_id>")
@admin_required
def questions_update(question_id: int):
    question = catalog.update_question(
        question_id, catalog.parse_question_payload(_json_body())
    )
    return jsonify(_serialise_question(question, include_answers=True))


@api_bp.delete("/questions/<int:question_id>")
@admin_required
def questions_delete(question_id: int):
    catalog.delete_question(question_id)
    return jsonify({"deleted": True, "questionId": question_id})


@api_bp.get("/exams")
@login_required
def exams_index():
    page, page_size = _page_args()
    pagination = catalog.list_exams(current_user, page=page, page_size=page_size)
    items = [_serialise_exam(exam) for exam in pagination.items]
    return jsonify(_pagination_payload(pagination, "exams", items))


@api_bp.post("/exams")
@admin_required
def exams_create():
    exam = catalog.create_exam(catalog.parse_exam_payload(_json_body()), creator=current_user)
    return jsonify(_serialise_exam(exam, include_questions=True, include_answers=True)), 201


@api_bp.get("/exams/<int:exam_id>")
@login_required
def exams_show(exam_id: int):
    exam, view = get_exam_for_user(exam_id, current_user)
    if view is None:
        return jsonify(_serialise_exam(exam, include_questions=True, include_answers=True))
    # Question content is only handed out while the attempt is running.
    payload = _serialise_exam(exam, include_questions=view.status == attempt_state.STARTED)
    payload["attempt"] = _serialise_attempt(view)
    return jsonify(payload)


@api_bp.put("/exams/<int:exam_id>")
@admin_required
def exams_update(exam_id: int):
    exam = catalog.update_exam(exam_id, catalog.parse_exam_payload(_json_body(), partial=True))
    return jsonify(_serialise_exam(exam, include_questions=True, include_answers=True))


@api_bp.delete("/exams/<int:exam_id>")
@admin_required
def exams_delete(exam_id: int):
    catalog.delete_exam(exam_id)
    return jsonify({"deleted": True, "examId": exam_id})


@api_bp.post("/exams/<int:exam_id>/assign")
@admin_required
def exams_assign(exam_id: int):
    data = _json_body()
    user_ids = data.get("userIds")
    if not isinstance(user_ids, list):
        raise ValidationError("userIds must be a list of user ids.")
    max_attempts = data.get("maxAttempts")
    outcomes = assign_exam(
        exam_id,
        user_ids,
        expires_at=_parse_datetime(data.get("expiresAt"), "expiresAt"),
        max_attempts=1 if max_attempts is None else max_attempts,
    )
    return jsonify(
        {"examId": exam_id, "assignments": [_serialise_outcome(item) for item in outcomes]}
    )


@api_bp.post("/exams/<int:exam_id>/attempts/<int:user_id>/reset")
@admin_required
def exams_reset_attempt(exam_id: int, user_id: int):
    data = _json_body()
    attempt = reset_attempt(exam_id, user_id, confirm=data.get("confirm") is True)
    current_app.logger.info(
        "attempt reset by admin",
        extra={"exam_id": exam_id, "user_id": user_id, "admin_id": current_user.id},
    )
    return jsonify(_serialise_attempt(AttemptView(attempt, attempt.exam, attempt.status, None)))


@api_bp.post("/exams/<int:exam_id>/start")
@login_required
def exams_start(exam_id: int):
    started = start_exam(exam_id, current_user.id)
    return jsonify(
        {
            "attempt": _serialise_attempt(
                AttemptView(
                    started.attempt, started.exam, started.attempt.status, started.time_left
                )
            ),
            "exam": _serialise_exam(started.exam),
            "questions": [_serialise_exam_question(link) for link in started.questions],
            "timeLeft": started.time_left,
        }
    )


@api_bp.post("/exams/<int:exam_id>/submit")
@login_required
def exams_submit(exam_id: int):
    throttle.consume(
        throttle.SUBMIT_SCOPE,
        f"user:{current_user.id}",
        limit=current_app.config["SUBMIT_RATE_LIMIT"],
        length=timedelta(minutes=current_app.config["SUBMIT_WINDOW_MINUTES"]),
        message="Too many submissions. Try again later.",
    )
    answers = parse_submission(_json_body().get("answers"))
    result = submit_exam(exam_id, current_user.id, answers)
    return jsonify(_serialise_result(result))


@api_bp.get("/results")
@login_required
def results_index():
    page, page_size = _page_args()
    pagination = list_results(
        current_user,
        exam_id=request.args.get("examId", type=int),
        page=page,
        page_size=page_size,
    )
    items = [_serialise_result(result) for result in pagination.items]
    return jsonify(_pagination_payload(pagination, "results", items))


@api_bp.get("/results/statistics")
@admin_required
def results_statistics():
    return jsonify(_serialise_statistics(get_statistics()))


@api_bp.get("/results/<int:result_id>")
@login_required
def results_show(result_id: int):
    detail = get_result(result_id, current_user)
    return jsonify(_serialise_result(detail.result, correct_options=detail.correct_options))
