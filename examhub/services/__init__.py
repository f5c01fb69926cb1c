"""Service layer for exam administration: catalog, attempts, grading and results."""

from .attempts import (
    AssignmentOutcome,
    AttemptView,
    StartedExam,
    assign_exam,
    get_attempt,
    get_exam_for_user,
    has_attempt,
    reset_attempt,
    start_exam,
    submit_exam,
)
from .grading import GradeReport, grade_submission, parse_submission
from .results import StatisticsReport, get_result, get_statistics, list_results
from .session_guard import SessionGuard, get_session_guard

__all__ = [
    "AssignmentOutcome",
    "AttemptView",
    "StartedExam",
    "assign_exam",
    "get_attempt",
    "get_exam_for_user",
    "has_attempt",
    "reset_attempt",
    "start_exam",
    "submit_exam",
    "GradeReport",
    "grade_submission",
    "parse_submission",
    "StatisticsReport",
    "get_result",
    "get_statistics",
    "list_results",
    "SessionGuard",
    "get_session_guard",
]
