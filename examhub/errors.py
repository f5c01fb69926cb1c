"""Domain errors raised by the service layer.

Every error carries a stable machine readable ``code`` and the HTTP status the
API layer maps it to, so the blueprint error handler can render all of them
the same way.
"""

from __future__ import annotations


class ExamServiceError(RuntimeError):
    """Base class for errors surfaced to API clients."""

    code = "EXAM_SERVICE_ERROR"
    status = 400

    def __init__(self, message: str | None = None, *, code: str | None = None) -> None:
        super().__init__(message or self.default_message())
        if code:
            self.code = code

    @classmethod
    def default_message(cls) -> str:
        return (cls.__doc__ or cls.__name__).strip().splitlines()[0]

    @property
    def message(self) -> str:
        return str(self)


class NotFound(ExamServiceError):
    """The requested resource does not exist."""

    code = "NOT_FOUND"
    status = 404


class ExamNotFound(NotFound):
    """Exam not found."""

    code = "EXAM_NOT_FOUND"


class QuestionNotFound(NotFound):
    """Question not found."""

    code = "QUESTION_NOT_FOUND"


class ResultNotFound(NotFound):
    """Result not found."""

    code = "RESULT_NOT_FOUND"


class UserNotFound(NotFound):
    """User not found."""

    code = "USER_NOT_FOUND"


class NotAssigned(NotFound):
    """Exam not assigned to user."""

    code = "EXAM_NOT_ASSIGNED"


class InvalidStateTransition(ExamServiceError):
    """The attempt is not in a state that allows this operation."""

    code = "INVALID_STATE_TRANSITION"
    status = 403


class CannotStart(InvalidStateTransition):
    """Exam cannot be started."""

    code = "EXAM_CANNOT_START"


class CannotSubmit(InvalidStateTransition):
    """Exam cannot be submitted."""

    code = "EXAM_CANNOT_SUBMIT"


class AttemptExpired(InvalidStateTransition):
    """The assignment deadline for this exam has passed."""

    code = "ATTEMPT_EXPIRED"


class AttemptsExhausted(CannotStart):
    """No attempts left for this exam."""

    code = "ATTEMPTS_EXHAUSTED"


class ValidationError(ExamServiceError):
    """Invalid request data."""

    code = "INVALID_REQUEST"
    status = 400


class Conflict(ExamServiceError):
    """The request conflicts with the current state of the resource."""

    code = "CONFLICT"
    status = 409


class ExamLocked(Conflict):
    """Completed or archived exams cannot be edited."""

    code = "EXAM_LOCKED"


class ExamHasResults(Conflict):
    """Cannot delete exam with existing results."""

    code = "EXAM_HAS_RESULTS"


class QuestionInUse(Conflict):
    """Question is used by a live exam."""

    code = "QUESTION_IN_USE"


class AccountExists(Conflict):
    """User with email or username already exists."""

    code = "ACCOUNT_EXISTS"


class AuthenticationError(ExamServiceError):
    """Authentication required."""

    code = "UNAUTHORIZED"
    status = 401


class PermissionDenied(ExamServiceError):
    """Admin access required."""

    code = "INSUFFICIENT_PERMISSIONS"
    status = 403


class TooManyAttempts(ExamServiceError):
    """Too many login attempts. Try again later."""

    code = "RATE_LIMITED"
    status = 429


class DependencyUnavailable(ExamServiceError):
    """A secondary dependency could not be reached."""

    code = "DEPENDENCY_UNAVAILABLE"
    status = 503


class PersistenceFailure(ExamServiceError):
    """The change could not be saved."""

    code = "PERSISTENCE_FAILURE"
    status = 500


__all__ = [
    "AccountExists",
    "AttemptExpired",
    "AttemptsExhausted",
    "AuthenticationError",
    "CannotStart",
    "CannotSubmit",
    "Conflict",
    "DependencyUnavailable",
    "ExamHasResults",
    "ExamLocked",
    "ExamNotFound",
    "ExamServiceError",
    "InvalidStateTransition",
    "NotAssigned",
    "NotFound",
    "PermissionDenied",
    "PersistenceFailure",
    "QuestionInUse",
    "QuestionNotFound",
    "ResultNotFound",
    "TooManyAttempts",
    "UserNotFound",
    "ValidationError",
]
