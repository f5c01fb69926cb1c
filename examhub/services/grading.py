"""Deterministic grading of a submitted exam.

Grading walks the exam's own question list, never the submission: questions
without an answer score zero, and answers for questions outside the exam are
ignored. An answer is correct only when its selected option ids are exactly the
question's correct option ids.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from ..errors import ValidationError


@dataclass(frozen=True, slots=True)
class ExamItem:
    """One question as the grader sees it: its exam points and answer key."""

    question_id: int
    points: int
    correct_options: frozenset[str]


@dataclass(frozen=True, slots=True)
class SubmittedAnswer:
    question_id: int
    selected_options: tuple[str, ...]
    time_spent: int = 0


@dataclass(frozen=True, slots=True)
class GradedAnswer:
    question_id: int
    selected_options: tuple[str, ...]
    is_correct: bool
    points: int
    time_spent: int

    def as_record(self) -> dict[str, Any]:
        return {
            "question_id": self.question_id,
            "selected_options": list(self.selected_options),
            "is_correct": self.is_correct,
            "points": self.points,
            "time_spent": self.time_spent,
        }


@dataclass(frozen=True, slots=True)
class GradeReport:
    answers: tuple[GradedAnswer, ...]
    earned_points: int
    max_points: int
    score: float
    passed: bool


def is_exact_selection(selected: Sequence[str], correct: frozenset[str]) -> bool:
    return len(selected) == len(correct) and set(selected) == correct


def grade_submission(
    items: Iterable[ExamItem],
    answers: Mapping[int, SubmittedAnswer],
    pass_score: int | float,
) -> GradeReport:
    graded: list[GradedAnswer] = []
    earned_points = 0
    max_points = 0

    for item in items:
        max_points += item.points
        submitted = answers.get(item.question_id)
        if submitted is None:
            graded.append(
                GradedAnswer(
                    question_id=item.question_id,
                    selected_options=(),
                    is_correct=False,
                    points=0,
                    time_spent=0,
                )
            )
            continue

        correct = is_exact_selection(submitted.selected_options, item.correct_options)
        awarded = item.points if correct else 0
        earned_points += awarded
        graded.append(
            GradedAnswer(
                question_id=item.question_id,
                selected_options=submitted.selected_options,
                is_correct=correct,
                points=awarded,
                time_spent=submitted.time_spent,
            )
        )

    # An exam worth zero points scores zero rather than dividing by zero.
    score = 100.0 * earned_points / max_points if max_points > 0 else 0.0
    return GradeReport(
        answers=tuple(graded),
        earned_points=earned_points,
        max_points=max_points,
        score=score,
        passed=score >= pass_score,
    )


def parse_submission(payload: Any) -> dict[int, SubmittedAnswer]:
    """Validate a raw ``answers`` payload and index it by question id.

    Accepts a list of ``{"questionId", "selectedOptions", "timeSpent"}`` objects
    (snake_case keys are accepted too). Duplicate question ids, duplicate
    options within one answer and non-string option ids are rejected.
    """

    if payload is None:
        return {}
    if not isinstance(payload, list):
        raise ValidationError("Answers must be a list.")

    parsed: dict[int, SubmittedAnswer] = {}
    for index, raw in enumerate(payload):
        if not isinstance(raw, dict):
            raise ValidationError(f"Answer #{index + 1} must be an object.")

        question_id = raw.get("questionId", raw.get("question_id"))
        if isinstance(question_id, bool) or not isinstance(question_id, int):
            raise ValidationError(f"Answer #{index + 1} needs an integer questionId.")
        if question_id in parsed:
            raise ValidationError(f"Question {question_id} was answered more than once.")

        selected = raw.get("selectedOptions", raw.get("selected_options", []))
        if not isinstance(selected, list) or not all(isinstance(opt, str) for opt in selected):
            raise ValidationError(f"Answer for question {question_id} has invalid selectedOptions.")
        if len(set(selected)) != len(selected):
            raise ValidationError(f"Answer for question {question_id} repeats an option.")

        time_spent = raw.get("timeSpent", raw.get("time_spent", 0)) or 0
        if isinstance(time_spent, bool) or not isinstance(time_spent, int) or time_spent < 0:
            raise ValidationError(f"Answer for question {question_id} has an invalid timeSpent.")

        parsed[question_id] = SubmittedAnswer(
            question_id=question_id,
            selected_options=tuple(selected),
            time_spent=time_spent,
        )
    return parsed


__all__ = [
    "ExamItem",
    "GradeReport",
    "GradedAnswer",
    "SubmittedAnswer",
    "grade_submission",
    "is_exact_selection",
    "parse_submission",
]
