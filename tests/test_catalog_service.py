import pytest

from examhub import db
from examhub.errors import (
    ExamHasResults,
    ExamLocked,
    QuestionInUse,
    QuestionNotFound,
    ValidationError,
)
from examhub.models import Exam, ExamQuestion, Result, UserExam, utcnow
from examhub.services import catalog


def _question_payload(**overrides):
    payload = {
        "title": "Largest planet",
        "content": "Which planet is the largest?",
        "type": "multiple_choice",
        "difficulty": "easy",
        "options": [
            {"id": "a", "text": "Jupiter", "isCorrect": True},
            {"id": "b", "text": "Mars", "isCorrect": False},
        ],
        "tags": ["astronomy", " planets "],
        "points": 2,
    }
    payload.update(overrides)
    return payload


def test_create_question_normalises_options_and_tags(app):
    question = catalog.create_question(catalog.parse_question_payload(_question_payload()))

    assert question.id is not None
    assert question.options[0] == {"id": "a", "text": "Jupiter", "is_correct": True}
    assert question.tag_list() == ["astronomy", "planets"]
    assert question.correct_option_ids() == frozenset({"a"})
    assert question.points == 2
    assert question.time_limit_seconds == 60


@pytest.mark.parametrize(
    "options, question_type",
    [
        ([{"id": "a", "text": "Only", "isCorrect": True}], "multiple_choice"),
        ([{"id": "a", "text": "A"}, {"id": "b", "text": "B"}], "multiple_choice"),
        ([{"id": "", "text": "A", "isCorrect": True}, {"id": "b", "text": "B"}], "multiple_choice"),
        ([{"id": "a", "text": " ", "isCorrect": True}, {"id": "b", "text": "B"}], "multiple_choice"),
        ([{"id": "a", "text": "A", "isCorrect": True}, {"id": "a", "text": "B"}], "multiple_choice"),
        (
            [
                {"id": "t", "text": "True", "isCorrect": True},
                {"id": "f", "text": "False", "isCorrect": True},
            ],
            "true_false",
        ),
        (
            [
                {"id": "t", "text": "True", "isCorrect": True},
                {"id": "f", "text": "False"},
                {"id": "x", "text": "Maybe"},
            ],
            "true_false",
        ),
    ],
)
def test_invalid_option_sets_are_rejected(options, question_type):
    with pytest.raises(ValidationError):
        catalog.validate_options(options, question_type)


def test_question_payload_validation():
    with pytest.raises(ValidationError):
        catalog.parse_question_payload(_question_payload(title=""))
    with pytest.raises(ValidationError):
        catalog.parse_question_payload(_question_payload(type="essay"))
    with pytest.raises(ValidationError):
        catalog.parse_question_payload(_question_payload(points=-1))


def test_delete_question_blocked_by_live_exam(make_question, make_exam):
    question = make_question("In use")
    exam = make_exam([question], status="active")

    with pytest.raises(QuestionInUse):
        catalog.delete_question(question.id)

    exam.status = "archived"
    db.session.commit()
    catalog.delete_question(question.id)
    assert catalog.get_question(question.id).is_active is False


def test_get_missing_question(app):
    with pytest.raises(QuestionNotFound):
        catalog.get_question(12345)


def test_list_questions_filters(make_question):
    make_question("Alpha", tags="math,algebra")
    make_question("Beta", tags="history")
    make_question("Gamma", tags="math", is_active=False)

    by_tag = catalog.list_questions(tag="math")
    assert {q.title for q in by_tag.items} == {"Alpha", "Gamma"}

    active = catalog.list_questions(tag="math", is_active=True)
    assert [q.title for q in active.items] == ["Alpha"]

    search = catalog.list_questions(search="bet")
    assert [q.title for q in search.items] == ["Beta"]

    paged = catalog.list_questions(page=2, page_size=2)
    assert paged.total == 3
    assert len(paged.items) == 1


def _exam_payload(question_ids, **overrides):
    payload = {
        "title": "Midterm",
        "description": "Covers weeks 1-6",
        "duration": 45,
        "passScore": 70,
        "questions": [{"questionId": qid} for qid in question_ids],
    }
    payload.update(overrides)
    return payload


def test_create_exam_orders_questions_and_points(make_question):
    first = make_question("One", points=2)
    second = make_question("Two", points=3)
    payload = _exam_payload(
        [],
        questions=[
            {"questionId": second.id, "order": 2, "points": 10},
            {"questionId": first.id, "order": 1},
        ],
    )
    exam = catalog.create_exam(catalog.parse_exam_payload(payload))

    assert exam.status == "draft"
    assert [link.question_id for link in exam.questions] == [first.id, second.id]
    assert exam.total_points == 12
    items = catalog.exam_items(exam)
    assert [(item.question_id, item.points) for item in items] == [(first.id, 2), (second.id, 10)]


def test_create_exam_rejects_bad_question_lists(make_question):
    active = make_question("Active")
    inactive = make_question("Inactive", is_active=False)

    with pytest.raises(ValidationError):
        catalog.parse_exam_payload(_exam_payload([active.id, active.id]))
    with pytest.raises(ValidationError):
        catalog.parse_exam_payload(_exam_payload([]))
    with pytest.raises(ValidationError):
        catalog.create_exam(catalog.parse_exam_payload(_exam_payload([active.id, inactive.id])))
    assert Exam.query.count() == 0


def test_update_exam_replaces_questions(make_question, make_exam):
    first = make_question("One")
    second = make_question("Two")
    exam = make_exam([first, second], status="draft")

    updated = catalog.update_exam(
        exam.id,
        catalog.parse_exam_payload(
            {"questions": [{"questionId": second.id}, {"questionId": first.id}]}, partial=True
        ),
    )
    assert [link.question_id for link in updated.questions] == [second.id, first.id]
    assert ExamQuestion.query.filter_by(exam_id=exam.id).count() == 2


def test_locked_exam_rejects_structural_edits(make_question, make_exam):
    exam = make_exam([make_question("One")], status="completed")

    with pytest.raises(ExamLocked):
        catalog.update_exam(exam.id, catalog.parse_exam_payload({"duration": 10}, partial=True))

    renamed = catalog.update_exam(
        exam.id, catalog.parse_exam_payload({"title": "Renamed"}, partial=True)
    )
    assert renamed.title == "Renamed"


def test_exam_status_only_moves_forward(make_question, make_exam):
    exam = make_exam([make_question("One")], status="active")
    with pytest.raises(ValidationError):
        catalog.update_exam(exam.id, catalog.parse_exam_payload({"status": "draft"}, partial=True))


def test_delete_exam_with_results_is_refused(make_user, make_question, make_exam):
    user = make_user("taker")
    exam = make_exam([make_question("One")])
    attempt = UserExam(user_id=user.id, exam_id=exam.id, status="completed", attempt_count=1)
    db.session.add(attempt)
    db.session.flush()
    now = utcnow()
    db.session.add(
        Result(
            user_id=user.id,
            exam_id=exam.id,
            user_exam_id=attempt.id,
            score=100.0,
            earned_points=1,
            max_points=1,
            passed=True,
            answers=[],
            started_at=now,
            ended_at=now,
            duration_seconds=0,
        )
    )
    db.session.commit()

    with pytest.raises(ExamHasResults):
        catalog.delete_exam(exam.id)


def test_delete_exam_removes_links_and_attempts(make_user, make_question, make_exam):
    user = make_user("taker")
    exam = make_exam([make_question("One")])
    db.session.add(UserExam(user_id=user.id, exam_id=exam.id))
    db.session.commit()

    catalog.delete_exam(exam.id)
    assert db.session.get(Exam, exam.id) is None
    assert UserExam.query.count() == 0
    assert ExamQuestion.query.count() == 0


def test_users_only_list_assigned_exams(make_user, make_question, make_exam):
    admin = make_user("boss", role="admin")
    learner = make_user("learner")
    question = make_question("One")
    assigned = make_exam([question], title="Assigned")
    make_exam([question], title="Other")
    db.session.add(UserExam(user_id=learner.id, exam_id=assigned.id))
    db.session.commit()

    assert [exam.title for exam in catalog.list_exams(learner).items] == ["Assigned"]
    assert catalog.list_exams(admin).total == 2


def test_update_cannot_deactivate_question_used_by_live_exam(make_question, make_exam):
    question = make_question("In use")
    exam = make_exam([question], status="active")

    with pytest.raises(QuestionInUse):
        catalog.update_question(
            question.id, catalog.parse_question_payload(_question_payload(isActive=False))
        )
    assert catalog.get_question(question.id).is_active is True

    exam.status = "archived"
    db.session.commit()
    updated = catalog.update_question(
        question.id, catalog.parse_question_payload(_question_payload(isActive=False))
    )
    assert updated.is_active is False


def test_editing_a_deleted_question_keeps_it_inactive(make_question):
    question = make_question("Retired")
    catalog.delete_question(question.id)

    edited = catalog.update_question(
        question.id, catalog.parse_question_payload(_question_payload(title="Reworded"))
    )
    assert edited.title == "Reworded"
    assert edited.is_active is False

    restored = catalog.update_question(
        question.id, catalog.parse_question_payload(_question_payload(isActive=True))
    )
    assert restored.is_active is True


def test_is_active_must_be_boolean():
    with pytest.raises(ValidationError):
        catalog.parse_question_payload(_question_payload(isActive="no"))


def test_list_tags(make_question):
    make_question("Alpha", tags="math,algebra")
    make_question("Beta", tags="history, math")
    make_question("Gamma", tags="retired", is_active=False)
    make_question("Delta")

    assert catalog.list_tags() == ["algebra", "history", "math"]
    assert catalog.list_tags(include_inactive=True) == ["algebra", "history", "math", "retired"]
