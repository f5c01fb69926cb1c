from pathlib import Path
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from examhub import create_app, db
from examhub.config import TestConfig
from examhub.errors import DependencyUnavailable
from examhub.models import Exam, ExamQuestion, Question, User
from examhub.services.session_guard import SessionGuard


class MemorySessionStore:
    """In-process stand-in for the Redis session store."""

    def __init__(self):
        self.values = {}
        self.ttls = {}

    def put(self, key, value, ttl_seconds):
        self.values[key] = value
        self.ttls[key] = ttl_seconds

    def get(self, key):
        return self.values.get(key)

    def delete(self, key):
        self.values.pop(key, None)
        self.ttls.pop(key, None)


class UnavailableSessionStore:
    def put(self, key, value, ttl_seconds):
        raise DependencyUnavailable("Session store write failed: connection refused")

    def get(self, key):
        raise DependencyUnavailable("Session store read failed: connection refused")

    def delete(self, key):
        raise DependencyUnavailable("Session store delete failed: connection refused")


@pytest.fixture
def app():
    app = create_app(TestConfig)
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def session_store(app):
    store = MemorySessionStore()
    app.extensions["session_guard"] = SessionGuard(store)
    return store


@pytest.fixture
def make_user(app):
    def _make_user(username, *, role="user", is_active=True, password="password123"):
        user = User(
            email=f"{username}@example.com",
            username=username,
            first_name=username.title(),
            role=role,
            is_active=is_active,
        )
        user.set_password(password)
        db.session.add(user)
        db.session.commit()
        return user

    return _make_user


@pytest.fixture
def make_question(app):
    def _make_question(title, *, correct=("a",), option_ids=("a", "b", "c", "d"), points=1,
                       question_type="multiple_choice", is_active=True, tags=""):
        question = Question(
            title=title,
            content=f"{title}?",
            type=question_type,
            options=[
                {"id": option_id, "text": f"Option {option_id}", "is_correct": option_id in correct}
                for option_id in option_ids
            ],
            points=points,
            is_active=is_active,
            tags=tags,
        )
        db.session.add(question)
        db.session.commit()
        return question

    return _make_question


@pytest.fixture
def make_exam(app):
    def _make_exam(questions, *, title="Exam", duration=30, pass_score=60, status="active",
                   points=None):
        exam = Exam(title=title, duration_minutes=duration, pass_score=pass_score, status=status)
        db.session.add(exam)
        db.session.flush()
        for position, question in enumerate(questions, start=1):
            db.session.add(
                ExamQuestion(
                    exam_id=exam.id,
                    question_id=question.id,
                    position=position,
                    points=points[position - 1] if points else None,
                )
            )
        db.session.commit()
        return exam

    return _make_exam
