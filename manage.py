from __future__ import annotations

from datetime import timedelta

import click

from examhub import create_app, db
from examhub.models import Exam, ExamQuestion, Question, User, UserExam, utcnow

app = create_app()


@app.cli.command("init-db")
def init_db() -> None:
    """Initialise the database schema."""
    db.create_all()
    app.logger.info("Database tables created")


@app.cli.command("create-admin")
@click.option("--email", required=True)
@click.option("--username", required=True)
@click.password_option()
def create_admin(email: str, username: str, password: str) -> None:
    """Create an administrator account."""
    from examhub.services.accounts import register_user

    user = register_user(email=email, username=username, password=password, role="admin")
    app.logger.info("Administrator created: %s (id %s)", user.email, user.id)


@app.cli.command("seed-demo")
def seed_demo() -> None:
    """Seed the database with demo data for the exam flows."""
    db.drop_all()
    db.create_all()

    admin = User(
        email="admin@example.com",
        username="admin",
        first_name="Platform",
        last_name="Administrator",
        role="admin",
    )
    admin.set_password("password123")

    users = [
        User(email="jamie@example.com", username="jamie", first_name="Jamie", last_name="Lee"),
        User(email="priya@example.com", username="priya", first_name="Priya", last_name="Nair"),
        User(email="morgan@example.com", username="morgan", first_name="Morgan", last_name="Patel"),
    ]
    for user in users:
        user.set_password("password123")

    TOPICS = ("arithmetic", "geometry", "logic", "statistics")
    questions: list[Question] = []
    for index in range(1, 13):
        topic = TOPICS[(index - 1) % len(TOPICS)]
        if index % 4 == 0:
            questions.append(
                Question(
                    title=f"{topic.title()} statement {index}",
                    content=f"True or false: demo {topic} statement number {index} holds.",
                    type="true_false",
                    difficulty="easy",
                    options=[
                        {"id": "true", "text": "True", "is_correct": index % 8 == 0},
                        {"id": "false", "text": "False", "is_correct": index % 8 != 0},
                    ],
                    tags=f"{topic},demo",
                    points=1,
                    created_by=None,
                )
            )
            continue
        correct = {"a", "c"} if index % 3 == 0 else {"b"}
        questions.append(
            Question(
                title=f"{topic.title()} question {index}",
                content=f"Pick every correct answer for demo {topic} scenario {index}.",
                type="multiple_choice",
                difficulty=("easy", "medium", "hard")[index % 3],
                options=[
                    {"id": letter, "text": f"Option {letter.upper()} for {index}", "is_correct": letter in correct}
                    for letter in ("a", "b", "c", "d")
                ],
                tags=f"{topic},demo",
                points=2 if index % 3 == 0 else 1,
            )
        )

    db.session.add(admin)
    db.session.add_all(users)
    db.session.add_all(questions)
    db.session.flush()

    for question in questions:
        question.created_by = admin.id

    exams = [
        Exam(
            title="Foundations quiz",
            description="Short warm-up covering every topic.",
            duration_minutes=20,
            pass_score=60,
            status="active",
            created_by=admin.id,
        ),
        Exam(
            title="Logic final",
            description="Longer exam, drafted but not yet published.",
            duration_minutes=45,
            pass_score=70,
            status="draft",
            created_by=admin.id,
        ),
    ]
    db.session.add_all(exams)
    db.session.flush()

    for position, question in enumerate(questions[:6], start=1):
        db.session.add(ExamQuestion(exam_id=exams[0].id, question_id=question.id, position=position))
    for position, question in enumerate(questions[4:], start=1):
        db.session.add(ExamQuestion(exam_id=exams[1].id, question_id=question.id, position=position))

    now = utcnow()
    db.session.add_all(
        [
            UserExam(user=users[0], exam=exams[0], expires_at=now + timedelta(days=7)),
            UserExam(user=users[1], exam=exams[0], expires_at=now + timedelta(days=7), max_attempts=2),
            UserExam(user=users[2], exam=exams[0]),
        ]
    )
    db.session.commit()
    app.logger.info(
        "Demo data created: admin login admin@example.com / password123; "
        "user logins jamie@example.com, priya@example.com, morgan@example.com / password123"
    )
