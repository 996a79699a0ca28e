"""Pytest configuration and shared fixtures."""

from decimal import Decimal

import pytest

from app import create_app
from models import (db, Alternative, Classroom, Form, Question, QuestionType,
                    Respondent, Role)
from scoring import ScoreAggregator
from submissions import SubmissionService


class RecordingAuditSink:
    """Keeps audit records in memory."""

    def __init__(self):
        self.records = []

    def record(self, respondent_id, action, description, category, client,
               outcome, error_detail=None):
        self.records.append(dict(
            respondent_id=respondent_id,
            action=action,
            description=description,
            category=category,
            client=client,
            outcome=outcome,
            error_detail=error_detail,
        ))

    def actions(self):
        return [(r["action"], r["outcome"]) for r in self.records]


@pytest.fixture
def app(tmp_path):
    return create_app(f"sqlite:///{tmp_path / 'forms.db'}", secret="test-secret")


@pytest.fixture
def ctx(app):
    with app.app_context():
        yield app


@pytest.fixture
def sink():
    return RecordingAuditSink()


@pytest.fixture
def service(ctx, sink):
    return SubmissionService(audit=sink)


@pytest.fixture
def scorer(ctx):
    return ScoreAggregator()


def build_form(title="Course feedback", questions=(), **form_kwargs):
    """
    questions: dicts with "kind" (QuestionType), optional "text", "required",
    and "weights" (one entry per alternative, None for unweighted).
    """
    form = Form(title=title, **form_kwargs)
    for pos, q in enumerate(questions, start=1):
        question = Question(text=q.get("text", f"Question {pos}"), kind=q["kind"], position=pos,
                            is_required=q.get("required", True))
        for apos, weight in enumerate(q.get("weights", ()), start=1):
            question.alternatives.append(Alternative(
                text=f"Alternative {apos}", position=apos,
                weight=Decimal(str(weight)) if weight is not None else None,
            ))
        form.questions.append(question)
    db.session.add(form)
    db.session.commit()
    return form


def make_respondent(name="Stu Dent", role=Role.STUDENT, email=None):
    respondent = Respondent(name=name, role=role,
                            email=email or f"{name.lower().replace(' ', '.')}@example.com")
    db.session.add(respondent)
    db.session.commit()
    return respondent


def make_classroom(name, *instructors):
    classroom = Classroom(name=name, year=2024, semester=1, instructors=list(instructors))
    db.session.add(classroom)
    db.session.commit()
    return classroom


SINGLE = QuestionType.SINGLE_CHOICE
MULTI = QuestionType.MULTI_CHOICE
TEXT = QuestionType.FREE_TEXT
