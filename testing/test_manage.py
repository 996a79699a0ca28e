import json
import runpy
import sqlite3
from decimal import Decimal
from pathlib import Path

from itsdangerous import URLSafeSerializer

import manage
from app import TOKEN_SALT, create_app
from models import Classroom, Form, QuestionType, Respondent, Role

ROOT = Path(__file__).resolve().parent.parent

CATALOG = {
    "forms": [{
        "title": "Teaching evaluation",
        "is_anonymous": True,
        "allow_edit": False,
        "opens_at": "2024-03-01T08:00",
        "target_roles": ["student"],
        "questions": [
            {"text": "Clarity", "kind": "single_choice",
             "alternatives": [{"text": "Good", "weight": 5}, {"text": "Poor", "weight": 1.5},
                              {"text": "No opinion"}]},
            {"text": "Comments", "kind": "free_text", "required": False},
        ],
    }],
}


def _write(tmp_path, name, payload):
    path = tmp_path / name
    path.write_text(json.dumps(payload), encoding="utf-8")
    return str(path)


def test_load_catalog_is_idempotent_by_title(app, tmp_path):
    path = _write(tmp_path, "catalog.json", CATALOG)

    assert len(manage.load_catalog(app, path)) == 1
    assert manage.load_catalog(app, path) == []

    with app.app_context():
        (form,) = Form.query.all()
        assert form.is_anonymous and not form.allow_edit
        assert form.target_roles == ["STUDENT"]
        assert form.opens_at.year == 2024
        clarity, comments = form.questions
        assert clarity.kind is QuestionType.SINGLE_CHOICE
        assert [a.position for a in clarity.alternatives] == [1, 2, 3]
        assert [a.weight for a in clarity.alternatives] == [Decimal("5"), Decimal("1.5"), None]
        assert comments.is_required is False and comments.alternatives == []


def test_seed_respondents_and_classrooms(app, tmp_path, capsys):
    people = _write(tmp_path, "people.json", [
        {"name": "Ana Lima", "email": "ANA@school.edu", "role": "student"},
        {"name": "Prof Reis", "email": "reis@school.edu", "role": "instructor"},
    ])
    rooms = _write(tmp_path, "rooms.json", [
        {"name": "CS101-A", "year": 2024, "semester": 2, "instructors": ["reis@school.edu"]},
    ])

    assert manage.seed_respondents(app, people) == 2
    assert manage.seed_classrooms(app, rooms) == 1
    assert manage.seed_classrooms(app, rooms) == 0

    with app.app_context():
        ana = Respondent.query.filter_by(email="ana@school.edu").one()
        assert ana.role is Role.STUDENT
        room = Classroom.query.one()
        assert [i.email for i in room.instructors] == ["reis@school.edu"]

    token = manage.print_token(app, "ana@school.edu")
    assert capsys.readouterr().out.strip().endswith(token)
    payload = URLSafeSerializer("test-secret", salt=TOKEN_SALT).loads(token)
    assert payload["role"] == "student"


def test_print_report(app, tmp_path, capsys):
    (form_id,) = manage.load_catalog(app, _write(tmp_path, "catalog.json", CATALOG))
    capsys.readouterr()

    report = manage.print_report(app, str(form_id))

    assert report.total_submissions == 0
    assert json.loads(capsys.readouterr().out)["title"] == "Teaching evaluation"


def test_uniqueness_backstop_migration(tmp_path):
    db_path = tmp_path / "legacy.db"
    create_app(f"sqlite:///{db_path}", secret="test-secret")
    migration = runpy.run_path(str(ROOT / "migrate" / "migrate_add_uniqueness_backstops.py"))

    assert migration["migrate"](str(db_path)) is True
    assert migration["migrate"](str(db_path)) is True

    conn = sqlite3.connect(db_path)
    try:
        names = {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='index'")}
    finally:
        conn.close()
    assert {"uq_ledger_form_respondent", "uq_answer_group_question", "uq_response_group_ledger"} <= names
