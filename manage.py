import argparse, json
from datetime import datetime
from decimal import Decimal
from sqlalchemy import select
from app import create_app, issue_token
from models import (db, Respondent, Classroom, Form, Question, Alternative,
                    QuestionType, parse_role)
from scoring import ScoreAggregator

def parse_dt(s):
    """Parse 'YYYY-MM-DDTHH:MM' (treated as UTC) to a naive datetime."""
    if not s: return None
    return datetime.strptime(s.strip(), "%Y-%m-%dT%H:%M")

def _load(json_path):
    with open(json_path, "r", encoding="utf-8") as fh:
        return json.load(fh)

def _by_email(email):
    return db.session.execute(
        select(Respondent).where(Respondent.email == email.strip().lower())
    ).scalar_one_or_none()

def seed_respondents(app, json_path):
    """
    JSON: [{"name":"Ana Lima","email":"ana@school.edu","role":"student|instructor|coordinator|admin"}]
    """
    with app.app_context():
        out = []
        for it in _load(json_path):
            name = it["name"].strip()
            email = it["email"].strip().lower()
            role = parse_role(it.get("role") or "student")
            r = _by_email(email)
            if not r:
                r = Respondent(name=name, email=email, role=role)
                db.session.add(r)
                action = "created"
            else:
                r.name = name
                r.role = role
                action = "updated"
            out.append((email, role.value, action))
        db.session.commit()
        print("Seeded/updated:", len(out))
        for email, role, action in out:
            print(f"{email} ({role}) ({action})")
        return len(out)

def seed_classrooms(app, json_path):
    """
    JSON: [{"name":"CS101-A","year":2024,"semester":1,"instructors":["prof@school.edu"]}]
    Instructors must already exist as respondents.
    """
    with app.app_context():
        created = 0
        for it in _load(json_path):
            c = db.session.execute(
                select(Classroom).where(Classroom.name == it["name"].strip())
            ).scalar_one_or_none()
            if not c:
                c = Classroom(name=it["name"].strip())
                db.session.add(c)
                created += 1
            c.year = it.get("year")
            c.semester = it.get("semester")
            instructors = []
            for email in it.get("instructors", []):
                r = _by_email(email)
                if r is None:
                    raise SystemExit(f"unknown instructor {email!r} for classroom {c.name!r}")
                instructors.append(r)
            c.instructors = instructors
        db.session.commit()
        print("Classrooms created:", created)
        return created

def load_catalog(app, json_path):
    """
    JSON: {"forms":[{"title":..., "is_anonymous":false, "allow_edit":true,
                     "opens_at":"2024-03-01T08:00", "closes_at":null,
                     "target_roles":["student"],
                     "questions":[{"text":..., "kind":"single_choice", "required":true,
                                   "alternatives":[{"text":"Good","weight":5}]}]}]}
    Positions follow list order. Forms whose title already exists are left untouched.
    """
    with app.app_context():
        created = []
        for f in _load(json_path).get("forms", []):
            title = f["title"].strip()
            exists = db.session.execute(select(Form.id).where(Form.title == title)).first()
            if exists:
                print(f"skip: form {title!r} already exists")
                continue
            form = Form(
                title=title,
                description=f.get("description"),
                is_anonymous=bool(f.get("is_anonymous", False)),
                allow_edit=bool(f.get("allow_edit", True)),
                is_active=bool(f.get("is_active", True)),
                opens_at=parse_dt(f.get("opens_at")),
                closes_at=parse_dt(f.get("closes_at")),
                target_roles=[parse_role(r).name for r in f.get("target_roles", [])],
            )
            for qpos, q in enumerate(f.get("questions", []), start=1):
                kind = QuestionType(q.get("kind", "single_choice"))
                question = Question(text=q["text"], kind=kind, position=qpos,
                                    is_required=bool(q.get("required", True)))
                if kind.is_choice:
                    for apos, a in enumerate(q.get("alternatives", []), start=1):
                        weight = a.get("weight")
                        question.alternatives.append(Alternative(
                            text=a["text"], position=apos,
                            weight=Decimal(str(weight)) if weight is not None else None,
                            is_correct=bool(a.get("is_correct", False)),
                        ))
                form.questions.append(question)
            db.session.add(form)
            created.append(form)
        db.session.commit()
        for form in created:
            print(f"form {form.id}: {form.title} ({len(form.questions)} questions)")
        return [form.id for form in created]

def print_token(app, email):
    with app.app_context():
        r = _by_email(email)
        if r is None:
            raise SystemExit(f"unknown respondent {email!r}")
        token = issue_token(r)
        print(token)
        return token

def print_report(app, form_id, classroom_id=None):
    with app.app_context():
        report = ScoreAggregator().aggregate_form(int(form_id), classroom_id)
        print(json.dumps(report.to_dict(), indent=2, ensure_ascii=False))
        return report

if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("cmd", choices=["seed-respondents", "seed-classrooms", "load-catalog",
                                        "issue-token", "report"])
    parser.add_argument("target", help="JSON path, respondent email, or form id")
    parser.add_argument("--classroom", type=int, default=None, help="report: restrict to one classroom")
    args = parser.parse_args()

    app = create_app()
    if args.cmd == "seed-respondents":
        seed_respondents(app, args.target)
    elif args.cmd == "seed-classrooms":
        seed_classrooms(app, args.target)
    elif args.cmd == "load-catalog":
        load_catalog(app, args.target)
    elif args.cmd == "issue-token":
        print_token(app, args.target)
    else:
        print_report(app, args.target, args.classroom)
