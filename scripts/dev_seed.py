# scripts/dev_seed.py
from decimal import Decimal

from app import create_app, issue_token
from models import (db, Respondent, Role, Classroom, Form, Question, Alternative,
                    QuestionType)

def upsert_respondent(name, email, role):
    r = Respondent.query.filter_by(email=email).one_or_none()
    if r is None:
        r = Respondent(name=name, email=email, role=role)
        db.session.add(r)
        print(f"[seed] created {role.value}: {email}")
    else:
        print(f"[seed] {role.value} already exists: {email}")
    return r

def upsert_classroom(name, instructor):
    c = Classroom.query.filter_by(name=name).one_or_none()
    if c is None:
        c = Classroom(name=name, year=2024, semester=1)
        db.session.add(c)
        print(f"[seed] created classroom: {name}")
    if instructor not in c.instructors:
        c.instructors.append(instructor)
    return c

def ensure_course_feedback_form():
    title = "Course feedback (dev)"
    form = Form.query.filter_by(title=title).one_or_none()
    if form is not None:
        print(f"[seed] form already exists: {title}")
        return form
    form = Form(title=title, description="Seeded by scripts/dev_seed.py",
                is_anonymous=True, allow_edit=False, target_roles=["STUDENT"])
    q1 = Question(text="How clear were the lectures?", kind=QuestionType.SINGLE_CHOICE, position=1)
    for pos, (text, weight) in enumerate([("Very clear", "5"), ("Mostly clear", "3"), ("Unclear", "1")], start=1):
        q1.alternatives.append(Alternative(text=text, position=pos, weight=Decimal(weight)))
    q2 = Question(text="Anything else?", kind=QuestionType.FREE_TEXT, position=2, is_required=False)
    form.questions.extend([q1, q2])
    db.session.add(form)
    print(f"[seed] created form: {title}")
    return form

def main():
    app = create_app()
    with app.app_context():
        db.create_all()   # safe if tables already exist

        coordinator = upsert_respondent("Carla Coordinator", "coordinator@example.com", Role.COORDINATOR)
        instructor  = upsert_respondent("Ivan Instructor",   "instructor@example.com",  Role.INSTRUCTOR)
        student     = upsert_respondent("Stu Dent",          "student@example.com",     Role.STUDENT)
        upsert_classroom("CS101-A", instructor)
        ensure_course_feedback_form()

        db.session.commit()
        for r in (coordinator, instructor, student):
            print(f"[seed] token {r.email}: {issue_token(r)}")
        print("[seed] done.")

if __name__ == "__main__":
    main()
