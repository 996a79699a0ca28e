"""Read-only accessors over forms, questions and alternatives, plus respondent names."""

from sqlalchemy import select

from errors import FormNotFound, NotFound
from models import (db, Alternative, Classroom, Form, Question, Respondent,
                    classroom_instructors)


class FormCatalog:

    def get_form(self, form_id):
        form = db.session.get(Form, form_id)
        if form is None:
            raise FormNotFound(form_id)
        return form

    def get_question(self, question_id):
        question = db.session.get(Question, question_id)
        if question is None:
            raise NotFound("question", question_id)
        return question

    def get_alternative(self, alternative_id):
        alternative = db.session.get(Alternative, alternative_id)
        if alternative is None:
            raise NotFound("alternative", alternative_id)
        return alternative

    def get_classroom(self, classroom_id):
        classroom = db.session.get(Classroom, classroom_id)
        if classroom is None:
            raise NotFound("classroom", classroom_id)
        return classroom

    def list_questions(self, form_id):
        stmt = select(Question).where(Question.form_id == form_id).order_by(Question.position)
        return db.session.execute(stmt).scalars().all()

    def list_required_questions(self, form_id):
        stmt = (
            select(Question)
            .where(Question.form_id == form_id, Question.is_required.is_(True))
            .order_by(Question.position)
        )
        return db.session.execute(stmt).scalars().all()

    def instructor_classroom_ids(self, instructor_id):
        stmt = select(classroom_instructors.c.classroom_id).where(
            classroom_instructors.c.respondent_id == instructor_id
        )
        return set(db.session.execute(stmt).scalars().all())


class DirectoryIdentityProvider:
    """Resolves respondent ids to display names from the respondents table."""

    def display_name(self, respondent_id):
        if respondent_id is None:
            return None
        respondent = db.session.get(Respondent, respondent_id)
        return respondent.name if respondent else None
