"""
Submission lifecycle: start, save answers, finalize, cancel.

A respondent's submission is two rows created together: the SubmissionLedger
(who, which form, when, from where) and its ResponseGroup, which is the only
thing answers hang off. Each public operation is one transaction; the
(form, respondent) and (group, question) uniqueness rules are enforced by the
database and constraint races are turned back into the normal outcomes here.
"""

import logging
from contextlib import contextmanager

from sqlalchemy import delete, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError

from audit import ClientInfo, DatabaseAuditSink, audited
from catalog import FormCatalog
from errors import (AlreadyFinalized, AlreadySubmitted, FormInactiveOrOutOfWindow,
                    InvalidAnswerShape, MissingRequiredAnswers, NotFound,
                    RoleNotPermitted)
from models import (db, Answer, QuestionType, Respondent, ResponseGroup,
                    SubmissionLedger, answer_selections, parse_role, utcnow)

logger = logging.getLogger(__name__)

# dialects with a native single-statement upsert
_UPSERT_INSERTS = {"sqlite": sqlite_insert, "postgresql": pg_insert}


@contextmanager
def _atomic():
    try:
        yield
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise


class SubmissionService:

    def __init__(self, catalog=None, audit=None):
        self.catalog = catalog or FormCatalog()
        self.audit = audit or DatabaseAuditSink()

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    def get_group(self, group_id):
        group = db.session.get(ResponseGroup, group_id)
        if group is None:
            raise NotFound("response group", group_id)
        return group

    def answers(self, group_id):
        return list(self.get_group(group_id).answers)

    def can_edit(self, group_id):
        return self.get_group(group_id).can_edit()

    def find_submission(self, form_id, respondent_id):
        return self._find_ledger(form_id, respondent_id)

    def has_responded(self, form_id, respondent_id):
        ledger = self._find_ledger(form_id, respondent_id)
        return ledger is not None and ledger.is_finalized

    def submission_history(self, respondent_id):
        """The respondent's own completed submissions as (form, answers) pairs."""
        stmt = (
            select(SubmissionLedger)
            .where(SubmissionLedger.respondent_id == respondent_id,
                   SubmissionLedger.completed.is_(True))
            .order_by(SubmissionLedger.finished_at)
        )
        history = []
        for ledger in db.session.execute(stmt).scalars():
            group = ledger.response_group
            history.append((ledger.form, list(group.answers) if group else []))
        return history

    def audit_respondent_for(self, group_id):
        group = db.session.get(ResponseGroup, group_id)
        return group.audit_respondent_id() if group is not None else None

    def _find_ledger(self, form_id, respondent_id):
        stmt = select(SubmissionLedger).where(
            SubmissionLedger.form_id == form_id,
            SubmissionLedger.respondent_id == respondent_id,
        )
        return db.session.execute(stmt).scalar_one_or_none()

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------
    @audited("START_SUBMISSION", "RESPONSE", "Respondent {respondent_id} opened form {form_id}")
    def start_submission(self, form_id, respondent_id, role, classroom_id=None, client=None):
        client = client or ClientInfo()
        with _atomic():
            form = self.catalog.get_form(form_id)
            now = utcnow()
            if not form.is_available(now):
                raise FormInactiveOrOutOfWindow(form_id)
            try:
                role = parse_role(role)
            except ValueError:
                raise RoleNotPermitted(form_id, role)
            if not form.accepts_role(role):
                raise RoleNotPermitted(form_id, role.name)
            if db.session.get(Respondent, respondent_id) is None:
                raise NotFound("respondent", respondent_id)
            if classroom_id is not None:
                self.catalog.get_classroom(classroom_id)

            existing = self._find_ledger(form_id, respondent_id)
            if existing is not None:
                return self._resume(existing, now)

            ledger = SubmissionLedger(
                form_id=form_id,
                respondent_id=respondent_id,
                classroom_id=classroom_id,
                started_at=now,
                completed=False,
                ip_address=client.ip_address[:45] if client.ip_address else None,
                user_agent=client.user_agent[:500] if client.user_agent else None,
            )
            group = ResponseGroup(ledger=ledger, classroom_id=classroom_id, created_at=now)
            try:
                with db.session.begin_nested():
                    db.session.add(ledger)
                    db.session.add(group)
            except IntegrityError:
                # a concurrent start for the same (form, respondent) got there first
                existing = self._find_ledger(form_id, respondent_id)
                if existing is None:
                    raise
                logger.warning("lost start race on form=%s respondent=%s, resolving ledger=%s",
                               form_id, respondent_id, existing.id)
                return self._resume(existing, now)

            logger.info("started submission ledger=%s group=%s form=%s", ledger.id, group.id, form_id)
            return group

    def _resume(self, ledger, now):
        group = ledger.response_group
        if group is None:
            raise NotFound("response group for ledger", ledger.id)
        if not group.is_finalized or group.can_edit(now):
            logger.info("resuming group=%s on form=%s", group.id, ledger.form_id)
            return group
        raise AlreadySubmitted(ledger.form_id)

    # ------------------------------------------------------------------
    # Answers
    # ------------------------------------------------------------------
    @audited("SAVE_ANSWER", "RESPONSE", "Answer to question {question_id} in group {group_id}")
    def save_answer(self, group_id, question_id, text=None, alternative_ids=None, client=None):
        with _atomic():
            group = self.get_group(group_id)
            form = group.form
            question = self.catalog.get_question(question_id)
            if question.form_id != form.id:
                raise NotFound("question", question_id)

            now = utcnow()
            if group.is_finalized and not group.can_edit(now):
                raise AlreadyFinalized(group_id)
            if not form.is_available(now):
                raise FormInactiveOrOutOfWindow(form.id)

            alternatives = self._validate_payload(question, text, alternative_ids)
            blank = not alternatives if question.kind.is_choice else not text.strip()
            if group.is_finalized and question.is_required and blank:
                # a finalized group must keep every required answer
                raise MissingRequiredAnswers([question.id], [f"Question {question.position}: {question.text}"])
            body = None if question.kind.is_choice else text
            answer = self._upsert_answer(group.id, question.id, body, now)
            if question.kind.is_choice:
                answer.selections = alternatives
            return answer

    def _validate_payload(self, question, text, alternative_ids):
        if question.kind is QuestionType.FREE_TEXT:
            if alternative_ids:
                raise InvalidAnswerShape(f"question {question.id} is free text and takes no alternatives")
            if not isinstance(text, str):
                raise InvalidAnswerShape(f"question {question.id} requires a text answer")
            return []

        if text is not None:
            raise InvalidAnswerShape(f"question {question.id} is multiple choice and takes no text")
        if alternative_ids is None or isinstance(alternative_ids, (str, bytes)):
            raise InvalidAnswerShape(f"question {question.id} requires a list of alternative ids")
        try:
            ids = list(dict.fromkeys(int(a) for a in alternative_ids))
        except (TypeError, ValueError):
            raise InvalidAnswerShape(f"question {question.id}: alternative ids must be integers")
        if question.kind is QuestionType.SINGLE_CHOICE and len(ids) > 1:
            raise InvalidAnswerShape(f"question {question.id} accepts a single alternative")

        alternatives = []
        for alternative_id in ids:
            alternative = self.catalog.get_alternative(alternative_id)
            if alternative.question_id != question.id:
                raise InvalidAnswerShape(
                    f"alternative {alternative_id} does not belong to question {question.id}")
            alternatives.append(alternative)
        return alternatives

    def _upsert_answer(self, group_id, question_id, body, now):
        values = dict(response_group_id=group_id, question_id=question_id, body=body, answered_at=now)
        make_insert = _UPSERT_INSERTS.get(db.session.get_bind().dialect.name)
        if make_insert is not None:
            stmt = make_insert(Answer).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=[Answer.response_group_id, Answer.question_id],
                set_={"body": stmt.excluded.body, "edited_at": stmt.excluded.answered_at},
            )
            db.session.execute(stmt)
        else:
            try:
                with db.session.begin_nested():
                    db.session.add(Answer(**values))
            except IntegrityError:
                db.session.execute(
                    update(Answer)
                    .where(Answer.response_group_id == group_id, Answer.question_id == question_id)
                    .values(body=body, edited_at=now)
                )
        stmt = (
            select(Answer)
            .where(Answer.response_group_id == group_id, Answer.question_id == question_id)
            .execution_options(populate_existing=True)
        )
        return db.session.execute(stmt).scalar_one()

    # ------------------------------------------------------------------
    # Finalize / cancel
    # ------------------------------------------------------------------
    @audited("FINALIZE_SUBMISSION", "RESPONSE", "Finalize response group {group_id}")
    def finalize(self, group_id, client=None):
        with _atomic():
            group = self.get_group(group_id)
            now = utcnow()
            if group.is_finalized and not group.can_edit(now):
                raise AlreadyFinalized(group_id)
            if not group.form.is_available(now):
                raise FormInactiveOrOutOfWindow(group.form.id)

            missing = self._missing_required(group)
            if missing:
                raise MissingRequiredAnswers(
                    [q.id for q in missing],
                    [f"Question {q.position}: {q.text}" for q in missing],
                )

            stamped = db.session.execute(
                update(ResponseGroup)
                .where(ResponseGroup.id == group_id)
                .values(finalized_at=now)
            )
            if stamped.rowcount != 1:
                raise NotFound("response group", group_id)
            db.session.execute(
                update(SubmissionLedger)
                .where(SubmissionLedger.id == group.ledger_id)
                .values(completed=True, finished_at=now, updated_at=now)
            )
        logger.info("finalized group=%s", group_id)
        return group

    def _missing_required(self, group):
        stmt = select(Answer).where(Answer.response_group_id == group.id)
        answered = {a.question_id: a for a in db.session.execute(stmt).scalars()}
        missing = []
        for question in self.catalog.list_required_questions(group.form.id):
            answer = answered.get(question.id)
            if answer is None or answer.is_blank:
                missing.append(question)
        return missing

    @audited("CANCEL_SUBMISSION", "RESPONSE", "Cancel response group {group_id}")
    def cancel(self, group_id, client=None):
        with _atomic():
            group = self.get_group(group_id)
            if group.is_finalized:
                raise AlreadyFinalized(group_id)
            ledger_id = group.ledger_id

            answer_ids = select(Answer.id).where(Answer.response_group_id == group_id)
            db.session.execute(
                delete(answer_selections).where(answer_selections.c.answer_id.in_(answer_ids))
            )
            db.session.execute(delete(Answer).where(Answer.response_group_id == group_id))
            removed = db.session.execute(
                delete(ResponseGroup)
                .where(ResponseGroup.id == group_id, ResponseGroup.finalized_at.is_(None))
            )
            if removed.rowcount != 1:
                # finalized between our read and the delete
                raise AlreadyFinalized(group_id)
            db.session.execute(delete(SubmissionLedger).where(SubmissionLedger.id == ledger_id))
        logger.info("cancelled group=%s ledger=%s", group_id, ledger_id)
