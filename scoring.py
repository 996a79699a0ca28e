"""
Weighted score reports over finalized response groups.

The aggregator only ever handles response group ids and answers. The one
place a respondent is looked up is the free-text branch of a non-anonymous
form, where each text is paired with the respondent's display name.

All arithmetic stays in Decimal at full precision; values are rounded
half-up to two places only when a report is serialised.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional

from sqlalchemy import distinct, func, select

from catalog import DirectoryIdentityProvider, FormCatalog
from models import (db, Answer, QuestionType, ResponseGroup, SubmissionLedger,
                    answer_selections, utcnow)

logger = logging.getLogger(__name__)

TWO_PLACES = Decimal("0.01")
ZERO = Decimal(0)


def _fmt(value):
    if value is None:
        return None
    return str(value.quantize(TWO_PLACES, rounding=ROUND_HALF_UP))


@dataclass
class AlternativeTally:
    alternative_id: int
    text: str
    position: int
    count: int
    percentage: Decimal
    weight: Optional[Decimal] = None
    score: Optional[Decimal] = None  # None for unweighted alternatives

    def to_dict(self):
        return {
            "alternative_id": self.alternative_id,
            "text": self.text,
            "position": self.position,
            "count": self.count,
            "percentage": _fmt(self.percentage),
            "weight": _fmt(self.weight),
            "score": _fmt(self.score),
        }


@dataclass
class TextAnswer:
    text: str
    respondent_name: Optional[str] = None

    def to_dict(self):
        data = {"text": self.text}
        if self.respondent_name is not None:
            data["respondent_name"] = self.respondent_name
        return data


@dataclass
class QuestionScore:
    question_id: int
    text: str
    kind: QuestionType
    position: int
    total_answered: int = 0
    alternatives: List[AlternativeTally] = field(default_factory=list)
    texts: List[TextAnswer] = field(default_factory=list)
    score: Optional[Decimal] = None

    @property
    def counts_toward_form_score(self):
        return (self.kind.is_choice and self.total_answered > 0
                and self.score is not None and self.score > 0)

    def to_dict(self):
        return {
            "question_id": self.question_id,
            "text": self.text,
            "kind": self.kind.value,
            "position": self.position,
            "total_answered": self.total_answered,
            "alternatives": [a.to_dict() for a in self.alternatives],
            "texts": [t.to_dict() for t in self.texts],
            "score": _fmt(self.score),
        }


@dataclass
class FormReport:
    form_id: int
    title: str
    description: Optional[str]
    is_anonymous: bool
    scope: str
    classroom_id: Optional[int]
    total_submissions: int
    questions: List[QuestionScore]
    score: Optional[Decimal]
    generated_at: datetime

    @property
    def includes_identity(self):
        return not self.is_anonymous

    def to_dict(self):
        return {
            "form_id": self.form_id,
            "title": self.title,
            "description": self.description,
            "is_anonymous": self.is_anonymous,
            "includes_identity": self.includes_identity,
            "scope": self.scope,
            "classroom_id": self.classroom_id,
            "total_submissions": self.total_submissions,
            "questions": [q.to_dict() for q in self.questions],
            "score": _fmt(self.score),
            "generated_at": self.generated_at.isoformat() + "Z",
        }


class ScoreAggregator:

    def __init__(self, catalog=None, identity=None):
        self.catalog = catalog or FormCatalog()
        self.identity = identity or DirectoryIdentityProvider()

    def finalized_group_ids(self, form_id, classroom_id=None):
        # the ledger is joined only to reach form_id; no respondent column is selected
        stmt = (
            select(ResponseGroup.id)
            .join(SubmissionLedger, SubmissionLedger.id == ResponseGroup.ledger_id)
            .where(SubmissionLedger.form_id == form_id, ResponseGroup.finalized_at.isnot(None))
            .order_by(ResponseGroup.id)
        )
        if classroom_id is not None:
            stmt = stmt.where(ResponseGroup.classroom_id == classroom_id)
        return db.session.execute(stmt).scalars().all()

    def aggregate_question(self, question_id, group_ids):
        question = self.catalog.get_question(question_id)
        group_ids = list(group_ids)
        result = QuestionScore(
            question_id=question.id,
            text=question.text,
            kind=question.kind,
            position=question.position,
        )
        if question.kind.is_choice:
            self._tally_choices(question, group_ids, result)
        else:
            self._collect_texts(question, group_ids, result)
        return result

    def _tally_choices(self, question, group_ids, result):
        counts = {}
        total = 0
        if group_ids:
            scope = (
                select(answer_selections.c.alternative_id, Answer.response_group_id)
                .join(Answer, Answer.id == answer_selections.c.answer_id)
                .where(Answer.question_id == question.id, Answer.response_group_id.in_(group_ids))
                .subquery()
            )
            rows = db.session.execute(
                select(scope.c.alternative_id, func.count(distinct(scope.c.response_group_id)))
                .group_by(scope.c.alternative_id)
            )
            counts = {alternative_id: n for alternative_id, n in rows}
            # groups with an empty selection are not part of the denominator
            total = db.session.execute(
                select(func.count(distinct(scope.c.response_group_id)))
            ).scalar_one()

        question_score = ZERO
        for alternative in question.alternatives:
            count = counts.get(alternative.id, 0)
            percentage = Decimal(count) / Decimal(total) if total else ZERO
            weight = Decimal(alternative.weight) if alternative.weight is not None else None
            score = percentage * weight if weight is not None else None
            if score is not None:
                question_score += score
            result.alternatives.append(AlternativeTally(
                alternative_id=alternative.id,
                text=alternative.text,
                position=alternative.position,
                count=count,
                percentage=percentage,
                weight=weight,
                score=score,
            ))
        result.total_answered = total
        result.score = question_score

    def _collect_texts(self, question, group_ids, result):
        if not group_ids:
            return
        stmt = (
            select(Answer)
            .where(Answer.question_id == question.id, Answer.response_group_id.in_(group_ids))
            .order_by(Answer.response_group_id)
        )
        anonymous = question.form.is_anonymous
        for answer in db.session.execute(stmt).scalars():
            if answer.is_blank:
                continue
            if anonymous:
                result.texts.append(TextAnswer(text=answer.body))
            else:
                respondent_id = answer.response_group.audit_respondent_id()
                result.texts.append(TextAnswer(
                    text=answer.body,
                    respondent_name=self.identity.display_name(respondent_id),
                ))
        result.total_answered = len(result.texts)

    def aggregate_form(self, form_id, classroom_id=None):
        form = self.catalog.get_form(form_id)
        group_ids = self.finalized_group_ids(form.id, classroom_id)
        questions = [self.aggregate_question(q.id, group_ids)
                     for q in self.catalog.list_questions(form.id)]

        eligible = [q.score for q in questions if q.counts_toward_form_score]
        score = sum(eligible, ZERO) / Decimal(len(eligible)) if eligible else None

        logger.debug("aggregated form=%s classroom=%s groups=%d", form.id, classroom_id, len(group_ids))
        return FormReport(
            form_id=form.id,
            title=form.title,
            description=form.description,
            is_anonymous=bool(form.is_anonymous),
            scope="All classes" if classroom_id is None else f"Class {classroom_id}",
            classroom_id=classroom_id,
            total_submissions=len(group_ids),
            questions=questions,
            score=score,
            generated_at=utcnow(),
        )

    def aggregate_by_instructor(self, instructor_id, form_id):
        """One report per class the instructor teaches that has answered the form."""
        form = self.catalog.get_form(form_id)
        taught = self.catalog.instructor_classroom_ids(instructor_id)
        if not taught:
            return []
        stmt = (
            select(distinct(ResponseGroup.classroom_id))
            .join(SubmissionLedger, SubmissionLedger.id == ResponseGroup.ledger_id)
            .where(
                SubmissionLedger.form_id == form.id,
                ResponseGroup.finalized_at.isnot(None),
                ResponseGroup.classroom_id.isnot(None),
            )
        )
        answered = set(db.session.execute(stmt).scalars().all())
        return [self.aggregate_form(form.id, classroom_id)
                for classroom_id in sorted(answered & taught)]

    def basic_stats(self, form_id):
        form = self.catalog.get_form(form_id)
        return {
            "form_id": form.id,
            "title": form.title,
            "is_anonymous": bool(form.is_anonymous),
            "total_submissions": len(self.finalized_group_ids(form.id)),
            "total_questions": len(self.catalog.list_questions(form.id)),
        }
