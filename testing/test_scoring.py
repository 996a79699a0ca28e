from decimal import Decimal

import pytest

from conftest import MULTI, SINGLE, TEXT, build_form, make_classroom, make_respondent
from errors import FormNotFound
from models import Role, ResponseGroup


def _respond(service, form, picks, classroom_id=None, prefix="stu"):
    """
    picks: one dict per respondent mapping question position (0-based) to
    alternative positions (list) or text (str). Returns the group ids.
    """
    group_ids = []
    for n, pick in enumerate(picks):
        stu = make_respondent(f"{prefix} {form.id} {n}")
        group = service.start_submission(form.id, stu.id, Role.STUDENT, classroom_id=classroom_id)
        for qpos, choice in pick.items():
            question = form.questions[qpos]
            if isinstance(choice, str):
                service.save_answer(group.id, question.id, text=choice)
            else:
                ids = [question.alternatives[i].id for i in choice]
                service.save_answer(group.id, question.id, alternative_ids=ids)
        service.finalize(group.id)
        group_ids.append(group.id)
    return group_ids


def test_weighted_score_example(service, scorer):
    form = build_form(questions=[{"kind": SINGLE, "weights": [5, 3, 1]}])
    picks = [{0: [0]}] * 10 + [{0: [1]}] * 6 + [{0: [2]}] * 4
    group_ids = _respond(service, form, picks)

    result = scorer.aggregate_question(form.questions[0].id, group_ids)

    assert result.total_answered == 20
    assert [a.count for a in result.alternatives] == [10, 6, 4]
    assert [a.percentage for a in result.alternatives] == [Decimal("0.5"), Decimal("0.3"), Decimal("0.2")]
    assert result.score == Decimal("3.6")
    data = result.to_dict()
    assert [a["percentage"] for a in data["alternatives"]] == ["0.50", "0.30", "0.20"]
    assert data["score"] == "3.60"


def test_unweighted_alternatives_count_but_do_not_score(service, scorer):
    form = build_form(questions=[{"kind": SINGLE, "weights": [4, None]}])
    group_ids = _respond(service, form, [{0: [0]}, {0: [1]}, {0: [1]}, {0: [1]}])

    result = scorer.aggregate_question(form.questions[0].id, group_ids)

    weighted, unweighted = result.alternatives
    assert unweighted.percentage == Decimal("0.75")
    assert unweighted.score is None
    assert result.score == Decimal("1")


def test_rounding_is_half_up_and_only_at_output(service, scorer):
    form = build_form(questions=[{"kind": SINGLE, "weights": [1, None]}])
    group_ids = _respond(service, form, [{0: [0]}] + [{0: [1]}] * 7)

    result = scorer.aggregate_question(form.questions[0].id, group_ids)

    assert result.alternatives[0].percentage == Decimal("0.125")
    assert result.to_dict()["alternatives"][0]["percentage"] == "0.13"
    assert result.to_dict()["score"] == "0.13"


def test_skipped_optional_question_leaves_the_denominator(service, scorer):
    form = build_form(questions=[
        {"kind": TEXT},
        {"kind": SINGLE, "weights": [2, 0], "required": False},
    ])
    group_ids = _respond(service, form, [
        {0: "a", 1: [0]},
        {0: "b", 1: [1]},
        {0: "c"},
        {0: "d", 1: []},
    ])

    result = scorer.aggregate_question(form.questions[1].id, group_ids)

    assert result.total_answered == 2
    assert [a.percentage for a in result.alternatives] == [Decimal("0.5"), Decimal("0.5")]
    assert result.score == Decimal("1")


def test_multi_choice_counts_each_selection(service, scorer):
    form = build_form(questions=[{"kind": MULTI, "weights": [1, 1, 1]}])
    group_ids = _respond(service, form, [{0: [0, 1]}, {0: [1, 2]}, {0: [1]}, {0: [0, 1, 2]}])

    result = scorer.aggregate_question(form.questions[0].id, group_ids)

    assert result.total_answered == 4
    assert [a.count for a in result.alternatives] == [2, 4, 2]
    assert result.score == Decimal("2")


def test_form_score_is_mean_of_non_zero_choice_questions(service, scorer):
    form = build_form(questions=[
        {"kind": SINGLE, "weights": [4, 2]},
        {"kind": SINGLE, "weights": [0, 0]},
        {"kind": SINGLE, "weights": [9], "required": False},
        {"kind": TEXT, "required": False},
    ])
    _respond(service, form, [{0: [0], 1: [0], 3: "nice"}, {0: [1], 1: [1]}])

    report = scorer.aggregate_form(form.id)

    assert [q.score for q in report.questions[:3]] == [Decimal("3"), Decimal("0"), Decimal("0")]
    assert report.questions[2].total_answered == 0
    assert report.questions[3].score is None
    # only question 1 counts; a zero score stays out of the mean
    assert report.score == Decimal("3")
    assert report.total_submissions == 2
    assert report.scope == "All classes"
    assert report.to_dict()["score"] == "3.00"


def test_form_score_is_none_without_answered_choice_questions(service, scorer):
    form = build_form(questions=[{"kind": TEXT}])
    _respond(service, form, [{0: "only text"}])

    assert scorer.aggregate_form(form.id).score is None
    assert scorer.aggregate_form(form.id).to_dict()["score"] is None


def test_form_score_is_none_when_every_choice_question_scores_zero(service, scorer):
    form = build_form(questions=[
        {"kind": SINGLE, "weights": [0, 0]},
        {"kind": MULTI, "weights": [0, None]},
    ])
    _respond(service, form, [{0: [0], 1: [0, 1]}, {0: [1], 1: [1]}])

    report = scorer.aggregate_form(form.id)

    assert [q.total_answered for q in report.questions] == [2, 2]
    assert [q.score for q in report.questions] == [Decimal("0"), Decimal("0")]
    assert report.score is None
    assert report.to_dict()["score"] is None


def test_only_finalized_groups_are_reported(service, scorer):
    form = build_form(questions=[{"kind": SINGLE, "weights": [1, 0]}])
    _respond(service, form, [{0: [0]}])
    draft_owner = make_respondent("Drafty")
    draft = service.start_submission(form.id, draft_owner.id, Role.STUDENT)
    service.save_answer(draft.id, form.questions[0].id,
                        alternative_ids=[form.questions[0].alternatives[1].id])

    report = scorer.aggregate_form(form.id)

    assert report.total_submissions == 1
    assert report.questions[0].alternatives[1].count == 0
    assert scorer.basic_stats(form.id) == {
        "form_id": form.id,
        "title": form.title,
        "is_anonymous": False,
        "total_submissions": 1,
        "total_questions": 1,
    }


def test_classroom_filter(service, scorer):
    form = build_form(questions=[{"kind": SINGLE, "weights": [10, 0]}])
    x = make_classroom("X")
    y = make_classroom("Y")
    _respond(service, form, [{0: [0]}] * 2, classroom_id=x.id, prefix="x")
    _respond(service, form, [{0: [1]}] * 3, classroom_id=y.id, prefix="y")

    report_x = scorer.aggregate_form(form.id, x.id)
    report_y = scorer.aggregate_form(form.id, y.id)

    assert report_x.total_submissions == 2 and report_x.score == Decimal("10")
    assert report_y.total_submissions == 3 and report_y.score is None
    assert report_y.questions[0].score == Decimal("0")
    assert report_x.scope == f"Class {x.id}"
    assert scorer.aggregate_form(form.id).total_submissions == 5


def test_anonymous_free_text_never_touches_the_ledger(service, scorer, monkeypatch):
    form = build_form(is_anonymous=True, questions=[{"kind": TEXT, "required": False}])
    group_ids = _respond(service, form, [{0: "loved it"}, {0: "  "}, {0: "too long"}])

    def forbidden(self):
        raise AssertionError("respondent looked up on an anonymous form")

    monkeypatch.setattr(ResponseGroup, "audit_respondent_id", forbidden)
    report = scorer.aggregate_form(form.id)

    texts = report.questions[0].texts
    assert [t.text for t in texts] == ["loved it", "too long"]
    assert all(t.respondent_name is None for t in texts)
    assert report.includes_identity is False
    assert report.to_dict()["questions"][0]["texts"] == [{"text": "loved it"}, {"text": "too long"}]
    assert scorer.aggregate_question(form.questions[0].id, group_ids).total_answered == 2


def test_identified_free_text_carries_names(service, scorer):
    form = build_form(is_anonymous=False, questions=[{"kind": TEXT}])
    _respond(service, form, [{0: "clear"}, {0: "fast"}], prefix="named")

    report = scorer.aggregate_form(form.id)

    texts = report.questions[0].texts
    assert [(t.text, t.respondent_name) for t in texts] == [
        ("clear", f"named {form.id} 0"),
        ("fast", f"named {form.id} 1"),
    ]
    assert report.includes_identity is True


def test_instructor_only_sees_their_classes(service, scorer):
    form = build_form(questions=[{"kind": SINGLE, "weights": [5, 1]}])
    prof_x = make_respondent("Prof X", Role.INSTRUCTOR)
    prof_y = make_respondent("Prof Y", Role.INSTRUCTOR)
    x = make_classroom("X", prof_x)
    y = make_classroom("Y", prof_y)
    make_classroom("Z silent", prof_x)
    _respond(service, form, [{0: [0]}], classroom_id=x.id, prefix="x")
    _respond(service, form, [{0: [1]}] * 2, classroom_id=y.id, prefix="y")

    reports = scorer.aggregate_by_instructor(prof_x.id, form.id)

    assert [r.classroom_id for r in reports] == [x.id]
    assert reports[0].total_submissions == 1
    assert reports[0].score == Decimal("5")
    assert [r.classroom_id for r in scorer.aggregate_by_instructor(prof_y.id, form.id)] == [y.id]


def test_instructor_without_classes_gets_nothing(scorer, ctx):
    form = build_form(questions=[{"kind": TEXT}])
    loner = make_respondent("Loner", Role.INSTRUCTOR)
    assert scorer.aggregate_by_instructor(loner.id, form.id) == []


def test_unknown_form_report(scorer):
    with pytest.raises(FormNotFound):
        scorer.aggregate_form(404)
