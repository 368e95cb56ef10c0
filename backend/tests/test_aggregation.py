from types import SimpleNamespace

import pytest

from aggregation import (
    ProblemInfo, DEFAULT_RATING, CHOICE_DELIMITER, UNKNOWN_TITLE,
    ChoiceAnswer, LabeledSliderAnswer, SliderAnswer,
    encode_choices, decode_choices, decode_answer, encode_answer,
    numeric_aggregate, choice_distribution, rank_by_priority, label_responses,
)

def row(problem_id, frequency=None, severity=None, text_response=None, selected_index=None):
    return SimpleNamespace(problem_id=problem_id, frequency=frequency, severity=severity,
                           text_response=text_response, selected_index=selected_index)

def sub(*responses):
    return SimpleNamespace(responses=list(responses))

SLIDER_1 = ProblemInfo(id=1, title="Slow queries", group="Performance")
SLIDER_2 = ProblemInfo(id=2, title="Stale stats", group="Maintenance", question_type=None)
YES_NO = ProblemInfo(id=7, title="On-prem?", group="AI", question_type="single-choice", options=("Yes", "No"))
CLOUDS = ProblemInfo(id=8, title="Clouds", group="AI", question_type="multiple-choice",
                     options=("AWS", "Azure", "Google Cloud"))
WORK = ProblemInfo(id=9, title="Work style", group="Workflows", question_type="slider-labeled",
                   options=("CLI", "Balanced", "GUI"))


def test_unanswered_slider_sits_at_default_midpoint():
    points = numeric_aggregate([SLIDER_1, SLIDER_2], [sub(row(1, 3, 4))])
    by_id = {p.id: p for p in points}
    assert by_id[2].x == by_id[2].y == DEFAULT_RATING
    assert by_id[2].count == 0

def test_no_submissions_at_all():
    points = numeric_aggregate([SLIDER_1], [])
    assert (points[0].x, points[0].y) == (5, 5)

def test_slider_mean_is_exact():
    freqs = [1, 2, 2, 7, 10, 3]
    sevs = [9, 9, 8, 1, 4, 6]
    subs = [sub(row(1, f, s)) for f, s in zip(freqs, sevs)]
    p = numeric_aggregate([SLIDER_1], subs)[0]
    assert abs(p.x - sum(freqs) / len(freqs)) < 1e-9
    assert abs(p.y - sum(sevs) / len(sevs)) < 1e-9
    assert p.count == 6
    assert p.priority == pytest.approx(p.x * p.y)

def test_numeric_aggregate_ignores_choice_questions_and_missing_values():
    subs = [sub(row(1, 4, None), row(7, text_response="Yes")), sub(row(1, 6, 2))]
    points = numeric_aggregate([SLIDER_1, YES_NO], subs)
    assert [p.id for p in points] == [1]
    assert (points[0].x, points[0].y, points[0].count) == (6, 2, 1)

def test_multiple_choice_round_trip_is_order_independent():
    encoded = encode_choices(["C", "A"])
    assert set(decode_choices(encoded)) == {"A", "C"}
    assert CHOICE_DELIMITER in encoded

def test_decode_choices_drops_blank_pieces():
    assert decode_choices(f"A{CHOICE_DELIMITER} {CHOICE_DELIMITER}B") == ["A", "B"]
    assert decode_choices(None) == []

def test_encode_choices_rejects_delimiter_in_option():
    with pytest.raises(ValueError):
        encode_choices([f"bad{CHOICE_DELIMITER}option"])

def test_decode_answer_variants():
    assert decode_answer("slider", row(1, 3, 4)) == SliderAnswer(3, 4)
    assert decode_answer("single-choice", row(7, text_response="No")) == ChoiceAnswer(("No",))
    assert decode_answer("slider-labeled", row(9, selected_index=2)) == LabeledSliderAnswer(2)
    # rows stored before selected_index existed
    assert decode_answer("slider-labeled", row(9, frequency=3, severity=0)) == LabeledSliderAnswer(3)
    assert decode_answer("multiple-choice", row(8, text_response="")) is None

def test_encode_answer_uses_dedicated_columns():
    assert encode_answer(LabeledSliderAnswer(2)) == {"selected_index": 2}
    assert encode_answer(SliderAnswer(1, 9)) == {"frequency": 1, "severity": 9}
    assert encode_answer(ChoiceAnswer(("AWS", "Azure"))) == {"text_response": f"AWS{CHOICE_DELIMITER}Azure"}

def test_single_choice_distribution_sorted_descending():
    subs = [sub(row(7, text_response=t)) for t in ["No", "Yes", "Yes", "Yes"]]
    [summary] = choice_distribution([YES_NO], subs)
    assert [(c.option, c.count) for c in summary.counts] == [("Yes", 3), ("No", 1)]
    assert summary.total == 4

def test_ties_keep_first_seen_order():
    subs = [sub(row(7, text_response="No")), sub(row(7, text_response="Yes"))]
    [summary] = choice_distribution([YES_NO], subs)
    assert [c.option for c in summary.counts] == ["No", "Yes"]

def test_multiple_choice_counts_every_selection():
    subs = [
        sub(row(8, text_response=encode_choices(["AWS", "Azure"]))),
        sub(row(8, text_response=encode_choices(["Azure"]))),
    ]
    [summary] = choice_distribution([CLOUDS], subs)
    assert [(c.option, c.count) for c in summary.counts] == [("Azure", 2), ("AWS", 1)]
    assert summary.total == 3

def test_labeled_slider_resolves_labels_and_falls_back():
    subs = [sub(row(9, selected_index=1)), sub(row(9, selected_index=1)), sub(row(9, selected_index=7))]
    [summary] = choice_distribution([WORK], subs)
    assert [(c.option, c.count) for c in summary.counts] == [("CLI", 2), ("Option 7", 1)]

def test_unanswered_choice_question_is_omitted():
    assert choice_distribution([YES_NO, SLIDER_1], [sub(row(1, 2, 2))]) == []

def test_rank_by_priority_skips_unanswered():
    subs = [sub(row(1, 2, 3))]
    third = ProblemInfo(id=3, title="Plans", group="Performance")
    ranked = rank_by_priority(numeric_aggregate([SLIDER_1, SLIDER_2, third], subs + [sub(row(3, 9, 9))]))
    assert [p.id for p in ranked] == [3, 1]
    assert rank_by_priority(numeric_aggregate([SLIDER_1, third], subs + [sub(row(3, 9, 9))]), limit=1)[0].id == 3

def test_label_responses_keeps_unknown_problems():
    s = sub(row(1, 2, 3), row(42, 5, 5), row(8, text_response=encode_choices(["AWS", "Azure"])))
    rows = label_responses(s, {1: SLIDER_1, 8: CLOUDS})
    assert [r["question"] for r in rows] == ["Slow queries", UNKNOWN_TITLE, "Clouds"]
    assert rows[1]["frequency"] == 5
    assert rows[2]["answer"] == "AWS; Azure"
