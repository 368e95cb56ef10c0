# Per-question aggregates computed from stored submissions.
#
# Nothing here touches the database: callers hand in the problem catalog of an
# already resolved config and the submissions (ORM rows or anything exposing
# the same attributes).
from __future__ import annotations

from dataclasses import dataclass, field
from statistics import fmean
from typing import Iterable, Optional, Sequence, Union

DEFAULT_RATING = 5
MIN_RATING = 1
MAX_RATING = 10

CHOICE_DELIMITER = "|||"
UNKNOWN_TITLE = "Unknown"

SLIDER = "slider"
SINGLE_CHOICE = "single-choice"
MULTIPLE_CHOICE = "multiple-choice"
SLIDER_LABELED = "slider-labeled"
QUESTION_TYPES = (SLIDER, SINGLE_CHOICE, MULTIPLE_CHOICE, SLIDER_LABELED)
CHOICE_TYPES = (SINGLE_CHOICE, MULTIPLE_CHOICE, SLIDER_LABELED)


@dataclass(frozen=True)
class ProblemInfo:
    id: int
    title: str
    group: str
    question_type: str = SLIDER
    options: tuple[str, ...] = ()

    @property
    def is_slider(self) -> bool:
        return normalize_question_type(self.question_type) == SLIDER


# ---------------------------------------------
# Answer variants, one per question type
# ---------------------------------------------
@dataclass(frozen=True)
class SliderAnswer:
    frequency: int
    severity: int


@dataclass(frozen=True)
class ChoiceAnswer:
    selected: tuple[str, ...]


@dataclass(frozen=True)
class LabeledSliderAnswer:
    selected_index: int  # 1-based position in the problem's options


Answer = Union[SliderAnswer, ChoiceAnswer, LabeledSliderAnswer]


def normalize_question_type(question_type: Optional[str]) -> str:
    return question_type or SLIDER


def encode_choices(selected: Iterable[str]) -> str:
    """Join selected options into the stored multiple-choice text.

    Raises:
        ValueError: if an option contains the delimiter itself.
    """
    items = list(selected)
    for item in items:
        if CHOICE_DELIMITER in item:
            raise ValueError(f"Option may not contain '{CHOICE_DELIMITER}': {item!r}")
    return CHOICE_DELIMITER.join(items)


def decode_choices(text: Optional[str]) -> list[str]:
    if not text:
        return []
    return [s for s in text.split(CHOICE_DELIMITER) if s.strip()]


def decode_answer(question_type: Optional[str], row) -> Optional[Answer]:
    """Turn a stored response row into the variant matching its question type.

    Returns None when the row carries nothing usable for that type.
    """
    qtype = normalize_question_type(question_type)
    if qtype == SLIDER:
        if row.frequency is None or row.severity is None:
            return None
        return SliderAnswer(frequency=row.frequency, severity=row.severity)
    if qtype == SINGLE_CHOICE:
        return ChoiceAnswer(selected=(row.text_response,)) if row.text_response else None
    if qtype == MULTIPLE_CHOICE:
        selected = decode_choices(row.text_response)
        return ChoiceAnswer(selected=tuple(selected)) if selected else None
    if qtype == SLIDER_LABELED:
        # rows written before selected_index existed kept the index in frequency
        index = row.selected_index if row.selected_index is not None else row.frequency
        return LabeledSliderAnswer(selected_index=index) if index is not None else None
    return None


def encode_answer(answer: Answer) -> dict:
    """Column values for storing an answer variant."""
    if isinstance(answer, SliderAnswer):
        return {"frequency": answer.frequency, "severity": answer.severity}
    if isinstance(answer, LabeledSliderAnswer):
        return {"selected_index": answer.selected_index}
    return {"text_response": encode_choices(answer.selected)}


def option_label(problem: ProblemInfo, index: int) -> str:
    if 1 <= index <= len(problem.options):
        return problem.options[index - 1]
    return f"Option {index}"


# ---------------------------------------------
# Numeric aggregate (slider questions)
# ---------------------------------------------
@dataclass
class AggregatePoint:
    id: int
    x: float
    y: float
    group: str
    title: str
    count: int = 0
    priority: float = field(init=False)

    def __post_init__(self):
        self.priority = self.x * self.y


def numeric_aggregate(problems: Sequence[ProblemInfo], submissions: Iterable) -> list[AggregatePoint]:
    """Average frequency (x) and severity (y) per slider question.

    Questions nobody answered sit at DEFAULT_RATING on both axes.
    """
    sliders = [p for p in problems if p.is_slider]
    wanted = {p.id for p in sliders}
    freqs: dict[int, list[int]] = {pid: [] for pid in wanted}
    sevs: dict[int, list[int]] = {pid: [] for pid in wanted}

    for sub in submissions:
        for r in sub.responses:
            if r.problem_id not in wanted:
                continue
            answer = decode_answer(SLIDER, r)
            if answer is None:
                continue
            freqs[r.problem_id].append(answer.frequency)
            sevs[r.problem_id].append(answer.severity)

    points = []
    for p in sliders:
        fs, ss = freqs[p.id], sevs[p.id]
        points.append(AggregatePoint(
            id=p.id,
            x=fmean(fs) if fs else float(DEFAULT_RATING),
            y=fmean(ss) if ss else float(DEFAULT_RATING),
            group=p.group,
            title=p.title,
            count=len(fs),
        ))
    return points


def rank_by_priority(points: Iterable[AggregatePoint], limit: Optional[int] = None) -> list[AggregatePoint]:
    """Answered questions ordered by frequency x severity, highest first."""
    ranked = sorted((p for p in points if p.count > 0), key=lambda p: p.priority, reverse=True)
    return ranked[:limit] if limit is not None else ranked


# ---------------------------------------------
# Choice distribution
# ---------------------------------------------
@dataclass
class OptionCount:
    option: str
    count: int


@dataclass
class ChoiceSummary:
    id: int
    title: str
    group: str
    question_type: str
    total: int
    counts: list[OptionCount]


def choice_distribution(problems: Sequence[ProblemInfo], submissions: Iterable) -> list[ChoiceSummary]:
    """Per-option selection counts for choice and labeled-slider questions.

    Each submission contributes its first answer to a question. Options are
    ordered by count, ties keep the order in which they were first seen.
    Questions without any answer are left out.
    """
    choice_problems = [p for p in problems if normalize_question_type(p.question_type) in CHOICE_TYPES]
    by_id = {p.id: p for p in choice_problems}
    counts: dict[int, dict[str, int]] = {p.id: {} for p in choice_problems}

    for sub in submissions:
        seen = set()
        for r in sub.responses:
            problem = by_id.get(r.problem_id)
            if problem is None or r.problem_id in seen:
                continue
            seen.add(r.problem_id)
            answer = decode_answer(problem.question_type, r)
            if answer is None:
                continue
            if isinstance(answer, LabeledSliderAnswer):
                labels = [option_label(problem, answer.selected_index)]
            else:
                labels = list(answer.selected)
            bucket = counts[problem.id]
            for label in labels:
                bucket[label] = bucket.get(label, 0) + 1

    out = []
    for p in choice_problems:
        bucket = counts[p.id]
        if not bucket:
            continue
        ordered = sorted(bucket.items(), key=lambda kv: kv[1], reverse=True)
        out.append(ChoiceSummary(
            id=p.id,
            title=p.title,
            group=p.group,
            question_type=p.question_type,
            total=sum(bucket.values()),
            counts=[OptionCount(option=k, count=v) for k, v in ordered],
        ))
    return out


# ---------------------------------------------
# Table rows (per submission)
# ---------------------------------------------
def label_responses(submission, catalog: dict[int, ProblemInfo]) -> list[dict]:
    """Flatten a submission's responses into display rows.

    Responses to questions missing from the catalog keep their raw values and
    get the UNKNOWN_TITLE placeholder.
    """
    rows = []
    for r in submission.responses:
        problem = catalog.get(r.problem_id)
        answer_text = r.text_response
        if problem is not None:
            answer = decode_answer(problem.question_type, r)
            if isinstance(answer, ChoiceAnswer):
                answer_text = "; ".join(answer.selected)
            elif isinstance(answer, LabeledSliderAnswer):
                answer_text = option_label(problem, answer.selected_index)
        rows.append({
            "problem_id": r.problem_id,
            "question": problem.title if problem else UNKNOWN_TITLE,
            "section": problem.group if problem else None,
            "frequency": r.frequency,
            "severity": r.severity,
            "answer": answer_text,
        })
    return rows
