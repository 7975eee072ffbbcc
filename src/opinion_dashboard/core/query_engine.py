from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Collection, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import logging

import pandas as pd

from opinion_dashboard.core.answers import (
    answer_color,
    grouped_normalizer,
    is_non_answer,
    normalize_answer,
    order_answers,
    record_weights,
    should_group_answers,
)
from opinion_dashboard.core.filters import (
    DateRange,
    FilterSet,
    active_filters,
    apply_demographic_filters,
    apply_region_filter,
    as_frame,
    filter_surveys_by_date,
    value_key,
)
from opinion_dashboard.core.metadata_loader import (
    DemographicDescriptor,
    HistoricQuestion,
    QuestionGroups,
    Survey,
    classify_questions,
    format_survey_title,
    sort_surveys,
    survey_date_label,
)

logger = logging.getLogger(__name__)

Normalizer = Callable[[Any], Optional[str]]

NOT_INFORMED = "Não informado"


class SelectionKind(str, Enum):
    HISTORIC = "historic"
    UNIQUE = "unique"


@dataclass(frozen=True)
class SelectedQuestion:
    """
    Tagged question selection.

    For UNIQUE questions survey_id names the owning round, since the same
    P<n> key is reused by unrelated questions in different rounds.
    """
    kind: SelectionKind
    key: str
    label: str
    survey_id: Optional[str] = None

    @classmethod
    def historic(cls, question: HistoricQuestion) -> "SelectedQuestion":
        return cls(kind=SelectionKind.HISTORIC, key=question.key, label=question.label)

    @classmethod
    def unique(cls, survey: Survey, key: str, label: str) -> "SelectedQuestion":
        return cls(kind=SelectionKind.UNIQUE, key=key, label=label, survey_id=survey.id)


@dataclass(frozen=True)
class DistributionRow:
    response: str
    count: float
    percentage: float


@dataclass(frozen=True)
class DistributionResult:
    question_key: str
    question_label: str
    survey_id: Optional[str]
    rows: Tuple[DistributionRow, ...] = ()

    def to_records(self) -> List[Dict[str, Any]]:
        return [{"response": r.response, "count": r.count, "percentage": r.percentage} for r in self.rows]


@dataclass(frozen=True)
class RoundTabulation:
    survey_id: str
    title: str
    date: str
    question_key: str
    percentages: Dict[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class SeriesPoint:
    x: str
    y: float
    exact_value: float


@dataclass(frozen=True)
class AnswerSeries:
    id: str
    color: str
    data: Tuple[SeriesPoint, ...]


@dataclass(frozen=True)
class TimeSeriesResult:
    question_key: str
    question_label: str
    rounds: Tuple[RoundTabulation, ...] = ()
    series: Tuple[AnswerSeries, ...] = ()

    def to_records(self) -> List[Dict[str, Any]]:
        return [
            {
                "id": s.id,
                "color": s.color,
                "data": [{"x": p.x, "y": p.y, "exactValue": p.exact_value} for p in s.data],
            }
            for s in self.series
        ]


@dataclass(frozen=True)
class ComparisonRow:
    answer: str
    percentages: Dict[str, float]


@dataclass(frozen=True)
class ComparisonResult:
    question_key: str
    demographic_key: str
    values: Tuple[str, ...] = ()
    rows: Tuple[ComparisonRow, ...] = ()

    def to_records(self) -> List[Dict[str, Any]]:
        return [{"answer": r.answer, **{v: r.percentages.get(v, 0.0) for v in self.values}} for r in self.rows]


@dataclass(frozen=True)
class WordTerm:
    text: str
    value: float


AggregationResult = Union[DistributionResult, TimeSeriesResult]


# ---------------------------------------------------------------------------
# Weighted tabulation
# ---------------------------------------------------------------------------

def round_share(weight: float, total: float) -> float:
    """Percentage with one decimal: round half up on the per-mille value, then scale."""
    return math.floor(weight / total * 1000 + 0.5) / 10


def weighted_counts(
    records: Any,
    question_key: str,
    weight_field: Optional[str] = None,
    normalizer: Optional[Normalizer] = None,
) -> Tuple[Dict[str, float], float]:
    """
    Sum sampling weights per normalized answer.

    Returns (weight_by_answer, total_weight). Answers keep first-seen order.
    Sums use math.fsum so the result does not depend on record order.
    """
    frame = as_frame(records)
    if frame.empty or question_key not in frame.columns:
        return {}, 0.0

    norm = normalizer or normalize_answer
    answers = frame[question_key].map(norm)
    valid = answers.notna()
    if not valid.any():
        return {}, 0.0

    weights = record_weights(frame, weight_field)[valid]
    answers = answers[valid].astype(str)

    sums = weights.groupby(answers, sort=False).agg(math.fsum)
    counts = {str(a): float(w) for a, w in sums.items()}
    return counts, math.fsum(weights.tolist())


def tabulate(
    records: Any,
    question_key: str,
    weight_field: Optional[str] = None,
    normalizer: Optional[Normalizer] = None,
) -> Dict[str, float]:
    """
    Weighted percentage per normalized answer for one question.

    Non-answers are excluded from numerator and denominator alike. With no
    valid answer the result is an empty mapping.
    """
    counts, total = weighted_counts(records, question_key, weight_field=weight_field, normalizer=normalizer)
    if total <= 0:
        return {}
    return {answer: round_share(w, total) for answer, w in counts.items()}


def _distribution_rows(counts: Mapping[str, float], total: float) -> Tuple[DistributionRow, ...]:
    if total <= 0:
        return ()
    rows = [DistributionRow(response=a, count=w, percentage=round_share(w, total)) for a, w in counts.items()]
    rows.sort(key=lambda r: -r.percentage)
    return tuple(rows)


def build_distribution(
    records: Any,
    question_key: str,
    question_label: str = "",
    survey_id: Optional[str] = None,
    weight_field: Optional[str] = None,
    normalizer: Optional[Normalizer] = None,
) -> DistributionResult:
    """Single-round distribution, rows sorted by percentage descending (stable)."""
    counts, total = weighted_counts(records, question_key, weight_field=weight_field, normalizer=normalizer)
    return DistributionResult(
        question_key=question_key,
        question_label=question_label or question_key,
        survey_id=survey_id,
        rows=_distribution_rows(counts, total),
    )


# ---------------------------------------------------------------------------
# Time series (historic questions)
# ---------------------------------------------------------------------------

def _rounds_for(question: HistoricQuestion) -> Tuple[List[Survey], Dict[str, str]]:
    surveys: List[Survey] = []
    key_by_survey: Dict[str, str] = {}
    for occ in question.occurrences:
        if occ.survey.id in key_by_survey:
            continue
        key_by_survey[occ.survey.id] = occ.key
        surveys.append(occ.survey)
    return surveys, key_by_survey


def assemble_time_series(
    question: HistoricQuestion,
    responses: Mapping[str, Any],
    filters: Optional[FilterSet] = None,
    date_range: Optional[DateRange] = None,
    demographics: Optional[Sequence[DemographicDescriptor]] = None,
    regions: Optional[Collection[str]] = None,
    weight_field: Optional[str] = None,
    normalizer: Optional[Normalizer] = None,
) -> TimeSeriesResult:
    """
    Tabulate a historic question once per round and transpose into series.

    Rounds are restricted to the date range and ordered chronologically. Each
    round uses its own variable key for the question label. Every series has
    one point per round; rounds where an answer was not observed contribute 0.
    """
    surveys, key_by_survey = _rounds_for(question)
    surveys = sort_surveys(filter_surveys_by_date(surveys, date_range))

    rounds: List[RoundTabulation] = []
    for survey in surveys:
        filtered = apply_demographic_filters(responses.get(survey.id, []), filters, demographics)
        filtered = apply_region_filter(filtered, regions)
        key = key_by_survey[survey.id]
        rounds.append(
            RoundTabulation(
                survey_id=survey.id,
                title=format_survey_title(survey),
                date=survey_date_label(survey),
                question_key=key,
                percentages=tabulate(filtered, key, weight_field=weight_field, normalizer=normalizer),
            )
        )

    answers = order_answers(a for r in rounds for a in r.percentages)
    series = tuple(
        AnswerSeries(
            id=answer,
            color=answer_color(answer),
            data=tuple(
                SeriesPoint(
                    x=r.title or r.date,
                    y=r.percentages.get(answer, 0.0),
                    exact_value=r.percentages.get(answer, 0.0),
                )
                for r in rounds
            ),
        )
        for answer in answers
    )

    logger.debug("Time series for %r: %d rounds, %d series", question.label, len(rounds), len(series))
    return TimeSeriesResult(
        question_key=question.key,
        question_label=question.label,
        rounds=tuple(rounds),
        series=series,
    )


# ---------------------------------------------------------------------------
# Demographic comparison
# ---------------------------------------------------------------------------

def _observed_values(frame: pd.DataFrame, key: str) -> List[str]:
    if key not in frame.columns:
        return []
    values = {value_key(v) for v in frame[key].tolist()}
    values.discard(None)
    values.discard("")
    return sorted(values)


def compare_demographic(
    records: Any,
    question_key: str,
    demographic_key: str,
    values: Optional[Sequence[str]] = None,
    demographics: Optional[Sequence[DemographicDescriptor]] = None,
    weight_field: Optional[str] = None,
    normalizer: Optional[Normalizer] = None,
) -> ComparisonResult:
    """
    Side-by-side distribution of one question across demographic groups.

    values defaults to the first two observed values of the demographic. Rows
    are keyed by answer (first-seen across groups, missing combinations are
    0) and stable-sorted by the first group's percentage, descending.
    """
    frame = as_frame(records)

    if values is None:
        descriptor = next((d for d in (demographics or []) if d.key == demographic_key), None)
        observed = list(descriptor.values) if descriptor is not None else _observed_values(frame, demographic_key)
        values = observed[:2]
    selected = tuple(dict.fromkeys(str(v) for v in values))

    if not selected or demographic_key not in frame.columns:
        return ComparisonResult(question_key=question_key, demographic_key=demographic_key, values=selected)

    group_keys = frame[demographic_key].map(value_key)

    by_group: Dict[str, Dict[str, float]] = {}
    for value in selected:
        part = frame[group_keys == value]
        by_group[value] = tabulate(part, question_key, weight_field=weight_field, normalizer=normalizer)

    answers = list(dict.fromkeys(a for value in selected for a in by_group[value]))
    rows = [
        ComparisonRow(answer=a, percentages={v: by_group[v].get(a, 0.0) for v in selected})
        for a in answers
    ]
    first = selected[0]
    rows.sort(key=lambda r: -r.percentages[first])

    return ComparisonResult(
        question_key=question_key,
        demographic_key=demographic_key,
        values=selected,
        rows=tuple(rows),
    )


# ---------------------------------------------------------------------------
# Wave comparison (two rounds side by side)
# ---------------------------------------------------------------------------

_WAVE_IGNORED_ANSWERS = frozenset({"ns/nr", "não sabe", "não respondeu", "nao sabe", "nao respondeu", "-1"})
_FOLD = str.maketrans({"õ": "o", "ã": "o", "é": "e", "ê": "e"})
_DEMOGRAPHIC_HINTS = ("regi", "estado", "sexo", "idade")


@dataclass(frozen=True)
class WaveCompatibility:
    is_compatible: bool
    missing_in_first: Tuple[str, ...] = ()
    missing_in_second: Tuple[str, ...] = ()


@dataclass(frozen=True)
class WaveComparisonRow:
    answer: str
    first: float
    second: float


@dataclass(frozen=True)
class WaveComparisonResult:
    question_key: str
    first_survey_id: str
    second_survey_id: str
    compatibility: WaveCompatibility
    rows: Tuple[WaveComparisonRow, ...] = ()

    def to_records(self) -> List[Dict[str, Any]]:
        return [{"answer": r.answer, "first": r.first, "second": r.second} for r in self.rows]


def _wave_answer_key(answer: Any) -> str:
    return str(answer or "").strip().lower()


def validate_wave_compatibility(first_answers: Iterable[str], second_answers: Iterable[str]) -> WaveCompatibility:
    """
    Two rounds are comparable when they offer the same answer options.

    Options are compared case-insensitively; don't-know style options are
    ignored for the verdict but still reported as missing.
    """
    first = [a for a in first_answers if _wave_answer_key(a)]
    second = [a for a in second_answers if _wave_answer_key(a)]
    first_keys = {_wave_answer_key(a) for a in first}
    second_keys = {_wave_answer_key(a) for a in second}

    return WaveCompatibility(
        is_compatible=(first_keys - _WAVE_IGNORED_ANSWERS) == (second_keys - _WAVE_IGNORED_ANSWERS),
        missing_in_first=tuple(a for a in second if _wave_answer_key(a) not in first_keys),
        missing_in_second=tuple(a for a in first if _wave_answer_key(a) not in second_keys),
    )


def common_demographic_keys(first_columns: Iterable[str], second_columns: Iterable[str]) -> List[str]:
    """Demographic columns present in both rounds (accent-insensitive match), in first-round order."""
    second_folded = {str(c).lower().translate(_FOLD) for c in second_columns}
    common: List[str] = []
    for column in dict.fromkeys(str(c) for c in first_columns):
        if column.lower().translate(_FOLD) not in second_folded:
            continue
        lower = column.lower()
        if column.startswith("PF") or any(h in lower for h in _DEMOGRAPHIC_HINTS):
            common.append(column)
    return common


def compare_waves(
    first_survey: Survey,
    second_survey: Survey,
    responses: Mapping[str, Any],
    first_key: str,
    second_key: Optional[str] = None,
    filters: Optional[FilterSet] = None,
    regions: Optional[Collection[str]] = None,
    weight_field: Optional[str] = None,
    normalizer: Optional[Normalizer] = None,
) -> WaveComparisonResult:
    """
    Tabulate one question in two rounds under the same filters.

    Only filters on demographics both rounds carry are applied. Rows cover
    every answer seen in either round (missing ⇒ 0) in display order.
    """
    second_key = second_key or first_key
    first_frame = as_frame(responses.get(first_survey.id, []))
    second_frame = as_frame(responses.get(second_survey.id, []))

    shared = {k for k in common_demographic_keys(first_frame.columns, second_frame.columns) if k in second_frame.columns}
    dropped = sorted(k for k in active_filters(filters) if k not in shared)
    if dropped:
        logger.info("Wave comparison ignores filters not shared by both rounds: %s", dropped)
    unified = {k: v for k, v in active_filters(filters).items() if k in shared}

    first_frame = apply_region_filter(apply_demographic_filters(first_frame, unified), regions)
    second_frame = apply_region_filter(apply_demographic_filters(second_frame, unified), regions)

    first = tabulate(first_frame, first_key, weight_field=weight_field, normalizer=normalizer)
    second = tabulate(second_frame, second_key, weight_field=weight_field, normalizer=normalizer)

    rows = tuple(
        WaveComparisonRow(answer=a, first=first.get(a, 0.0), second=second.get(a, 0.0))
        for a in order_answers(list(first) + list(second))
    )
    return WaveComparisonResult(
        question_key=first_key,
        first_survey_id=first_survey.id,
        second_survey_id=second_survey.id,
        compatibility=validate_wave_compatibility(first, second),
        rows=rows,
    )


# ---------------------------------------------------------------------------
# Profiles and word clouds
# ---------------------------------------------------------------------------

def _profile_value(value: Any) -> str:
    if value is None:
        return NOT_INFORMED
    try:
        if pd.isna(value):
            return NOT_INFORMED
    except (TypeError, ValueError):
        pass
    text = str(value).strip()
    return text or NOT_INFORMED


def demographic_profile(records: Any, demographic_key: str, weight_field: Optional[str] = None) -> List[DistributionRow]:
    """Weighted share of each demographic value; missing values count as 'Não informado'."""
    frame = as_frame(records)
    if frame.empty:
        return []
    if demographic_key not in frame.columns:
        frame = frame.assign(**{demographic_key: None})
    counts, total = weighted_counts(frame, demographic_key, weight_field=weight_field, normalizer=_profile_value)
    return list(_distribution_rows(counts, total))


def word_cloud_terms(rows: Iterable[DistributionRow]) -> List[WordTerm]:
    """Sum counts per response text, leaving out non-answers."""
    totals: Dict[str, float] = {}
    for row in rows:
        if is_non_answer(row.response):
            continue
        totals[row.response] = totals.get(row.response, 0.0) + row.count
    return [WordTerm(text=t, value=v) for t, v in totals.items()]


# ---------------------------------------------------------------------------
# Selection dispatch
# ---------------------------------------------------------------------------

def filters_after_selection_change(
    previous: Optional[SelectedQuestion],
    current: Optional[SelectedQuestion],
    filters: Optional[FilterSet],
) -> Dict[str, List[str]]:
    """Selecting a different question starts from an empty filter set."""
    if previous != current:
        return {}
    return {k: list(v) for k, v in (filters or {}).items()}


def find_survey_for_selection(selection: SelectedQuestion, surveys: Sequence[Survey]) -> Optional[Survey]:
    if selection.survey_id:
        match = next((s for s in surveys if s.id == selection.survey_id), None)
        if match is not None:
            return match
    return next((s for s in surveys if s.has_variable(selection.key)), None)


def find_historic_question(selection: SelectedQuestion, groups: QuestionGroups) -> Optional[HistoricQuestion]:
    """Resolve a historic selection by label, falling back to its canonical key."""
    question = next((h for h in groups.historic if h.label == selection.label), None)
    if question is None:
        question = next((h for h in groups.historic if h.key == selection.key), None)
    return question


def selection_values(
    selection: SelectedQuestion,
    surveys: Sequence[Survey],
    responses: Mapping[str, Any],
    groups: Optional[QuestionGroups] = None,
) -> List[Any]:
    """Raw answer values of the selected question across every round it resolves to."""
    pairs: List[Tuple[str, str]] = []
    if selection.kind is SelectionKind.HISTORIC:
        question = find_historic_question(selection, groups if groups is not None else classify_questions(surveys))
        if question is not None:
            _, key_by_survey = _rounds_for(question)
            pairs = list(key_by_survey.items())
    else:
        survey = find_survey_for_selection(selection, surveys)
        if survey is not None:
            pairs = [(survey.id, selection.key)]

    values: List[Any] = []
    for survey_id, key in pairs:
        frame = as_frame(responses.get(survey_id, []))
        if key in frame.columns:
            values.extend(frame[key].tolist())
    return values


def normalizer_for_selection(
    selection: Optional[SelectedQuestion],
    surveys: Sequence[Survey],
    responses: Mapping[str, Any],
    groups: Optional[QuestionGroups] = None,
) -> Optional[Normalizer]:
    """
    Grouped normalizer when the selected question is an evaluation scale
    (at least four of Ótimo, Bom, Regular, Ruim, Péssimo observed), else None.
    """
    if selection is None:
        return None
    if should_group_answers(selection_values(selection, surveys, responses, groups)):
        return grouped_normalizer
    return None


def run_selection(
    selection: Optional[SelectedQuestion],
    surveys: Sequence[Survey],
    responses: Mapping[str, Any],
    filters: Optional[FilterSet] = None,
    date_range: Optional[DateRange] = None,
    demographics: Optional[Sequence[DemographicDescriptor]] = None,
    groups: Optional[QuestionGroups] = None,
    regions: Optional[Collection[str]] = None,
    weight_field: Optional[str] = None,
    normalizer: Optional[Normalizer] = None,
) -> Optional[AggregationResult]:
    """
    Compute the aggregation for the current selection.

    Historic selections yield a TimeSeriesResult, unique selections a
    DistributionResult. No selection yields None; a selection that no longer
    resolves against the surveys yields an empty result of the right kind.
    """
    if selection is None or not selection.key:
        return None

    if selection.kind is SelectionKind.HISTORIC:
        question = find_historic_question(selection, groups if groups is not None else classify_questions(surveys))
        if question is None:
            logger.warning("Historic question %r not found among current surveys.", selection.label)
            return TimeSeriesResult(question_key=selection.key, question_label=selection.label)
        return assemble_time_series(
            question,
            responses,
            filters=filters,
            date_range=date_range,
            demographics=demographics,
            regions=regions,
            weight_field=weight_field,
            normalizer=normalizer,
        )

    survey = find_survey_for_selection(selection, surveys)
    if survey is None:
        logger.warning("No survey carries question %s.", selection.key)
        return DistributionResult(question_key=selection.key, question_label=selection.label, survey_id=selection.survey_id)

    filtered = apply_demographic_filters(responses.get(survey.id, []), filters, demographics)
    filtered = apply_region_filter(filtered, regions)
    return build_distribution(
        filtered,
        selection.key,
        question_label=selection.label,
        survey_id=survey.id,
        weight_field=weight_field,
        normalizer=normalizer,
    )
