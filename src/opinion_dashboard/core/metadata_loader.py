from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import logging

import pandas as pd

logger = logging.getLogger(__name__)

QUESTION_KEY_RE = re.compile(r"^P\d+$")
DEMOGRAPHIC_KEY_RE = re.compile(r"^PF\d+$")

# Survey rounds carry Portuguese month names
MONTH_ORDINALS: Dict[str, int] = {
    "Janeiro": 1,
    "Fevereiro": 2,
    "Março": 3,
    "Abril": 4,
    "Maio": 5,
    "Junho": 6,
    "Julho": 7,
    "Agosto": 8,
    "Setembro": 9,
    "Outubro": 10,
    "Novembro": 11,
    "Dezembro": 12,
}

_SURVEY_NUMBER_RE = re.compile(r"\b(?:survey|pesquisa)\s*(\d+)", re.IGNORECASE)
_NULL_VALUES = {"#null!", "#null"}


@dataclass(frozen=True)
class Variable:
    key: str
    label: str
    type: str = ""


@dataclass(frozen=True)
class Survey:
    """
    One survey round as served by the backend.

    month is the Portuguese month name ('Janeiro'..'Dezembro'); year may be
    missing on malformed rounds, in which case date-based operations treat the
    round as undated.
    """
    id: str
    month: str
    year: Optional[int]
    variables: Tuple[Variable, ...] = ()
    name: str = ""

    def has_variable(self, key: str) -> bool:
        return any(v.key == key for v in self.variables)


@dataclass(frozen=True)
class DemographicDescriptor:
    key: str
    label: str
    values: Tuple[str, ...]


@dataclass(frozen=True)
class QuestionOccurrence:
    survey: Survey
    key: str


@dataclass(frozen=True)
class HistoricQuestion:
    """A question label present in two or more rounds; key is the first occurrence's key."""
    label: str
    key: str
    occurrences: Tuple[QuestionOccurrence, ...]


@dataclass(frozen=True)
class UniqueQuestion:
    label: str
    key: str


@dataclass(frozen=True)
class UniqueQuestionGroup:
    survey: Survey
    entries: Tuple[UniqueQuestion, ...]


@dataclass(frozen=True)
class QuestionGroups:
    historic: Tuple[HistoricQuestion, ...] = ()
    unique: Tuple[UniqueQuestionGroup, ...] = field(default_factory=tuple)

    def occurrence_count(self) -> int:
        return sum(len(h.occurrences) for h in self.historic) + sum(len(g.entries) for g in self.unique)


# ---------------------------------------------------------------------------
# Parsing backend payloads
# ---------------------------------------------------------------------------

def _coerce_year(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        if pd.isna(value):
            return None
    except (TypeError, ValueError):
        pass
    try:
        return int(str(value).strip())
    except ValueError:
        return None


def parse_survey(payload: Mapping[str, Any]) -> Survey:
    """
    Build a Survey from one element of GET /api/surveys.

    Expected shape:
      {"_id": "...", "name": "...", "month": "Maio", "year": 2025,
       "variables": [{"key": "P1", "label": "...", "type": "..."}, ...]}

    Variables without a key are dropped; a missing label falls back to the key.
    """
    variables: List[Variable] = []
    for raw in payload.get("variables") or []:
        if not isinstance(raw, Mapping):
            continue
        key = str(raw.get("key") or "").strip()
        if not key:
            continue
        label = str(raw.get("label") or "").strip() or key
        variables.append(Variable(key=key, label=label, type=str(raw.get("type") or "")))

    survey_id = str(payload.get("_id") or payload.get("id") or "").strip()
    return Survey(
        id=survey_id,
        month=str(payload.get("month") or "").strip(),
        year=_coerce_year(payload.get("year")),
        variables=tuple(variables),
        name=str(payload.get("name") or "").strip(),
    )


def parse_surveys(payload: Sequence[Mapping[str, Any]]) -> List[Survey]:
    surveys = [parse_survey(p) for p in payload if isinstance(p, Mapping)]
    missing_ids = [s for s in surveys if not s.id]
    if missing_ids:
        logger.warning("Dropping %d surveys without an _id.", len(missing_ids))
    return [s for s in surveys if s.id]


# ---------------------------------------------------------------------------
# Dates and ordering
# ---------------------------------------------------------------------------

def month_ordinal(month: str) -> int:
    """1..12 for known month names, 0 for anything else."""
    return MONTH_ORDINALS.get((month or "").strip(), 0)


def survey_date(survey: Survey) -> Optional[date]:
    """First-of-month date for a round; unknown months count as January."""
    if survey.year is None or not 1 <= survey.year <= 9999:
        return None
    return date(survey.year, month_ordinal(survey.month) or 1, 1)


def sort_surveys(surveys: Sequence[Survey]) -> List[Survey]:
    """Chronological order by (year, month ordinal); stable for equal dates."""
    return sorted(
        surveys,
        key=lambda s: (s.year if s.year is not None else 0, month_ordinal(s.month)),
    )


def format_survey_title(survey: Survey) -> str:
    match = _SURVEY_NUMBER_RE.search(survey.name or "")
    number = match.group(1) if match else ""
    period = f"{survey.month} {survey.year}" if survey.month and survey.year is not None else ""

    if number and period:
        return f"Pesquisa {number} {period}"
    if period:
        return period
    if survey.name:
        return survey.name
    return f"Pesquisa {survey.id[:6]}"


def survey_date_label(survey: Survey) -> str:
    year = "" if survey.year is None else str(survey.year)
    return f"{survey.month or ''} {year}".strip()


# ---------------------------------------------------------------------------
# Question classification
# ---------------------------------------------------------------------------

def is_question_key(key: str) -> bool:
    return bool(QUESTION_KEY_RE.match(key or ""))


def is_demographic_key(key: str) -> bool:
    return bool(DEMOGRAPHIC_KEY_RE.match(key or ""))


def classify_questions(surveys: Sequence[Survey]) -> QuestionGroups:
    """
    Partition question variables into historic and unique groups.

    Labels are collected in insertion order (surveys in the given order,
    variables in declaration order), so the canonical key of a historic
    question is always its earliest-listed occurrence:

      - label seen in >= 2 (survey, key) occurrences -> HistoricQuestion
      - label seen exactly once                     -> UniqueQuestion, grouped
                                                       under its survey
    """
    by_label: Dict[str, List[QuestionOccurrence]] = {}
    for survey in surveys:
        for v in survey.variables:
            if not is_question_key(v.key):
                continue
            by_label.setdefault(v.label, []).append(QuestionOccurrence(survey=survey, key=v.key))

    historic: List[HistoricQuestion] = []
    unique: Dict[str, Tuple[Survey, List[UniqueQuestion]]] = {}

    for label, occurrences in by_label.items():
        if len(occurrences) > 1:
            historic.append(HistoricQuestion(label=label, key=occurrences[0].key, occurrences=tuple(occurrences)))
        else:
            occ = occurrences[0]
            unique.setdefault(occ.survey.id, (occ.survey, []))[1].append(UniqueQuestion(label=label, key=occ.key))

    groups = QuestionGroups(
        historic=tuple(historic),
        unique=tuple(UniqueQuestionGroup(survey=s, entries=tuple(entries)) for s, entries in unique.values()),
    )
    logger.debug(
        "Classified %d labels: %d historic, %d unique groups",
        len(by_label), len(groups.historic), len(groups.unique),
    )
    return groups


# ---------------------------------------------------------------------------
# Demographic universe
# ---------------------------------------------------------------------------

def _clean_demographic_value(value: Any) -> Optional[str]:
    if value is None:
        return None
    try:
        if pd.isna(value):
            return None
    except (TypeError, ValueError):
        pass
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    text = str(value).strip()
    if not text or text.lower() in _NULL_VALUES:
        return None
    return text


def build_demographics(
    surveys: Sequence[Survey],
    responses: Mapping[str, Any],
) -> List[DemographicDescriptor]:
    """
    Derive the demographic universe from survey metadata and responses.

    Keys are the PF<digits> variables in first-declared order; the label comes
    from the first survey declaring the key. Values are the distinct observed
    non-empty values across all rounds, sorted. Keys with no observed value are
    dropped.
    """
    labels: Dict[str, str] = {}
    for survey in surveys:
        for v in survey.variables:
            if is_demographic_key(v.key) and v.key not in labels:
                labels[v.key] = v.label or v.key

    observed: Dict[str, set] = {k: set() for k in labels}
    for records in responses.values():
        frame = records if isinstance(records, pd.DataFrame) else pd.DataFrame(list(records or []), dtype=object)
        for key in labels:
            if key not in frame.columns:
                continue
            for raw in frame[key].tolist():
                value = _clean_demographic_value(raw)
                if value is not None:
                    observed[key].add(value)

    out: List[DemographicDescriptor] = []
    for key, label in labels.items():
        if not observed[key]:
            logger.debug("Demographic %s has no observed values; skipping.", key)
            continue
        out.append(DemographicDescriptor(key=key, label=label, values=tuple(sorted(observed[key]))))
    return out
