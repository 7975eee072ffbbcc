from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Any, Collection, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import logging

import pandas as pd

from opinion_dashboard.core.metadata_loader import (
    DemographicDescriptor,
    Survey,
    survey_date,
    survey_date_label,
)

logger = logging.getLogger(__name__)

FilterSet = Mapping[str, Collection[str]]


@dataclass(frozen=True)
class DateRange:
    start: Optional[date] = None
    end: Optional[date] = None

    @property
    def is_unbounded(self) -> bool:
        return self.start is None and self.end is None


def as_frame(records: Any) -> pd.DataFrame:
    """
    Return a record collection as an object-dtype DataFrame.

    Lists of mappings are converted (missing keys become NaN); DataFrames are
    returned as-is. Callers must not mutate the returned frame in place.
    """
    if isinstance(records, pd.DataFrame):
        return records
    if records is None:
        return pd.DataFrame()
    return pd.DataFrame(list(records), dtype=object)


def value_key(value: Any) -> Optional[str]:
    if value is None:
        return None
    try:
        if pd.isna(value):
            return None
    except (TypeError, ValueError):
        pass
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value).strip()


# ---------------------------------------------------------------------------
# Demographic filter
# ---------------------------------------------------------------------------

def active_filters(filters: Optional[FilterSet]) -> Dict[str, List[str]]:
    """Drop keys whose allow-list is empty; those impose no constraint."""
    out: Dict[str, List[str]] = {}
    for key, values in (filters or {}).items():
        allowed = [str(v).strip() for v in (values or [])]
        if allowed:
            out[key] = allowed
    return out


def apply_demographic_filters(
    records: Any,
    filters: Optional[FilterSet],
    demographics: Optional[Sequence[DemographicDescriptor]] = None,
) -> pd.DataFrame:
    """
    Keep records whose value is in every non-empty allow-list.

    Values are compared in trimmed string form. A filter on a key that the
    records do not carry (or that is outside the given demographic universe)
    can never be satisfied, so the result is empty.
    """
    frame = as_frame(records)
    constraints = active_filters(filters)
    if not constraints:
        return frame

    known = {d.key for d in demographics} if demographics is not None else None

    mask = pd.Series(True, index=frame.index)
    for key, allowed in constraints.items():
        if (known is not None and key not in known) or key not in frame.columns:
            logger.warning("Filter references unknown demographic %s; no record can match.", key)
            return frame.iloc[0:0]
        allowed_set = set(allowed)
        mask &= frame[key].map(lambda v: value_key(v) in allowed_set).astype(bool)

    return frame[mask]


# ---------------------------------------------------------------------------
# Region filter
# ---------------------------------------------------------------------------

STATES_BY_REGION: Dict[str, Tuple[str, ...]] = {
    "Norte": ("Acre", "Amapá", "Amazonas", "Pará", "Rondônia", "Roraima", "Tocantins"),
    "Nordeste": (
        "Alagoas",
        "Bahia",
        "Ceará",
        "Maranhão",
        "Paraíba",
        "Pernambuco",
        "Piauí",
        "Rio Grande do Norte",
        "Sergipe",
    ),
    "Centro-Oeste": ("Distrito Federal", "Goiás", "Mato Grosso", "Mato Grosso do Sul"),
    "Sudeste": ("Espírito Santo", "Minas Gerais", "Rio de Janeiro", "São Paulo"),
    "Sul": ("Paraná", "Rio Grande do Sul", "Santa Catarina"),
}

REGION_BY_STATE: Dict[str, str] = {
    state: region for region, states in STATES_BY_REGION.items() for state in states
}

STATE_BY_ABBREVIATION: Dict[str, str] = {
    "AC": "Acre",
    "AL": "Alagoas",
    "AP": "Amapá",
    "AM": "Amazonas",
    "BA": "Bahia",
    "CE": "Ceará",
    "DF": "Distrito Federal",
    "ES": "Espírito Santo",
    "GO": "Goiás",
    "MA": "Maranhão",
    "MT": "Mato Grosso",
    "MS": "Mato Grosso do Sul",
    "MG": "Minas Gerais",
    "PA": "Pará",
    "PB": "Paraíba",
    "PR": "Paraná",
    "PE": "Pernambuco",
    "PI": "Piauí",
    "RJ": "Rio de Janeiro",
    "RN": "Rio Grande do Norte",
    "RS": "Rio Grande do Sul",
    "RO": "Rondônia",
    "RR": "Roraima",
    "SC": "Santa Catarina",
    "SP": "São Paulo",
    "SE": "Sergipe",
    "TO": "Tocantins",
}

# Columns that carry the respondent's state (UF), in lookup order
STATE_KEYS = ("UF", "uf", "PF10")


def available_regions() -> List[str]:
    return sorted(STATES_BY_REGION)


def normalize_state_name(value: Any) -> Optional[str]:
    """Full state name for a UF abbreviation; other values are returned trimmed."""
    text = value_key(value)
    if not text:
        return None
    return STATE_BY_ABBREVIATION.get(text.upper(), text)


def detect_state_key(columns: Iterable[str]) -> Optional[str]:
    cols = set(columns)
    return next((k for k in STATE_KEYS if k in cols), None)


def region_state_values(values: Iterable[Any], regions: Collection[str]) -> List[str]:
    """Distinct raw state values (names or UF abbreviations) that fall in the given regions."""
    wanted = set(regions)
    out: Dict[str, None] = {}
    for value in values:
        key = value_key(value)
        if key and REGION_BY_STATE.get(normalize_state_name(key) or "") in wanted:
            out.setdefault(key, None)
    return list(out)


def apply_region_filter(records: Any, regions: Optional[Collection[str]], state_key: Optional[str] = None) -> pd.DataFrame:
    """
    Keep records whose state belongs to one of the selected regions.

    Regions are expanded into the state values the records actually carry and
    applied as a demographic allow-list on the state column. No selected
    region means no constraint; records without a state column cannot match.
    """
    frame = as_frame(records)
    if not regions:
        return frame

    key = state_key or detect_state_key(frame.columns)
    if key is None or key not in frame.columns:
        logger.warning("Region filter %s requested but records carry no state column.", sorted(regions))
        return frame.iloc[0:0]

    allowed = region_state_values(frame[key].tolist(), regions)
    if not allowed:
        return frame.iloc[0:0]
    return apply_demographic_filters(frame, {key: allowed})


# ---------------------------------------------------------------------------
# Date-range filter
# ---------------------------------------------------------------------------

def filter_surveys_by_date(surveys: Sequence[Survey], date_range: Optional[DateRange]) -> List[Survey]:
    """Rounds whose first-of-month date lies in [start, end], in input order."""
    if date_range is None or date_range.is_unbounded:
        return list(surveys)

    start = date_range.start or date.min
    end = date_range.end or date.max

    kept: List[Survey] = []
    for survey in surveys:
        d = survey_date(survey)
        if d is None:
            logger.debug("Survey %s has no usable date; excluded by range %s.", survey.id, date_range)
            continue
        if start <= d <= end:
            kept.append(survey)
    return kept


def available_dates(surveys: Iterable[Survey]) -> List[Tuple[date, str]]:
    """Selectable (date, 'Month Year') points for the range picker, chronological and distinct."""
    points: Dict[date, str] = {}
    for survey in surveys:
        d = survey_date(survey)
        if d is None or not survey.month:
            continue
        points.setdefault(d, survey_date_label(survey))
    return sorted(points.items())
