from __future__ import annotations

import hashlib
import math
import re
from typing import Any, Iterable, List, Mapping, Optional

import pandas as pd

from opinion_dashboard.config import KEEP_DONT_KNOW, WEIGHT_FIELD

DONT_KNOW = "Não sabe"
NO_ANSWER = "Não respondeu"
GROUPED_DONT_KNOW = "NS/NR"

_NULL_SENTINEL_RE = re.compile(r"^#null!?$", re.IGNORECASE)
_DO_NOT_READ_RE = re.compile(r"(?:\s*\(NÃO LER\))+\s*$", re.IGNORECASE)
_DONT_KNOW_RE = re.compile(r"^não sabe", re.IGNORECASE)
_NO_ANSWER_RE = re.compile(r"^não respond", re.IGNORECASE)

# Display order for evaluation scales (best to worst, then non-answers)
RESPONSE_ORDER = [
    "Ótimo",
    "Bom",
    "Regular mais para positivo",
    "Regular",
    "Regular mais para negativo",
    "Ruim",
    "Péssimo",
    "Aprova",
    "Desaprova",
    DONT_KNOW,
    NO_ANSWER,
]

GROUPED_RESPONSE_ORDER = ["Ótimo/Bom", "Regular", "Ruim/Péssimo", GROUPED_DONT_KNOW, "Aprova", "Desaprova"]

DEFAULT_COLOR = "#6c757d"

RESPONSE_COLORS = {
    # positive
    "Ótimo": "#28a745",
    "Bom": "#28a745",
    "Regular mais para positivo": "#28a745",
    "Melhorar muito": "#28a745",
    "Melhorar um pouco": "#8ccc9b",
    "Aprova": "#28a745",
    "Ótimo/Bom": "#28a745",
    # neutral
    "Regular": "#ffc107",
    "Ficar igual": "#ffc107",
    # negative
    "Regular mais para negativo": "#dc3545",
    "Ruim": "#dc3545",
    "Péssimo": "#dc3545",
    "Piorar um pouco": "#dc3545",
    "Piorar muito": "#810814",
    "Desaprova": "#dc3545",
    "Ruim/Péssimo": "#dc3545",
    # non-answers
    DONT_KNOW: DEFAULT_COLOR,
    NO_ANSWER: DEFAULT_COLOR,
    GROUPED_DONT_KNOW: DEFAULT_COLOR,
}

# Fallback palette for answers outside the fixed table (d3 category10)
FALLBACK_PALETTE = [
    "#1f77b4",
    "#ff7f0e",
    "#2ca02c",
    "#d62728",
    "#9467bd",
    "#8c564b",
    "#e377c2",
    "#7f7f7f",
    "#bcbd22",
    "#17becf",
]

_GROUPABLE = ["Ótimo", "Bom", "Regular", "Ruim", "Péssimo"]


def _is_missing(value: Any) -> bool:
    if value is None:
        return True
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


# ---------------------------------------------------------------------------
# Answer normalization
# ---------------------------------------------------------------------------

def normalize_answer(raw: Any, keep_dont_know: Optional[bool] = None) -> Optional[str]:
    """
    Canonicalize a raw answer value into a stable answer key.

    Returns None for values that must not be tabulated:
      - None / NaN / empty or whitespace-only strings
      - the '#null' / '#null!' export sentinels (any case)
      - 'Não sabe…' / 'Não respondeu…' unless keep_dont_know is true,
        in which case they collapse to 'Não sabe' / 'Não respondeu'

    The trailing '(NÃO LER)' interviewer annotation is stripped.
    """
    if _is_missing(raw):
        return None

    if isinstance(raw, float) and raw.is_integer():
        raw = int(raw)

    text = _DO_NOT_READ_RE.sub("", str(raw).replace("\u00A0", " ")).strip()
    if not text or _NULL_SENTINEL_RE.match(text):
        return None

    keep = KEEP_DONT_KNOW if keep_dont_know is None else keep_dont_know
    if _DONT_KNOW_RE.match(text):
        return DONT_KNOW if keep else None
    if _NO_ANSWER_RE.match(text):
        return NO_ANSWER if keep else None

    return text


def is_non_answer(raw: Any) -> bool:
    """True for values excluded from both tabulation and word clouds."""
    return normalize_answer(raw, keep_dont_know=False) is None


def group_answer(answer: Optional[str]) -> Optional[str]:
    """Collapse an evaluation-scale answer into its summary bucket."""
    if answer is None:
        return None
    if answer in (DONT_KNOW, NO_ANSWER):
        return GROUPED_DONT_KNOW
    if answer in ("Ótimo", "Bom"):
        return "Ótimo/Bom"
    if answer in ("Regular", "Regular mais para positivo", "Regular mais para negativo"):
        return "Regular"
    if answer in ("Ruim", "Péssimo"):
        return "Ruim/Péssimo"
    return answer


def should_group_answers(values: Iterable[Any]) -> bool:
    observed = {normalize_answer(v, keep_dont_know=True) for v in values}
    return sum(1 for a in _GROUPABLE if a in observed) >= 4


def grouped_normalizer(raw: Any) -> Optional[str]:
    return group_answer(normalize_answer(raw))


# ---------------------------------------------------------------------------
# Weights
# ---------------------------------------------------------------------------

def parse_weight(value: Any) -> float:
    """
    Parse a sampling weight. Anything missing, non-numeric, non-finite
    or <= 0 falls back to 1.0 so a respondent is never silently erased.
    """
    if _is_missing(value) or isinstance(value, bool):
        return 1.0
    if isinstance(value, (int, float)):
        weight = float(value)
    else:
        try:
            weight = float(str(value).strip().replace(",", "."))
        except ValueError:
            return 1.0
    if not math.isfinite(weight) or weight <= 0:
        return 1.0
    return weight


def extract_weight(record: Mapping[str, Any], weight_field: Optional[str] = None) -> float:
    field = weight_field or WEIGHT_FIELD
    return parse_weight(record.get(field))


def record_weights(frame: pd.DataFrame, weight_field: Optional[str] = None) -> pd.Series:
    """Per-row weights for a record frame (all 1.0 when the column is absent)."""
    field = weight_field or WEIGHT_FIELD
    if field not in frame.columns:
        return pd.Series(1.0, index=frame.index, dtype=float)
    return frame[field].map(parse_weight).astype(float)


def detect_weight_field(columns: Iterable[str]) -> Optional[str]:
    cols = [str(c) for c in columns]
    for c in cols:
        if c.lower() in {"weights", "weight", "peso", "pesos"}:
            return c
    for c in cols:
        lower = c.lower()
        if "weight" in lower or "peso" in lower:
            return c
    return None


# ---------------------------------------------------------------------------
# Presentation helpers
# ---------------------------------------------------------------------------

def answer_color(answer: str) -> str:
    """Stable color for an answer key, independent of its chart position."""
    if answer in RESPONSE_COLORS:
        return RESPONSE_COLORS[answer]
    digest = hashlib.md5(answer.encode("utf-8")).hexdigest()
    return FALLBACK_PALETTE[int(digest, 16) % len(FALLBACK_PALETTE)]


def order_answers(answers: Iterable[str]) -> List[str]:
    """Known scale answers first (best to worst), the rest alphabetically."""
    known = RESPONSE_ORDER + [a for a in GROUPED_RESPONSE_ORDER if a not in RESPONSE_ORDER]
    rank = {a: i for i, a in enumerate(known)}
    unique = list(dict.fromkeys(answers))
    return sorted(unique, key=lambda a: (0, rank[a], "") if a in rank else (1, 0, a))
