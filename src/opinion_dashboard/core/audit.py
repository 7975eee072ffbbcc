from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

import math

from opinion_dashboard.config import MOE_WARNING_THRESHOLD
from opinion_dashboard.core.answers import normalize_answer, record_weights
from opinion_dashboard.core.filters import as_frame
from opinion_dashboard.core.query_engine import Normalizer, weighted_counts

Z_95 = 1.96


@dataclass(frozen=True)
class SampleSnapshot:
    """
    Sample facts for the records currently on screen.

    These back the survey summary card and the margin-of-error warning; they
    are recomputed after every filter change and are advisory only.
    """
    total_respondents: int
    weighted_total: float
    valid_responses: int
    valid_share: float
    effective_sample_size: float
    margin_of_error: float
    margin_is_high: bool


def margin_of_error(sample_size: float) -> float:
    """
    Conservative 95% margin of error, in percentage points.

    Uses the worst-case proportion p = 0.5:
        1.96 * sqrt(0.25 / n) * 100, rounded half up to 2 decimals.

    Returns 0 for n <= 0 (or a non-finite n) instead of raising.
    """
    try:
        n = float(sample_size)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(n) or n <= 0:
        return 0.0
    return math.floor(Z_95 * math.sqrt(0.25 / n) * 100 * 100 + 0.5) / 100


def is_margin_high(moe: float, threshold: Optional[float] = None) -> bool:
    limit = MOE_WARNING_THRESHOLD if threshold is None else threshold
    return moe > limit


def summarize_sample(
    records: Any,
    question_key: str,
    weight_field: Optional[str] = None,
    normalizer: Optional[Normalizer] = None,
    threshold: Optional[float] = None,
) -> SampleSnapshot:
    """
    Build the sample snapshot for one question over an (already filtered) record set.

    The effective sample size is the total weight of valid answers, i.e. the
    same denominator the tabulation uses.
    """
    frame = as_frame(records)
    total_respondents = int(len(frame))
    weighted_total = math.fsum(record_weights(frame, weight_field).tolist()) if total_respondents else 0.0

    counts, valid_weight = weighted_counts(frame, question_key, weight_field=weight_field, normalizer=normalizer)
    valid_responses = 0
    if counts:
        norm = normalizer or normalize_answer
        valid_responses = int(frame[question_key].map(norm).notna().sum())

    valid_share = round(valid_responses / total_respondents * 100) if total_respondents else 0
    moe = margin_of_error(valid_weight)

    return SampleSnapshot(
        total_respondents=total_respondents,
        weighted_total=weighted_total,
        valid_responses=valid_responses,
        valid_share=float(valid_share),
        effective_sample_size=valid_weight,
        margin_of_error=moe,
        margin_is_high=is_margin_high(moe, threshold),
    )
