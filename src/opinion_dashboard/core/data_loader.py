from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import pandas as pd
import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from opinion_dashboard.config import (
    API_BASE_URL,
    API_TOKEN,
    HTTP_TIMEOUT_SECONDS,
    RESPONSES_PATH,
    SURVEYS_PATH,
    WEIGHT_FIELD,
)
from opinion_dashboard.core.answers import detect_weight_field
from opinion_dashboard.core.metadata_loader import (
    DemographicDescriptor,
    QuestionGroups,
    Survey,
    build_demographics,
    classify_questions,
    parse_surveys,
)

logger = logging.getLogger(__name__)


class DataLoaderError(Exception):
    """Raised when backend API calls fail or return unexpected shapes."""


@dataclass
class DashboardData:
    """
    Read-only snapshot of everything the dashboard aggregates over.

    responses maps survey id -> object-dtype DataFrame of flat response records.
    """
    surveys: List[Survey]
    responses: Dict[str, pd.DataFrame]
    demographics: List[DemographicDescriptor] = field(default_factory=list)
    question_groups: QuestionGroups = field(default_factory=QuestionGroups)
    weight_field: str = WEIGHT_FIELD

    def records_for(self, survey_id: str) -> pd.DataFrame:
        return self.responses.get(survey_id, pd.DataFrame())


def _build_retry_session() -> requests.Session:
    """
    Build a requests Session with conservative retries.
    The backend runs on a serverless host and can be slow or transiently flaky.
    """
    session = requests.Session()

    retry = Retry(
        total=5,
        connect=5,
        read=5,
        status=5,
        backoff_factor=0.6,
        status_forcelist=(429, 500, 502, 503, 504),
        allowed_methods=frozenset({"GET"}),
        raise_on_status=False,
    )

    adapter = HTTPAdapter(max_retries=retry, pool_connections=10, pool_maxsize=10)
    session.mount("https://", adapter)
    session.mount("http://", adapter)

    session.headers.update({"Content-Type": "application/json"})
    if API_TOKEN:
        session.headers.update({"Authorization": f"Bearer {API_TOKEN}"})

    return session


_SESSION: Optional[requests.Session] = None


def _get_session() -> requests.Session:
    global _SESSION
    if _SESSION is None:
        _SESSION = _build_retry_session()
    return _SESSION


def _api_get(path: str, *, base_url: Optional[str] = None, timeout_seconds: Optional[float] = None) -> Any:
    url = f"{(base_url or API_BASE_URL).rstrip('/')}{path}"
    timeout = HTTP_TIMEOUT_SECONDS if timeout_seconds is None else timeout_seconds

    try:
        resp = _get_session().get(url, timeout=timeout)
    except requests.RequestException as exc:
        raise DataLoaderError(f"HTTP error while calling {url}: {exc}") from exc

    if resp.status_code >= 400:
        preview = (resp.text or "")[:200]
        raise DataLoaderError(f"{url} returned status {resp.status_code}. Preview: {preview}")

    try:
        return resp.json()
    except ValueError as exc:
        preview = (resp.text or "")[:200]
        raise DataLoaderError(f"Non-JSON response from {url} (status={resp.status_code}). Preview: {preview}") from exc


def fetch_surveys(*, base_url: Optional[str] = None, timeout_seconds: Optional[float] = None) -> List[Survey]:
    """GET /api/surveys -> list of Survey (rounds without an _id are dropped)."""
    data = _api_get(SURVEYS_PATH, base_url=base_url, timeout_seconds=timeout_seconds)
    if not isinstance(data, list):
        raise DataLoaderError(f"Unexpected surveys payload type: {type(data)}")
    return parse_surveys(data)


def fetch_responses(
    survey_id: str,
    *,
    base_url: Optional[str] = None,
    timeout_seconds: Optional[float] = None,
) -> pd.DataFrame:
    """
    GET /api/responsesFlat/<survey_id> -> DataFrame of flat response records.

    The frame uses dtype=object so numeric codes keep their original form.
    """
    path = RESPONSES_PATH.format(survey_id=survey_id)
    data = _api_get(path, base_url=base_url, timeout_seconds=timeout_seconds)
    if not isinstance(data, list):
        raise DataLoaderError(f"Unexpected responses payload for survey {survey_id}: {type(data)}")

    records = [r for r in data if isinstance(r, dict)]
    if len(records) != len(data):
        logger.warning("Survey %s: dropped %d non-object response rows.", survey_id, len(data) - len(records))
    if not records:
        return pd.DataFrame()
    return pd.DataFrame(records, dtype=object)


def resolve_weight_field(responses: Dict[str, pd.DataFrame], preferred: str = WEIGHT_FIELD) -> str:
    """
    Use the configured weight column when present, otherwise a detected one.
    Falls back to the configured name (all weights then default to 1).
    """
    columns: List[str] = []
    for frame in responses.values():
        if preferred in frame.columns:
            return preferred
        columns.extend(c for c in frame.columns if c not in columns)

    detected = detect_weight_field(columns)
    if detected:
        logger.info("Weight column %r not found; using detected column %r.", preferred, detected)
        return detected

    if columns:
        logger.warning("No weight column found in responses; every respondent counts as 1.")
    return preferred


def load_dashboard_data(*, base_url: Optional[str] = None, timeout_seconds: Optional[float] = None) -> DashboardData:
    """
    Fetch every survey and its responses, then derive the demographic universe
    and question groups. Any fetch failure raises DataLoaderError; partial
    snapshots are never returned.
    """
    surveys = fetch_surveys(base_url=base_url, timeout_seconds=timeout_seconds)
    logger.info("Fetched %d surveys from %s", len(surveys), base_url or API_BASE_URL)

    responses: Dict[str, pd.DataFrame] = {}
    for survey in surveys:
        frame = fetch_responses(survey.id, base_url=base_url, timeout_seconds=timeout_seconds)
        logger.info("Survey %s (%s %s): %d responses", survey.id, survey.month, survey.year, len(frame))
        responses[survey.id] = frame

    groups = classify_questions(surveys)
    logger.info(
        "Classified %d question occurrences: %d historic, %d rounds with unique questions",
        groups.occurrence_count(),
        len(groups.historic),
        len(groups.unique),
    )

    return DashboardData(
        surveys=surveys,
        responses=responses,
        demographics=build_demographics(surveys, responses),
        question_groups=groups,
        weight_field=resolve_weight_field(responses),
    )


def timed_load_dashboard_data(**kwargs: Any) -> Tuple[DashboardData, float]:
    """
    Convenience helper for UI timing logs.
    """
    t0 = time.perf_counter()
    data = load_dashboard_data(**kwargs)
    return data, (time.perf_counter() - t0)
