from __future__ import annotations

import os
from pathlib import Path

# ---------------------------------------------------------------------------
# Project paths
# ---------------------------------------------------------------------------

# Root of the project (repo root)
PROJECT_ROOT = Path(__file__).resolve().parents[2]

# ---------------------------------------------------------------------------
# App identity
# ---------------------------------------------------------------------------

APP_NAME = "Opinion Poll Dashboard"
APP_VERSION = "0.1.0"


def _env_float(key: str, default: float) -> float:
    raw = os.getenv(key, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_bool(key: str, default: bool) -> bool:
    raw = os.getenv(key, "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "y", "on"}


# ---------------------------------------------------------------------------
# Backend API configuration
#
# The dashboard reads two endpoints from the survey backend:
#   GET {API_BASE_URL}/api/surveys
#   GET {API_BASE_URL}/api/responsesFlat/<survey_id>
#
# The token is optional; when set it is sent as a Bearer token.
# ---------------------------------------------------------------------------

API_BASE_URL = os.getenv("DASHBOARD_API_BASE_URL", "http://localhost:4000").strip().rstrip("/")
API_TOKEN = os.getenv("DASHBOARD_API_TOKEN", "").strip()

SURVEYS_PATH = "/api/surveys"
RESPONSES_PATH = "/api/responsesFlat/{survey_id}"

# Large rounds can take a while to serialize on the backend
HTTP_TIMEOUT_SECONDS = _env_float("DASHBOARD_HTTP_TIMEOUT", 120.0)

# How long Streamlit keeps a fetched snapshot before refetching (seconds)
CACHE_TTL_SECONDS = int(_env_float("DASHBOARD_CACHE_TTL", 600))

# ---------------------------------------------------------------------------
# Aggregation settings
# ---------------------------------------------------------------------------

# Name of the per-record sampling weight column in flat responses
WEIGHT_FIELD = os.getenv("DASHBOARD_WEIGHT_FIELD", "weights").strip() or "weights"

# When true, "Não sabe" / "Não respondeu" are tabulated as answers instead of
# being excluded as non-answers.
KEEP_DONT_KNOW = _env_bool("DASHBOARD_KEEP_DONT_KNOW", False)

# Margin of error (in percentage points) above which the UI shows a warning
MOE_WARNING_THRESHOLD = _env_float("DASHBOARD_MOE_WARNING_THRESHOLD", 10.0)

LOG_LEVEL = os.getenv("DASHBOARD_LOG_LEVEL", "INFO").strip().upper() or "INFO"
