from __future__ import annotations

import csv
from typing import List

import pandas as pd

from opinion_dashboard.core.query_engine import (
    ComparisonResult,
    DistributionResult,
    TimeSeriesResult,
)

LINE_END = "\r\n"
TIME_SERIES_PREFIX = "evolucao"
DISTRIBUTION_PREFIX = "distribuicao"


def _label_line(label: str) -> str:
    return '"' + (label or "").replace('"', '""') + '"' + LINE_END


def _frame_to_csv(label: str, frame: pd.DataFrame) -> str:
    body = frame.to_csv(index=False, lineterminator=LINE_END, quoting=csv.QUOTE_NONNUMERIC)
    return _label_line(label) + body


def distribution_to_csv(result: DistributionResult) -> str:
    """
    Question label line, then 'Resposta,Percentual' and one row per answer,
    in result order. Empty results export as an empty string.
    """
    if not result.rows:
        return ""
    frame = pd.DataFrame(
        [(r.response, r.percentage) for r in result.rows],
        columns=["Resposta", "Percentual"],
    )
    return _frame_to_csv(result.question_label, frame)


def time_series_to_csv(result: TimeSeriesResult) -> str:
    """
    Question label line, then 'Data' plus one column per series, and one row
    per round in chronological order. Values are the series' y values.
    """
    if not result.series:
        return ""
    xs: List[str] = [p.x for p in result.series[0].data]
    rows = [[x] + [s.data[i].y for s in result.series] for i, x in enumerate(xs)]
    frame = pd.DataFrame(rows, columns=["Data"] + [s.id for s in result.series])
    return _frame_to_csv(result.question_label, frame)


def comparison_to_csv(result: ComparisonResult, question_label: str = "") -> str:
    if not result.rows:
        return ""
    frame = pd.DataFrame(
        [[r.answer] + [r.percentages.get(v, 0.0) for v in result.values] for r in result.rows],
        columns=["Resposta"] + list(result.values),
    )
    return _frame_to_csv(question_label or result.question_key, frame)


def export_filename(question_key: str, prefix: str = "", suffix: str = "") -> str:
    """
    Download name: "<prefix>-<key>-<suffix>.csv", skipping empty parts.
    Without a question key the stem falls back to "chart-data".
    """
    if not question_key:
        return "chart-data.csv"
    parts = [p for p in (prefix, question_key, suffix) if p]
    return "-".join(parts) + ".csv"
