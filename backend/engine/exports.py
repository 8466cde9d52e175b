"""
CSV exports of a finished run.

``raw`` re-derives the non-pivoted rows from ``RunResult.raw_rows`` without
re-running the engine; ``aggregated`` is the current table page; ``chart``
flattens every chart's points with the owning visual's id and title.
"""

from __future__ import annotations

import csv
from typing import Any, Dict, List, Literal, Optional, Sequence

import pandas as pd

from core.models import RunResult
from core.utils import to_text

ExportMode = Literal["raw", "aggregated", "chart"]


def _cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    return to_text(value)


def _columns_of(rows: Sequence[Dict[str, Any]]) -> List[str]:
    return list(rows[0].keys()) if rows else []


def to_csv(rows: Sequence[Dict[str, Any]], columns: Optional[Sequence[str]] = None) -> str:
    """Every cell quoted; ``None`` → empty, booleans → TRUE/FALSE."""
    if not rows and not columns:
        return ""
    resolved = list(columns) if columns else _columns_of(rows)
    frame = pd.DataFrame(
        [[_cell(row.get(col)) for col in resolved] for row in rows],
        columns=resolved,
    )
    text = frame.to_csv(index=False, quoting=csv.QUOTE_ALL, lineterminator="\n")
    return text.rstrip("\n")


def chart_rows(result: RunResult) -> List[Dict[str, Any]]:
    return [
        {"visual_id": chart.visual_id, "visual_title": chart.title, **point}
        for chart in result.charts
        for point in chart.data
    ]


def build_raw_export(result: RunResult, mode: ExportMode = "raw") -> str:
    if mode == "aggregated":
        return to_csv(result.table.rows, result.table.columns)
    if mode == "chart":
        rows = chart_rows(result)
        return to_csv(rows, _columns_of(rows))
    return to_csv(result.raw_rows, _columns_of(result.raw_rows))
