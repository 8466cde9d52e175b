"""
Deterministic insight generation for a report run.

Works on the final (unpaginated) table plus the filtered pre-aggregation rows.
Bullets are produced in a fixed order (trend, driver, anomaly, forecast,
quality) and the executive summary joins the first three, so the same input
always yields the same narrative. A heuristic that lacks data is skipped
rather than emitting a partial bullet.
"""

from __future__ import annotations

import logging
import math
from typing import Any, List, Optional, Sequence

import numpy as np

from core.models import InsightItem, InsightType, Record, ReportInsights, TableResult
from core.utils import format_number, is_number, to_number, to_text

logger = logging.getLogger("uvicorn.error")

NO_ROWS_MESSAGE = "No rows returned for this view. Adjust filters or parameters to retrieve data."
NO_INSIGHTS_MESSAGE = "No significant changes detected for the selected report scope."

ANOMALY_MIN_ROWS = 4
ANOMALY_Z_THRESHOLD = 2.0
ANOMALY_MAX_ITEMS = 2
DRIVER_TOP_N = 3
SUMMARY_BULLETS = 3


# ---------------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------------

def mean(values: Sequence[float]) -> float:
    if len(values) == 0:
        return 0.0
    return float(np.mean(values))


def standard_deviation(values: Sequence[float]) -> float:
    """Population standard deviation; 0 for fewer than two values."""
    if len(values) < 2:
        return 0.0
    return float(np.std(values, ddof=0))


def linear_forecast(values: Sequence[float]) -> Optional[float]:
    """Least-squares line through (1..n, values), evaluated at n + 1."""
    n = len(values)
    if n < 2:
        return None
    x = np.arange(1, n + 1, dtype=float)
    y = np.asarray(values, dtype=float)
    denominator = n * float(np.sum(x * x)) - float(np.sum(x)) ** 2
    if denominator == 0:
        return None
    slope = (n * float(np.sum(x * y)) - float(np.sum(x)) * float(np.sum(y))) / denominator
    intercept = (float(np.sum(y)) - slope * float(np.sum(x))) / n
    return slope * (n + 1) + intercept


# ---------------------------------------------------------------------------
# Column selection
# ---------------------------------------------------------------------------

def find_primary_metric_column(table: TableResult) -> Optional[str]:
    """First column not named like an id/year that holds a number in some row."""
    for column in table.columns:
        lower = column.lower()
        if "id" in lower or "year" in lower:
            continue
        if any(is_number(row.get(column)) for row in table.rows):
            return column
    return None


def _dimension_column(table: TableResult, metric: str) -> Optional[str]:
    return next((c for c in table.columns if c != metric), None)


def _label(row: Record, column: Optional[str], fallback: str) -> str:
    if column is None:
        return fallback
    value = row.get(column)
    return fallback if value is None else to_text(value)


# ---------------------------------------------------------------------------
# Bullets
# ---------------------------------------------------------------------------

def build_trend_insight(table: TableResult, metric: str) -> Optional[InsightItem]:
    values = [to_number(row.get(metric)) for row in table.rows]
    if len(values) < 2:
        return None

    first, last = values[0], values[-1]
    delta = last - first
    pct = 0.0 if first == 0 else delta / abs(first) * 100
    direction = "increased" if delta >= 0 else "decreased"
    return InsightItem(
        type=InsightType.trend,
        title="Trend summary",
        detail=(
            f"{metric} {direction} by {abs(pct):.1f}% across the selected period "
            f"({first:.2f} to {last:.2f})."
        ),
    )


def build_driver_insight(table: TableResult, metric: str) -> Optional[InsightItem]:
    if not table.columns or not table.rows:
        return None
    dimension = _dimension_column(table, metric)
    if dimension is None:
        return None

    ranked = sorted(
        ((_label(row, dimension, "Unspecified"), to_number(row.get(metric))) for row in table.rows),
        key=lambda item: abs(item[1]),
        reverse=True,
    )
    top = ranked[:DRIVER_TOP_N]
    listed = ", ".join(f"{label} ({format_number(value)})" for label, value in top)
    return InsightItem(
        type=InsightType.driver,
        title="Top drivers",
        detail=f"Largest contributors are {listed}.",
    )


def build_anomaly_insight(table: TableResult, metric: str) -> Optional[InsightItem]:
    series = [to_number(row.get(metric)) for row in table.rows]
    if len(series) < ANOMALY_MIN_ROWS:
        return None

    avg = mean(series)
    std = standard_deviation(series)
    if std == 0:
        return None

    # z is judged at the two-decimal precision the narrative reports
    flagged = [
        (row, value)
        for row, value in zip(table.rows, series)
        if round(abs((value - avg) / std), 2) >= ANOMALY_Z_THRESHOLD
    ][:ANOMALY_MAX_ITEMS]
    if not flagged:
        return None

    dimension = _dimension_column(table, metric)
    listed = ", ".join(f"{_label(row, dimension, 'item')} ({value:.2f})" for row, value in flagged)
    return InsightItem(
        type=InsightType.anomaly,
        title="Anomaly detection",
        detail=f"Detected outliers in {metric}: {listed}.",
    )


def build_forecast_insight(table: TableResult, metric: str) -> Optional[InsightItem]:
    series = [to_number(row.get(metric)) for row in table.rows]
    forecast = linear_forecast(series)
    if forecast is None or not math.isfinite(forecast):
        return None
    return InsightItem(
        type=InsightType.forecast,
        title="Forecast hint",
        detail=f"Simple linear projection indicates next period {metric} at {format_number(forecast)}.",
    )


def _is_missing(value: Any) -> bool:
    return value is None or value == ""


def build_quality_insight(raw_rows: Sequence[Record]) -> InsightItem:
    if not raw_rows:
        return InsightItem(type=InsightType.quality, title="Data quality", detail=NO_ROWS_MESSAGE)

    missing = sum(1 for row in raw_rows for value in row.values() if _is_missing(value))
    zeros = sum(1 for row in raw_rows for value in row.values() if is_number(value) and value == 0)
    return InsightItem(
        type=InsightType.quality,
        title="Data quality flags",
        detail=(
            f"Found {missing} missing values and {zeros} zero-valued numeric cells "
            f"in the current result set."
        ),
    )


def to_executive_summary(bullets: Sequence[InsightItem]) -> str:
    if not bullets:
        return NO_INSIGHTS_MESSAGE
    return " ".join(b.detail for b in bullets[:SUMMARY_BULLETS])


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def generate_insights(table: TableResult, raw_rows: Sequence[Record]) -> ReportInsights:
    """Build the ordered insight bullets and the executive summary.

    *table* must hold the full sorted row set, not just the current page.
    """
    bullets: List[InsightItem] = []
    metric = find_primary_metric_column(table)

    if metric:
        for builder in (
            build_trend_insight,
            build_driver_insight,
            build_anomaly_insight,
            build_forecast_insight,
        ):
            item = builder(table, metric)
            if item is not None:
                bullets.append(item)
            else:
                logger.debug("Insight %s skipped for metric '%s'", builder.__name__, metric)
    else:
        logger.debug("No numeric metric column; only data-quality insight produced")

    bullets.append(build_quality_insight(raw_rows))
    return ReportInsights(bullets=bullets, executive_summary=to_executive_summary(bullets))
