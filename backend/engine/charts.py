"""
Chart projector.

Takes visual bindings + the full sorted table rows → chart-ready data.
The frontend simply renders what it receives.

Chart data contract (data):
- every type: each row carries the bound x/series fields (raw value or None)
  and the bound y/metric fields (numeric, 0 when missing).
- pie / donut: rows are additionally collapsed by x, summing y; a missing
  category is reported as ``"Unspecified"``.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence

import pandas as pd

from core.models import ChartResult, Record, Visual, VisualType
from core.utils import integral, to_number, to_text

UNSPECIFIED_CATEGORY = "Unspecified"

_CATEGORY_TYPES = (VisualType.pie, VisualType.donut)


def project_row(visual: Visual, row: Record) -> Dict[str, Any]:
    point: Dict[str, Any] = {}
    if visual.x_field:
        point[visual.x_field] = row.get(visual.x_field)
    if visual.y_field:
        point[visual.y_field] = to_number(row.get(visual.y_field))
    if visual.series_field:
        point[visual.series_field] = row.get(visual.series_field)
    if visual.metric_field:
        point[visual.metric_field] = to_number(row.get(visual.metric_field))
    return point


def collapse_categories(
    points: List[Dict[str, Any]],
    category_field: str,
    value_field: str,
) -> List[Dict[str, Any]]:
    """Sum *value_field* per category, keeping first-appearance order."""
    if not points:
        return []
    frame = pd.DataFrame({
        "category": [
            UNSPECIFIED_CATEGORY if p.get(category_field) is None else to_text(p.get(category_field))
            for p in points
        ],
        "value": [to_number(p.get(value_field)) for p in points],
    })
    summed = frame.groupby("category", sort=False)["value"].sum()
    return [
        {category_field: str(category), value_field: integral(float(value))}
        for category, value in summed.items()
    ]


def build_chart(visual: Visual, rows: Sequence[Record]) -> ChartResult:
    points = [project_row(visual, row) for row in rows]
    if visual.type in _CATEGORY_TYPES:
        points = collapse_categories(points, visual.x_field or "", visual.y_field or "")
    return ChartResult(
        visual_id=visual.id,
        title=visual.title,
        type=visual.type,
        data=points,
    )


def build_charts(visuals: Sequence[Visual], rows: Sequence[Record]) -> List[ChartResult]:
    """Project every visual from the full (unpaginated) table rows."""
    return [build_chart(visual, rows) for visual in visuals]


def build_lightweight_chart_spec(
    charts: Sequence[ChartResult],
    requested_type: Optional[VisualType] = None,
) -> List[Dict[str, Any]]:
    """Compact chart listing (id, type, title, point count) for feeds and previews."""
    selected = [c for c in charts if requested_type is None or c.type == requested_type]
    return [
        {"id": c.visual_id, "type": c.type.value, "title": c.title, "points": len(c.data)}
        for c in selected
    ]
