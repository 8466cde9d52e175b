"""
Grouping and measure aggregation.

Rows are grouped by the string projection of every row and column dimension,
in declared order. Each ValueSpec is aggregated over the numeric projection of
its source field and stored under its *label*, which is the name calculations,
sorting, charts and insights use from here on.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Sequence, Tuple

import numpy as np
import pandas as pd

from core.models import Aggregation, Calculation, Record, TableResult, View
from core.utils import Number, integral, normalize_value, to_number, to_text
from engine.calculations import apply_calculations
from engine.ordering import paginate_rows, sort_rows

logger = logging.getLogger("uvicorn.error")

# ASCII unit separator: never present in user-facing field values.
GROUP_KEY_SEPARATOR = "\x1f"


# ---------------------------------------------------------------------------
# Scalar aggregation
# ---------------------------------------------------------------------------

def aggregate(values: Sequence[Number], method: str) -> Number:
    """Aggregate already-coerced numbers. Empty input gives 0 (count gives len)."""
    if method == Aggregation.count.value:
        return len(values)
    if not values:
        return 0
    if method == Aggregation.avg.value:
        return sum(values) / len(values)
    if method == Aggregation.min.value:
        return min(values)
    if method == Aggregation.max.value:
        return max(values)
    if method == Aggregation.distinct_count.value:
        # distinct *coerced* numbers: "1" and "1.0" collapse into one
        return len(set(values))
    return sum(values)


# ---------------------------------------------------------------------------
# Grouping
# ---------------------------------------------------------------------------

def group_key(row: Record, fields: Sequence[str]) -> str:
    return GROUP_KEY_SEPARATOR.join(to_text(normalize_value(row.get(f))) for f in fields)


def group_rows(rows: List[Record], view: View) -> List[Record]:
    """One output row per distinct dimension tuple, in order of first appearance."""
    if not rows:
        return []

    fields = view.group_fields
    keys = [group_key(row, fields) for row in rows]
    codes, _ = pd.factorize(np.asarray(keys, dtype=object))
    positions = pd.Series(np.arange(len(rows)))

    aggregated: List[Record] = []
    for _, members in positions.groupby(codes, sort=False):
        member_rows = [rows[i] for i in members.tolist()]
        out: Record = {f: normalize_value(member_rows[0].get(f)) for f in fields}
        for spec in view.values:
            collected = [to_number(r.get(spec.field)) for r in member_rows]
            out[spec.label] = integral(aggregate(collected, spec.aggregation))
        aggregated.append(out)
    return aggregated


def compute_totals(rows: Sequence[Record], columns: Sequence[str]) -> Dict[str, Number]:
    return {col: integral(sum(to_number(row.get(col)) for row in rows)) for col in columns}


def metric_columns(view: View, calculations: Sequence[Calculation]) -> List[str]:
    """Measure labels followed by calculation outputs, without duplicates."""
    names = [v.label for v in view.values] + [c.output_field for c in calculations]
    return list(dict.fromkeys(name for name in names if name))


# ---------------------------------------------------------------------------
# Table
# ---------------------------------------------------------------------------

def build_table(
    rows: List[Record],
    view: View,
    calculations: Sequence[Calculation],
    page: int,
    page_size: int,
) -> Tuple[TableResult, List[Record]]:
    """Group → aggregate → calculate → sort → paginate.

    Returns the paged table and the full sorted row set; totals are computed
    over the full set so they do not depend on the page.
    """
    grouped = group_rows(rows, view)
    with_calcs = apply_calculations(grouped, calculations)
    ordered = sort_rows(with_calcs, view.sort)
    paged = paginate_rows(ordered, page, page_size)

    metrics = metric_columns(view, calculations)
    totals = compute_totals(ordered, metrics)

    if ordered:
        columns = list(ordered[0].keys())
    else:
        columns = list(dict.fromkeys([*view.group_fields, *metrics]))

    logger.debug("Table built: %d groups from %d rows (page %d/%d rows)",
                 len(ordered), len(rows), page, len(paged))

    table = TableResult(
        columns=columns,
        rows=paged,
        totals=totals,
        page=page,
        page_size=page_size,
        total_rows=len(ordered),
    )
    return table, ordered
