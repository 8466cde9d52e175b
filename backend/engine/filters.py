"""
Filter predicate evaluation.

A filter never raises on bad data: malformed operands degrade to a
pass-through (``True``) or to the numeric fallback of 0.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from core.models import Filter, FilterOperator, Record, View
from core.utils import to_comparable, to_list, to_number, to_text


# ---------------------------------------------------------------------------
# Predicate
# ---------------------------------------------------------------------------

def evaluate_filter(row: Record, flt: Filter) -> bool:
    """Return whether *row* satisfies *flt*.

    ``between`` needs at least two bounds; with fewer it lets every row
    through, as does any operator this evaluator does not recognise.
    """
    row_value = row.get(flt.field)
    compare = flt.value
    op = flt.operator

    if op == FilterOperator.eq.value:
        return to_comparable(row_value) == to_comparable(compare)
    if op == FilterOperator.neq.value:
        return to_comparable(row_value) != to_comparable(compare)
    if op == FilterOperator.contains.value:
        return to_text(compare).lower() in to_text(row_value).lower()
    if op == FilterOperator.in_.value:
        wanted = [item.lower() for item in to_list(compare)]
        return to_text(row_value).lower() in wanted
    if op == FilterOperator.gt.value:
        return to_number(row_value) > to_number(compare)
    if op == FilterOperator.gte.value:
        return to_number(row_value) >= to_number(compare)
    if op == FilterOperator.lt.value:
        return to_number(row_value) < to_number(compare)
    if op == FilterOperator.lte.value:
        return to_number(row_value) <= to_number(compare)
    if op == FilterOperator.between.value:
        bounds = compare if isinstance(compare, (list, tuple)) else []
        if len(bounds) < 2:
            return True
        value = to_number(row_value)
        return to_number(bounds[0]) <= value <= to_number(bounds[1])
    return True


def filter_rows(rows: List[Record], filters: List[Filter]) -> List[Record]:
    """Keep rows that pass every filter (logical AND)."""
    if not filters:
        return rows
    return [row for row in rows if all(evaluate_filter(row, f) for f in filters)]


# ---------------------------------------------------------------------------
# Parameter substitution
# ---------------------------------------------------------------------------

def resolve_parameter_value(value: Any, parameters: Dict[str, str]) -> Any:
    """Replace a ``{{name}}`` placeholder with its runtime parameter ('' when unbound)."""
    if not isinstance(value, str):
        return value
    trimmed = value.strip()
    if not (trimmed.startswith("{{") and trimmed.endswith("}}")):
        return value
    key = trimmed[2:-2].strip()
    return parameters.get(key, "")


def resolve_applied_filters(
    view: View,
    runtime_filters: Optional[List[Filter]],
    parameters: Dict[str, str],
) -> List[Filter]:
    """View filters followed by runtime filters, with placeholders substituted."""
    merged = [*view.filters, *(runtime_filters or [])]
    return [
        f.model_copy(update={"value": resolve_parameter_value(f.value, parameters)})
        for f in merged
    ]
