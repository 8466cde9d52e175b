"""
Calculated fields applied to aggregated table rows.

Calculations run strictly in declaration order; each one may read the output
field of any calculation declared before it. Row order is the time axis for
the period, rolling and year-to-date kinds, so callers sort by the time
dimension first when they want meaningful deltas.

None of these raise on bad data: missing or non-numeric inputs count as 0,
and an unknown calculation type leaves the rows untouched.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Sequence

import pandas as pd

from core.models import (
    ArithmeticCalculation,
    Calculation,
    Filter,
    IfCaseCalculation,
    PeriodCalculation,
    RankCalculation,
    Record,
    RollingCalculation,
    VarianceCalculation,
    YtdCalculation,
)
from core.utils import Number, integral, normalize_value, to_number
from engine.filters import evaluate_filter

logger = logging.getLogger("uvicorn.error")

_OPERATORS = ("+", "-", "*", "/")


# ---------------------------------------------------------------------------
# Arithmetic expressions
# ---------------------------------------------------------------------------

def tokenize_expression(expression: str) -> List[str]:
    """Split on whitespace; operators must stand alone (``a + b``, not ``a+b``)."""
    return (expression or "").split()


def evaluate_arithmetic(expression: str, context: Dict[str, Number]) -> Number:
    """Reduce tokens strictly left to right: ``a + b * 2`` is ``(a + b) * 2``.

    Field names resolve through *context*; any other token is read as a
    numeric literal (0 when it is not one). Dividing by zero leaves the
    running total unchanged.
    """
    total: Number = 0
    operator = "+"
    for token in tokenize_expression(expression):
        if token in _OPERATORS:
            operator = token
            continue
        operand = context[token] if token in context else to_number(token)
        if operator == "+":
            total += operand
        elif operator == "-":
            total -= operand
        elif operator == "*":
            total *= operand
        elif operand != 0:
            total /= operand
    return total


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _numeric_series(rows: Sequence[Record], field: str) -> pd.Series:
    return pd.Series([to_number(row.get(field)) for row in rows], dtype="float64")


def _assign(rows: List[Record], output_field: str, values: Sequence[Any]) -> None:
    for row, value in zip(rows, values):
        row[output_field] = integral(value)


def _rolling_window(raw: Any) -> int:
    if raw is None:
        return 3
    return max(1, int(to_number(raw)))


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

def apply_calculation(rows: List[Record], calc: Calculation) -> None:
    """Apply one calculation in place to *rows* (already copies of the table rows)."""
    out = calc.output_field

    if isinstance(calc, ArithmeticCalculation):
        for row in rows:
            context = {key: to_number(value) for key, value in row.items()}
            row[out] = integral(evaluate_arithmetic(calc.expression, context))
        return

    if isinstance(calc, VarianceCalculation):
        for row in rows:
            base = to_number(row.get(calc.subtrahend_field))
            delta = to_number(row.get(calc.minuend_field)) - base
            if calc.type == "VARIANCE":
                row[out] = integral(delta)
            else:
                row[out] = 0 if base == 0 else integral(delta / base * 100)
        return

    if isinstance(calc, PeriodCalculation):
        series = _numeric_series(rows, calc.base_field)
        _assign(rows, out, series.diff(calc.offset).fillna(0.0).tolist())
        return

    if isinstance(calc, RollingCalculation):
        window = _rolling_window(calc.window)
        series = _numeric_series(rows, calc.base_field)
        _assign(rows, out, series.rolling(window, min_periods=1).sum().tolist())
        return

    if isinstance(calc, YtdCalculation):
        series = _numeric_series(rows, calc.base_field)
        _assign(rows, out, series.cumsum().tolist())
        return

    if isinstance(calc, IfCaseCalculation):
        condition = Filter(field=calc.field, operator=calc.operator, value=calc.compare_value)
        for row in rows:
            chosen = calc.true_value if evaluate_filter(row, condition) else calc.false_value
            row[out] = normalize_value(chosen)
        return

    if isinstance(calc, RankCalculation):
        # "first" keeps ties in input order, so ranks are always 1..N
        series = _numeric_series(rows, calc.field)
        ranks = series.rank(method="first", ascending=False).astype(int).tolist()
        _assign(rows, out, ranks)
        return

    logger.debug("Skipping unsupported calculation type %r (%s)", calc.type, calc.id)


def apply_calculations(rows: List[Record], calculations: Sequence[Calculation]) -> List[Record]:
    """Return copies of *rows* with every calculation applied in order."""
    if not calculations or not rows:
        return rows
    next_rows = [dict(row) for row in rows]
    for calc in calculations:
        apply_calculation(next_rows, calc)
    return next_rows
