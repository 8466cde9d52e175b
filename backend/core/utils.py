"""
Shared utility helpers.

Pure functions with no I/O. Every field read that needs numeric
or comparable semantics goes through the coercion helpers below so filters,
aggregation, calculations, charts and insights agree on the same rules.
"""

from __future__ import annotations

import math
import re
from datetime import datetime, timezone
from typing import Any, List, Union

import numpy as np
import pandas as pd

Number = Union[int, float]

_LEADING_FLOAT = re.compile(r"^\s*([+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)")


# ---------------------------------------------------------------------------
# Scalar coercion
# ---------------------------------------------------------------------------

def is_number(value: Any) -> bool:
    """True for real numbers; booleans are not numbers here."""
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def to_number(value: Any) -> Number:
    """Numeric projection of a cell: finite numbers pass, strings are parsed, all else is 0.

    Strings lose their thousands separators and the leading numeric prefix is
    read (``"1,200.5 USD"`` -> 1200.5). Unparseable text, booleans, ``None``
    and non-finite floats all become 0.
    """
    if is_number(value):
        return value if math.isfinite(value) else 0
    if isinstance(value, str):
        match = _LEADING_FLOAT.match(value.replace(",", ""))
        if match:
            parsed = float(match.group(1))
            if math.isfinite(parsed):
                return parsed
    return 0


def integral(value: Number) -> Number:
    """Whole floats become ints (``400.0`` -> 400) so JSON keeps the cell's shape."""
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def to_text(value: Any) -> str:
    """String projection used for grouping keys, ``contains`` and ``in``."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def to_comparable(value: Any) -> Union[Number, str]:
    """Numbers stay numeric, booleans become 0/1, everything else lowercase text."""
    if isinstance(value, bool):
        return 1 if value else 0
    if is_number(value):
        return value
    return to_text(value).lower()


def normalize_value(value: Any) -> Any:
    """Collapse a value to a record scalar: numbers/booleans kept, others stringified."""
    if value is None:
        return None
    if isinstance(value, (bool, int, float)):
        return value
    return str(value)


def to_list(value: Any) -> List[str]:
    """List operand for ``in``: lists as-is, strings split on commas."""
    if isinstance(value, (list, tuple)):
        return [to_text(item) for item in value]
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return []


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------

def format_number(value: Number, max_decimals: int = 2) -> str:
    """Grouped number with at most *max_decimals* decimals, trailing zeros dropped."""
    text = f"{value:,.{max_decimals}f}"
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    if text in ("-0", ""):
        text = "0"
    return text


def to_iso(moment: datetime) -> str:
    """ISO-8601 UTC timestamp with a ``Z`` suffix; naive datetimes are taken as UTC."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    moment = moment.astimezone(timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def utc_now_iso() -> str:
    return to_iso(datetime.now(timezone.utc))


# ---------------------------------------------------------------------------
# DataFrame safety
# ---------------------------------------------------------------------------

def _native(value: Any) -> Any:
    if isinstance(value, np.generic):
        return value.item()
    if isinstance(value, pd.Timestamp):
        return value.isoformat()
    return value


def df_json_safe(df: pd.DataFrame) -> pd.DataFrame:
    """Replace +/-inf -> NaN, then NaN -> None so JSON serialization works."""
    if df.empty:
        return df
    tmp = df.replace([np.inf, -np.inf], np.nan)
    tmp = tmp.astype(object)
    return tmp.where(pd.notna(tmp), None)


def df_to_records_safe(df: pd.DataFrame) -> list[dict]:
    """Convert DataFrame to list of dicts with JSON-safe, plain-Python values."""
    records = df_json_safe(df).to_dict(orient="records")
    return [{str(k): _native(v) for k, v in row.items()} for row in records]
