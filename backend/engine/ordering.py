"""Multi-key sorting and pagination of table rows."""

from __future__ import annotations

import locale
from functools import cmp_to_key
from typing import List, Sequence, TypeVar

from core.models import Record, SortRule
from core.utils import is_number, to_comparable, to_text

T = TypeVar("T")


def _compare(left: Record, right: Record, rules: Sequence[SortRule]) -> int:
    for rule in rules:
        a = to_comparable(left.get(rule.field))
        b = to_comparable(right.get(rule.field))
        if a == b:
            continue
        if is_number(a) and is_number(b):
            result = -1 if a < b else 1
        else:
            # collation follows the process LC_COLLATE (code points under "C")
            collated = locale.strcoll(to_text(a), to_text(b))
            if collated == 0:
                continue
            result = -1 if collated < 0 else 1
        return result if rule.direction == "asc" else -result
    return 0


def sort_rows(rows: List[Record], rules: Sequence[SortRule]) -> List[Record]:
    """Stable sort by the first rule, later rules breaking ties."""
    if not rules:
        return rows
    return sorted(rows, key=cmp_to_key(lambda a, b: _compare(a, b, rules)))


def paginate_rows(rows: List[T], page: int, page_size: int) -> List[T]:
    """1-based page slice; pages past the end are empty."""
    start = max(0, (page - 1) * page_size)
    return rows[start:start + page_size]
