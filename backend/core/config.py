"""Environment-driven settings.

Values are read once at import; a ``.env`` file in the working directory is
honoured via python-dotenv.
"""

from __future__ import annotations

import os
from typing import List, Optional

from dotenv import load_dotenv

load_dotenv()


def _env(key: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(key)
    if value is None:
        return default
    return value.strip() or default


def _env_int(key: str, default: int) -> int:
    raw = _env(key)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


DEFAULT_PAGE_SIZE = max(1, _env_int("REPORT_DEFAULT_PAGE_SIZE", 25))

# Used when a report names a fiscal calendar the registry does not know.
DEFAULT_FISCAL_START_MONTH = min(12, max(1, _env_int("REPORT_DEFAULT_FISCAL_START_MONTH", 11)))

UPLOAD_MAX_ROWS = _env_int("REPORT_UPLOAD_MAX_ROWS", 200_000)


def cors_origins() -> List[str]:
    raw = _env("REPORT_CORS_ORIGINS", "*") or "*"
    return [item.strip() for item in raw.split(",") if item.strip()]
