"""
In-memory dataset registry, report store and default row loader.

These are the collaborators a run needs around the engine: dataset metadata
and permissions, fiscal calendars, the uploaded tables themselves, and saved
report definitions. Everything lives in process memory.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

import pandas as pd

from core.errors import ReportNotFoundError
from core.models import (
    DatasetDefinition,
    DatasetPermission,
    FiscalCalendar,
    PermissionLevel,
    Principal,
    Record,
    ReportDefinition,
    SavedReport,
)
from core.utils import df_to_records_safe, is_number, utc_now_iso

ALL_ROLES = [
    "BASIC_USER",
    "FINANCE_GOVERNANCE_USER",
    "PROJECT_GOVERNANCE_USER",
    "SPO_COMMITTEE_HUB_USER",
    "PROJECT_MANAGEMENT_HUB_ADMIN",
    "PROJECT_MANAGEMENT_HUB_BASIC_USER",
    "ADMIN",
]


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------

# dataset_id -> DatasetDefinition
DATASETS: Dict[str, DatasetDefinition] = {}

# dataset_id -> uploaded table
DATASET_FRAMES: Dict[str, pd.DataFrame] = {}

# calendar_id -> FiscalCalendar
FISCAL_CALENDARS: Dict[str, FiscalCalendar] = {
    "global_jan": FiscalCalendar(
        id="global_jan",
        name="Global Fiscal Calendar (Jan-Dec)",
        fiscal_year_start_month=1,
        description="Fiscal year starts January 1.",
    ),
    "org_default": FiscalCalendar(
        id="org_default",
        name="Organisation Fiscal Calendar (Nov-Oct)",
        fiscal_year_start_month=11,
        description="Fiscal year starts November 1.",
    ),
}

# report_id -> SavedReport
REPORTS: Dict[str, SavedReport] = {}


# ---------------------------------------------------------------------------
# Dataset registry
# ---------------------------------------------------------------------------

def register_dataset(definition: DatasetDefinition, frame: Optional[pd.DataFrame] = None) -> DatasetDefinition:
    """Add or replace a dataset definition, optionally with its table."""
    if not definition.permissions:
        definition = definition.model_copy(update={
            "permissions": [DatasetPermission(role_types=list(ALL_ROLES), level=PermissionLevel.build)],
        })
    DATASETS[definition.dataset_id] = definition
    if frame is not None:
        DATASET_FRAMES[definition.dataset_id] = frame
    return definition


def get_dataset_frame(dataset_id: str) -> Optional[pd.DataFrame]:
    return DATASET_FRAMES.get(dataset_id)


def has_dataset_permission(
    dataset: DatasetDefinition,
    principal: Principal,
    required: PermissionLevel = PermissionLevel.view,
) -> bool:
    """The first permission entry naming the principal's role decides; BUILD implies VIEW."""
    role = (principal.role_type or "").strip().upper()
    permission = next((p for p in dataset.permissions if role in p.role_types), None)
    if permission is None:
        return False
    if required == PermissionLevel.view:
        return permission.level in (PermissionLevel.view, PermissionLevel.build)
    return permission.level == PermissionLevel.build


def list_datasets_for_principal(
    principal: Principal,
    required: PermissionLevel = PermissionLevel.view,
) -> List[DatasetDefinition]:
    return [d for d in DATASETS.values() if has_dataset_permission(d, principal, required)]


# ---------------------------------------------------------------------------
# Row loading
# ---------------------------------------------------------------------------

def fiscal_year_series(dates: pd.Series, fiscal_start_month: int) -> pd.Series:
    """Fiscal year per date: months on/after the start month roll into the next year.

    Each date is parsed on its own, so ISO dates, ISO datetimes and US-style
    dates can share a column. A calendar starting in January never rolls
    over; unparseable dates fall back to the current calendar year.
    """
    parsed = pd.to_datetime(dates, errors="coerce", utc=True, format="mixed")
    rolls = (parsed.dt.month >= fiscal_start_month) & (fiscal_start_month != 1)
    years = parsed.dt.year + rolls.astype(int)
    return years.fillna(datetime.now(timezone.utc).year).astype(int)


def _dataset_rows(dataset_id: str, fiscal_start_month: int) -> List[Record]:
    frame = DATASET_FRAMES.get(dataset_id)
    definition = DATASETS.get(dataset_id)
    if frame is None or definition is None:
        return []
    frame = frame.copy()
    frame.insert(0, "dataset_id", dataset_id)
    date_field = definition.fiscal_date_field
    if date_field and date_field in frame.columns and "fiscal_year" not in frame.columns:
        frame["fiscal_year"] = fiscal_year_series(frame[date_field], fiscal_start_month)
    return df_to_records_safe(frame)


def merge_rows_by_key(rows: Sequence[Record], key: str = "project_id") -> List[Record]:
    """Fold rows sharing *key*: empty cells are filled, numbers are added up.

    Rows without a string key stay separate.
    """
    merged: Dict[str, Record] = {}
    for index, row in enumerate(rows):
        row_key = row.get(key) if isinstance(row.get(key), str) and row.get(key) else None
        bucket_key = row_key or f"{row.get('dataset_id') or 'dataset'}-{index}"
        existing = merged.get(bucket_key)
        if existing is None:
            merged[bucket_key] = dict(row)
            continue
        for field, value in row.items():
            current = existing.get(field)
            if field not in existing or current is None or current == "":
                existing[field] = value
            elif is_number(current) and is_number(value):
                existing[field] = current + value
    return list(merged.values())


async def load_rows_for_principal(
    principal: Principal,
    dataset_ids: Sequence[str],
    fiscal_start_month: int,
) -> List[Record]:
    """Default row loader: the principal's visible uploaded tables as records."""
    allowed = {d.dataset_id for d in list_datasets_for_principal(principal)}
    combined: List[Record] = []
    for dataset_id in dataset_ids:
        if dataset_id in allowed:
            combined.extend(_dataset_rows(dataset_id, fiscal_start_month))
    if len(dataset_ids) <= 1:
        return combined
    return merge_rows_by_key(combined)


# ---------------------------------------------------------------------------
# Report store
# ---------------------------------------------------------------------------

def save_report(
    principal: Principal,
    title: str,
    definition: ReportDefinition,
    *,
    description: str = "",
    report_id: Optional[str] = None,
) -> SavedReport:
    """Create or overwrite a saved report definition."""
    existing = REPORTS.get(report_id) if report_id else None
    if existing is not None and not can_view_report(principal, existing):
        raise ReportNotFoundError(f"Report '{report_id}' not found.")
    report = SavedReport(
        id=report_id or f"report-{uuid.uuid4().hex[:12]}",
        title=title,
        description=description,
        definition=definition,
        owner_id=existing.owner_id if existing else principal.id,
        created_at=existing.created_at if existing else utc_now_iso(),
        updated_at=utc_now_iso(),
    )
    REPORTS[report.id] = report
    return report


def get_report(report_id: str) -> SavedReport:
    report = REPORTS.get(report_id)
    if report is None:
        raise ReportNotFoundError(f"Report '{report_id}' not found.")
    return report


def can_view_report(principal: Principal, report: SavedReport) -> bool:
    return (principal.role_type or "").strip().upper() == "ADMIN" or report.owner_id == principal.id


def get_report_for_principal(principal: Principal, report_id: str) -> SavedReport:
    """Like ``get_report``, but reports the principal cannot see are treated as missing."""
    report = get_report(report_id)
    if not can_view_report(principal, report):
        raise ReportNotFoundError(f"Report '{report_id}' not found.")
    return report


def list_reports_for_principal(principal: Principal, search: Optional[str] = None) -> List[SavedReport]:
    """Visible reports, most recently updated first, optionally filtered by title/description."""
    query = (search or "").strip().lower()
    visible = [
        r for r in REPORTS.values()
        if can_view_report(principal, r)
        and (not query or query in r.title.lower() or query in r.description.lower())
    ]
    return sorted(visible, key=lambda r: r.updated_at, reverse=True)
