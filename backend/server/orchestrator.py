"""
Report run orchestrator.

``run_view`` is the pure pipeline over already-loaded rows:
filter → group/aggregate → calculate → sort → paginate → charts → insights.
``run_report`` wraps it with dataset permissions, the fiscal calendar lookup
and the (async) row loader, then stamps report metadata on the result.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable, List, Mapping, Optional, Sequence

from core.config import DEFAULT_FISCAL_START_MONTH, DEFAULT_PAGE_SIZE
from core.errors import DatasetAccessError, ReportConfigError
from core.models import (
    Calculation,
    DatasetDefinition,
    FiscalCalendar,
    Principal,
    Record,
    ReportDefinition,
    RunInput,
    RunResult,
    SavedReport,
    View,
)
from core.utils import to_iso
from engine.aggregate import build_table
from engine.charts import build_charts
from engine.filters import filter_rows, resolve_applied_filters
from engine.insights import generate_insights

logger = logging.getLogger("uvicorn.error")

RowLoader = Callable[[Principal, List[str], int], Awaitable[List[Record]]]
Clock = Callable[[], datetime]

NO_DATASETS_MESSAGE = "No permitted datasets available for this report."


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Resolution helpers
# ---------------------------------------------------------------------------

def resolve_view(definition: ReportDefinition, view_id: Optional[str]) -> View:
    if not definition.views:
        raise ReportConfigError("Report definition has no views.")
    if view_id:
        match = next((v for v in definition.views if v.id == view_id), None)
        if match is not None:
            return match
        logger.info("View '%s' not found; falling back to '%s'", view_id, definition.views[0].id)
    return definition.views[0]


def dedupe_datasets(datasets: Sequence[DatasetDefinition]) -> List[str]:
    return list(dict.fromkeys(d.dataset_id for d in datasets))


def permitted_dataset_ids(definition: ReportDefinition, allowed: Sequence[DatasetDefinition]) -> List[str]:
    """Report dataset ids the principal may read, in declaration order."""
    allowed_ids = set(dedupe_datasets(allowed))
    return [i for i in dict.fromkeys(definition.dataset_ids) if i in allowed_ids]


def resolve_fiscal_start_month(calendar_id: str, calendars: Mapping[str, FiscalCalendar]) -> int:
    calendar = calendars.get(calendar_id)
    return calendar.fiscal_year_start_month if calendar else DEFAULT_FISCAL_START_MONTH


def resolve_paging(view: View, run_input: RunInput) -> tuple[int, int]:
    page = max(1, run_input.page or 1)
    page_size = max(1, run_input.page_size or view.page_size or DEFAULT_PAGE_SIZE)
    return page, page_size


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

def run_view(
    rows: List[Record],
    view: View,
    calculations: Sequence[Calculation],
    run_input: RunInput,
    *,
    clock: Clock = _utc_now,
) -> RunResult:
    """Execute one view over *rows*. Does not mutate its inputs."""
    applied_filters = resolve_applied_filters(view, run_input.filters, run_input.parameters)
    filtered = filter_rows(rows, applied_filters)
    page, page_size = resolve_paging(view, run_input)

    table, ordered = build_table(filtered, view, calculations, page, page_size)
    charts = build_charts(view.visuals, ordered)
    insights = generate_insights(table.model_copy(update={"rows": ordered}), filtered)

    return RunResult(
        view=view,
        applied_filters=applied_filters,
        applied_parameters=dict(run_input.parameters),
        generated_at=to_iso(clock()),
        table=table,
        charts=charts,
        insights=insights,
        raw_rows=[dict(row) for row in filtered],
    )


async def run_report(
    principal: Principal,
    report: SavedReport,
    allowed_datasets: Sequence[DatasetDefinition],
    run_input: Optional[RunInput] = None,
    *,
    loader: RowLoader,
    calendars: Mapping[str, FiscalCalendar],
    clock: Clock = _utc_now,
) -> RunResult:
    """Load the permitted rows for *report* and run the requested view."""
    run_input = run_input or RunInput()
    definition = report.definition

    dataset_ids = permitted_dataset_ids(definition, allowed_datasets)
    if not dataset_ids:
        raise DatasetAccessError(NO_DATASETS_MESSAGE)

    view = resolve_view(definition, run_input.view_id)
    fiscal_start_month = resolve_fiscal_start_month(definition.fiscal_calendar_id, calendars)

    t0 = time.perf_counter()
    logger.info("Report %s run started: view=%s datasets=%s user=%s",
                report.id, view.id, dataset_ids, principal.id)

    rows = await loader(principal, dataset_ids, fiscal_start_month)
    result = run_view(rows, view, definition.calculations, run_input, clock=clock)

    dt_ms = int((time.perf_counter() - t0) * 1000)
    logger.info("Report %s run finished: %d rows → %d table rows in %dms",
                report.id, len(rows), result.table.total_rows, dt_ms)

    return result.model_copy(update={
        "report_id": report.id,
        "report_title": report.title,
        "dataset_ids": dataset_ids,
    })
