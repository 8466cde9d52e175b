"""
Reporting API routes, mounted as a sub-router on the main FastAPI app.

Runs are synchronous request/response: preview an unsaved definition, save a
definition, run a saved report, or export a run as CSV.
"""

from __future__ import annotations

import asyncio
import logging
from typing import List, Literal, Optional

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import Response

from core.errors import DatasetAccessError, ReportingError, ReportNotFoundError
from core.models import (
    DatasetDefinition,
    PermissionLevel,
    Principal,
    RunInput,
    RunPreviewRequest,
    RunResult,
    SavedReport,
    SaveReportRequest,
)
from core.storage import (
    FISCAL_CALENDARS,
    get_report_for_principal,
    list_datasets_for_principal,
    list_reports_for_principal,
    load_rows_for_principal,
    save_report,
)
from core.utils import utc_now_iso
from engine.exports import build_raw_export
from server.orchestrator import run_report

logger = logging.getLogger("uvicorn.error")

router = APIRouter(prefix="/api", tags=["reports"])

PREVIEW_REPORT_ID = "preview"

HOME_RECENT_REPORTS = 8
HOME_FEED_REPORTS = 3
NO_FEED_INSIGHT_MESSAGE = "No insight available for current filters."


def require_principal(request: Request) -> Principal:
    user_id = request.headers.get("X-User-Id")
    role_type = request.headers.get("X-Role-Type")
    if not user_id:
        raise HTTPException(status_code=400, detail="Missing X-User-Id header.")
    if not role_type:
        raise HTTPException(status_code=400, detail="Missing X-Role-Type header.")
    return Principal(
        id=user_id,
        email=request.headers.get("X-User-Email"),
        role_type=role_type.strip().upper(),
    )


def _http_error(exc: ReportingError) -> HTTPException:
    if isinstance(exc, DatasetAccessError):
        return HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, ReportNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


async def _execute(principal: Principal, report: SavedReport, run_input: RunInput) -> RunResult:
    allowed = list_datasets_for_principal(principal, PermissionLevel.view)
    try:
        return await run_report(
            principal,
            report,
            allowed,
            run_input,
            loader=load_rows_for_principal,
            calendars=FISCAL_CALENDARS,
        )
    except ReportingError as e:
        raise _http_error(e)
    except Exception as e:
        logger.exception("Report run failed")
        raise HTTPException(status_code=500, detail=f"Report run failed: {e}")


def _load_report(principal: Principal, report_id: str) -> SavedReport:
    try:
        return get_report_for_principal(principal, report_id)
    except ReportingError as e:
        raise _http_error(e)


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post("/reports/run-preview")
async def run_preview(request: Request, body: RunPreviewRequest):
    """Run an unsaved definition; nothing is persisted."""
    principal = require_principal(request)
    report = SavedReport(
        id=PREVIEW_REPORT_ID,
        title=body.title,
        definition=body.definition,
        owner_id=principal.id,
    )
    result = await _execute(principal, report, body.run_input)
    return result.model_dump(by_alias=True)


@router.get("/reports")
async def list_reports(request: Request, search: Optional[str] = Query(None)):
    principal = require_principal(request)
    reports = list_reports_for_principal(principal, search)
    return {"reports": [r.model_dump(by_alias=True) for r in reports]}


async def _feed_entry(principal: Principal, report: SavedReport, allowed: List[DatasetDefinition]) -> dict:
    """Executive summary of a default run, or a placeholder when the run fails."""
    try:
        result = await run_report(
            principal,
            report,
            allowed,
            RunInput(),
            loader=load_rows_for_principal,
            calendars=FISCAL_CALENDARS,
        )
    except ReportingError as e:
        logger.info("Insight feed skipped report %s: %s", report.id, e)
        return _feed_fallback(report)
    except Exception:
        logger.exception("Insight feed run failed for report %s", report.id)
        return _feed_fallback(report)
    return {
        "reportId": report.id,
        "reportTitle": report.title,
        "summary": result.insights.executive_summary,
        "generatedAt": result.generated_at,
    }


def _feed_fallback(report: SavedReport) -> dict:
    return {
        "reportId": report.id,
        "reportTitle": report.title,
        "summary": NO_FEED_INSIGHT_MESSAGE,
        "generatedAt": utc_now_iso(),
    }


@router.get("/reports/home")
async def reports_home(request: Request, search: Optional[str] = Query(None)):
    """Landing payload: visible datasets, recent and shared reports, insight feed."""
    principal = require_principal(request)
    datasets = list_datasets_for_principal(principal, PermissionLevel.view)
    reports = list_reports_for_principal(principal, search)

    recent = reports[:HOME_RECENT_REPORTS]
    shared = [r for r in reports if r.owner_id != principal.id]
    feed = await asyncio.gather(*(
        _feed_entry(principal, r, datasets) for r in recent[:HOME_FEED_REPORTS]
    ))

    return {
        "datasets": [d.model_dump(by_alias=True) for d in datasets],
        "recentReports": [r.model_dump(by_alias=True) for r in recent],
        "sharedWithMe": [r.model_dump(by_alias=True) for r in shared],
        "insightFeed": list(feed),
    }


@router.post("/reports")
async def create_report(request: Request, body: SaveReportRequest):
    """Save a report definition. Every dataset it names needs BUILD access."""
    principal = require_principal(request)
    buildable = {d.dataset_id for d in list_datasets_for_principal(principal, PermissionLevel.build)}
    missing = [i for i in body.definition.dataset_ids if i not in buildable]
    if missing:
        raise HTTPException(
            status_code=403,
            detail=f"Missing BUILD permission for datasets: {', '.join(missing)}",
        )

    try:
        report = save_report(
            principal,
            body.title,
            body.definition,
            description=body.description,
            report_id=body.id,
        )
    except ReportingError as e:
        raise _http_error(e)

    logger.info("Report %s saved by %s", report.id, principal.id)
    return {"id": report.id, "report": report.model_dump(by_alias=True)}


@router.get("/reports/{report_id}")
async def get_report(request: Request, report_id: str):
    principal = require_principal(request)
    return _load_report(principal, report_id).model_dump(by_alias=True)


@router.post("/reports/{report_id}/run")
async def run_saved_report(request: Request, report_id: str, body: Optional[RunInput] = None):
    principal = require_principal(request)
    report = _load_report(principal, report_id)
    result = await _execute(principal, report, body or RunInput())
    return result.model_dump(by_alias=True)


@router.post("/reports/{report_id}/export")
async def export_report(
    request: Request,
    report_id: str,
    body: Optional[RunInput] = None,
    mode: Literal["raw", "aggregated", "chart"] = Query("raw"),
):
    """Run the report and return the chosen slice of the result as CSV."""
    principal = require_principal(request)
    report = _load_report(principal, report_id)
    result = await _execute(principal, report, body or RunInput())
    csv_text = build_raw_export(result, mode)
    filename = f"{report.id}-{mode}.csv"
    return Response(
        content=csv_text,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
