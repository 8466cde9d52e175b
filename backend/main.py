from fastapi import FastAPI, UploadFile, File, HTTPException, Request, Query
from fastapi.middleware.cors import CORSMiddleware
from core.config import UPLOAD_MAX_ROWS, cors_origins
from core.models import DatasetDefinition, PermissionLevel
from core.storage import register_dataset, list_datasets_for_principal, get_dataset_frame
from core.utils import utc_now_iso
from server.api import router as reports_router, require_principal
from typing import Optional
import pandas as pd
import io
import logging
import json

logger = logging.getLogger("uvicorn.error")
app = FastAPI(title="Self-Service Reporting", description="Turn report definitions into tables, charts and insights")

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Mount the reporting API router
app.include_router(reports_router)


def _log_response(ctx: str, payload) -> None:
    """Pretty-print JSON-able payloads; fall back to str()."""
    try:
        logger.info("%s response: %s", ctx, json.dumps(payload, indent=2, default=str))
    except (TypeError, ValueError):
        logger.info("%s response (non-serializable): %s", ctx, str(payload))


def human_dtype(s: pd.Series) -> str:
    dt = s.dtype
    if pd.api.types.is_bool_dtype(dt):
        return "boolean"
    if pd.api.types.is_integer_dtype(dt):
        return "integer"
    if pd.api.types.is_float_dtype(dt):
        return "float"
    if pd.api.types.is_datetime64_any_dtype(dt):
        return "datetime"
    if pd.api.types.is_string_dtype(dt):
        return "string"
    return str(dt)


def _dataset_summary(definition: DatasetDefinition) -> dict:
    df = get_dataset_frame(definition.dataset_id)
    summary = definition.model_dump(by_alias=True)
    if df is not None:
        summary["rows"] = int(len(df))
        summary["fields"] = [{"name": str(c), "type": human_dtype(df[c])} for c in df.columns]
    return summary


@app.post("/datasets/upload")
async def upload_dataset(
    request: Request,
    file: UploadFile = File(...),
    dataset_id: Optional[str] = Query(None),
    dataset_name: Optional[str] = Query(None),
    fiscal_date_field: Optional[str] = Query(None),
):
    principal = require_principal(request)
    if principal.role_type != "ADMIN":
        raise HTTPException(status_code=403, detail="Only administrators can register datasets.")

    content = await file.read()
    filename = file.filename or "dataset.csv"
    base = filename.rsplit(".", 1)[0] if "." in filename else filename

    try:
        df = pd.read_csv(io.BytesIO(content))
    except (ValueError, pd.errors.ParserError) as e:
        logger.exception("Failed to read CSV")
        raise HTTPException(status_code=400, detail=f"Failed to read CSV: {e}")

    if len(df) > UPLOAD_MAX_ROWS:
        raise HTTPException(
            status_code=413,
            detail=f"CSV has {len(df)} rows; the limit is {UPLOAD_MAX_ROWS}.",
        )

    # --- normalize to pandas nullable dtypes (text -> 'string', ints -> 'Int64', etc.) ---
    df = df.convert_dtypes(
        convert_string=True,
        convert_integer=True,
        convert_boolean=True,
        convert_floating=True,
    )
    df.columns = [str(c).strip() for c in df.columns]

    if fiscal_date_field and fiscal_date_field not in df.columns:
        raise HTTPException(status_code=400, detail=f"Column '{fiscal_date_field}' not found in CSV.")

    definition = register_dataset(
        DatasetDefinition(
            dataset_id=(dataset_id or base).strip(),
            dataset_name=dataset_name or base,
            description=f"Uploaded from {filename}",
            fiscal_date_field=fiscal_date_field,
            updated_at=utc_now_iso(),
        ),
        df,
    )

    resp = {"ok": True, "dataset": _dataset_summary(definition)}
    _log_response("UPLOAD", resp)
    return resp


@app.get("/datasets")
async def datasets(request: Request, level: PermissionLevel = Query(PermissionLevel.view)):
    principal = require_principal(request)
    resp = {"datasets": [_dataset_summary(d) for d in list_datasets_for_principal(principal, level)]}
    _log_response("DATASETS", resp)
    return resp
