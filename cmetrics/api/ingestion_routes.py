"""CMetrics — Ingestion API Routes."""

import json
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile
from sqlmodel import Session, select

from cmetrics.config import settings
from cmetrics.core.metric_registry import SourceType
from cmetrics.database import get_session
from cmetrics.analyzer.aggregation import aggregate_stats
from cmetrics.etl.pipeline import FatalIngestionError, run_ingestion
from cmetrics.etl.reader import SheetReadError, read_bytes
from cmetrics.etl.store import SQLMetricStore
from cmetrics.models.entities import IngestionRun
from cmetrics.models.etl_models import SheetSource
from cmetrics.core.logging import get_logger

logger = get_logger("api.ingestion")

router = APIRouter(prefix="/ingestion", tags=["Ingestion"])

# Multipart field → layout of the file uploaded under it
UPLOAD_FIELDS: Dict[str, SourceType] = {
    "cc_file": SourceType.CC,
    "fixed_file": SourceType.FIXED,
    "upgrade_file": SourceType.UP,
    "referral_file": SourceType.RE,
    "leads_file": SourceType.ALL_LEADS,
    "teams_file": SourceType.TEAMS,
}


def _parse_mapping(column_mapping: Optional[str]) -> Optional[Dict[str, str]]:
    if not column_mapping:
        return None
    try:
        mapping = json.loads(column_mapping)
    except json.JSONDecodeError as e:
        raise HTTPException(status_code=400, detail=f"column_mapping is not valid JSON: {e}")
    if not isinstance(mapping, dict):
        raise HTTPException(status_code=400, detail="column_mapping must be a JSON object")
    return {str(k): str(v) for k, v in mapping.items()}


def _run_to_dict(run: IngestionRun) -> dict:
    data = run.model_dump(exclude={"files_json", "errors_json", "coverage_json"})
    data["files"] = json.loads(run.files_json or "[]")
    data["errors"] = json.loads(run.errors_json or "[]")
    data["coverage"] = json.loads(run.coverage_json or "{}")
    return data


# ── Endpoints ──


@router.post("/upload")
async def upload_files(
    cc_file: Optional[UploadFile] = File(None),
    fixed_file: Optional[UploadFile] = File(None),
    upgrade_file: Optional[UploadFile] = File(None),
    referral_file: Optional[UploadFile] = File(None),
    leads_file: Optional[UploadFile] = File(None),
    teams_file: Optional[UploadFile] = File(None),
    column_mapping: Optional[str] = Form(None),
    session: Session = Depends(get_session),
):
    """Upload up to one file per source layout and ingest them as one run.

    Returns the ingestion report (camelCase keys).
    """
    uploads = {
        "cc_file": cc_file,
        "fixed_file": fixed_file,
        "upgrade_file": upgrade_file,
        "referral_file": referral_file,
        "leads_file": leads_file,
        "teams_file": teams_file,
    }
    overrides = _parse_mapping(column_mapping)

    sources: List[SheetSource] = []
    errors: List[str] = []
    for field_name, upload in uploads.items():
        if upload is None or not upload.filename:
            continue
        content = await upload.read()
        try:
            sources.append(read_bytes(upload.filename, content, UPLOAD_FIELDS[field_name]))
        except SheetReadError as e:
            logger.warning(f"Rejected upload {upload.filename}: {e}", extra={"file": upload.filename})
            errors.append(str(e))

    if not sources and not errors:
        raise HTTPException(status_code=400, detail="No files uploaded")

    store = SQLMetricStore(session)
    try:
        report = run_ingestion(
            sources, store, source_label="upload", overrides=overrides, errors=errors
        )
    except FatalIngestionError as e:
        logger.error(f"Ingestion halted: {e}")
        raise HTTPException(status_code=503, detail=str(e))
    except Exception as e:
        logger.error(f"Ingestion failed: {e}")
        raise HTTPException(status_code=500, detail=f"Ingestion failed: {str(e)}")

    if settings.aggregate_after_ingest and (report.totals.created or report.totals.updated):
        try:
            aggregate_stats(session)
        except Exception as e:
            session.rollback()
            logger.error(f"Post-ingestion aggregation failed: {e}")
            report.errors.append(f"Stats aggregation failed: {e}")

    return report.model_dump(mode="json", by_alias=True)


@router.get("/history")
async def ingestion_history(
    limit: int = Query(20, ge=1, le=200),
    session: Session = Depends(get_session),
):
    """Most recent ingestion runs, newest first."""
    runs = session.exec(
        select(IngestionRun).order_by(IngestionRun.id.desc()).limit(limit)
    ).all()
    return {"runs": [_run_to_dict(r) for r in runs], "count": len(runs)}


@router.get("/{run_id}")
async def get_ingestion_run(run_id: int, session: Session = Depends(get_session)):
    """A single ingestion run's audit record."""
    run = session.get(IngestionRun, run_id)
    if not run:
        raise HTTPException(status_code=404, detail=f"Ingestion run {run_id} not found")
    return _run_to_dict(run)
