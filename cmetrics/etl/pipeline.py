"""CMetrics — Ingestion Pipeline Orchestrator.

Runs the full data flow for one batch of files:
  read → transform → merge → validate → persist → audit → report

Failures are isolated per row, per mentor and per file and end up in the
report. Only a missing global scoring configuration halts a run.
"""

import json
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from cmetrics.config import settings
from cmetrics.core.metric_registry import SourceType
from cmetrics.etl.merger import merge_all
from cmetrics.etl.persistence import persist_metrics
from cmetrics.etl.reader import SheetReadError, is_supported, read_path
from cmetrics.etl.store import MetricStore
from cmetrics.etl.transformers import auto_transform
from cmetrics.etl.validator import validate
from cmetrics.models.entities import IngestionRun
from cmetrics.models.etl_models import (
    IngestionReport,
    MergeResult,
    PersistenceResult,
    ReportRejection,
    ReportTotals,
    SheetSource,
    SourceReport,
    TransformResult,
    ValidationResult,
)
from cmetrics.core.logging import get_logger

logger = get_logger("etl.pipeline")


class FatalIngestionError(Exception):
    """A precondition failed and nothing can be ingested."""


# ─────────────────────────────────────────────
# TRANSFORM STAGE
# ─────────────────────────────────────────────


def _transform_one(
    source: SheetSource,
    overrides: Optional[Dict[str, str]],
    default_period: date,
    skip_keywords: Sequence[str],
    header_scan_rows: int,
) -> Tuple[Optional[TransformResult], Optional[str]]:
    try:
        result = auto_transform(
            source,
            overrides,
            default_period=default_period,
            skip_keywords=skip_keywords,
            header_scan_rows=header_scan_rows,
        )
    except Exception as e:
        logger.error(f"Transform failed for {source.filename}: {e}", extra={"file": source.filename})
        return None, f"{source.filename}: transform failed ({e})"
    if result is None:
        return None, f"Unable to detect source type for file: {source.filename}"
    return result, None


def transform_sources(
    sources: Sequence[SheetSource],
    *,
    overrides: Optional[Dict[str, str]] = None,
    default_period: Optional[date] = None,
    max_workers: int = 1,
    cancel_event: Optional[threading.Event] = None,
    skip_keywords: Sequence[str] = ("total",),
    header_scan_rows: int = 10,
) -> Tuple[List[TransformResult], List[str]]:
    """Transform every file, preserving input order.

    The cancel event is checked before each file starts; files not yet
    started when it is set are reported as cancelled.
    """
    period = default_period or date.today()
    args = (overrides, period, tuple(skip_keywords), header_scan_rows)
    Outcome = Optional[Tuple[Optional[TransformResult], Optional[str]]]

    def run(source: SheetSource) -> Outcome:
        # None marks a file that was never started
        if cancel_event is not None and cancel_event.is_set():
            return None
        return _transform_one(source, *args)

    outcomes: List[Outcome]
    if max_workers > 1 and len(sources) > 1:
        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            outcomes = list(pool.map(run, sources))
    else:
        outcomes = [run(source) for source in sources]

    done = [o for o in outcomes if o is not None]
    results = [r for r, _ in done if r is not None]
    errors = [e for _, e in done if e is not None]
    skipped = [s.filename for s, o in zip(sources, outcomes) if o is None]
    if skipped:
        errors.append(f"Ingestion cancelled; not processed: {', '.join(skipped)}")
        logger.warning(f"Ingestion cancelled with {len(skipped)} files left")
    return results, errors


# ─────────────────────────────────────────────
# REPORT
# ─────────────────────────────────────────────


def _source_reports(
    results: List[TransformResult],
    persistence: PersistenceResult,
) -> List[SourceReport]:
    reports: Dict[SourceType, SourceReport] = {}
    for result in results:
        report = reports.setdefault(result.source, SourceReport(source=result.source))
        report.files.append(result.file)
        report.received += result.received
        report.accepted += len(result.accepted)
        report.rejected.extend(
            ReportRejection(file=result.file, row=r.row, reason=r.reason) for r in result.rejected
        )
        for field_name in result.columns_detected:
            if field_name not in report.columns_detected:
                report.columns_detected.append(field_name)
        report.columns_mapped.update(result.columns_mapped)

    for outcome in persistence.outcomes:
        for source in outcome.sources:
            report = reports.get(source)
            if report is None:
                continue
            if outcome.action == "updated":
                report.updated += 1
            elif outcome.action == "skipped":
                report.skipped_duplicate += 1

    return list(reports.values())


def build_report(
    results: List[TransformResult],
    merge: MergeResult,
    validation: ValidationResult,
    persistence: PersistenceResult,
    errors: List[str],
    *,
    run_id: Optional[int] = None,
    duration_ms: int = 0,
) -> IngestionReport:
    row_rejections = sum(len(r.rejected) for r in results)
    totals = ReportTotals(
        files_processed=len(results),
        received=sum(r.received for r in results),
        accepted=sum(len(r.accepted) for r in results),
        created=persistence.created,
        updated=persistence.updated,
        skipped_duplicate=persistence.skipped_duplicate,
        rejected=row_rejections + len(validation.invalid) + len(persistence.errors),
    )

    all_errors = list(errors)
    all_errors.extend(f"Invalid record for {i.mentor}: {i.reason}" for i in validation.invalid)
    all_errors.extend(f"{e.mentor}: {e.reason}" for e in persistence.errors)

    return IngestionReport(
        timestamp=datetime.now(timezone.utc).isoformat(),
        run_id=run_id,
        sources=_source_reports(results, persistence),
        totals=totals,
        coverage=merge.coverage,
        mentor_count=merge.mentor_count,
        team_count=len({m.team_name for m in merge.merged if m.team_name}),
        errors=all_errors,
        duration=duration_ms,
    )


def run_status(report: IngestionReport) -> str:
    """SUCCESS, PARTIAL (some problems) or FAILED (problems and nothing stored)."""
    totals = report.totals
    problems = bool(report.errors) or totals.rejected > 0
    stored = totals.created + totals.updated + totals.skipped_duplicate
    if not problems:
        return "SUCCESS"
    return "PARTIAL" if stored > 0 else "FAILED"


# ─────────────────────────────────────────────
# RUN
# ─────────────────────────────────────────────


def _write_audit(store: MetricStore, run: IngestionRun, errors: List[str]) -> Optional[int]:
    try:
        store.add_ingestion_run(run)
        store.commit()
        return run.id
    except Exception as e:
        store.rollback()
        logger.error(f"Failed to write ingestion audit record: {e}")
        errors.append(f"Audit record could not be written: {e}")
        return None


def run_ingestion(
    sources: Sequence[SheetSource],
    store: MetricStore,
    *,
    source_label: str = "upload",
    overrides: Optional[Dict[str, str]] = None,
    default_period: Optional[date] = None,
    max_workers: Optional[int] = None,
    cancel_event: Optional[threading.Event] = None,
    errors: Optional[List[str]] = None,
) -> IngestionReport:
    """Ingest a batch of sheets and return the run report.

    `errors` carries file-level problems found before transformation
    (unreadable or oversized files) so they land in the same report.

    Raises:
        FatalIngestionError: no global scoring configuration exists.
    """
    started = time.perf_counter()
    if store.get_scoring_config(None) is None:
        raise FatalIngestionError("No global scoring configuration found; initialise the database first")

    errors = list(errors or [])
    sources = list(sources)
    limit = settings.max_files_per_run
    if len(sources) > limit:
        refused = [s.filename for s in sources[limit:]]
        errors.append(f"File limit of {limit} exceeded; refused: {', '.join(refused)}")
        sources = sources[:limit]

    run = IngestionRun(
        source=source_label,
        files_json=json.dumps([s.filename for s in sources]),
    )
    run_id = _write_audit(store, run, errors)
    logger.info(f"Ingestion run started with {len(sources)} files", extra={"run_id": run_id})

    results, transform_errors = transform_sources(
        sources,
        overrides=overrides,
        default_period=default_period,
        max_workers=max_workers or settings.transform_workers,
        cancel_event=cancel_event,
        skip_keywords=settings.summary_row_keywords,
        header_scan_rows=settings.header_scan_rows,
    )
    errors.extend(transform_errors)

    merge = merge_all(results)
    validation = validate(merge.merged)
    persistence = persist_metrics(
        validation.valid,
        store,
        ingestion_run_id=run_id,
        unassigned_team=settings.unassigned_team_name,
    )

    duration_ms = int((time.perf_counter() - started) * 1000)
    report = build_report(
        results, merge, validation, persistence, errors, run_id=run_id, duration_ms=duration_ms
    )

    # ── Finalise audit ──
    totals = report.totals
    run.status = run_status(report)
    run.records_received = totals.received
    run.records_accepted = totals.accepted
    run.records_rejected = totals.rejected
    run.records_created = totals.created
    run.records_updated = totals.updated
    run.records_skipped = totals.skipped_duplicate
    run.errors_json = json.dumps(report.errors)
    run.coverage_json = json.dumps(report.coverage)
    run.duration_ms = duration_ms
    _write_audit(store, run, report.errors)

    logger.info(
        f"Ingestion run {run.status}: {totals.created} created, {totals.updated} updated, "
        f"{totals.skipped_duplicate} skipped, {totals.rejected} rejected",
        extra={"run_id": run_id, "duration_ms": duration_ms},
    )
    return report


def collect_folder(folder: Path) -> Tuple[List[SheetSource], List[str]]:
    """Read every supported spreadsheet in a folder, bounded by file size."""
    max_bytes = settings.max_file_size_mb * 1024 * 1024
    sources: List[SheetSource] = []
    errors: List[str] = []

    for path in sorted(folder.iterdir()):
        if not path.is_file() or path.name.startswith("~$") or not is_supported(path.name):
            continue
        if path.stat().st_size > max_bytes:
            errors.append(f"{path.name}: larger than {settings.max_file_size_mb} MB, skipped")
            continue
        try:
            sources.append(read_path(path))
        except SheetReadError as e:
            logger.error(f"Unreadable file {path.name}: {e}", extra={"file": path.name})
            errors.append(str(e))
    return sources, errors


def write_report(report: IngestionReport, report_dir: Path) -> Path:
    report_dir.mkdir(parents=True, exist_ok=True)
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f")
    path = report_dir / f"ingestion-{stamp}.json"
    path.write_text(report.model_dump_json(by_alias=True, indent=2), encoding="utf-8")
    logger.info(f"Ingestion report written to {path}")
    return path


def ingest_folder(
    folder: Path,
    store: MetricStore,
    report_dir: Optional[Path] = None,
    *,
    cancel_event: Optional[threading.Event] = None,
) -> IngestionReport:
    """Ingest every spreadsheet in a folder and write the JSON report."""
    folder = Path(folder)
    if not folder.is_dir():
        raise FatalIngestionError(f"Ingestion folder not found: {folder}")

    sources, errors = collect_folder(folder)
    logger.info(f"Found {len(sources)} files in {folder}")
    report = run_ingestion(
        sources,
        store,
        source_label="folder_ingestion",
        cancel_event=cancel_event,
        errors=errors,
    )
    write_report(report, Path(report_dir or settings.reports_folder))
    return report
