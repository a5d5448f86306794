"""CMetrics — Idempotent Persistence.

Writes validated merged records through a MetricStore. A stored record whose
checksum matches the incoming one is left alone, so re-running a batch never
duplicates data. Every mentor and every record is its own unit of work: a
failure is rolled back and collected, and the batch carries on.
"""

import json
from collections import OrderedDict
from typing import Dict, Iterable, List, Optional

from cmetrics.config import settings
from cmetrics.core.metric_registry import METRICS, MetricType
from cmetrics.etl.cleaners import normalize_name
from cmetrics.etl.store import MetricStore
from cmetrics.models.entities import MetricRecord
from cmetrics.models.etl_models import (
    MergedMetric,
    PersistenceError,
    PersistenceResult,
    RecordOutcome,
)
from cmetrics.core.logging import get_logger

logger = get_logger("etl.persistence")

NUMERIC_FIELDS = [m.name for m in METRICS.values() if m.metric_type != MetricType.TEXT]


def record_fields(metric: MergedMetric) -> Dict[str, object]:
    """Column values supplied by a merged record. None fields are omitted."""
    fields: Dict[str, object] = {
        name: getattr(metric, name)
        for name in NUMERIC_FIELDS
        if getattr(metric, name) is not None
    }
    if metric.notes is not None:
        fields["notes_json"] = json.dumps(metric.notes)
    fields["week_of_month"] = metric.week_of_month
    fields["checksum"] = metric.checksum
    return fields


def _ensure_teams(
    records: List[MergedMetric],
    store: MetricStore,
    unassigned_team: str,
    result: PersistenceResult,
) -> Dict[str, Optional[int]]:
    names = list(dict.fromkeys([unassigned_team] + sorted({r.team_name for r in records if r.team_name})))
    team_ids: Dict[str, Optional[int]] = {}
    for name in names:
        try:
            team_ids[name] = store.upsert_team(name).id
            store.commit()
        except Exception as e:
            store.rollback()
            logger.error(f"Failed to upsert team {name}: {e}")
            result.errors.append(PersistenceError(mentor=name, reason=f"Failed to upsert team: {e}"))
    return team_ids


def _persist_record(
    metric: MergedMetric,
    mentor_id: int,
    team_id: Optional[int],
    store: MetricStore,
    ingestion_run_id: Optional[int],
) -> str:
    existing = store.find_metric_record(mentor_id, metric.period_date)
    if existing is not None and existing.checksum == metric.checksum:
        return "skipped"

    fields = record_fields(metric)
    fields["ingestion_run_id"] = ingestion_run_id
    if existing is not None:
        store.update_metric_record(existing, fields)
        store.commit()
        return "updated"

    store.create_metric_record(
        MetricRecord(
            mentor_id=mentor_id,
            team_id=team_id,
            period_date=metric.period_date,
            **fields,
        )
    )
    store.commit()
    return "created"


def persist_metrics(
    records: Iterable[MergedMetric],
    store: MetricStore,
    *,
    ingestion_run_id: Optional[int] = None,
    unassigned_team: Optional[str] = None,
) -> PersistenceResult:
    """Upsert teams, mentors and metric records for validated merged records."""
    records = list(records)
    # Same normalization as team names read from files
    unassigned_team = normalize_name(unassigned_team or settings.unassigned_team_name)
    result = PersistenceResult()

    team_ids = _ensure_teams(records, store, unassigned_team, result)
    fallback_team_id = team_ids.get(unassigned_team)

    by_mentor: "OrderedDict[str, List[MergedMetric]]" = OrderedDict()
    for record in records:
        by_mentor.setdefault(record.mentor_name, []).append(record)

    for mentor_name, mentor_records in by_mentor.items():
        first_team = mentor_records[0].team_name
        team_id = team_ids.get(first_team) if first_team else None
        if team_id is None:
            team_id = fallback_team_id

        try:
            mentor = store.upsert_mentor(mentor_name, mentor_name.title(), team_id)
            store.commit()
        except Exception as e:
            store.rollback()
            logger.error(f"Failed to process mentor {mentor_name}: {e}", extra={"mentor": mentor_name})
            result.errors.append(
                PersistenceError(mentor=mentor_name, reason=f"Failed to process mentor: {e}")
            )
            for metric in mentor_records:
                result.outcomes.append(
                    RecordOutcome(mentor=mentor_name, period_date=metric.period_date, action="error", sources=metric.sources)
                )
            continue

        for metric in mentor_records:
            try:
                action = _persist_record(metric, mentor.id, team_id, store, ingestion_run_id)
            except Exception as e:
                store.rollback()
                action = "error"
                logger.error(
                    f"Failed to persist metric for {mentor_name} on {metric.period_date}: {e}",
                    extra={"mentor": mentor_name},
                )
                result.errors.append(
                    PersistenceError(
                        mentor=mentor_name,
                        reason=f"Failed to persist metric for {metric.period_date.isoformat()}: {e}",
                    )
                )

            if action == "created":
                result.created += 1
            elif action == "updated":
                result.updated += 1
            elif action == "skipped":
                result.skipped_duplicate += 1
            result.outcomes.append(
                RecordOutcome(mentor=mentor_name, period_date=metric.period_date, action=action, sources=metric.sources)
            )

    logger.info(
        f"Persisted: {result.created} created, {result.updated} updated, "
        f"{result.skipped_duplicate} skipped, {len(result.errors)} errors",
        extra={"run_id": ingestion_run_id},
    )
    return result
