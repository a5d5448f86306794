"""CMetrics — Cross-Source Merger.

Folds the canonical rows of every source into one MergedMetric per
(mentor, period_date). Team assignment comes from a TEAMS file when one was
uploaded, otherwise from the first other source that named a team.
"""

import math
from typing import Dict, Iterable, List, Tuple
from datetime import date

from cmetrics.core.metric_registry import (
    COVERAGE_FAMILIES,
    SourceType,
    metrics_for_family,
    metrics_for_source,
)
from cmetrics.models.etl_models import MergedMetric, MergeResult, TransformResult
from cmetrics.core.logging import get_logger

logger = get_logger("etl.merger")

MergeKey = Tuple[str, date]


def build_team_mapping(results: Iterable[TransformResult]) -> Dict[str, str]:
    """mentor → team. TEAMS rows are authoritative, then first-seen elsewhere."""
    results = list(results)
    mapping: Dict[str, str] = {}

    for result in results:
        if result.source != SourceType.TEAMS:
            continue
        for row in result.accepted:
            if row.team_name:
                mapping[row.mentor_name] = row.team_name

    for result in results:
        if result.source == SourceType.TEAMS:
            continue
        for row in result.accepted:
            if row.team_name and row.mentor_name not in mapping:
                mapping[row.mentor_name] = row.team_name

    return mapping


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def calculate_coverage(merged: List[MergedMetric]) -> Dict[str, int]:
    """Share of merged records (0-100) carrying each metric family."""
    if not merged:
        return {}

    total = len(merged)
    coverage: Dict[str, int] = {}
    for family in COVERAGE_FAMILIES:
        fields = metrics_for_family(family)
        present = sum(
            1 for m in merged if any(getattr(m, f) is not None for f in fields)
        )
        coverage[family] = _round_half_up(present / total * 100)
    return coverage


def merge_all(results: Iterable[TransformResult]) -> MergeResult:
    """Merge transform results by mentor and period.

    Later sources overwrite fields an earlier source already set for the same
    key. TEAMS rows only feed the team mapping.
    """
    results = list(results)
    team_mapping = build_team_mapping(results)
    records: Dict[MergeKey, MergedMetric] = {}

    for result in results:
        if result.source == SourceType.TEAMS:
            continue
        fields = metrics_for_source(result.source)

        for row in result.accepted:
            key = (row.mentor_name, row.period_date)
            record = records.get(key)
            if record is None:
                record = MergedMetric(
                    mentor_name=row.mentor_name,
                    team_name=team_mapping.get(row.mentor_name, row.team_name),
                    period_date=row.period_date,
                    week_of_month=row.week_of_month,
                    checksum=row.checksum,
                )
                records[key] = record

            for field_name in fields:
                value = getattr(row, field_name)
                if value is not None:
                    setattr(record, field_name, value)

            if result.source not in record.sources:
                record.sources.append(result.source)

    merged = list(records.values())
    coverage = calculate_coverage(merged)
    mentor_count = len({m.mentor_name for m in merged})

    logger.info(
        f"Merged {sum(len(r.accepted) for r in results)} rows into {len(merged)} records "
        f"for {mentor_count} mentors"
    )
    return MergeResult(
        merged=merged,
        coverage=coverage,
        mentor_count=mentor_count,
        team_mapping=team_mapping,
    )
