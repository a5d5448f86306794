"""CMetrics — Merged Record Validation."""

from typing import Iterable, List

from cmetrics.core.metric_registry import METRICS, MetricType
from cmetrics.models.etl_models import (
    InvalidRecord,
    MergedMetric,
    ValidationResult,
)
from cmetrics.core.logging import get_logger

logger = get_logger("etl.validator")

LABELS = {
    "cc_pct": "CC%",
    "sc_pct": "SC%",
    "up_pct": "UP%",
    "fixed_pct": "Fixed%",
    "referral_achievement_pct": "Referral achievement%",
    "conversion_pct": "Conversion%",
}


def record_issues(record: MergedMetric) -> List[str]:
    """Everything wrong with one merged record; empty when it is valid."""
    issues: List[str] = []
    numeric = [m for m in METRICS.values() if m.metric_type != MetricType.TEXT]

    if all(getattr(record, m.name) is None for m in numeric):
        issues.append("No metrics provided")

    for metric in numeric:
        value = getattr(record, metric.name)
        if value is None:
            continue
        if metric.metric_type == MetricType.PERCENT:
            if value < 0 or (metric.max_value is not None and value > metric.max_value):
                issues.append(f"Invalid {LABELS.get(metric.name, metric.name)}: {value}")
        elif value < 0:
            issues.append(f"Negative {metric.name.replace('_', ' ')}")

    return issues


def validate(merged: Iterable[MergedMetric]) -> ValidationResult:
    """Split merged records into valid and invalid. Each record stands alone."""
    result = ValidationResult()
    for record in merged:
        issues = record_issues(record)
        if issues:
            result.invalid.append(InvalidRecord(mentor=record.mentor_name, reason="; ".join(issues)))
        else:
            result.valid.append(record)

    if result.invalid:
        logger.warning(f"{len(result.invalid)} merged records failed validation")
    return result
