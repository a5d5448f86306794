"""CMetrics — Unified Metric Registry.

Defines the canonical set of mentor metrics, their classifications and the
source layout each one comes from. The merger, validator and coverage report
all read from here so a new metric only has to be registered once.
"""

from enum import Enum
from typing import Dict, Optional


class SourceType(str, Enum):
    """Spreadsheet layouts the ingestion engine understands."""

    CC = "CC"  # Class consumption + super consumption
    FIXED = "FIXED"  # Fixed plan rate
    UP = "UP"  # Upgrade rate
    RE = "RE"  # Referral funnel
    ALL_LEADS = "ALL_LEADS"  # Lead recovery
    TEAMS = "TEAMS"  # Mentor → team mapping


class MetricType(str, Enum):
    """How a metric is categorised."""

    PERCENT = "percent"  # 0-100 scale after cleaning
    COUNT = "count"  # Non-negative integers
    TEXT = "text"  # Free-form lists (notes)


class MetricDefinition:
    """Describes a single metric field."""

    def __init__(
        self,
        name: str,
        metric_type: MetricType,
        family: str,
        source: SourceType,
        max_value: Optional[float] = None,
        description: str = "",
    ):
        self.name = name
        self.metric_type = metric_type
        self.family = family
        self.source = source
        self.max_value = max_value
        self.description = description

    def __repr__(self) -> str:
        return f"<Metric {self.name} ({self.metric_type.value})>"


# ─────────────────────────────────────────────
# MENTOR METRICS — Canonical Registry
# ─────────────────────────────────────────────

METRICS: Dict[str, MetricDefinition] = {
    # Consumption
    "cc_pct": MetricDefinition(
        "cc_pct", MetricType.PERCENT, "CC", SourceType.CC, 200, "Class consumption %"
    ),
    "sc_pct": MetricDefinition(
        "sc_pct", MetricType.PERCENT, "SC", SourceType.CC, 200, "Super class consumption %"
    ),
    # Upgrade
    "up_pct": MetricDefinition(
        "up_pct", MetricType.PERCENT, "UP", SourceType.UP, 200, "Cumulative upgrade rate"
    ),
    # Fixed
    "fixed_pct": MetricDefinition(
        "fixed_pct", MetricType.PERCENT, "Fixed", SourceType.FIXED, 100, "Students on a fixed plan"
    ),
    # Referral funnel
    "referral_leads": MetricDefinition(
        "referral_leads", MetricType.COUNT, "Referral", SourceType.RE, None, "Referral leads generated"
    ),
    "referral_showups": MetricDefinition(
        "referral_showups", MetricType.COUNT, "Referral", SourceType.RE, None, "Referral show-ups"
    ),
    "referral_paid": MetricDefinition(
        "referral_paid", MetricType.COUNT, "Referral", SourceType.RE, None, "Paid referrals"
    ),
    "referral_achievement_pct": MetricDefinition(
        "referral_achievement_pct",
        MetricType.PERCENT,
        "Referral",
        SourceType.RE,
        200,
        "Referral leads achievement vs target",
    ),
    # Lead recovery
    "total_leads": MetricDefinition(
        "total_leads", MetricType.COUNT, "Leads", SourceType.ALL_LEADS, None, "Leads assigned"
    ),
    "recovered_leads": MetricDefinition(
        "recovered_leads", MetricType.COUNT, "Leads", SourceType.ALL_LEADS, None, "Leads recovered"
    ),
    "unrecovered_leads": MetricDefinition(
        "unrecovered_leads", MetricType.COUNT, "Leads", SourceType.ALL_LEADS, None, "Leads not recovered"
    ),
    "conversion_pct": MetricDefinition(
        "conversion_pct",
        MetricType.PERCENT,
        "Leads",
        SourceType.ALL_LEADS,
        200,
        "Recovered / total leads",
    ),
    "notes": MetricDefinition(
        "notes", MetricType.TEXT, "Leads", SourceType.ALL_LEADS, None, "Unrecovered lead notes"
    ),
}

# Families reported in ingestion coverage, in display order
COVERAGE_FAMILIES = ("CC", "SC", "UP", "Fixed", "Referral", "Leads")

# The four metrics that feed the weighted score
CORE_METRICS = ("cc_pct", "sc_pct", "up_pct", "fixed_pct")


# ─────────────────────────────────────────────
# HELPERS
# ─────────────────────────────────────────────


def metrics_for_source(source: SourceType) -> list[str]:
    """Metric field names a given source layout contributes."""
    return [m.name for m in METRICS.values() if m.source == source]


def metrics_for_family(family: str) -> list[str]:
    """Metric field names belonging to a coverage family."""
    return [
        m.name
        for m in METRICS.values()
        if m.family == family and m.metric_type != MetricType.TEXT
    ]
