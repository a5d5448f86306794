"""CMetrics — Persisted Entities.

Unique constraints carry the idempotency guarantees: one Team per name, one
Mentor per external_id, one MetricRecord and one MentorStats row per
(mentor, period_date).
"""

from datetime import date, datetime, timezone
from typing import Optional
from sqlmodel import SQLModel, Field, UniqueConstraint


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Team(SQLModel, table=True):
    """A grouping of mentors. "UNASSIGNED" is the fallback team."""

    __tablename__ = "teams"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True, unique=True)
    description: str = Field(default="")


class Mentor(SQLModel, table=True):
    """A tracked person. Identity comes from the normalized name, not the file."""

    __tablename__ = "mentors"

    id: Optional[int] = Field(default=None, primary_key=True)
    external_id: str = Field(index=True, unique=True, description="Normalized name")
    display_name: str = Field(default="")
    team_id: Optional[int] = Field(default=None, foreign_key="teams.id", index=True)


class MetricRecord(SQLModel, table=True):
    """Persisted period metric for a mentor."""

    __tablename__ = "metric_records"
    __table_args__ = (
        UniqueConstraint("mentor_id", "period_date", name="uq_metric_mentor_period"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    mentor_id: int = Field(foreign_key="mentors.id", index=True)
    team_id: Optional[int] = Field(default=None, foreign_key="teams.id", index=True)
    period_date: date = Field(index=True)
    week_of_month: int = Field(default=1)

    cc_pct: Optional[float] = None
    sc_pct: Optional[float] = None
    up_pct: Optional[float] = None
    fixed_pct: Optional[float] = None

    referral_leads: Optional[int] = None
    referral_showups: Optional[int] = None
    referral_paid: Optional[int] = None
    referral_achievement_pct: Optional[float] = None

    total_leads: Optional[int] = None
    recovered_leads: Optional[int] = None
    unrecovered_leads: Optional[int] = None
    conversion_pct: Optional[float] = None
    notes_json: str = Field(default="[]", description="JSON list of notes")

    checksum: str = Field(index=True)
    ingestion_run_id: Optional[int] = Field(default=None, foreign_key="ingestion_runs.id")
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class ScoringConfig(SQLModel, table=True):
    """Targets, weights and thresholds. team_id NULL is the global row."""

    __tablename__ = "scoring_configs"

    id: Optional[int] = Field(default=None, primary_key=True)
    team_id: Optional[int] = Field(default=None, foreign_key="teams.id", index=True)

    cc_target: float = 80
    sc_target: float = 15
    up_target: float = 25
    fixed_target: float = 60
    referral_achievement_target: float = 80
    conversion_target: float = 30

    above_threshold: float = 100
    warning_threshold: float = 90

    cc_weight: float = 25
    sc_weight: float = 25
    up_weight: float = 25
    fixed_weight: float = 25


class IngestionRun(SQLModel, table=True):
    """Audit trail of one ingestion run, opened as RUNNING and finalised once."""

    __tablename__ = "ingestion_runs"

    id: Optional[int] = Field(default=None, primary_key=True)
    created_at: datetime = Field(default_factory=_utcnow)
    source: str = Field(index=True, description="upload | folder_ingestion | cli")
    status: str = Field(default="RUNNING", description="RUNNING | SUCCESS | PARTIAL | FAILED")
    files_json: str = Field(default="[]")
    records_received: int = 0
    records_accepted: int = 0
    records_rejected: int = 0
    records_created: int = 0
    records_updated: int = 0
    records_skipped: int = 0
    errors_json: str = Field(default="[]")
    coverage_json: str = Field(default="{}")
    duration_ms: int = 0


class MentorStats(SQLModel, table=True):
    """Scored snapshot of a MetricRecord, refreshed after each ingestion."""

    __tablename__ = "mentor_stats"
    __table_args__ = (
        UniqueConstraint("mentor_id", "period_date", name="uq_stats_mentor_period"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    mentor_id: int = Field(foreign_key="mentors.id", index=True)
    period_date: date = Field(index=True)
    week_of_month: int = Field(default=1)
    weighted_score: float = 0.0
    targets_hit: int = 0
    status: str = Field(default="BELOW", description="ABOVE | WARNING | BELOW")
    rank: Optional[int] = None
    updated_at: datetime = Field(default_factory=_utcnow)
