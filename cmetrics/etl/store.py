"""CMetrics — Metric Store.

The persister talks to storage only through MetricStore, so it can run
against the database or an in-memory fake.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime, timezone
from typing import Any, Dict, Optional

from sqlmodel import Session, select

from cmetrics.models.entities import (
    IngestionRun,
    Mentor,
    MetricRecord,
    ScoringConfig,
    Team,
)


class MetricStore(ABC):
    """Storage port used by the ingestion pipeline."""

    @abstractmethod
    def get_scoring_config(self, team_id: Optional[int] = None) -> Optional[ScoringConfig]:
        """Return the config for a team, or the global one when team_id is None."""
        ...

    @abstractmethod
    def upsert_team(self, name: str) -> Team:
        ...

    @abstractmethod
    def upsert_mentor(self, external_id: str, display_name: str, team_id: Optional[int]) -> Mentor:
        """Create the mentor or re-assign its team."""
        ...

    @abstractmethod
    def find_metric_record(self, mentor_id: int, period_date: date) -> Optional[MetricRecord]:
        ...

    @abstractmethod
    def create_metric_record(self, record: MetricRecord) -> MetricRecord:
        ...

    @abstractmethod
    def update_metric_record(self, record: MetricRecord, fields: Dict[str, Any]) -> MetricRecord:
        """Apply fields to an existing record. Absent keys stay untouched."""
        ...

    @abstractmethod
    def add_ingestion_run(self, run: IngestionRun) -> IngestionRun:
        ...

    @abstractmethod
    def commit(self) -> None:
        ...

    @abstractmethod
    def rollback(self) -> None:
        ...


class SQLMetricStore(MetricStore):
    """MetricStore over a SQLModel session."""

    def __init__(self, session: Session):
        self.session = session

    def get_scoring_config(self, team_id: Optional[int] = None) -> Optional[ScoringConfig]:
        return self.session.exec(
            select(ScoringConfig).where(ScoringConfig.team_id == team_id)
        ).first()

    def upsert_team(self, name: str) -> Team:
        team = self.session.exec(select(Team).where(Team.name == name)).first()
        if team is None:
            team = Team(name=name)
            self.session.add(team)
            self.session.flush()
        return team

    def upsert_mentor(self, external_id: str, display_name: str, team_id: Optional[int]) -> Mentor:
        mentor = self.session.exec(
            select(Mentor).where(Mentor.external_id == external_id)
        ).first()
        if mentor is None:
            mentor = Mentor(external_id=external_id, display_name=display_name, team_id=team_id)
        else:
            mentor.team_id = team_id
            mentor.display_name = display_name
        self.session.add(mentor)
        self.session.flush()
        return mentor

    def find_metric_record(self, mentor_id: int, period_date: date) -> Optional[MetricRecord]:
        return self.session.exec(
            select(MetricRecord).where(
                MetricRecord.mentor_id == mentor_id,
                MetricRecord.period_date == period_date,
            )
        ).first()

    def create_metric_record(self, record: MetricRecord) -> MetricRecord:
        self.session.add(record)
        self.session.flush()
        return record

    def update_metric_record(self, record: MetricRecord, fields: Dict[str, Any]) -> MetricRecord:
        for key, value in fields.items():
            setattr(record, key, value)
        record.updated_at = datetime.now(timezone.utc)
        self.session.add(record)
        self.session.flush()
        return record

    def add_ingestion_run(self, run: IngestionRun) -> IngestionRun:
        self.session.add(run)
        self.session.flush()
        return run

    def commit(self) -> None:
        self.session.commit()

    def rollback(self) -> None:
        self.session.rollback()
