"""Shared fixtures: in-memory databases, a fake metric store and workbook builders."""

import io
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from datetime import date
from typing import Any, Dict, List, Optional

import pytest
from openpyxl import Workbook
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from cmetrics.database import init_db
from cmetrics.etl.store import MetricStore
from cmetrics.models.entities import (
    IngestionRun,
    Mentor,
    MetricRecord,
    ScoringConfig,
    Team,
)
from cmetrics.models.etl_models import ParsedSheet, SheetSource


class InMemoryMetricStore(MetricStore):
    """MetricStore fake backed by dicts. Commit/rollback are counted, not real."""

    def __init__(self, with_config: bool = True, fail_on_mentor: Optional[str] = None):
        self.configs: List[ScoringConfig] = [ScoringConfig(id=1)] if with_config else []
        self.teams: Dict[str, Team] = {}
        self.mentors: Dict[str, Mentor] = {}
        self.records: Dict[tuple, MetricRecord] = {}
        self.runs: Dict[int, IngestionRun] = {}
        self.commits = 0
        self.rollbacks = 0
        self.fail_on_mentor = fail_on_mentor

    def get_scoring_config(self, team_id=None):
        for config in self.configs:
            if config.team_id == team_id:
                return config
        return None

    def upsert_team(self, name):
        if name not in self.teams:
            self.teams[name] = Team(id=len(self.teams) + 1, name=name)
        return self.teams[name]

    def upsert_mentor(self, external_id, display_name, team_id):
        if external_id == self.fail_on_mentor:
            raise RuntimeError("mentor table locked")
        mentor = self.mentors.get(external_id)
        if mentor is None:
            mentor = Mentor(id=len(self.mentors) + 1, external_id=external_id)
            self.mentors[external_id] = mentor
        mentor.display_name = display_name
        mentor.team_id = team_id
        return mentor

    def find_metric_record(self, mentor_id, period_date):
        return self.records.get((mentor_id, period_date))

    def create_metric_record(self, record):
        record.id = len(self.records) + 1
        self.records[(record.mentor_id, record.period_date)] = record
        return record

    def update_metric_record(self, record, fields):
        for key, value in fields.items():
            setattr(record, key, value)
        return record

    def add_ingestion_run(self, run):
        if run.id is None:
            run.id = len(self.runs) + 1
        self.runs[run.id] = run
        return run

    def commit(self):
        self.commits += 1

    def rollback(self):
        self.rollbacks += 1

    def mentor_record(self, external_id: str, period_date: date) -> Optional[MetricRecord]:
        mentor = self.mentors.get(external_id)
        return self.records.get((mentor.id, period_date)) if mentor else None


@pytest.fixture
def memory_store():
    return InMemoryMetricStore()


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture
def session(db_engine):
    with Session(db_engine) as session:
        yield session


# ── Sheet builders ──


def make_sheet(headers: List[str], rows: List[List[Any]], filename: str = "sheet.xlsx") -> ParsedSheet:
    """ParsedSheet with the header on the first spreadsheet row."""
    return ParsedSheet(
        filename=filename,
        headers=headers,
        rows=[dict(zip(headers, row)) for row in rows],
    )


def make_source(cells: List[List[Any]], filename: str = "sheet.xlsx", hint=None) -> SheetSource:
    return SheetSource(filename=filename, cells=cells, source_hint=hint)


def workbook_bytes(cells: List[List[Any]], title: str = "Sheet1") -> bytes:
    """Serialize a cell grid as an .xlsx workbook."""
    wb = Workbook()
    ws = wb.active
    ws.title = title
    for row in cells:
        ws.append(row)
    buffer = io.BytesIO()
    wb.save(buffer)
    return buffer.getvalue()


PERIOD = date(2025, 3, 10)
