"""Tests for idempotent persistence through the metric store"""

import json
from datetime import date

from sqlmodel import select

from cmetrics.core.metric_registry import SourceType
from cmetrics.etl.cleaners import checksum
from cmetrics.etl.persistence import persist_metrics
from cmetrics.etl.store import SQLMetricStore
from cmetrics.models.entities import Mentor, MetricRecord, Team
from cmetrics.models.etl_models import MergedMetric

from conftest import PERIOD, InMemoryMetricStore


def merged(mentor="JANE DOE", team=None, period=PERIOD, **metrics):
    return MergedMetric(
        mentor_name=mentor,
        team_name=team,
        period_date=period,
        week_of_month=2,
        checksum=checksum(mentor, period),
        sources=[SourceType.CC],
        **metrics,
    )


class TestPersistMetrics:
    def test_creates_mentor_team_and_record(self, memory_store):
        result = persist_metrics([merged(team="ALPHA", cc_pct=80.0)], memory_store, ingestion_run_id=7)

        assert result.created == 1
        assert set(memory_store.teams) == {"ALPHA", "UNASSIGNED"}
        mentor = memory_store.mentors["JANE DOE"]
        assert mentor.team_id == memory_store.teams["ALPHA"].id
        record = memory_store.mentor_record("JANE DOE", PERIOD)
        assert record.cc_pct == 80
        assert record.ingestion_run_id == 7
        assert [o.action for o in result.outcomes] == ["created"]

    def test_mentor_without_team_is_unassigned(self, memory_store):
        persist_metrics([merged(cc_pct=80.0)], memory_store)
        assert memory_store.mentors["JANE DOE"].team_id == memory_store.teams["UNASSIGNED"].id

    def test_file_team_named_like_fallback_reuses_it(self, memory_store):
        persist_metrics(
            [merged(team="UNASSIGNED", cc_pct=80.0), merged(mentor="JOHN", cc_pct=70.0)],
            memory_store,
            unassigned_team="Unassigned",
        )

        assert set(memory_store.teams) == {"UNASSIGNED"}
        assert memory_store.mentors["JANE DOE"].team_id == memory_store.mentors["JOHN"].team_id

    def test_second_run_skips_duplicates(self, memory_store):
        batch = [merged(cc_pct=80.0), merged(mentor="JOHN", up_pct=20.0)]
        first = persist_metrics(batch, memory_store)
        second = persist_metrics(batch, memory_store)

        assert (first.created, first.updated, first.skipped_duplicate) == (2, 0, 0)
        assert (second.created, second.updated, second.skipped_duplicate) == (0, 0, 2)
        assert len(memory_store.records) == 2

    def test_changed_checksum_updates_fields_in_place(self, memory_store):
        persist_metrics([merged(cc_pct=80.0, sc_pct=9.0)], memory_store)
        record = memory_store.mentor_record("JANE DOE", PERIOD)
        record.checksum = "stale"

        result = persist_metrics([merged(cc_pct=85.0, notes=["called twice"])], memory_store)

        assert result.updated == 1
        assert record.cc_pct == 85
        assert record.sc_pct == 9  # untouched
        assert json.loads(record.notes_json) == ["called twice"]
        assert record.checksum == checksum("JANE DOE", PERIOD)

    def test_team_reassigned_on_later_upload(self, memory_store):
        persist_metrics([merged(team="ALPHA", cc_pct=80.0)], memory_store)
        persist_metrics([merged(team="BETA", cc_pct=80.0, period=date(2025, 3, 17))], memory_store)
        assert memory_store.mentors["JANE DOE"].team_id == memory_store.teams["BETA"].id

    def test_mentor_failure_is_isolated(self):
        store = InMemoryMetricStore(fail_on_mentor="BROKEN")
        result = persist_metrics([merged(mentor="BROKEN", cc_pct=1.0), merged(cc_pct=80.0)], store)

        assert result.created == 1
        assert len(result.errors) == 1
        assert result.errors[0].mentor == "BROKEN"
        assert "mentor table locked" in result.errors[0].reason
        assert store.rollbacks == 1
        assert [o.action for o in result.outcomes] == ["error", "created"]


class TestSQLMetricStore:
    def test_round_trip_and_idempotence(self, session):
        store = SQLMetricStore(session)
        batch = [merged(team="ALPHA", cc_pct=80.0, notes=["a"]), merged(mentor="JOHN", fixed_pct=60.0)]

        first = persist_metrics(batch, store)
        second = persist_metrics(batch, store)

        assert first.created == 2
        assert second.skipped_duplicate == 2
        assert len(session.exec(select(MetricRecord)).all()) == 2
        assert {t.name for t in session.exec(select(Team)).all()} == {"ALPHA", "UNASSIGNED"}

        mentor = session.exec(select(Mentor).where(Mentor.external_id == "JANE DOE")).one()
        assert mentor.display_name == "Jane Doe"
        record = store.find_metric_record(mentor.id, PERIOD)
        assert json.loads(record.notes_json) == ["a"]

    def test_global_scoring_config_seeded(self, session):
        config = SQLMetricStore(session).get_scoring_config()
        assert config is not None
        assert config.cc_target == 80
        assert config.team_id is None
