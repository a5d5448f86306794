"""Tests for cross-source merge and validation"""

from datetime import date

import pytest

from cmetrics.core.metric_registry import SourceType
from cmetrics.etl.cleaners import checksum, week_of_month
from cmetrics.etl.merger import calculate_coverage, merge_all
from cmetrics.etl.validator import validate
from cmetrics.models.etl_models import CanonicalRow, MergedMetric, TransformResult

from conftest import PERIOD


def canonical(source, mentor, team=None, period=PERIOD, **metrics):
    return CanonicalRow(
        mentor_name=mentor,
        team_name=team,
        period_date=period,
        week_of_month=week_of_month(period),
        checksum=checksum(mentor, period),
        source_type=source,
        **metrics,
    )


def result(source, *rows):
    return TransformResult(source=source, file=f"{source.value.lower()}.xlsx", accepted=list(rows))


class TestMergeAll:
    def test_sources_fold_into_one_record(self):
        merged = merge_all(
            [
                result(SourceType.CC, canonical(SourceType.CC, "JANE DOE", cc_pct=75, sc_pct=10)),
                result(SourceType.UP, canonical(SourceType.UP, "JANE DOE", up_pct=22)),
            ]
        )
        assert len(merged.merged) == 1
        record = merged.merged[0]
        assert (record.cc_pct, record.sc_pct, record.up_pct) == (75, 10, 22)
        assert record.sources == [SourceType.CC, SourceType.UP]
        assert merged.mentor_count == 1

    def test_different_periods_stay_separate(self):
        merged = merge_all(
            [
                result(
                    SourceType.UP,
                    canonical(SourceType.UP, "JANE", up_pct=20, period=date(2025, 3, 3)),
                    canonical(SourceType.UP, "JANE", up_pct=25, period=date(2025, 3, 10)),
                )
            ]
        )
        assert len(merged.merged) == 2
        assert merged.mentor_count == 1

    def test_later_source_overwrites(self):
        merged = merge_all(
            [
                result(SourceType.CC, canonical(SourceType.CC, "JANE", cc_pct=70)),
                result(SourceType.CC, canonical(SourceType.CC, "JANE", cc_pct=90, sc_pct=12)),
            ]
        )
        record = merged.merged[0]
        assert record.cc_pct == 90
        assert record.sc_pct == 12
        assert record.sources == [SourceType.CC]

    def test_absent_field_does_not_erase(self):
        merged = merge_all(
            [
                result(SourceType.CC, canonical(SourceType.CC, "JANE", cc_pct=70, sc_pct=8)),
                result(SourceType.CC, canonical(SourceType.CC, "JANE", cc_pct=75)),
            ]
        )
        assert merged.merged[0].sc_pct == 8

    @pytest.mark.parametrize("teams_first", [False, True])
    def test_teams_file_is_authoritative(self, teams_first):
        cc = result(SourceType.CC, canonical(SourceType.CC, "JANE", team="ALPHA", cc_pct=80))
        teams = result(SourceType.TEAMS, canonical(SourceType.TEAMS, "JANE", team="BETA"))

        merged = merge_all([teams, cc] if teams_first else [cc, teams])

        assert merged.merged[0].team_name == "BETA"
        assert merged.team_mapping == {"JANE": "BETA"}

    def test_first_non_teams_source_supplies_team(self):
        merged = merge_all(
            [
                result(SourceType.CC, canonical(SourceType.CC, "JANE", cc_pct=80)),
                result(SourceType.UP, canonical(SourceType.UP, "JANE", team="ALPHA", up_pct=20)),
                result(SourceType.RE, canonical(SourceType.RE, "JANE", team="GAMMA", referral_leads=3)),
            ]
        )
        assert merged.merged[0].team_name == "ALPHA"

    def test_teams_rows_create_no_records(self):
        merged = merge_all(
            [result(SourceType.TEAMS, canonical(SourceType.TEAMS, "JANE", team="ALPHA"))]
        )
        assert merged.merged == []
        assert merged.coverage == {}
        assert merged.team_mapping == {"JANE": "ALPHA"}

    def test_coverage_by_family(self):
        merged = merge_all(
            [
                result(
                    SourceType.CC,
                    canonical(SourceType.CC, "A", cc_pct=80, sc_pct=10),
                    canonical(SourceType.CC, "B", cc_pct=80),
                    canonical(SourceType.CC, "C", cc_pct=80),
                ),
                result(SourceType.ALL_LEADS, canonical(SourceType.ALL_LEADS, "A", total_leads=5)),
            ]
        )
        assert merged.coverage == {
            "CC": 100,
            "SC": 33,
            "UP": 0,
            "Fixed": 0,
            "Referral": 0,
            "Leads": 33,
        }

    def test_empty_input(self):
        merged = merge_all([])
        assert merged.merged == []
        assert merged.coverage == {}
        assert merged.mentor_count == 0


def test_coverage_rounds_half_up():
    records = [
        MergedMetric(mentor_name="A", period_date=PERIOD, week_of_month=2, checksum="x", up_pct=1),
        MergedMetric(mentor_name="B", period_date=PERIOD, week_of_month=2, checksum="y", cc_pct=1),
    ]
    # 1 of 8 would be 12.5; here 1 of 2 is exactly 50
    assert calculate_coverage(records)["UP"] == 50
    eight = records + [
        MergedMetric(mentor_name=str(i), period_date=PERIOD, week_of_month=2, checksum=str(i), cc_pct=1)
        for i in range(6)
    ]
    assert calculate_coverage(eight)["UP"] == 13


def merged_metric(**fields):
    return MergedMetric(mentor_name="JANE", period_date=PERIOD, week_of_month=2, checksum="c", **fields)


class TestValidate:
    def test_valid_record(self):
        outcome = validate([merged_metric(cc_pct=80, fixed_pct=100, referral_leads=0)])
        assert len(outcome.valid) == 1
        assert outcome.invalid == []

    def test_no_metrics(self):
        outcome = validate([merged_metric(notes=["only a note"])])
        assert outcome.invalid[0].reason == "No metrics provided"

    def test_percentage_bounds(self):
        outcome = validate([merged_metric(cc_pct=201.0, fixed_pct=101.0, up_pct=-1.0, sc_pct=200.0)])
        assert outcome.invalid[0].reason == "Invalid CC%: 201.0; Invalid UP%: -1.0; Invalid Fixed%: 101.0"

    def test_negative_counts(self):
        outcome = validate([merged_metric(total_leads=-2, unrecovered_leads=-1)])
        reason = outcome.invalid[0].reason
        assert "Negative total leads" in reason
        assert "Negative unrecovered leads" in reason

    def test_records_judged_independently(self):
        outcome = validate([merged_metric(cc_pct=-5), merged_metric(cc_pct=50)])
        assert len(outcome.valid) == 1
        assert len(outcome.invalid) == 1
        assert outcome.invalid[0].mentor == "JANE"
