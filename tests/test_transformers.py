"""Tests for the per-source transformers"""

from datetime import date

import pytest

from cmetrics.core.metric_registry import SourceType
from cmetrics.etl.header_mapping import auto_map
from cmetrics.etl.transformers import (
    RowContext,
    auto_transform,
    cc_row,
    transform_all_leads,
    transform_cc,
    transform_fixed,
    transform_referral,
    transform_teams,
    transform_upgrade,
)
from cmetrics.models.etl_models import ParsedSheet

from conftest import PERIOD, make_sheet, make_source


class TestCommonContract:
    def test_empty_file_rejected_once(self):
        result = transform_cc(ParsedSheet(filename="cc.xlsx", headers=["Name", "CC"]))
        assert result.received == 0
        assert [(r.row, r.reason) for r in result.rejected] == [(0, "Empty file")]

    def test_summary_and_blank_rows_skipped_silently(self):
        sheet = make_sheet(
            ["Name", "CC", "SC"],
            [["Jane", 80, 10], ["Grand TOTAL", 75, 9], [None, 70, 8], ["John", 60, 5]],
        )
        result = transform_cc(sheet, default_period=PERIOD)
        assert [r.mentor_name for r in result.accepted] == ["JANE", "JOHN"]
        assert result.rejected == []
        assert result.received == 4

    def test_skip_keywords_are_configurable(self):
        sheet = make_sheet(["Name", "CC", "SC"], [["Total Recall", 80, 10], ["Subtotal", 1, 1]])
        result = transform_cc(sheet, default_period=PERIOD, skip_keywords=("subtotal",))
        assert [r.mentor_name for r in result.accepted] == ["TOTAL RECALL"]

    def test_unparseable_mentor_is_rejected(self):
        sheet = make_sheet(["Name", "CC"], [["???", 80]])
        result = transform_cc(sheet, default_period=PERIOD)
        assert result.rejected[0].reason == "Missing mentor name"
        assert result.rejected[0].row == 2

    def test_period_defaults_to_run_date(self):
        sheet = make_sheet(["Name", "Upgrade"], [["Jane", 22]])
        row = transform_upgrade(sheet, default_period=PERIOD).accepted[0]
        assert row.period_date == PERIOD
        assert row.week_of_month == 2

    def test_date_column_is_used(self):
        sheet = make_sheet(["Name", "Date", "Upgrade"], [["Jane", "2025-03-29", 22]])
        row = transform_upgrade(sheet, default_period=PERIOD).accepted[0]
        assert row.period_date == date(2025, 3, 29)
        assert row.week_of_month == 4

    def test_columns_reported(self):
        sheet = make_sheet(["CM Name", "CC", "SC"], [["Jane", 80, 10]])
        result = transform_cc(sheet, default_period=PERIOD)
        assert set(result.columns_detected) >= {"mentor_name", "cc_pct", "sc_pct"}
        assert result.columns_mapped["mentor_name"] == "CM Name"

    def test_row_error_becomes_rejection(self):
        class Exploding:
            def __str__(self):
                raise RuntimeError("boom")

        sheet = make_sheet(["Name", "CC"], [[Exploding(), 80], ["Jane", 80]])
        result = transform_cc(sheet, default_period=PERIOD)
        assert result.rejected[0].reason == "Transform error: boom"
        assert [r.mentor_name for r in result.accepted] == ["JANE"]


class TestForwardFill:
    def test_team_carries_to_following_rows(self):
        sheet = make_sheet(
            ["Team", "Name", "CC", "SC"],
            [["Alpha", "A1", 80, 10], [None, "A2", 70, 9], ["Beta", "B1", 60, 8], [None, "B2", 50, 7]],
        )
        result = transform_cc(sheet, default_period=PERIOD)
        assert [(r.mentor_name, r.team_name) for r in result.accepted] == [
            ("A1", "ALPHA"),
            ("A2", "ALPHA"),
            ("B1", "BETA"),
            ("B2", "BETA"),
        ]

    def test_row_function_is_pure(self):
        mapping = auto_map(["Team", "Name", "CC"], SourceType.CC)
        ctx = RowContext(mapping, PERIOD, ("total",))
        row = {"Team": None, "Name": "Jane", "CC": 80}

        first = cc_row(row, ctx, "ALPHA")
        second = cc_row(row, ctx, "BETA")
        assert first.row.team_name == "ALPHA"
        assert second.row.team_name == "BETA"
        assert first.current_team == "ALPHA"

    def test_rejected_rows_still_update_team(self):
        sheet = make_sheet(["Team", "Name", "CC"], [["Alpha", "A1", None], [None, "A2", 70]])
        result = transform_cc(sheet, default_period=PERIOD)
        assert result.rejected[0].reason == "Missing CC%"
        assert result.accepted[0].team_name == "ALPHA"


class TestCC:
    def test_values_cleaned(self):
        sheet = make_sheet(["Name", "CC", "SC"], [["Jane Doe", "75%", "0.1"]])
        row = transform_cc(sheet, default_period=PERIOD).accepted[0]
        assert row.cc_pct == 75
        assert row.sc_pct == 10
        assert row.source_type == SourceType.CC

    def test_sc_optional(self):
        sheet = make_sheet(["Name", "CC"], [["Jane", 0.8]])
        row = transform_cc(sheet, default_period=PERIOD).accepted[0]
        assert row.cc_pct == 80
        assert row.sc_pct is None


class TestUpgrade:
    def test_missing_upgrade_rejected(self):
        sheet = make_sheet(["Name", "Upgrade"], [["Jane", "n/a"]])
        result = transform_upgrade(sheet, default_period=PERIOD)
        assert result.rejected[0].reason == "Missing upgrade %"
        assert result.rejected[0].data == {"Name": "Jane", "Upgrade": "n/a"}


class TestReferral:
    def test_counts_and_ratio_achievement(self):
        sheet = make_sheet(
            ["CM Name", "leads", "leads ach%", "Show up", "Paid"],
            [["Jane", "12", "1.2", 5, 2], ["John", 3, "85%", None, None]],
        )
        result = transform_referral(sheet, default_period=PERIOD)
        jane, john = result.accepted

        assert jane.referral_leads == 12
        assert jane.referral_showups == 5
        assert jane.referral_paid == 2
        assert jane.referral_achievement_pct == pytest.approx(120)
        assert john.referral_achievement_pct == 85

    def test_achievement_of_two_or_less_is_ratio_even_with_percent(self):
        sheet = make_sheet(["Name", "Achievement"], [["Jane", "1%"]])
        row = transform_referral(sheet, default_period=PERIOD).accepted[0]
        assert row.referral_achievement_pct == 100

    def test_row_without_metrics_rejected(self):
        sheet = make_sheet(["Name", "leads", "Paid"], [["Jane", None, None]])
        result = transform_referral(sheet, default_period=PERIOD)
        assert result.rejected[0].reason == "No referral metrics"


class TestFixed:
    def test_student_level_layout(self):
        sheet = make_sheet(
            ["Student", "CM Name", "Fixed or Not"],
            [["s1", "Jane", 1], ["s2", "Jane", 0], ["s3", "Jane", 1], ["s4", "Jane", 1], ["s5", "John", "Yes"]],
        )
        result = transform_fixed(sheet, default_period=PERIOD)
        pct = {r.mentor_name: r.fixed_pct for r in result.accepted}
        assert pct == {"JANE": 75, "JOHN": 100}

    def test_aggregated_layout_sums_rows(self):
        sheet = make_sheet(
            ["Name", "Fixed Students", "Total Students"],
            [["Jane", 3, 5], ["Jane", 3, 5], ["John", 0, 0]],
        )
        result = transform_fixed(sheet, default_period=PERIOD)
        assert [(r.mentor_name, r.fixed_pct) for r in result.accepted] == [("JANE", 60)]
        assert result.rejected[0].reason == "Mentor JOHN has no total students"

    def test_precomputed_percent_layout(self):
        sheet = make_sheet(["Name", "Fixed Rate %"], [["Jane", "0.55"]])
        row = transform_fixed(sheet, default_period=PERIOD).accepted[0]
        assert row.fixed_pct == 55

    def test_total_column_alone_does_not_hide_precomputed_percent(self):
        sheet = make_sheet(["Name", "Fixed", "Students"], [["Jane", "55%", 20]])
        result = transform_fixed(sheet, default_period=PERIOD)
        assert [(r.mentor_name, r.fixed_pct) for r in result.accepted] == [("JANE", 55)]

    def test_total_column_without_any_fixed_value_is_rejected(self):
        sheet = make_sheet(["Name", "Total Students"], [["Jane", 20]])
        result = transform_fixed(sheet, default_period=PERIOD)
        assert result.accepted == []
        assert result.rejected[0].reason == "Mentor JANE has no fixed rate"

    def test_team_and_period_from_first_row(self):
        sheet = make_sheet(
            ["Name", "Team", "Date", "Fixed or Not"],
            [["Jane", "Alpha", "2025-03-03", 1], ["Jane", None, None, 0]],
        )
        row = transform_fixed(sheet, default_period=PERIOD).accepted[0]
        assert row.team_name == "ALPHA"
        assert row.period_date == date(2025, 3, 3)
        assert row.fixed_pct == 50


class TestAllLeads:
    def test_conversion_and_notes(self):
        sheet = make_sheet(
            ["Name", "Total Leads", "Recovered", "Notes"],
            [["Jane", 10, 4, "no answer | wrong number"]],
        )
        row = transform_all_leads(sheet, default_period=PERIOD).accepted[0]
        assert row.total_leads == 10
        assert row.recovered_leads == 4
        assert row.unrecovered_leads == 6
        assert row.conversion_pct == 40
        assert row.notes == ["no answer", "wrong number"]

    def test_zero_total_has_no_conversion(self):
        sheet = make_sheet(["Name", "Total Leads", "Recovered"], [["Jane", 0, 0]])
        row = transform_all_leads(sheet, default_period=PERIOD).accepted[0]
        assert row.conversion_pct is None

    def test_row_without_counts_rejected(self):
        sheet = make_sheet(["Name", "Total Leads", "Recovered"], [["Jane", None, ""]])
        result = transform_all_leads(sheet, default_period=PERIOD)
        assert result.rejected[0].reason == "No lead counts"


class TestTeams:
    def test_requires_mentor_and_team(self):
        sheet = make_sheet(["Mentor", "Team"], [["Jane", "Alpha"], ["John", None], [None, "Beta"]])
        result = transform_teams(sheet, default_period=PERIOD)
        assert [(r.mentor_name, r.team_name) for r in result.accepted] == [("JANE", "ALPHA")]
        assert [r.reason for r in result.rejected] == ["Missing mentor or team name"] * 2


class TestAutoTransform:
    def test_detects_and_finds_header_below_title(self):
        source = make_source(
            [
                ["Upgrade report", None],
                ["LP", "Cumulative Upgrade Rate"],
                ["Jane", "22%"],
            ],
            filename="up.xlsx",
        )
        result = auto_transform(source, default_period=PERIOD)
        assert result.source == SourceType.UP
        assert result.accepted[0].up_pct == 22
        assert result.accepted[0].mentor_name == "JANE"

    def test_hint_overrides_detection(self):
        source = make_source([["Name", "Score"], ["Jane", 80]], hint=SourceType.CC)
        result = auto_transform(source, {"ccPct": "Score"}, default_period=PERIOD)
        assert result.source == SourceType.CC
        assert result.accepted[0].cc_pct == 80

    def test_undetected_returns_none(self):
        assert auto_transform(make_source([["foo", "bar"], [1, 2]])) is None
        assert auto_transform(make_source([])) is None

    def test_rejection_rows_point_at_spreadsheet_rows(self):
        source = make_source(
            [["Title"], ["Name", "Upgrade"], ["Jane", 22], ["John", "?"]],
            hint=SourceType.UP,
        )
        result = auto_transform(source, default_period=PERIOD)
        assert result.rejected[0].row == 4
