"""CMetrics — Source Transformers.

One transform per source layout. Each turns a ParsedSheet into CanonicalRows
plus per-row rejections. A bad row never aborts its file.

Row-level transforms are pure: the forward-filled team name is threaded
through as an explicit `current_team` accumulator and handed back alongside
the row outcome.
"""

from datetime import date
from typing import Callable, Dict, NamedTuple, Optional, Sequence

from cmetrics.core.metric_registry import SourceType
from cmetrics.etl.cleaners import (
    checksum,
    clean_int,
    clean_numeric,
    clean_percent,
    normalize_name,
    parse_date,
    parse_notes,
    week_of_month,
)
from cmetrics.etl.header_mapping import auto_map, detect_source_type
from cmetrics.etl.reader import build_sheet, locate_header_row
from cmetrics.models.etl_models import (
    CanonicalRow,
    ColumnMapping,
    ParsedSheet,
    RawRow,
    RowRejection,
    SheetSource,
    TransformResult,
)
from cmetrics.core.logging import get_logger

logger = get_logger("etl.transformers")

DEFAULT_SKIP_KEYWORDS = ("total",)


class RowOutcome(NamedTuple):
    """Result of transforming one raw row."""

    row: Optional[CanonicalRow] = None
    reason: Optional[str] = None
    current_team: Optional[str] = None
    skipped: bool = False


class RowContext(NamedTuple):
    mapping: ColumnMapping
    default_period: date
    skip_keywords: Sequence[str]


RowFn = Callable[[RawRow, RowContext, Optional[str]], RowOutcome]


# ─────────────────────────────────────────────
# SHARED ROW HELPERS
# ─────────────────────────────────────────────


def _is_blank(value) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def is_summary_row(raw_name, skip_keywords: Sequence[str]) -> bool:
    """True for an empty mentor cell or a summary line such as "Grand Total"."""
    if _is_blank(raw_name):
        return True
    text = str(raw_name).lower()
    return any(keyword.lower() in text for keyword in skip_keywords if keyword)


def _period(row: RawRow, ctx: RowContext) -> date:
    return parse_date(ctx.mapping.value(row, "period_date")) or ctx.default_period


def _team(row: RawRow, ctx: RowContext, current_team: Optional[str]) -> Optional[str]:
    """Forward-fill: a populated team cell replaces the running team."""
    team = normalize_name(ctx.mapping.value(row, "team_name"))
    return team or current_team


def _canonical(
    source: SourceType,
    mentor: str,
    team: Optional[str],
    period: date,
    **metrics,
) -> CanonicalRow:
    return CanonicalRow(
        mentor_name=mentor,
        team_name=team or None,
        period_date=period,
        week_of_month=week_of_month(period),
        checksum=checksum(mentor, period),
        source_type=source,
        **metrics,
    )


def _new_result(source: SourceType, sheet: ParsedSheet, mapping: ColumnMapping) -> TransformResult:
    if mapping.unmapped_required_fields:
        logger.warning(
            f"{source.value} file {sheet.filename}: unable to map required fields: "
            f"{', '.join(mapping.unmapped_required_fields)}",
            extra={"source": source.value, "file": sheet.filename},
        )
    return TransformResult(
        source=source,
        file=sheet.filename,
        received=len(sheet.rows),
        columns_detected=list(mapping.detected_fields),
        columns_mapped=dict(mapping.mapping),
    )


def _empty_result(source: SourceType, sheet: ParsedSheet) -> TransformResult:
    return TransformResult(
        source=source,
        file=sheet.filename,
        received=0,
        rejected=[RowRejection(row=0, reason="Empty file")],
    )


def _json_safe_value(value):
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, date):
        return value.isoformat()
    return repr(value)


def _json_safe(row: RawRow) -> Dict[str, object]:
    return {k: _json_safe_value(v) for k, v in row.items()}


def _run_rows(
    source: SourceType,
    sheet: ParsedSheet,
    overrides: Optional[Dict[str, str]],
    row_fn: RowFn,
    default_period: Optional[date],
    skip_keywords: Sequence[str],
) -> TransformResult:
    """Fold row_fn over every row, threading the running team name."""
    if not sheet.rows:
        return _empty_result(source, sheet)

    mapping = auto_map(sheet.headers, source, overrides)
    result = _new_result(source, sheet, mapping)
    ctx = RowContext(mapping, default_period or date.today(), tuple(skip_keywords))

    current_team: Optional[str] = None
    for index, row in enumerate(sheet.rows):
        try:
            outcome = row_fn(row, ctx, current_team)
        except Exception as e:
            result.rejected.append(
                RowRejection(
                    row=sheet.row_number(index),
                    reason=f"Transform error: {e}",
                    data=_json_safe(row),
                )
            )
            continue

        current_team = outcome.current_team
        if outcome.skipped:
            continue
        if outcome.row is not None:
            result.accepted.append(outcome.row)
        else:
            result.rejected.append(
                RowRejection(
                    row=sheet.row_number(index),
                    reason=outcome.reason or "Rejected",
                    data=_json_safe(row),
                )
            )

    logger.info(
        f"{source.value} {sheet.filename}: {len(result.accepted)} accepted, "
        f"{len(result.rejected)} rejected of {result.received}",
        extra={"source": source.value, "file": sheet.filename, "rows": result.received},
    )
    return result


def _mentor_or_outcome(row: RawRow, ctx: RowContext, current_team: Optional[str]):
    """Return (mentor, None) or (None, outcome) for skip/reject."""
    raw_name = ctx.mapping.value(row, "mentor_name")
    if is_summary_row(raw_name, ctx.skip_keywords):
        return None, RowOutcome(current_team=current_team, skipped=True)
    mentor = normalize_name(raw_name)
    if not mentor:
        return None, RowOutcome(reason="Missing mentor name", current_team=current_team)
    return mentor, None


# ─────────────────────────────────────────────
# ROW TRANSFORMS — one per forward-filled source
# ─────────────────────────────────────────────


def cc_row(row: RawRow, ctx: RowContext, current_team: Optional[str]) -> RowOutcome:
    mentor, early = _mentor_or_outcome(row, ctx, current_team)
    if early is not None:
        return early
    team = _team(row, ctx, current_team)

    cc_pct = clean_percent(ctx.mapping.value(row, "cc_pct"))
    if cc_pct is None:
        return RowOutcome(reason="Missing CC%", current_team=team)
    sc_pct = clean_percent(ctx.mapping.value(row, "sc_pct"))

    canonical = _canonical(
        SourceType.CC, mentor, team, _period(row, ctx), cc_pct=cc_pct, sc_pct=sc_pct
    )
    return RowOutcome(row=canonical, current_team=team)


def upgrade_row(row: RawRow, ctx: RowContext, current_team: Optional[str]) -> RowOutcome:
    mentor, early = _mentor_or_outcome(row, ctx, current_team)
    if early is not None:
        return early
    team = _team(row, ctx, current_team)

    up_pct = clean_percent(ctx.mapping.value(row, "up_pct"))
    if up_pct is None:
        return RowOutcome(reason="Missing upgrade %", current_team=team)

    canonical = _canonical(SourceType.UP, mentor, team, _period(row, ctx), up_pct=up_pct)
    return RowOutcome(row=canonical, current_team=team)


def _achievement(raw) -> Optional[float]:
    """Referral achievement: anything ≤ 2 is a ratio, even with a "%" sign."""
    number = clean_numeric(raw)
    if number is None:
        return None
    if number <= 2:
        return round(number * 100, 6)
    return clean_percent(raw)


def referral_row(row: RawRow, ctx: RowContext, current_team: Optional[str]) -> RowOutcome:
    mentor, early = _mentor_or_outcome(row, ctx, current_team)
    if early is not None:
        return early
    team = _team(row, ctx, current_team)

    metrics = {
        "referral_leads": clean_int(ctx.mapping.value(row, "referral_leads")),
        "referral_showups": clean_int(ctx.mapping.value(row, "referral_showups")),
        "referral_paid": clean_int(ctx.mapping.value(row, "referral_paid")),
        "referral_achievement_pct": _achievement(
            ctx.mapping.value(row, "referral_achievement_pct")
        ),
    }
    if all(v is None for v in metrics.values()):
        return RowOutcome(reason="No referral metrics", current_team=team)

    canonical = _canonical(SourceType.RE, mentor, team, _period(row, ctx), **metrics)
    return RowOutcome(row=canonical, current_team=team)


def leads_row(row: RawRow, ctx: RowContext, current_team: Optional[str]) -> RowOutcome:
    mentor, early = _mentor_or_outcome(row, ctx, current_team)
    if early is not None:
        return early
    team = _team(row, ctx, current_team)

    total = clean_int(ctx.mapping.value(row, "total_leads"))
    recovered = clean_int(ctx.mapping.value(row, "recovered_leads"))
    unrecovered = clean_int(ctx.mapping.value(row, "unrecovered_leads"))
    if total is None and recovered is None and unrecovered is None:
        return RowOutcome(reason="No lead counts", current_team=team)

    if unrecovered is None and total is not None and recovered is not None:
        unrecovered = total - recovered

    conversion = None
    if total is not None and total > 0 and recovered is not None:
        conversion = round(recovered / total * 100, 6)

    notes = parse_notes(ctx.mapping.value(row, "notes")) or None

    canonical = _canonical(
        SourceType.ALL_LEADS,
        mentor,
        team,
        _period(row, ctx),
        total_leads=total,
        recovered_leads=recovered,
        unrecovered_leads=unrecovered,
        conversion_pct=conversion,
        notes=notes,
    )
    return RowOutcome(row=canonical, current_team=team)


def teams_row(row: RawRow, ctx: RowContext, current_team: Optional[str]) -> RowOutcome:
    raw_name = ctx.mapping.value(row, "mentor_name")
    raw_team = ctx.mapping.value(row, "team_name")
    if not _is_blank(raw_name) and is_summary_row(raw_name, ctx.skip_keywords):
        return RowOutcome(skipped=True)

    mentor = normalize_name(raw_name)
    team = normalize_name(raw_team)
    if not mentor or not team:
        return RowOutcome(reason="Missing mentor or team name")

    # Team membership is not time-specific; the run date stands in.
    canonical = _canonical(SourceType.TEAMS, mentor, team, ctx.default_period)
    return RowOutcome(row=canonical)


# ─────────────────────────────────────────────
# FILE TRANSFORMS
# ─────────────────────────────────────────────


def transform_cc(sheet, overrides=None, *, default_period=None, skip_keywords=DEFAULT_SKIP_KEYWORDS):
    """Class consumption: requires CC%, SC% optional."""
    return _run_rows(SourceType.CC, sheet, overrides, cc_row, default_period, skip_keywords)


def transform_upgrade(sheet, overrides=None, *, default_period=None, skip_keywords=DEFAULT_SKIP_KEYWORDS):
    """Upgrade rate: requires UP%."""
    return _run_rows(SourceType.UP, sheet, overrides, upgrade_row, default_period, skip_keywords)


def transform_referral(sheet, overrides=None, *, default_period=None, skip_keywords=DEFAULT_SKIP_KEYWORDS):
    """Referral funnel: leads, show-ups, paid and achievement %."""
    return _run_rows(SourceType.RE, sheet, overrides, referral_row, default_period, skip_keywords)


def transform_all_leads(sheet, overrides=None, *, default_period=None, skip_keywords=DEFAULT_SKIP_KEYWORDS):
    """Lead recovery: counts, conversion % and notes."""
    return _run_rows(SourceType.ALL_LEADS, sheet, overrides, leads_row, default_period, skip_keywords)


def transform_teams(sheet, overrides=None, *, default_period=None, skip_keywords=DEFAULT_SKIP_KEYWORDS):
    """Mentor → team mapping. Authoritative for the merger."""
    return _run_rows(SourceType.TEAMS, sheet, overrides, teams_row, default_period, skip_keywords)


_FIXED_TRUE = {"1", "yes", "y", "true", "fixed"}


def _is_fixed(value) -> bool:
    number = clean_int(value)
    if number is not None:
        return number == 1
    return str(value).strip().lower() in _FIXED_TRUE if value is not None else False


class _FixedTally:
    def __init__(self, first_row: int):
        self.first_row = first_row
        self.fixed = 0
        self.total = 0
        self.precomputed: Optional[float] = None
        self.team: Optional[str] = None
        self.period: Optional[date] = None


def transform_fixed(sheet, overrides=None, *, default_period=None, skip_keywords=DEFAULT_SKIP_KEYWORDS):
    """Fixed plan rate, aggregated per mentor.

    Layouts, in order of preference:
      - student-level: one row per student with a 1/0 "Fixed or Not" column
      - aggregated: fixed-student and total-student count columns (the
        fixed count must be present; a lone total column is ignored)
      - precomputed: a fixed % column per mentor
    """
    source = SourceType.FIXED
    if not sheet.rows:
        return _empty_result(source, sheet)

    mapping = auto_map(sheet.headers, source, overrides)
    result = _new_result(source, sheet, mapping)
    period_default = default_period or date.today()

    student_level = mapping.has("fixed_or_not")
    aggregated = mapping.has("fixed_students")

    tallies: Dict[str, _FixedTally] = {}
    for index, row in enumerate(sheet.rows):
        raw_name = mapping.value(row, "mentor_name")
        if is_summary_row(raw_name, skip_keywords):
            continue
        mentor = normalize_name(raw_name)
        if not mentor:
            result.rejected.append(
                RowRejection(row=sheet.row_number(index), reason="Missing mentor name", data=_json_safe(row))
            )
            continue

        tally = tallies.setdefault(mentor, _FixedTally(sheet.row_number(index)))
        tally.team = tally.team or normalize_name(mapping.value(row, "team_name")) or None
        tally.period = tally.period or parse_date(mapping.value(row, "period_date"))

        if student_level:
            tally.total += 1
            if _is_fixed(mapping.value(row, "fixed_or_not")):
                tally.fixed += 1
        elif aggregated:
            tally.fixed += clean_int(mapping.value(row, "fixed_students")) or 0
            tally.total += clean_int(mapping.value(row, "total_students")) or 0
        else:
            value = clean_percent(mapping.value(row, "fixed_pct"))
            if value is not None:
                tally.precomputed = value

    for mentor, tally in tallies.items():
        if student_level or aggregated:
            if tally.total == 0:
                result.rejected.append(
                    RowRejection(row=tally.first_row, reason=f"Mentor {mentor} has no total students")
                )
                continue
            fixed_pct = round(tally.fixed / tally.total * 100, 6)
        elif tally.precomputed is not None:
            fixed_pct = tally.precomputed
        else:
            result.rejected.append(RowRejection(row=tally.first_row, reason=f"Mentor {mentor} has no fixed rate"))
            continue

        result.accepted.append(
            _canonical(source, mentor, tally.team, tally.period or period_default, fixed_pct=fixed_pct)
        )

    logger.info(
        f"FIXED {sheet.filename}: {len(result.accepted)} mentors from {result.received} rows",
        extra={"source": source.value, "file": sheet.filename, "rows": result.received},
    )
    return result


TRANSFORMERS: Dict[SourceType, Callable[..., TransformResult]] = {
    SourceType.CC: transform_cc,
    SourceType.FIXED: transform_fixed,
    SourceType.UP: transform_upgrade,
    SourceType.RE: transform_referral,
    SourceType.ALL_LEADS: transform_all_leads,
    SourceType.TEAMS: transform_teams,
}


def auto_transform(
    source: SheetSource,
    overrides: Optional[Dict[str, str]] = None,
    *,
    default_period: Optional[date] = None,
    skip_keywords: Sequence[str] = DEFAULT_SKIP_KEYWORDS,
    header_scan_rows: int = 10,
) -> Optional[TransformResult]:
    """Locate the header row, detect (or accept the hinted) layout and transform.

    Returns None when the layout cannot be determined.
    """
    if not source.cells:
        if source.source_hint is not None:
            return _empty_result(source.source_hint, ParsedSheet(source.filename, []))
        return None

    header_row = locate_header_row(source.cells, header_scan_rows, source.source_hint)
    sheet = build_sheet(source, header_row)
    source_type = source.source_hint or detect_source_type(sheet.headers)

    if source_type is None:
        logger.warning(
            f"Unable to detect source type for {source.filename} (header row {header_row + 1})",
            extra={"file": source.filename},
        )
        return None

    logger.info(
        f"Detected {source_type.value} for {source.filename} (header row {header_row + 1})",
        extra={"source": source_type.value, "file": source.filename},
    )
    transform = TRANSFORMERS[source_type]
    return transform(
        sheet, overrides, default_period=default_period, skip_keywords=skip_keywords
    )
