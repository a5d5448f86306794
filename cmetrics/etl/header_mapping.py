"""CMetrics — Header Mapping & Source Detection.

Maps the free-form column labels of an export onto canonical field names, and
guesses which source layout a sheet follows from its header signature.
"""

import re
from typing import Dict, List, Optional, Sequence, Tuple

from cmetrics.core.metric_registry import SourceType
from cmetrics.etl.cleaners import normalize_header
from cmetrics.models.etl_models import ColumnMapping
from cmetrics.core.logging import get_logger

logger = get_logger("etl.headers")

# Ordered variants per canonical field; the first one found in a sheet wins.
FIELD_VARIANTS: Dict[str, List[str]] = {
    # ── Identity ──
    "mentor_name": [
        "mentor_name", "name", "mentor", "employee", "cm_name", "full_name", "cm",
        "agent_name", "last_cm_name", "lp", "lp_employee",
    ],
    "team_name": [
        "team", "team_name", "teamname", "subgroup", "sub_group", "group",
        "last_cm_team", "lp_group",
    ],
    "period_date": ["date", "period", "period_date", "day", "date_recorded", "month", "week"],
    # ── CC ──
    "cc_pct": [
        "cc", "cc_pct", "cc%", "class_consumption", "consumption_%", "consumption_pct",
        "class_consumption_%", "class_consumption_pct", "class_consumption_percentage",
        ">=12", "number_of_finished_students_>=12_class_consumption",
    ],
    "sc_pct": [
        "sc", "sc_pct", "sc%", "super_cc", "scc_%", "super_consumption", "super_class",
        "super_class_%", "super_class_pct", "m1-m4_super_class_consumption", "m1-m4_scc",
        "super_class_consumption",
    ],
    # ── UP ──
    "up_pct": [
        "up", "up_pct", "up%", "upgrade", "upgrade_%", "upgrade_pct",
        "cumulative_upgrade_rate", "upgrade_rate", "cumulative_upgrade_rate_%",
        "m-2_cumulative_upgrade_rate", "m2_cumulative_upgrade_rate",
    ],
    # ── FIXED ──
    "fixed_pct": ["fixed", "fixed_pct", "fixed%", "fixed_rate", "fixed_rate_%"],
    "fixed_students": ["fixed_students", "fixed_count", "fixed_plans", "number_of_fixed_plans"],
    "total_students": ["total_students", "total", "student_count", "students"],
    "fixed_or_not": ["fixed_or_not", "is_fixed", "isfixed"],
    # ── RE ──
    "referral_leads": [
        "leads", "referral_leads", "total_referrals", "referrals", "referral_lead_generated",
    ],
    "referral_showups": [
        "showups", "referral_showups", "appointments", "shows", "show_ups",
        "referral_show_ups", "show_up", "show_up_%",
    ],
    "referral_paid": ["paid", "referral_paid", "conversions", "converted", "referral_conversions"],
    "referral_achievement_pct": [
        "achievement", "achievement%", "achievement_pct", "referral_achievement",
        "referral_achievement_%", "referral_achievement_pct", "leads_ach%", "leads_ach_pct",
    ],
    # ── ALL_LEADS ──
    "total_leads": ["total", "all_leads", "total_leads", "total_lead_generated", "lead_count"],
    "recovered_leads": ["recovered", "recovered_leads", "recovered_count", "successful_recovery"],
    "unrecovered_leads": [
        "unrecovered", "unrecovered_leads", "unrecovered_count", "failed_recovery",
    ],
    "notes": ["notes", "unrecovered_notes", "comments", "recovery_notes", "student_notes"],
}

# Each entry is an any-of group; a group is satisfied when one field maps.
REQUIRED_FIELDS: Dict[SourceType, List[Tuple[str, ...]]] = {
    SourceType.CC: [("cc_pct",)],
    SourceType.FIXED: [("fixed_or_not", "total_students", "fixed_pct")],
    SourceType.UP: [("up_pct",)],
    SourceType.RE: [("referral_leads",)],
    SourceType.ALL_LEADS: [("total_leads",)],
    SourceType.TEAMS: [("team_name",)],
}

TEAMS_MAX_COLUMNS = 5

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])([A-Z])")
_PLACEHOLDER_PREFIX = "__EMPTY"


def to_field_name(key: str) -> str:
    """Accept override keys in camelCase ("ccPct") as well as snake_case."""
    return _CAMEL_BOUNDARY.sub(r"_\1", key.strip()).lower()


def required_groups(source_hint: Optional[SourceType]) -> List[Tuple[str, ...]]:
    groups: List[Tuple[str, ...]] = [("mentor_name",)]
    if source_hint is not None:
        groups.extend(REQUIRED_FIELDS.get(source_hint, []))
    return groups


def _apply_overrides(
    headers: Sequence[str],
    normalized: List[str],
    overrides: Dict[str, str],
) -> Dict[str, str]:
    resolved: Dict[str, str] = {}
    for key, column in overrides.items():
        field_name = to_field_name(key)
        if field_name not in FIELD_VARIANTS:
            logger.warning(f"Ignoring override for unknown field '{key}'")
            continue
        target = normalize_header(column)
        if target not in normalized:
            logger.warning(f"Override column '{column}' for '{field_name}' not found in sheet")
            continue
        resolved[field_name] = headers[normalized.index(target)]
    return resolved


def auto_map(
    headers: Sequence[str],
    source_hint: Optional[SourceType] = None,
    overrides: Optional[Dict[str, str]] = None,
) -> ColumnMapping:
    """Infer which column holds each canonical field.

    Explicit overrides win. Otherwise the first variant whose normalized form
    equals a normalized header is taken. Missing required fields are reported
    in unmapped_required_fields and are never fatal here.
    """
    headers = [str(h) if h is not None else "" for h in headers]
    normalized = [normalize_header(h) for h in headers]
    forced = _apply_overrides(headers, normalized, overrides or {})

    mapping: Dict[str, str] = {}
    for field_name, variants in FIELD_VARIANTS.items():
        if field_name in forced:
            mapping[field_name] = forced[field_name]
            continue
        for variant in variants:
            target = normalize_header(variant)
            if target and target in normalized:
                mapping[field_name] = headers[normalized.index(target)]
                break

    unmapped = [
        "|".join(group)
        for group in required_groups(source_hint)
        if not any(f in mapping for f in group)
    ]

    return ColumnMapping(
        mapping=mapping,
        detected_fields=list(mapping.keys()),
        unmapped_required_fields=unmapped,
    )


# ─────────────────────────────────────────────
# SOURCE DETECTION
# ─────────────────────────────────────────────


def _has_cc(h: str) -> bool:
    return (
        ("class_consumption" in h and "super" not in h)
        or "cc_pct" in h
        or h in ("cc", "12")
    )


def _has_sc(h: str) -> bool:
    return (
        "super_cc" in h
        or "sc_pct" in h
        or "super_class" in h
        or "super_consumption" in h
        or h in ("sc", "scc", "scc_", "m1m4_scc")
    )


def _has_upgrade(h: str) -> bool:
    return "upgrade" in h or h in ("up", "up_pct")


def _has_referral(h: str) -> bool:
    return (
        "referral" in h
        or "showup" in h
        or "show_up" in h
        or "achievement" in h
        or "leads_ach" in h
        or h == "leads"
    )


def _has_fixed(h: str) -> bool:
    return "fixed" in h


def _has_leads(h: str) -> bool:
    return "recovered" in h or "all_leads" in h or h == "total_leads"


def _has_team(h: str) -> bool:
    return "team" in h or "subgroup" in h


def detect_source_type(headers: Sequence[str]) -> Optional[SourceType]:
    """Guess the source layout from header signatures, in fixed priority order."""
    labels = [
        str(h) for h in headers
        if h is not None and str(h).strip() and not str(h).startswith(_PLACEHOLDER_PREFIX)
    ]
    normalized = [normalize_header(h) for h in labels]

    def any_of(predicate) -> bool:
        return any(predicate(h) for h in normalized)

    if any_of(_has_cc) and any_of(_has_sc):
        return SourceType.CC
    if any_of(_has_upgrade):
        return SourceType.UP
    if any_of(_has_referral):
        return SourceType.RE
    if any_of(_has_fixed):
        return SourceType.FIXED
    if any_of(_has_leads):
        return SourceType.ALL_LEADS
    if any_of(_has_team) and len(labels) <= TEAMS_MAX_COLUMNS:
        return SourceType.TEAMS
    return None
