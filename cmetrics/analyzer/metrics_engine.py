"""CMetrics — Metrics Engine.

Scores a mentor's core metrics against targets:
  weighted score = Σ clamp(actual / target, 0, 1.5) × weight
over CC, SC, UP and Fixed, with ABOVE / WARNING / BELOW status derived from
the share of total weight achieved. Monthly targets can be paced by week.
"""

from enum import Enum
from typing import Any, Dict, Mapping, Optional, Union

from pydantic import BaseModel

from cmetrics.core.metric_registry import CORE_METRICS

MAX_TARGET_RATIO = 1.5

# Week-of-month → divisor applied to a monthly target
PACING_DIVISORS = {1: 4, 2: 3, 3: 2, 4: 1}

# metric field → (target attribute, weight attribute)
CORE_TARGETS = {
    "cc_pct": ("cc_target", "cc_weight"),
    "sc_pct": ("sc_target", "sc_weight"),
    "up_pct": ("up_target", "up_weight"),
    "fixed_pct": ("fixed_target", "fixed_weight"),
}


class Status(str, Enum):
    ABOVE = "ABOVE"
    WARNING = "WARNING"
    BELOW = "BELOW"


class TargetConfig(BaseModel):
    """Targets (0-100 scale), status thresholds and score weights."""

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

    @classmethod
    def from_config(cls, config: Any) -> "TargetConfig":
        """Build from any object carrying the same attributes (e.g. ScoringConfig)."""
        return cls(**{name: getattr(config, name) for name in cls.model_fields if hasattr(config, name)})

    @property
    def total_weight(self) -> float:
        return self.cc_weight + self.sc_weight + self.up_weight + self.fixed_weight


class MentorScore(BaseModel):
    weighted_score: float
    completion_ratio: float
    status: Status
    targets_hit: int
    week_of_month: Optional[int] = None
    targets: TargetConfig


MetricSource = Union[Mapping[str, Any], Any]


def _actual(metrics: MetricSource, name: str) -> Optional[float]:
    if isinstance(metrics, Mapping):
        return metrics.get(name)
    return getattr(metrics, name, None)


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def weighted_score(metrics: MetricSource, targets: TargetConfig) -> float:
    """Σ clamp(actual/target, 0, 1.5) × weight over the core metrics.

    An absent actual contributes nothing, as does a non-positive target.
    """
    score = 0.0
    for name in CORE_METRICS:
        target_attr, weight_attr = CORE_TARGETS[name]
        actual = _actual(metrics, name)
        target = getattr(targets, target_attr)
        if actual is None or target <= 0:
            continue
        score += _clamp(actual / target, 0, MAX_TARGET_RATIO) * getattr(targets, weight_attr)
    return score


def completion_ratio(score: float, targets: TargetConfig) -> float:
    total = targets.total_weight
    return score / total if total > 0 else 0.0


def status(score: float, targets: TargetConfig) -> Status:
    """ABOVE at ≥ above_threshold% of total weight, WARNING at ≥ warning_threshold%."""
    if targets.total_weight <= 0:
        return Status.BELOW
    ratio = completion_ratio(score, targets)
    if ratio >= targets.above_threshold / 100:
        return Status.ABOVE
    if ratio >= targets.warning_threshold / 100:
        return Status.WARNING
    return Status.BELOW


def targets_hit(metrics: MetricSource, targets: TargetConfig) -> int:
    """How many core metrics are present and at or above target (0-4)."""
    hit = 0
    for name in CORE_METRICS:
        actual = _actual(metrics, name)
        if actual is not None and actual >= getattr(targets, CORE_TARGETS[name][0]):
            hit += 1
    return hit


def pacing_divisor(week_of_month: int) -> int:
    return PACING_DIVISORS.get(week_of_month, 1)


def paced_target(monthly_target: float, week_of_month: int) -> float:
    """Week 1 expects a quarter of the monthly target, week 4 the full target."""
    return monthly_target / pacing_divisor(week_of_month)


def paced_targets(targets: TargetConfig, week_of_month: int) -> TargetConfig:
    """Copy of targets with every metric target paced; weights and thresholds kept."""
    paced: Dict[str, float] = {
        attr: paced_target(getattr(targets, attr), week_of_month)
        for attr in (
            "cc_target",
            "sc_target",
            "up_target",
            "fixed_target",
            "referral_achievement_target",
            "conversion_target",
        )
    }
    return targets.model_copy(update=paced)


def validate_weights(targets: TargetConfig) -> None:
    """Raise ValueError unless the four weights sum to 100 (±0.01)."""
    total = targets.total_weight
    if abs(total - 100) > 0.01:
        raise ValueError(f"Weights must sum to 100%, got {total:.2f}%")


def score_metrics(
    metrics: MetricSource,
    targets: Optional[TargetConfig] = None,
    week_of_month: Optional[int] = None,
) -> MentorScore:
    """Score one mentor, pacing targets when a week of month is given."""
    targets = targets or TargetConfig()
    effective = paced_targets(targets, week_of_month) if week_of_month else targets

    score = weighted_score(metrics, effective)
    return MentorScore(
        weighted_score=round(score, 4),
        completion_ratio=round(completion_ratio(score, effective), 4),
        status=status(score, effective),
        targets_hit=targets_hit(metrics, effective),
        week_of_month=week_of_month,
        targets=effective,
    )
