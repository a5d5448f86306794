"""CMetrics — Mentor Stats Aggregation.

Scores every MetricRecord of a period against the scoring configuration
(paced by week of month) and stores the result as ranked MentorStats rows.
"""

from datetime import date, datetime, timezone
from typing import Dict, List, Optional

from sqlmodel import Session, select

from cmetrics.analyzer.metrics_engine import TargetConfig, score_metrics
from cmetrics.models.entities import MentorStats, MetricRecord, ScoringConfig
from cmetrics.core.logging import get_logger

logger = get_logger("analyzer.aggregation")


def latest_period(session: Session) -> Optional[date]:
    """Most recent period_date with any metric record."""
    return session.exec(
        select(MetricRecord.period_date).order_by(MetricRecord.period_date.desc())
    ).first()


def _targets_by_team(session: Session, default: TargetConfig) -> Dict[Optional[int], TargetConfig]:
    configs = session.exec(select(ScoringConfig)).all()
    targets: Dict[Optional[int], TargetConfig] = {None: default}
    for config in configs:
        targets[config.team_id] = TargetConfig.from_config(config)
    return targets


def aggregate_stats(
    session: Session,
    period_date: Optional[date] = None,
    targets: Optional[TargetConfig] = None,
) -> List[MentorStats]:
    """Score and rank all mentors for a period (latest by default).

    Team-specific scoring configs override the global one unless explicit
    targets are passed.
    """
    period_date = period_date or latest_period(session)
    if period_date is None:
        logger.info("No metric records to aggregate")
        return []

    records = session.exec(
        select(MetricRecord).where(MetricRecord.period_date == period_date)
    ).all()

    team_targets = {} if targets is not None else _targets_by_team(session, TargetConfig())
    stats: List[MentorStats] = []
    for record in records:
        if targets is not None:
            config = targets
        else:
            config = team_targets.get(record.team_id, team_targets[None])
        score = score_metrics(record, config, record.week_of_month)

        row = session.exec(
            select(MentorStats).where(
                MentorStats.mentor_id == record.mentor_id,
                MentorStats.period_date == period_date,
            )
        ).first()
        if row is None:
            row = MentorStats(mentor_id=record.mentor_id, period_date=period_date)
        row.week_of_month = record.week_of_month
        row.weighted_score = score.weighted_score
        row.targets_hit = score.targets_hit
        row.status = score.status.value
        row.updated_at = datetime.now(timezone.utc)
        stats.append(row)

    # Rank by weighted score, ties broken by mentor id for stability
    stats.sort(key=lambda s: (-s.weighted_score, s.mentor_id))
    for rank, row in enumerate(stats, 1):
        row.rank = rank
        session.add(row)
    session.commit()
    for row in stats:
        session.refresh(row)

    logger.info(f"Aggregated {len(stats)} mentor stats for {period_date}")
    return stats
