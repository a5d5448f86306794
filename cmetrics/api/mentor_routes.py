"""CMetrics — Mentor API Routes."""

import json
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import func
from sqlmodel import Session, select

from cmetrics.analyzer.aggregation import latest_period
from cmetrics.analyzer.metrics_engine import TargetConfig, score_metrics
from cmetrics.database import get_session
from cmetrics.etl.cleaners import normalize_name
from cmetrics.models.entities import Mentor, MentorStats, MetricRecord, ScoringConfig, Team
from cmetrics.core.logging import get_logger

logger = get_logger("api.mentors")

router = APIRouter(prefix="/mentors", tags=["Mentors"])


def _targets_for(session: Session, team_id: Optional[int]) -> TargetConfig:
    config = None
    if team_id is not None:
        config = session.exec(select(ScoringConfig).where(ScoringConfig.team_id == team_id)).first()
    if config is None:
        config = session.exec(select(ScoringConfig).where(ScoringConfig.team_id == None)).first()  # noqa: E711
    return TargetConfig.from_config(config) if config else TargetConfig()


def _record_to_dict(record: MetricRecord) -> dict:
    data = record.model_dump(exclude={"notes_json"})
    data["notes"] = json.loads(record.notes_json or "[]")
    return data


@router.get("")
async def list_mentors(
    team: Optional[str] = Query(None, description="Filter by team name"),
    period_date: Optional[date] = Query(None, description="Defaults to the latest period"),
    session: Session = Depends(get_session),
):
    """All mentors with their aggregated stats for a period, ranked."""
    period_date = period_date or latest_period(session)

    query = select(Mentor, Team).join(Team, Mentor.team_id == Team.id, isouter=True)
    if team:
        query = query.where(func.upper(Team.name) == normalize_name(team))
    rows = session.exec(query).all()

    stats = {}
    if period_date is not None:
        stats = {
            s.mentor_id: s
            for s in session.exec(select(MentorStats).where(MentorStats.period_date == period_date)).all()
        }

    mentors = []
    for mentor, mentor_team in rows:
        stat = stats.get(mentor.id)
        mentors.append(
            {
                "external_id": mentor.external_id,
                "display_name": mentor.display_name,
                "team": mentor_team.name if mentor_team else None,
                "weighted_score": stat.weighted_score if stat else None,
                "targets_hit": stat.targets_hit if stat else None,
                "status": stat.status if stat else None,
                "rank": stat.rank if stat else None,
            }
        )
    mentors.sort(key=lambda m: (m["rank"] is None, m["rank"] or 0, m["external_id"]))
    return {"period_date": period_date, "mentors": mentors, "count": len(mentors)}


@router.get("/{external_id}")
async def get_mentor(
    external_id: str,
    limit: int = Query(30, ge=1, le=365),
    session: Session = Depends(get_session),
):
    """One mentor's metric history, each record scored against paced targets."""
    mentor = session.exec(
        select(Mentor).where(Mentor.external_id == normalize_name(external_id))
    ).first()
    if not mentor:
        raise HTTPException(status_code=404, detail=f"Mentor '{external_id}' not found")

    team = session.get(Team, mentor.team_id) if mentor.team_id else None
    targets = _targets_for(session, mentor.team_id)
    records = session.exec(
        select(MetricRecord)
        .where(MetricRecord.mentor_id == mentor.id)
        .order_by(MetricRecord.period_date.desc())
        .limit(limit)
    ).all()

    history = []
    for record in records:
        score = score_metrics(record, targets, record.week_of_month)
        entry = _record_to_dict(record)
        entry["score"] = score.model_dump(mode="json", exclude={"targets"})
        history.append(entry)

    return {
        "external_id": mentor.external_id,
        "display_name": mentor.display_name,
        "team": team.name if team else None,
        "targets": targets.model_dump(),
        "records": history,
    }
