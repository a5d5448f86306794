"""CMetrics — Scheduler Jobs.

APScheduler daily job that ingests the configured drop folder and refreshes
mentor stats at the configured hour.
"""

from pathlib import Path

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlmodel import Session

from cmetrics.config import settings
from cmetrics.database import engine
from cmetrics.analyzer.aggregation import aggregate_stats
from cmetrics.etl.pipeline import ingest_folder
from cmetrics.etl.store import SQLMetricStore
from cmetrics.core.logging import get_logger

logger = get_logger("scheduler")

scheduler = AsyncIOScheduler()


def folder_ingestion_job(bind=None):
    """Ingest every spreadsheet in INGEST_FOLDER, then aggregate stats."""
    logger.info("Scheduled folder ingestion starting...")
    try:
        with Session(bind or engine) as session:
            report = ingest_folder(Path(settings.ingest_folder), SQLMetricStore(session))
            if settings.aggregate_after_ingest:
                aggregate_stats(session)
        logger.info(
            f"Scheduled ingestion complete. {report.totals.created} created, "
            f"{report.totals.updated} updated, {len(report.errors)} errors",
            extra={"run_id": report.run_id},
        )
        return report
    except Exception as e:
        logger.error(f"Scheduled ingestion failed: {e}")
        return None


def start_scheduler():
    """Configure and start the scheduler."""
    if not settings.scheduler_enabled:
        logger.info("Scheduler disabled via config")
        return
    if not settings.ingest_folder:
        logger.info("No INGEST_FOLDER configured; folder ingestion not scheduled")
        return

    scheduler.add_job(
        folder_ingestion_job,
        "cron",
        hour=settings.ingestion_hour,
        minute=0,
        id="daily_folder_ingestion",
        replace_existing=True,
        misfire_grace_time=3600,
    )
    scheduler.start()
    logger.info(f"Scheduler started. Daily ingestion at {settings.ingestion_hour}:00 UTC")


def stop_scheduler():
    """Shutdown the scheduler gracefully."""
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
