"""CMetrics — Command Line Interface.

    cmetrics init-db
    cmetrics ingest-folder PATH [--report-dir DIR] [--no-aggregate]
    cmetrics aggregate [--period YYYY-MM-DD]
"""

from pathlib import Path
from typing import Optional

import click
from dateutil import parser as dateparser
from sqlmodel import Session

from cmetrics.config import settings
from cmetrics.database import engine, init_db
from cmetrics.analyzer.aggregation import aggregate_stats
from cmetrics.etl.pipeline import FatalIngestionError, ingest_folder
from cmetrics.etl.store import SQLMetricStore


@click.group()
def cli():
    """Mentor metrics ingestion and scoring."""


@cli.command("init-db")
def init_db_command():
    """Create tables and seed the default scoring configuration."""
    init_db()
    click.echo("Database initialised.")


@cli.command("ingest-folder")
@click.argument("folder", type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.option(
    "--report-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Where to write the JSON report (defaults to REPORTS_FOLDER).",
)
@click.option("--aggregate/--no-aggregate", default=None, help="Refresh mentor stats afterwards.")
def ingest_folder_command(folder: Path, report_dir: Optional[Path], aggregate: Optional[bool]):
    """Ingest every .xlsx/.xlsm/.csv file in FOLDER."""
    with Session(engine) as session:
        try:
            report = ingest_folder(folder, SQLMetricStore(session), report_dir)
        except FatalIngestionError as e:
            raise click.ClickException(str(e))

        totals = report.totals
        click.echo(
            f"Files: {totals.files_processed}  received: {totals.received}  "
            f"accepted: {totals.accepted}  rejected: {totals.rejected}"
        )
        click.echo(
            f"Created: {totals.created}  updated: {totals.updated}  "
            f"skipped (duplicate): {totals.skipped_duplicate}"
        )
        if report.coverage:
            coverage = ", ".join(f"{k} {v}%" for k, v in report.coverage.items())
            click.echo(f"Coverage: {coverage}")
        for error in report.errors:
            click.echo(f"  ! {error}", err=True)

        should_aggregate = settings.aggregate_after_ingest if aggregate is None else aggregate
        if should_aggregate:
            stats = aggregate_stats(session)
            click.echo(f"Aggregated stats for {len(stats)} mentors.")


@cli.command("aggregate")
@click.option("--period", default=None, help="Period date to score (defaults to the latest).")
def aggregate_command(period: Optional[str]):
    """Score and rank mentors for a period."""
    period_date = None
    if period:
        try:
            period_date = dateparser.parse(period).date()
        except (ValueError, OverflowError):
            raise click.BadParameter(f"Unrecognised date: {period}", param_hint="--period")

    with Session(engine) as session:
        stats = aggregate_stats(session, period_date)
        if not stats:
            click.echo("No metric records to aggregate.")
            return
        click.echo(f"Aggregated stats for {len(stats)} mentors ({stats[0].period_date}).")


if __name__ == "__main__":
    cli()
