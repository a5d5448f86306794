"""CMetrics — Central Configuration via Pydantic Settings."""

from pydantic_settings import BaseSettings
from typing import List, Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables / .env file."""

    # ── Database ──
    database_url: str = ""

    # ── App ──
    log_level: str = "INFO"
    scheduler_enabled: bool = True
    ingestion_hour: int = 3  # Daily folder ingestion at 3 AM

    # ── Ingestion ──
    ingest_folder: Optional[str] = None
    reports_folder: str = "./ingestion-reports"
    max_files_per_run: int = 50
    max_file_size_mb: int = 200
    header_scan_rows: int = 10
    summary_row_keywords: List[str] = ["total"]
    unassigned_team_name: str = "UNASSIGNED"
    transform_workers: int = 1
    aggregate_after_ingest: bool = True

    @property
    def effective_database_url(self) -> str:
        """Return the configured database URL, otherwise fall back to SQLite."""
        if self.database_url:
            return self.database_url
        return "sqlite:///./cmetrics.db"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
