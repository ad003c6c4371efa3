"""ChurnWatch — Central Configuration via Pydantic Settings."""

import os
from datetime import date
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables / .env file."""

    # ── Warehouse (upstream fact source) ──
    warehouse_base_url: str = "http://localhost:8080/api/v1"
    warehouse_api_key: str = ""
    warehouse_timeout_seconds: float = 60.0

    # ── Database ──
    database_url: str = ""

    # ── App ──
    log_level: str = "INFO"
    scheduler_enabled: bool = True
    pipeline_hour: int = 6  # Daily run at 6 AM UTC

    # ── Pipeline ──
    tracking_window_months: int = 12
    accounts_window_start: Optional[date] = None  # Overrides the rolling window
    backfill_start_date: date = date(2025, 7, 1)  # Used when daily_metrics is empty
    month_end_window_days: int = 3

    @property
    def effective_database_url(self) -> str:
        """Return PostgreSQL URL if set, otherwise fall back to SQLite."""
        if self.database_url:
            return self.database_url
        return os.environ.get("CHURNWATCH_SQLITE_URL", "sqlite:///./churnwatch.db")

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
