"""ChurnWatch — Pipeline Run Models.

The EtlRun table tracks each orchestrator step per processing date. The
pydantic schemas are the structured results each component returns and the
RunSummary the orchestrator reports.
"""

from datetime import date, datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field as PydanticField
from sqlmodel import SQLModel, Field


# ─────────────────────────────────────────────
# DATABASE MODEL — ETL step tracking
# ─────────────────────────────────────────────


class EtlRun(SQLModel, table=True):
    """Status of one pipeline step for one processing date."""

    __tablename__ = "etl_runs"

    run_date: str = Field(primary_key=True, description="YYYY-MM-DD")
    step: str = Field(primary_key=True, description="accounts | daily | monthly | ...")
    status: str = Field(index=True, description="running | completed | failed")
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = Field(default=None)
    error_message: Optional[str] = Field(default=None)
    metadata_json: str = Field(default="{}")


# ─────────────────────────────────────────────
# PYDANTIC SCHEMAS — Component results
# ─────────────────────────────────────────────


class ClassificationMode(str, Enum):
    TRENDING = "trending"
    HISTORICAL = "historical"


class StepStatus(str, Enum):
    OK = "ok"
    DEGRADED = "degraded"  # Ran, but some rows or jobs failed
    FAILED = "failed"
    SKIPPED = "skipped"


class AccountSyncResult(BaseModel):
    accounts_fetched: int = 0
    accounts_upserted: int = 0
    accounts_failed: int = 0


class MetricExtractionResult(BaseModel):
    """Outcome of one metric's extraction job for one date."""

    updated: int = 0
    created: int = 0
    skipped: int = 0  # Rows for accounts not eligible on that date
    error: Optional[str] = None


class RollupResult(BaseModel):
    month: str
    month_label: str
    accounts_processed: int = 0


class RiskAssessment(BaseModel):
    """Risk level and reasons for one (account, month)."""

    level: str = "low"
    reasons: List[str] = []
    flag_count: int = 0


class ClassificationResult(BaseModel):
    month: str
    mode: ClassificationMode
    accounts_classified: int = 0
    accounts_failed: int = 0
    accounts_closed: int = 0
    level_counts: Dict[str, int] = {}


class StepReport(BaseModel):
    """Per-step entry in the run summary."""

    step: str
    status: StepStatus
    detail: dict = {}
    error: Optional[str] = None
    duration_ms: int = 0


class RunSummary(BaseModel):
    """What the orchestrator reports for one run."""

    process_date: date
    started_at: str = ""
    finished_at: str = ""
    success: bool = True
    steps: List[StepReport] = PydanticField(default_factory=list)

    def step(self, name: str) -> Optional[StepReport]:
        for report in self.steps:
            if report.step == name:
                return report
        return None

    @property
    def degraded(self) -> bool:
        return any(s.status == StepStatus.DEGRADED for s in self.steps)


class CatchUpSummary(BaseModel):
    """Result of a gap-detection catch-up run."""

    start_date: Optional[date] = None
    end_date: date
    days_processed: List[date] = []
    failed_days: List[date] = []
    months_rolled_up: List[str] = []
    success: bool = True
    message: str = ""
