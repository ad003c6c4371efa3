"""ChurnWatch — Daily Ledger & Monthly Rollup Models."""

import json
import datetime as dt
from typing import List, Optional

from sqlmodel import SQLModel, Field


class DailyMetric(SQLModel, table=True):
    """One row per (account, date).

    Each metric is written by its own extraction job, so each carries its own
    timestamp. A null timestamp means that metric has not been extracted yet;
    its value column reads as 0.
    """

    __tablename__ = "daily_metrics"

    account_id: str = Field(primary_key=True, foreign_key="accounts.account_id")
    date: dt.date = Field(primary_key=True, index=True)
    spend: float = Field(default=0.0)
    messages_delivered: int = Field(default=0)
    redemptions: int = Field(default=0)
    active_subscribers: int = Field(default=0)
    spend_updated_at: Optional[dt.datetime] = Field(default=None)
    messages_delivered_updated_at: Optional[dt.datetime] = Field(default=None)
    redemptions_updated_at: Optional[dt.datetime] = Field(default=None)
    active_subscribers_updated_at: Optional[dt.datetime] = Field(default=None)


class MonthlyMetric(SQLModel, table=True):
    """Monthly aggregate per (account, month), recomputed from daily_metrics.

    The trending slot is authoritative while the month is open; the historical
    slot (historical_risk_level / risk_reasons) once it is closed. Reasons are
    stored as JSON arrays of strings.
    """

    __tablename__ = "monthly_metrics"

    account_id: str = Field(primary_key=True, foreign_key="accounts.account_id")
    month: str = Field(primary_key=True, index=True, description="YYYY-MM")
    month_label: str = Field(default="", description="e.g. August 2025")
    total_spend: float = Field(default=0.0)
    total_messages: int = Field(default=0)
    total_redemptions: int = Field(default=0)
    avg_active_subscribers: float = Field(default=0.0)
    days_with_data: int = Field(default=0)
    trending_risk_level: Optional[str] = Field(default=None)
    trending_risk_reasons: Optional[str] = Field(default=None)
    historical_risk_level: Optional[str] = Field(default=None, index=True)
    risk_reasons: Optional[str] = Field(default=None)

    @property
    def trending_reasons(self) -> List[str]:
        return json.loads(self.trending_risk_reasons or "[]")

    @property
    def historical_reasons(self) -> List[str]:
        return json.loads(self.risk_reasons or "[]")
