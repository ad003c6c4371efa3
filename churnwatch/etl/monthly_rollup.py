"""ChurnWatch — Monthly Rollup Engine.

Recomputes a month's aggregates for every eligible account from the daily
ledger and replaces the month's rows in one transaction. The monthly table is
treated as a materialized view: re-running with the same daily data yields
the same rows.
"""

import time
from collections import defaultdict
from typing import Dict, List

from churnwatch.core.logging import get_logger
from churnwatch.core.metric_registry import (
    ACTIVE_SUBSCRIBERS,
    DAILY_METRICS,
    MESSAGES_DELIVERED,
    REDEMPTIONS,
    SPEND,
)
from churnwatch.core.months import month_bounds, month_label, validate_month
from churnwatch.models.account import Account
from churnwatch.models.metrics_models import DailyMetric, MonthlyMetric
from churnwatch.models.pipeline_models import RollupResult
from churnwatch.storage.repository import MetricsRepository

logger = get_logger("etl.monthly")


class RollupError(Exception):
    """Raised when a month's delete-and-recreate fails; the month is unchanged."""

    def __init__(self, month: str, message: str):
        self.month = month
        super().__init__(f"Monthly rollup failed for {month}: {message}")


def is_eligible_for_month(account: Account, month: str) -> bool:
    """Whether an account gets a row for `month`.

    Launched on or before the month's last day, and either never archived or
    archived on or after the month's first day. Evaluated per month from the
    lifecycle dates, not from the account's current status.
    """
    month_start, month_end = month_bounds(month)
    if account.launched_at is None or account.launched_at > month_end:
        return False
    lifecycle_end = account.lifecycle_end
    return lifecycle_end is None or lifecycle_end >= month_start


def aggregate_account_month(
    account_id: str, month: str, days: List[DailyMetric]
) -> MonthlyMetric:
    """Build one account's monthly row from its daily rows (possibly none)."""
    values: Dict[str, float] = {}
    for metric in DAILY_METRICS.values():
        series = [getattr(d, metric.column) or 0 for d in days]
        if metric.is_gauge:
            values[metric.name] = sum(series) / len(series) if series else 0.0
        else:
            values[metric.name] = sum(series)

    return MonthlyMetric(
        account_id=account_id,
        month=month,
        month_label=month_label(month),
        total_spend=round(float(values[SPEND]), 2),
        total_messages=int(values[MESSAGES_DELIVERED]),
        total_redemptions=int(values[REDEMPTIONS]),
        avg_active_subscribers=float(values[ACTIVE_SUBSCRIBERS]),
        days_with_data=len(days),
    )


def compute_month(repo: MetricsRepository, month: str) -> List[MonthlyMetric]:
    """Compute the month's rows in memory without touching the table."""
    month_start, month_end = month_bounds(month)
    eligible = [a for a in repo.list_accounts() if is_eligible_for_month(a, month)]

    by_account: Dict[str, List[DailyMetric]] = defaultdict(list)
    for row in repo.daily_metrics_between(month_start, month_end):
        by_account[row.account_id].append(row)

    # Left join: every eligible account gets a row, with or without daily data
    return [
        aggregate_account_month(a.account_id, month, by_account.get(a.account_id, []))
        for a in eligible
    ]


def rollup_month(repo: MetricsRepository, month: str) -> RollupResult:
    """Delete and recreate every MonthlyMetric row for `month`."""
    validate_month(month)
    started = time.monotonic()
    label = month_label(month)
    logger.info(f"Rolling up {label}", extra={"month": month})

    try:
        rows = compute_month(repo, month)
        written = repo.replace_monthly_metrics(month, rows)
    except Exception as e:
        logger.error(f"Rollup failed: {e}", extra={"month": month}, exc_info=True)
        raise RollupError(month, str(e)) from e

    logger.info(
        f"Created {written} monthly rows for {label}",
        extra={
            "month": month,
            "duration_ms": int((time.monotonic() - started) * 1000),
        },
    )
    return RollupResult(month=month, month_label=label, accounts_processed=written)
