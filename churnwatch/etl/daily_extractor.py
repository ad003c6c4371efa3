"""ChurnWatch — Daily Fact Extractor.

For one date, runs one extraction job per metric concurrently. Each job pulls
per-account totals from the fact source, keeps eligible accounts, and upserts
only its own column of the daily ledger. A failing job reports an error result
instead of raising, so the other three still land.
"""

import asyncio
import time
from collections import defaultdict
from datetime import date
from typing import Dict, List

from churnwatch.connectors.warehouse.base import FactSource
from churnwatch.connectors.warehouse.transformer import DailyTotal
from churnwatch.core.logging import get_logger
from churnwatch.core.metric_registry import metric_names
from churnwatch.core.months import month_bounds, month_of
from churnwatch.models.account import Account
from churnwatch.models.pipeline_models import MetricExtractionResult
from churnwatch.storage.repository import RepositoryFactory

logger = get_logger("etl.daily")


def is_eligible_for_day(account: Account, day: date) -> bool:
    """An account contributes daily facts only if alive for the whole month.

    It must have launched on or before `day`, and any archive signal must fall
    after the last day of `day`'s month.
    """
    if account.launched_at is None or account.launched_at > day:
        return False
    lifecycle_end = account.lifecycle_end
    if lifecycle_end is None:
        return True
    _, month_end = month_bounds(month_of(day))
    return lifecycle_end > month_end


def _combine(totals: List[DailyTotal]) -> Dict[str, float]:
    """Sum totals per account; the source may split one account across rows."""
    combined: Dict[str, float] = defaultdict(float)
    for t in totals:
        combined[t.account_id] += t.total
    return {k: v for k, v in combined.items() if v > 0}


async def extract_metric(
    source: FactSource,
    repositories: RepositoryFactory,
    metric: str,
    day: date,
    dry_run: bool = False,
) -> MetricExtractionResult:
    """Extract one metric for one day into the daily ledger."""
    started = time.monotonic()
    totals = _combine(await source.fetch_daily_totals(metric, day))
    result = MetricExtractionResult()

    with repositories() as repo:
        accounts = {a.account_id: a for a in repo.list_accounts()}
        eligible = {
            account_id: total
            for account_id, total in totals.items()
            if account_id in accounts and is_eligible_for_day(accounts[account_id], day)
        }
        result.skipped = len(totals) - len(eligible)

        if dry_run:
            result.created = len(eligible)
            logger.info(
                f"DRY RUN: would write {len(eligible)} rows for {day}",
                extra={"metric": metric},
            )
            return result

        try:
            for account_id, total in sorted(eligible.items()):
                if repo.upsert_daily_value(account_id, day, metric, total):
                    result.created += 1
                else:
                    result.updated += 1
            repo.commit()
        except Exception:
            repo.rollback()
            raise

    logger.info(
        f"{metric} for {day}: {result.updated} updated, {result.created} created, "
        f"{result.skipped} skipped",
        extra={
            "metric": metric,
            "duration_ms": int((time.monotonic() - started) * 1000),
        },
    )
    return result


async def _guarded(
    source: FactSource,
    repositories: RepositoryFactory,
    metric: str,
    day: date,
    dry_run: bool,
) -> MetricExtractionResult:
    try:
        return await extract_metric(source, repositories, metric, day, dry_run)
    except Exception as e:
        logger.warning(
            f"Extraction failed for {day}: {e}", extra={"metric": metric}
        )
        return MetricExtractionResult(error=str(e) or e.__class__.__name__)


async def extract_day(
    source: FactSource,
    repositories: RepositoryFactory,
    day: date,
    dry_run: bool = False,
) -> Dict[str, MetricExtractionResult]:
    """Run all four metric jobs for `day` concurrently and join them."""
    metrics = metric_names()
    logger.info(f"Extracting {len(metrics)} metrics for {day} (dry_run={dry_run})")
    results = await asyncio.gather(
        *(_guarded(source, repositories, m, day, dry_run) for m in metrics)
    )
    return dict(zip(metrics, results))
