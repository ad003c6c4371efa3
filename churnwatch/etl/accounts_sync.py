"""ChurnWatch — Account Registry Sync.

Refreshes the accounts table from the fact source. Best-effort: an account
that fails to upsert is logged and skipped, and accounts missing from the
fetch are left in place.
"""

from datetime import date
from typing import Optional

from churnwatch.config import settings
from churnwatch.connectors.warehouse.base import FactSource
from churnwatch.core.logging import get_logger
from churnwatch.core.months import rolling_window_start, today_utc
from churnwatch.models.pipeline_models import AccountSyncResult
from churnwatch.storage.repository import MetricsRepository

logger = get_logger("etl.accounts")


def resolve_window(reference_date: Optional[date] = None) -> tuple[date, date]:
    """Return (window_start, window_end) for account eligibility."""
    window_end = reference_date or today_utc()
    window_start = settings.accounts_window_start or rolling_window_start(
        window_end, settings.tracking_window_months
    )
    return window_start, window_end


async def refresh_accounts(
    source: FactSource,
    repo: MetricsRepository,
    reference_date: Optional[date] = None,
) -> AccountSyncResult:
    """Fetch eligible accounts and upsert each one by account_id."""
    window_start, window_end = resolve_window(reference_date)
    logger.info(f"Refreshing accounts for window {window_start} → {window_end}")

    records = await source.fetch_accounts(window_start, window_end)
    result = AccountSyncResult(accounts_fetched=len(records))

    for record in records:
        try:
            repo.upsert_account(record)
            result.accounts_upserted += 1
        except Exception as e:
            repo.rollback()
            result.accounts_failed += 1
            logger.warning(
                f"Account upsert failed, skipping: {e}",
                extra={"account_id": record.account_id},
            )

    logger.info(
        f"Accounts refreshed: {result.accounts_upserted} upserted, "
        f"{result.accounts_failed} failed of {result.accounts_fetched} fetched"
    )
    return result
