"""ChurnWatch — Warehouse Raw → Typed Transformer.

Converts raw JSON rows from the warehouse into AccountRecord and DailyTotal
objects. Malformed rows are logged and dropped rather than failing the batch.
"""

from datetime import date, datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from churnwatch.models.account import AccountRecord, AccountStatus
from churnwatch.core.logging import get_logger

logger = get_logger("warehouse.transformer")


class DailyTotal(BaseModel):
    """One account's total for one metric on one day."""

    account_id: str
    total: float


def _safe_float(value: Any) -> float:
    """Safely convert a value to float."""
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _parse_date(value: Any) -> Optional[date]:
    """Parse the date part of a warehouse date/timestamp value.

    Accepts "YYYY-MM-DD", ISO timestamps, and the {"value": ...} wrapper some
    warehouse drivers emit for DATE/TIMESTAMP columns.
    """
    if value is None or value == "":
        return None
    if isinstance(value, dict):
        return _parse_date(value.get("value"))
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError:
        return datetime.strptime(text[:10], "%Y-%m-%d").date()


def transform_account(row: Dict[str, Any]) -> Optional[AccountRecord]:
    """Build an AccountRecord from one accounts-feed row, or None if unusable."""
    account_id = str(row.get("account_id") or "").strip()
    if not account_id:
        logger.warning("Dropping account row without account_id")
        return None

    raw_status = str(row.get("status") or "").upper()
    if raw_status == "ACTIVE":
        raw_status = AccountStatus.LAUNCHED.value
    try:
        status = AccountStatus(raw_status)
    except ValueError:
        logger.warning(
            f"Dropping account with unknown status '{raw_status}'",
            extra={"account_id": account_id},
        )
        return None

    dates: Dict[str, Optional[date]] = {}
    for field in ("launched_at", "archived_at", "earliest_unit_archived_at"):
        try:
            dates[field] = _parse_date(row.get(field))
        except ValueError:
            logger.warning(
                f"Invalid {field} {row.get(field)!r}, treating as missing",
                extra={"account_id": account_id},
            )
            dates[field] = None

    # An archived account must carry an archive signal
    if (
        status == AccountStatus.ARCHIVED
        and dates["archived_at"] is None
        and dates["earliest_unit_archived_at"] is None
    ):
        logger.warning(
            "Dropping ARCHIVED account with no archive date",
            extra={"account_id": account_id},
        )
        return None

    return AccountRecord(
        account_id=account_id,
        account_name=str(row.get("name") or row.get("account_name") or ""),
        status=status,
        owner=str(row.get("owner") or "Unassigned"),
        **dates,
    )


def transform_accounts(rows: List[Dict[str, Any]]) -> List[AccountRecord]:
    records = [r for r in (transform_account(row) for row in rows) if r is not None]
    if len(records) != len(rows):
        logger.info(f"Parsed {len(records)} of {len(rows)} account rows")
    return records


def transform_daily_totals(rows: List[Dict[str, Any]], metric: str) -> List[DailyTotal]:
    """Build DailyTotal objects, dropping rows without an id or with zero total."""
    totals: List[DailyTotal] = []
    for row in rows:
        account_id = str(row.get("account_id") or "").strip()
        total = _safe_float(row.get("total"))
        if not account_id or total <= 0:
            continue
        totals.append(DailyTotal(account_id=account_id, total=total))
    logger.debug(
        f"Parsed {len(totals)} of {len(rows)} rows", extra={"metric": metric}
    )
    return totals
