"""ChurnWatch — Risk Classification Engine.

Classifies every (account, month) row as low / medium / high churn risk.

Evaluation order:
  1. Archived during the month → high ("Recently Archived")
  2. FROZEN status → high if no messages were delivered, else medium
  3. Weighted numeric flags → 0 low, 1-2 medium, 3+ high

Trending (open month) and historical (closed month) use the same rules. The
trending pass pro-rates the cumulative redemption thresholds by how much of
the month has elapsed; the gauge threshold is never pro-rated.
"""

from collections import Counter, defaultdict
from datetime import date, timedelta
from typing import Dict, List, Optional

from pydantic import BaseModel

from churnwatch.core.logging import get_logger
from churnwatch.core.months import (
    days_in_month,
    month_bounds,
    month_progress,
    months_since_launch,
    previous_month,
    validate_month,
    yesterday_utc,
)
from churnwatch.core.risk_policy import (
    COMBO_MIN_MONTHS_SINCE_LAUNCH,
    DEFAULT_THRESHOLDS,
    DROP_MIN_MONTHS_SINCE_LAUNCH,
    LOW_ACTIVITY_WEIGHT,
    LOW_ENGAGEMENT_COMBO_WEIGHT,
    LOW_MONTHLY_REDEMPTIONS_WEIGHT,
    REDEMPTIONS_DROP_WEIGHT,
    SPEND_DROP_WEIGHT,
    RiskThresholds,
    level_for_flag_count,
)
from churnwatch.models.account import Account, AccountStatus
from churnwatch.models.metrics_models import MonthlyMetric
from churnwatch.models.pipeline_models import (
    ClassificationMode,
    ClassificationResult,
    RiskAssessment,
)
from churnwatch.storage.repository import MetricsRepository

logger = get_logger("analyzer.risk")

RECENTLY_ARCHIVED = "Recently Archived"
FROZEN_STATUS = "Frozen Account Status"
FROZEN_INACTIVE = "Frozen & Inactive"
LOW_MONTHLY_REDEMPTIONS = "Low Monthly Redemptions"
LOW_ENGAGEMENT_COMBO = "Low Engagement Combo"
LOW_ACTIVITY = "Low Activity"
SPEND_DROP = "Spend Drop"
REDEMPTIONS_DROP = "Redemptions Drop"
NO_FLAGS = "No flags"


class PeriodTotals(BaseModel):
    """Comparison totals for the previous month, up to a day-of-month cutoff."""

    spend: float = 0.0
    redemptions: int = 0


def prorated_threshold(threshold: float, day_of_month: int, month: str) -> float:
    """Scale a cumulative monthly threshold to the elapsed part of the month."""
    return threshold * month_progress(day_of_month, month)


def drop_fraction(previous: float, current: float) -> float:
    """Fractional decrease from previous to current, floored at 0."""
    if previous <= 0:
        return 0.0
    return max(0.0, (previous - current) / previous)


def _archived_in_month(account: Account, month: str) -> bool:
    archived = account.display_archived_at
    if archived is None:
        return False
    month_start, month_end = month_bounds(month)
    return month_start <= archived <= month_end


def assess_lifecycle(account: Account, month: str, current: MonthlyMetric) -> Optional[RiskAssessment]:
    """Archive and freeze checks that short-circuit the numeric flags."""
    if _archived_in_month(account, month):
        return RiskAssessment(level="high", reasons=[RECENTLY_ARCHIVED])

    if account.status == AccountStatus.FROZEN.value:
        if current.total_messages <= 0:
            return RiskAssessment(level="high", reasons=[FROZEN_STATUS, FROZEN_INACTIVE])
        return RiskAssessment(level="medium", reasons=[FROZEN_STATUS])

    return None


def assess_flags(
    account: Account,
    month: str,
    current: MonthlyMetric,
    previous: Optional[PeriodTotals],
    thresholds: RiskThresholds = DEFAULT_THRESHOLDS,
    progress: float = 1.0,
) -> RiskAssessment:
    """Weighted flag system for accounts that are neither archived nor frozen.

    `progress` scales the cumulative redemption thresholds; 1.0 is a full month.
    """
    if account.launched_at is None:
        raise ValueError(f"Account {account.account_id} has no launch date")

    reasons: List[str] = []
    flag_count = 0
    tenure = months_since_launch(account.launched_at, month)
    redemptions = current.total_redemptions
    subscribers = current.avg_active_subscribers

    if redemptions < thresholds.redemptions * progress:
        flag_count += LOW_MONTHLY_REDEMPTIONS_WEIGHT
        reasons.append(LOW_MONTHLY_REDEMPTIONS)

    if tenure >= COMBO_MIN_MONTHS_SINCE_LAUNCH:
        if (
            subscribers < thresholds.combo_subscribers
            and redemptions < thresholds.combo_redemptions * progress
        ):
            flag_count += LOW_ENGAGEMENT_COMBO_WEIGHT
            reasons.append(LOW_ENGAGEMENT_COMBO)

    if subscribers < thresholds.low_activity_subscribers:
        flag_count += LOW_ACTIVITY_WEIGHT
        reasons.append(LOW_ACTIVITY)

    if previous is not None and tenure >= DROP_MIN_MONTHS_SINCE_LAUNCH:
        if (
            previous.spend > 0
            and drop_fraction(previous.spend, current.total_spend) >= thresholds.spend_drop
        ):
            flag_count += SPEND_DROP_WEIGHT
            reasons.append(SPEND_DROP)
        if (
            previous.redemptions > 0
            and drop_fraction(previous.redemptions, redemptions)
            >= thresholds.redemptions_drop
        ):
            flag_count += REDEMPTIONS_DROP_WEIGHT
            reasons.append(REDEMPTIONS_DROP)

    return RiskAssessment(
        level=level_for_flag_count(flag_count),
        reasons=reasons or [NO_FLAGS],
        flag_count=flag_count,
    )


def classify_historical(
    account: Account,
    month: str,
    current: MonthlyMetric,
    previous: Optional[PeriodTotals],
    thresholds: RiskThresholds = DEFAULT_THRESHOLDS,
) -> RiskAssessment:
    """Classify a completed month against the full-month thresholds."""
    return assess_lifecycle(account, month, current) or assess_flags(
        account, month, current, previous, thresholds
    )


def classify_trending(
    account: Account,
    month: str,
    current: MonthlyMetric,
    day_of_month: int,
    previous: Optional[PeriodTotals],
    thresholds: RiskThresholds = DEFAULT_THRESHOLDS,
) -> RiskAssessment:
    """Classify an in-progress month judged on `day_of_month`.

    On day 1 no complete days exist yet, so the flag system is skipped.
    """
    lifecycle = assess_lifecycle(account, month, current)
    if lifecycle is not None:
        return lifecycle

    progress = month_progress(day_of_month, month)
    if progress <= 0:
        return RiskAssessment(level="low", reasons=[NO_FLAGS])

    return assess_flags(
        account, month, current, previous, thresholds, progress=min(progress, 1.0)
    )


def judged_day_of_month(month: str, data_through: date) -> int:
    """Day of `month` on which data complete through `data_through` is judged."""
    month_start, month_end = month_bounds(month)
    if data_through < month_start:
        return 1
    if data_through >= month_end:
        return days_in_month(month) + 1
    return data_through.day + 1


def previous_period_totals(
    repo: MetricsRepository, month: str, cutoff_day: int
) -> Dict[str, PeriodTotals]:
    """Previous month's totals per account, from day 1 through `cutoff_day`.

    Accounts without any daily rows in the window are absent from the result.
    """
    prev = previous_month(month)
    prev_start, prev_end = month_bounds(prev)
    cutoff = min(max(cutoff_day, 1), days_in_month(prev))
    window_end = prev_start + timedelta(days=cutoff - 1)

    totals: Dict[str, PeriodTotals] = defaultdict(PeriodTotals)
    for row in repo.daily_metrics_between(prev_start, min(window_end, prev_end)):
        entry = totals[row.account_id]
        entry.spend += row.spend or 0
        entry.redemptions += row.redemptions or 0
    return dict(totals)


def classify_month(
    repo: MetricsRepository,
    month: str,
    mode: ClassificationMode,
    data_through: Optional[date] = None,
    thresholds: RiskThresholds = DEFAULT_THRESHOLDS,
) -> ClassificationResult:
    """Classify every MonthlyMetric row of `month` and persist the result.

    Trending writes the trending slot and leaves rows that already carry a
    historical level untouched. Historical writes the historical slot and
    clears trending, committing the whole month at once. An account that
    fails to classify is logged and recorded as low risk.
    """
    validate_month(month)
    if mode == ClassificationMode.HISTORICAL:
        day_of_month = days_in_month(month) + 1
    else:
        day_of_month = judged_day_of_month(month, data_through or yesterday_utc())

    # Same cutoff for the comparison month: a full month when closed
    previous = previous_period_totals(repo, month, day_of_month - 1)
    accounts = {a.account_id: a for a in repo.list_accounts()}
    rows = repo.monthly_metrics_for(month)
    result = ClassificationResult(month=month, mode=mode)
    levels: Counter = Counter()

    logger.info(
        f"Classifying {len(rows)} accounts ({mode.value}, day {day_of_month})",
        extra={"month": month},
    )

    for row in rows:
        if mode == ClassificationMode.TRENDING and row.historical_risk_level is not None:
            result.accounts_closed += 1
            continue
        try:
            account = accounts[row.account_id]
            prior = previous.get(row.account_id)
            if mode == ClassificationMode.HISTORICAL:
                assessment = classify_historical(account, month, row, prior, thresholds)
            else:
                assessment = classify_trending(
                    account, month, row, day_of_month, prior, thresholds
                )
            result.accounts_classified += 1
        except Exception as e:
            logger.warning(
                f"Risk classification failed, defaulting to low: {e}",
                extra={"account_id": row.account_id, "month": month},
            )
            assessment = RiskAssessment(level="low", reasons=[])
            result.accounts_failed += 1

        if mode == ClassificationMode.HISTORICAL:
            repo.save_historical(row, assessment.level, assessment.reasons)
        else:
            repo.save_trending(row, assessment.level, assessment.reasons)
        levels[assessment.level] += 1

    repo.commit()
    result.level_counts = dict(levels)
    logger.info(
        f"Classified {result.accounts_classified} accounts, "
        f"{result.accounts_failed} defaulted, "
        f"{result.accounts_closed} already closed: {dict(levels)}",
        extra={"month": month},
    )
    return result
