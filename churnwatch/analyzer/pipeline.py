"""ChurnWatch — Pipeline Orchestrator.

Runs the daily flow for one processing date:
  accounts sync → daily extraction (4 metrics in parallel) → monthly rollup
  → trending risk → month-end historical close

Also provides gap-detection catch-up and explicit month re-runs. Every step
is recorded in the ETL run tracker and reported in the RunSummary.
"""

import time
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Dict, Optional

from sqlalchemy.engine import Engine

from churnwatch.analyzer.risk_engine import classify_month
from churnwatch.config import settings
from churnwatch.connectors.warehouse.base import FactSource
from churnwatch.core.logging import get_logger, log_context
from churnwatch.core.months import (
    date_range,
    month_bounds,
    month_of,
    months_between,
    previous_month,
    validate_month,
    yesterday_utc,
)
from churnwatch.core.risk_policy import DEFAULT_THRESHOLDS, RiskThresholds
from churnwatch.etl.accounts_sync import refresh_accounts
from churnwatch.etl.daily_extractor import extract_day
from churnwatch.etl.monthly_rollup import RollupError, rollup_month
from churnwatch.etl.run_tracker import RunTracker
from churnwatch.models.pipeline_models import (
    CatchUpSummary,
    ClassificationMode,
    ClassificationResult,
    MetricExtractionResult,
    RunSummary,
    StepReport,
    StepStatus,
)
from churnwatch.storage.repository import RepositoryFactory, sql_repository_factory

logger = get_logger("analyzer.pipeline")

STEP_PIPELINE = "pipeline"
STEP_ACCOUNTS = "accounts"
STEP_DAILY = "daily"
STEP_MONTHLY = "monthly"
STEP_TRENDING = "trending"
STEP_MONTH_END = "month_end"


def _extraction_status(results: Dict[str, MetricExtractionResult]) -> StepStatus:
    errors = sum(1 for r in results.values() if r.error)
    if errors == 0:
        return StepStatus.OK
    if errors == len(results):
        return StepStatus.FAILED
    return StepStatus.DEGRADED


class ChurnPipeline:
    """Sequences the pipeline components against one fact source and database."""

    def __init__(
        self,
        source: FactSource,
        engine: Engine,
        repositories: Optional[RepositoryFactory] = None,
        tracker: Optional[RunTracker] = None,
        thresholds: RiskThresholds = DEFAULT_THRESHOLDS,
        month_end_window_days: Optional[int] = None,
    ):
        self.source = source
        self.repositories = repositories or sql_repository_factory(engine)
        self.tracker = tracker or RunTracker(engine)
        self.thresholds = thresholds
        self.month_end_window_days = (
            month_end_window_days or settings.month_end_window_days
        )

    # ── Step runner ──

    async def _run_step(
        self,
        summary: RunSummary,
        step: str,
        action: Callable,
    ) -> StepReport:
        """Run one step, record it in the tracker and append it to the summary.

        `action` returns (status, detail). Exceptions become a FAILED report.
        """
        started = time.monotonic()
        self.tracker.start_step(summary.process_date, step)
        try:
            status, detail = await action()
            error = None
        except Exception as e:
            logger.error(f"Step {step} failed: {e}", extra={"step": step}, exc_info=True)
            status, detail, error = StepStatus.FAILED, {}, str(e)

        report = StepReport(
            step=step,
            status=status,
            detail=detail,
            error=error,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        if status == StepStatus.FAILED:
            self.tracker.fail_step(
                summary.process_date, step, error or "step failed", detail
            )
        else:
            self.tracker.complete_step(summary.process_date, step, detail)
        summary.steps.append(report)
        logger.info(
            f"Step {step}: {status.value}",
            extra={"step": step, "duration_ms": report.duration_ms},
        )
        return report

    # ── Individual steps ──

    async def _accounts_step(self, reference_date: date):
        with self.repositories() as repo:
            result = await refresh_accounts(self.source, repo, reference_date)
        status = StepStatus.DEGRADED if result.accounts_failed else StepStatus.OK
        return status, result.model_dump()

    async def _daily_step(self, day: date, dry_run: bool = False):
        results = await extract_day(self.source, self.repositories, day, dry_run=dry_run)
        detail = {name: r.model_dump() for name, r in results.items()}
        return _extraction_status(results), detail

    async def _monthly_step(self, month: str):
        with self.repositories() as repo:
            result = rollup_month(repo, month)
        return StepStatus.OK, result.model_dump()

    async def _classify_step(
        self, month: str, mode: ClassificationMode, data_through: Optional[date] = None
    ):
        with self.repositories() as repo:
            if mode == ClassificationMode.TRENDING and repo.has_historical_levels(month):
                logger.info(
                    "Month already closed, no trending pass", extra={"month": month}
                )
                return StepStatus.SKIPPED, {"month": month, "already_closed": True}
            result = classify_month(repo, month, mode, data_through, self.thresholds)
        status = StepStatus.DEGRADED if result.accounts_failed else StepStatus.OK
        return status, result.model_dump(mode="json")

    async def _month_end_step(self, process_date: date):
        completed = previous_month(month_of(process_date))
        with self.repositories() as repo:
            if repo.has_historical_levels(completed):
                logger.info(
                    "Historical risk already recorded, nothing to close",
                    extra={"month": completed},
                )
                return StepStatus.SKIPPED, {"month": completed, "already_closed": True}
            # Pick up any late daily data before closing the month for good
            rollup = rollup_month(repo, completed)
            result = classify_month(
                repo, completed, ClassificationMode.HISTORICAL, thresholds=self.thresholds
            )
        status = StepStatus.DEGRADED if result.accounts_failed else StepStatus.OK
        return status, {
            "month": completed,
            "accounts_processed": rollup.accounts_processed,
            "classification": result.model_dump(mode="json"),
        }

    def _is_month_end_window(self, process_date: date) -> bool:
        return process_date.day <= self.month_end_window_days

    # ── Public entry points ──

    async def run_daily(
        self, process_date: Optional[date] = None, dry_run: bool = False
    ) -> RunSummary:
        """Run the full daily pipeline for `process_date` (default yesterday).

        Raises PipelineAlreadyRunningError while any other run holds the lock.
        """
        process_date = process_date or yesterday_utc()
        with self.tracker.exclusive(f"run_daily {process_date}"), log_context(
            run="run_daily", process_date=process_date.isoformat()
        ):
            return await self._run_daily(process_date, dry_run)

    async def _run_daily(self, process_date: date, dry_run: bool) -> RunSummary:
        month = month_of(process_date)
        summary = RunSummary(
            process_date=process_date,
            started_at=datetime.now(timezone.utc).isoformat(),
        )
        logger.info(f"Starting daily pipeline for {process_date} (dry_run={dry_run})")

        self.tracker.start_step(process_date, STEP_PIPELINE)
        try:
            await self._run_step(
                summary, STEP_ACCOUNTS, lambda: self._accounts_step(process_date)
            )
            await self._run_step(
                summary, STEP_DAILY, lambda: self._daily_step(process_date, dry_run)
            )

            if dry_run:
                for step in (STEP_MONTHLY, STEP_TRENDING, STEP_MONTH_END):
                    summary.steps.append(StepReport(step=step, status=StepStatus.SKIPPED))
            else:
                rollup = await self._run_step(
                    summary, STEP_MONTHLY, lambda: self._monthly_step(month)
                )
                if rollup.status == StepStatus.FAILED:
                    # Classification must not run over a month that failed to rebuild
                    for step in (STEP_TRENDING, STEP_MONTH_END):
                        summary.steps.append(
                            StepReport(step=step, status=StepStatus.SKIPPED)
                        )
                else:
                    await self._run_step(
                        summary,
                        STEP_TRENDING,
                        lambda: self._classify_step(
                            month, ClassificationMode.TRENDING, process_date
                        ),
                    )
                    if self._is_month_end_window(process_date):
                        await self._run_step(
                            summary,
                            STEP_MONTH_END,
                            lambda: self._month_end_step(process_date),
                        )
                    else:
                        summary.steps.append(
                            StepReport(step=STEP_MONTH_END, status=StepStatus.SKIPPED)
                        )
        finally:
            summary.success = all(s.status != StepStatus.FAILED for s in summary.steps)
            summary.finished_at = datetime.now(timezone.utc).isoformat()
            detail = {"steps": {s.step: s.status.value for s in summary.steps}}
            if summary.success:
                self.tracker.complete_step(process_date, STEP_PIPELINE, detail)
            else:
                self.tracker.fail_step(
                    process_date, STEP_PIPELINE, "one or more steps failed", detail
                )

        logger.info(
            f"Daily pipeline for {process_date} finished: "
            f"{'success' if summary.success else 'FAILED'}"
            f"{' (degraded)' if summary.degraded else ''}"
        )
        return summary

    async def catch_up(self, end_date: Optional[date] = None) -> CatchUpSummary:
        """Extract every day after the latest one in the ledger, then roll up.

        Starts from `backfill_start_date` when the ledger is empty. Months that
        ended before `end_date` are closed with a historical pass unless they
        already have one; the month containing `end_date` gets a trending pass.
        """
        end_date = end_date or yesterday_utc()
        with self.tracker.exclusive(f"catch_up {end_date}"), log_context(
            run="catch_up", process_date=end_date.isoformat()
        ):
            return await self._catch_up(end_date)

    async def _catch_up(self, end_date: date) -> CatchUpSummary:
        with self.repositories() as repo:
            latest = repo.latest_daily_date()

        start_date = latest + timedelta(days=1) if latest else settings.backfill_start_date
        summary = CatchUpSummary(start_date=start_date, end_date=end_date)
        if start_date > end_date:
            summary.message = f"Already up to date (latest: {latest})"
            logger.info(summary.message)
            return summary

        if latest:
            logger.info(f"Gap detected: resuming from {start_date} (ledger ends {latest})")
        else:
            logger.info(f"Empty ledger: starting from {start_date}")

        with self.repositories() as repo:
            await refresh_accounts(self.source, repo, end_date)

        for day in date_range(start_date, end_date):
            results = await extract_day(self.source, self.repositories, day)
            if _extraction_status(results) == StepStatus.FAILED:
                summary.failed_days.append(day)
            else:
                summary.days_processed.append(day)

        for month in months_between(start_date, end_date):
            _, month_end = month_bounds(month)
            try:
                with self.repositories() as repo:
                    rollup_month(repo, month)
                    if month_end < end_date:
                        if not repo.has_historical_levels(month):
                            classify_month(
                                repo,
                                month,
                                ClassificationMode.HISTORICAL,
                                thresholds=self.thresholds,
                            )
                    else:
                        classify_month(
                            repo,
                            month,
                            ClassificationMode.TRENDING,
                            end_date,
                            self.thresholds,
                        )
                summary.months_rolled_up.append(month)
            except RollupError as e:
                logger.error(str(e), extra={"month": month})
                summary.success = False

        summary.success = summary.success and not summary.failed_days
        summary.message = (
            f"Processed {len(summary.days_processed)} days, "
            f"{len(summary.failed_days)} failed"
        )
        logger.info(f"Catch-up finished: {summary.message}")
        return summary

    def process_month(
        self,
        month: str,
        historical: bool = False,
        data_through: Optional[date] = None,
    ) -> ClassificationResult:
        """Rebuild one month, then classify it.

        With `historical`, the month is (re)closed: historical values are
        overwritten even if they already exist. Otherwise a trending pass runs
        as of `data_through`, which leaves an already closed month untouched.
        """
        validate_month(month)
        mode = ClassificationMode.HISTORICAL if historical else ClassificationMode.TRENDING
        with self.tracker.exclusive(f"process_month {month}"), log_context(
            run="process_month"
        ):
            with self.repositories() as repo:
                rollup_month(repo, month)
                return classify_month(repo, month, mode, data_through, self.thresholds)

    def reclassify_historical(self, month: str) -> ClassificationResult:
        """Administrative re-run of the historical pass without a rebuild."""
        validate_month(month)
        logger.warning(
            "Overwriting historical risk levels by explicit request",
            extra={"month": month},
        )
        with self.tracker.exclusive(f"reclassify_historical {month}"), log_context(
            run="reclassify_historical"
        ):
            with self.repositories() as repo:
                return classify_month(
                    repo, month, ClassificationMode.HISTORICAL, thresholds=self.thresholds
                )
