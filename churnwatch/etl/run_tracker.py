"""ChurnWatch — ETL Run Tracker.

Records the status of each pipeline step per processing date in `etl_runs`,
refuses to start a step that is already running for the same date, and
holds the lock that allows only one orchestrator run at a time.
"""

import json
from contextlib import contextmanager
from datetime import date, datetime, timedelta, timezone
from typing import Iterator, List, Optional

from sqlalchemy import update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from churnwatch.core.logging import get_logger
from churnwatch.models.pipeline_models import EtlRun

logger = get_logger("etl.tracker")

RUNNING = "running"
COMPLETED = "completed"
FAILED = "failed"

# One row guards every orchestrator entry point, whatever date it processes
LOCK_RUN_DATE = "*"
LOCK_STEP = "pipeline_lock"


class PipelineAlreadyRunningError(Exception):
    """Raised when a step, or the pipeline lock, is already held."""

    def __init__(self, run_date: str, step: str):
        self.run_date = run_date
        self.step = step
        super().__init__(f"ETL step '{step}' is already running for {run_date}")


class RunTracker:
    """Step bookkeeping backed by the etl_runs table.

    A step left `running` for longer than `stale_after` (a crashed run) no
    longer blocks a new start.
    """

    def __init__(self, engine: Engine, stale_after: timedelta = timedelta(hours=6)):
        self.engine = engine
        self.stale_after = stale_after

    def _is_live(self, run: EtlRun) -> bool:
        started = run.started_at
        if started.tzinfo is None:
            # SQLite drops tzinfo on round-trip
            started = started.replace(tzinfo=timezone.utc)
        return datetime.now(timezone.utc) - started < self.stale_after

    def start_step(self, run_date: date, step: str, metadata: dict | None = None) -> EtlRun:
        key = run_date.isoformat()
        with Session(self.engine) as session:
            run = session.get(EtlRun, (key, step))
            if run is not None and run.status == RUNNING:
                if self._is_live(run):
                    raise PipelineAlreadyRunningError(key, step)
                logger.warning(
                    f"Restarting stale ETL step {step} for {key}", extra={"step": step}
                )
            if run is None:
                run = EtlRun(run_date=key, step=step, status=RUNNING)
            run.status = RUNNING
            run.started_at = datetime.now(timezone.utc)
            run.completed_at = None
            run.error_message = None
            run.metadata_json = json.dumps(metadata or {}, default=str)
            session.add(run)
            session.commit()
            session.refresh(run)
        logger.info(f"Started ETL step {step} for {key}", extra={"step": step})
        return run

    def complete_step(self, run_date: date, step: str, metadata: dict | None = None) -> None:
        self._finish(run_date, step, COMPLETED, None, metadata)
        logger.info(f"Completed ETL step {step} for {run_date}", extra={"step": step})

    def fail_step(
        self, run_date: date, step: str, error_message: str, metadata: dict | None = None
    ) -> None:
        self._finish(run_date, step, FAILED, error_message, metadata)
        logger.error(
            f"Failed ETL step {step} for {run_date}: {error_message}",
            extra={"step": step},
        )

    def _finish(
        self,
        run_date: date,
        step: str,
        status: str,
        error_message: Optional[str],
        metadata: dict | None,
    ) -> None:
        with Session(self.engine) as session:
            run = session.get(EtlRun, (run_date.isoformat(), step))
            if run is None:
                run = EtlRun(run_date=run_date.isoformat(), step=step, status=status)
            run.status = status
            run.completed_at = datetime.now(timezone.utc)
            run.error_message = error_message
            if metadata is not None:
                run.metadata_json = json.dumps(metadata, default=str)
            session.add(run)
            session.commit()

    # ── System-wide run lock ──

    def acquire_lock(self, holder: str) -> None:
        """Claim the single orchestrator lock, or raise if another run holds it.

        The claim is a compare-and-swap on the lock row, so two processes that
        race for a free or stale lock cannot both win.
        """
        now = datetime.now(timezone.utc)
        metadata_json = json.dumps({"holder": holder})
        seen = None
        with Session(self.engine) as session:
            lock = session.get(EtlRun, (LOCK_RUN_DATE, LOCK_STEP))
            if lock is None:
                session.add(
                    EtlRun(
                        run_date=LOCK_RUN_DATE,
                        step=LOCK_STEP,
                        status=RUNNING,
                        started_at=now,
                        metadata_json=metadata_json,
                    )
                )
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    raise PipelineAlreadyRunningError(LOCK_RUN_DATE, LOCK_STEP)
            else:
                if lock.status == RUNNING:
                    if self._is_live(lock):
                        current = json.loads(lock.metadata_json or "{}").get("holder")
                        raise PipelineAlreadyRunningError(current or LOCK_RUN_DATE, LOCK_STEP)
                    logger.warning(
                        "Taking over stale pipeline lock", extra={"step": LOCK_STEP}
                    )
                seen = (lock.status, lock.started_at)
        if seen is not None:
            self._claim_lock(*seen, now, metadata_json)
        logger.info(f"Pipeline lock acquired by {holder}", extra={"step": LOCK_STEP})

    def _claim_lock(
        self, seen_status: str, seen_started_at: datetime, now: datetime, metadata_json: str
    ) -> None:
        # Only succeeds if nobody changed the row since it was read
        with self.engine.begin() as conn:
            claimed = conn.execute(
                update(EtlRun)
                .where(
                    EtlRun.run_date == LOCK_RUN_DATE,
                    EtlRun.step == LOCK_STEP,
                    EtlRun.status == seen_status,
                    EtlRun.started_at == seen_started_at,
                )
                .values(
                    status=RUNNING,
                    started_at=now,
                    completed_at=None,
                    error_message=None,
                    metadata_json=metadata_json,
                )
            )
        if claimed.rowcount != 1:
            raise PipelineAlreadyRunningError(LOCK_RUN_DATE, LOCK_STEP)

    def release_lock(self) -> None:
        with Session(self.engine) as session:
            lock = session.get(EtlRun, (LOCK_RUN_DATE, LOCK_STEP))
            if lock is None:
                return
            lock.status = COMPLETED
            lock.completed_at = datetime.now(timezone.utc)
            session.add(lock)
            session.commit()

    def is_locked(self) -> bool:
        with Session(self.engine) as session:
            lock = session.get(EtlRun, (LOCK_RUN_DATE, LOCK_STEP))
            return lock is not None and lock.status == RUNNING and self._is_live(lock)

    @contextmanager
    def exclusive(self, holder: str) -> Iterator[None]:
        """Hold the pipeline lock for the duration of the block."""
        self.acquire_lock(holder)
        try:
            yield
        finally:
            self.release_lock()

    def get_step(self, run_date: date, step: str) -> Optional[EtlRun]:
        with Session(self.engine) as session:
            return session.get(EtlRun, (run_date.isoformat(), step))

    def is_step_complete(self, run_date: date, step: str) -> bool:
        run = self.get_step(run_date, step)
        return run is not None and run.status == COMPLETED

    def recent_runs(self, limit: int = 50) -> List[EtlRun]:
        with Session(self.engine) as session:
            return list(
                session.exec(
                    select(EtlRun)
                    .order_by(EtlRun.started_at.desc())  # type: ignore
                    .limit(limit)
                ).all()
            )
