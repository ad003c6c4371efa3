"""ChurnWatch — Metrics Repository.

The pipeline components read and write through MetricsRepository only.
SqlMetricsRepository implements it with SQLModel, which covers both the
SQLite and PostgreSQL backends.
"""

import json
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import date, datetime, timezone
from typing import Callable, ContextManager, Dict, Iterator, List, Optional

from sqlalchemy import func
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from churnwatch.core.logging import get_logger
from churnwatch.core.metric_registry import get_metric
from churnwatch.models.account import Account, AccountRecord
from churnwatch.models.metrics_models import DailyMetric, MonthlyMetric

logger = get_logger("storage.repository")

RepositoryFactory = Callable[[], ContextManager["MetricsRepository"]]


class MetricsRepository(ABC):
    """Storage operations needed by sync, extraction, rollup and risk passes."""

    # ── Accounts ──

    @abstractmethod
    def upsert_account(self, record: AccountRecord) -> bool:
        """Insert or update one account and commit. Returns True if created."""

    @abstractmethod
    def list_accounts(self) -> List[Account]: ...

    # ── Daily ledger ──

    @abstractmethod
    def upsert_daily_value(
        self, account_id: str, day: date, metric: str, value: float
    ) -> bool:
        """Set one metric on the (account, day) row. Returns True if created."""

    @abstractmethod
    def daily_metrics_between(
        self, start: date, end: date, account_id: Optional[str] = None
    ) -> List[DailyMetric]: ...

    @abstractmethod
    def latest_daily_date(self) -> Optional[date]: ...

    # ── Monthly rollup ──

    @abstractmethod
    def replace_monthly_metrics(self, month: str, rows: List[MonthlyMetric]) -> int:
        """Atomically replace every row for `month`. Returns rows written."""

    @abstractmethod
    def monthly_metrics_for(self, month: str) -> List[MonthlyMetric]: ...

    @abstractmethod
    def has_historical_levels(self, month: str) -> bool: ...

    @abstractmethod
    def save_trending(self, row: MonthlyMetric, level: str, reasons: List[str]) -> None: ...

    @abstractmethod
    def save_historical(
        self, row: MonthlyMetric, level: str, reasons: List[str]
    ) -> None: ...

    @abstractmethod
    def commit(self) -> None: ...

    @abstractmethod
    def rollback(self) -> None: ...


class SqlMetricsRepository(MetricsRepository):
    """SQLModel-backed repository bound to one session."""

    def __init__(self, session: Session):
        self.session = session

    # ── Accounts ──

    def upsert_account(self, record: AccountRecord) -> bool:
        existing = self.session.get(Account, record.account_id)
        now = datetime.now(timezone.utc)
        if existing is None:
            self.session.add(
                Account(
                    account_id=record.account_id,
                    account_name=record.account_name,
                    status=record.status.value,
                    launched_at=record.launched_at,
                    archived_at=record.archived_at,
                    earliest_unit_archived_at=record.earliest_unit_archived_at,
                    owner=record.owner,
                    last_updated=now,
                )
            )
            created = True
        else:
            if not existing.account_name_protected:
                existing.account_name = record.account_name
            if not existing.owner_protected:
                existing.owner = record.owner
            existing.status = record.status.value
            existing.launched_at = record.launched_at
            existing.archived_at = record.archived_at
            existing.earliest_unit_archived_at = record.earliest_unit_archived_at
            existing.last_updated = now
            self.session.add(existing)
            created = False
        self.session.commit()
        return created

    def list_accounts(self) -> List[Account]:
        return list(self.session.exec(select(Account).order_by(Account.account_id)).all())

    # ── Daily ledger ──

    def upsert_daily_value(
        self, account_id: str, day: date, metric: str, value: float
    ) -> bool:
        definition = get_metric(metric)
        now = datetime.now(timezone.utc)
        row = self.session.get(DailyMetric, (account_id, day))
        created = row is None
        if created:
            # Sibling metrics default to 0 with no timestamp
            row = DailyMetric(account_id=account_id, date=day)
        if definition.unit == "count":
            value = int(round(value))
        setattr(row, definition.column, value)
        setattr(row, definition.timestamp_column, now)
        self.session.add(row)
        self.session.flush()
        return created

    def daily_metrics_between(
        self, start: date, end: date, account_id: Optional[str] = None
    ) -> List[DailyMetric]:
        query = select(DailyMetric).where(
            DailyMetric.date >= start, DailyMetric.date <= end
        )
        if account_id is not None:
            query = query.where(DailyMetric.account_id == account_id)
        return list(
            self.session.exec(
                query.order_by(DailyMetric.account_id, DailyMetric.date)
            ).all()
        )

    def latest_daily_date(self) -> Optional[date]:
        return self.session.exec(select(func.max(DailyMetric.date))).one()

    # ── Monthly rollup ──

    def replace_monthly_metrics(self, month: str, rows: List[MonthlyMetric]) -> int:
        try:
            existing = self.monthly_metrics_for(month)
            # Carry terminal historical classifications across the rebuild
            closed: Dict[str, tuple] = {
                m.account_id: (m.historical_risk_level, m.risk_reasons)
                for m in existing
                if m.historical_risk_level is not None
            }
            for old in existing:
                self.session.delete(old)
            self.session.flush()
            logger.info(
                f"Deleted {len(existing)} existing monthly rows", extra={"month": month}
            )
            for row in rows:
                if row.account_id in closed:
                    row.historical_risk_level, row.risk_reasons = closed[row.account_id]
                self.session.add(row)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        return len(rows)

    def monthly_metrics_for(self, month: str) -> List[MonthlyMetric]:
        return list(
            self.session.exec(
                select(MonthlyMetric)
                .where(MonthlyMetric.month == month)
                .order_by(MonthlyMetric.account_id)
            ).all()
        )

    def has_historical_levels(self, month: str) -> bool:
        found = self.session.exec(
            select(MonthlyMetric.account_id).where(
                MonthlyMetric.month == month,
                MonthlyMetric.historical_risk_level.is_not(None),  # type: ignore
            )
        ).first()
        return found is not None

    def save_trending(self, row: MonthlyMetric, level: str, reasons: List[str]) -> None:
        row.trending_risk_level = level
        row.trending_risk_reasons = json.dumps(reasons)
        self.session.add(row)

    def save_historical(
        self, row: MonthlyMetric, level: str, reasons: List[str]
    ) -> None:
        # Closing the month: historical becomes authoritative, trending is cleared
        row.historical_risk_level = level
        row.risk_reasons = json.dumps(reasons)
        row.trending_risk_level = None
        row.trending_risk_reasons = None
        self.session.add(row)

    def commit(self) -> None:
        self.session.commit()

    def rollback(self) -> None:
        self.session.rollback()


def sql_repository_factory(engine: Engine) -> RepositoryFactory:
    """Return a factory that opens a fresh session-bound repository per use."""

    @contextmanager
    def _open() -> Iterator[MetricsRepository]:
        with Session(engine) as session:
            yield SqlMetricsRepository(session)

    return _open
