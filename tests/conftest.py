"""Shared fixtures: an in-memory database and an in-memory fact source."""

from collections import defaultdict
from datetime import date
from typing import Dict, List, Tuple

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, create_engine

from churnwatch.connectors.warehouse.base import FactSource
from churnwatch.connectors.warehouse.client import WarehouseAPIError
from churnwatch.connectors.warehouse.transformer import DailyTotal
from churnwatch.database import init_db
from churnwatch.etl.run_tracker import RunTracker
from churnwatch.models.account import AccountRecord, AccountStatus
from churnwatch.storage.repository import SqlMetricsRepository, sql_repository_factory


class InMemoryFactSource(FactSource):
    """Fact source backed by dicts; metrics listed in `failing` raise."""

    def __init__(self):
        self.accounts: List[AccountRecord] = []
        self.facts: Dict[Tuple[str, date], Dict[str, float]] = defaultdict(dict)
        self.failing: set = set()
        self.fail_accounts = False
        self.calls: List[Tuple[str, date]] = []
        self.closed = False

    def add_account(self, record: AccountRecord) -> None:
        self.accounts.append(record)

    def set_fact(self, metric: str, day: date, account_id: str, total: float) -> None:
        self.facts[(metric, day)][account_id] = total

    def set_day(
        self,
        day: date,
        account_id: str,
        spend: float = 0,
        messages: int = 0,
        redemptions: int = 0,
        subscribers: int = 0,
    ) -> None:
        values = {
            "spend": spend,
            "messages_delivered": messages,
            "redemptions": redemptions,
            "active_subscribers": subscribers,
        }
        for metric, total in values.items():
            if total:
                self.set_fact(metric, day, account_id, total)

    async def fetch_accounts(self, window_start: date, window_end: date) -> List[AccountRecord]:
        if self.fail_accounts:
            raise WarehouseAPIError("accounts feed unavailable", 503)
        return list(self.accounts)

    async def fetch_daily_totals(self, metric: str, day: date) -> List[DailyTotal]:
        self.calls.append((metric, day))
        if metric in self.failing:
            raise WarehouseAPIError(f"{metric} query failed", 500)
        return [
            DailyTotal(account_id=account_id, total=total)
            for account_id, total in self.facts.get((metric, day), {}).items()
        ]

    async def close(self) -> None:
        self.closed = True


def make_record(
    account_id: str = "A1",
    status: AccountStatus = AccountStatus.LAUNCHED,
    launched_at: date | None = date(2024, 10, 1),
    archived_at: date | None = None,
    earliest_unit_archived_at: date | None = None,
    account_name: str = "",
    owner: str = "Unassigned",
) -> AccountRecord:
    return AccountRecord(
        account_id=account_id,
        account_name=account_name or f"Account {account_id}",
        status=status,
        launched_at=launched_at,
        archived_at=archived_at,
        earliest_unit_archived_at=earliest_unit_archived_at,
        owner=owner,
    )


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as s:
        yield s


@pytest.fixture
def repo(session):
    return SqlMetricsRepository(session)


@pytest.fixture
def repositories(engine):
    return sql_repository_factory(engine)


@pytest.fixture
def tracker(engine):
    return RunTracker(engine)


@pytest.fixture
def source():
    return InMemoryFactSource()


@pytest.fixture
def record_factory():
    return make_record
