"""ChurnWatch — Abstract Fact Source."""

from abc import ABC, abstractmethod
from datetime import date
from typing import List

from churnwatch.connectors.warehouse.transformer import DailyTotal
from churnwatch.models.account import AccountRecord


class FactSource(ABC):
    """Abstract upstream source of accounts and daily per-account facts.

    The pipeline depends only on this interface; the warehouse product and
    query dialect behind it are an implementation detail of each subclass.
    """

    @abstractmethod
    async def fetch_accounts(
        self, window_start: date, window_end: date
    ) -> List[AccountRecord]:
        """Return accounts eligible for tracking in the window.

        Eligible means launched on or before `window_end` and, if archived,
        archived on or after `window_start`.
        """
        ...

    @abstractmethod
    async def fetch_daily_totals(self, metric: str, day: date) -> List[DailyTotal]:
        """Return per-account totals of `metric` for a single day.

        Only accounts with non-zero activity are returned.
        """
        ...

    async def close(self) -> None:
        """Release any held connections."""
        return None
