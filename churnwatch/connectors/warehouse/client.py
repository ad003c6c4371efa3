"""ChurnWatch — Warehouse API Client.

Fact source backed by the warehouse's HTTP query API. Handles authentication,
retry logic, rate limiting, and pagination.
"""

import asyncio
from datetime import date
from typing import Any, Dict, List, Optional

import httpx

from churnwatch.config import settings
from churnwatch.connectors.warehouse.base import FactSource
from churnwatch.connectors.warehouse.transformer import (
    DailyTotal,
    transform_accounts,
    transform_daily_totals,
)
from churnwatch.core.logging import get_logger
from churnwatch.core.metric_registry import get_metric
from churnwatch.models.account import AccountRecord

logger = get_logger("warehouse.client")

MAX_RETRIES = 3
RETRY_BASE_DELAY = 2  # seconds


class WarehouseAPIError(Exception):
    """Raised when the warehouse API returns an error."""

    def __init__(self, message: str, status_code: int = 0):
        self.status_code = status_code
        super().__init__(message)


class WarehouseClient(FactSource):
    """Async HTTP client for the warehouse query API."""

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        retry_base_delay: float = RETRY_BASE_DELAY,
    ):
        self.base_url = (base_url or settings.warehouse_base_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.warehouse_api_key
        self.timeout = timeout or settings.warehouse_timeout_seconds
        self.retry_base_delay = retry_base_delay
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            headers = {"Accept": "application/json"}
            if self.api_key:
                headers["Authorization"] = f"Bearer {self.api_key}"
            self._client = httpx.AsyncClient(
                timeout=self.timeout, headers=headers, transport=self._transport
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    # ── Core Request Method ──

    async def _request(
        self,
        method: str,
        url: str,
        params: Dict[str, Any] | None = None,
    ) -> Dict[str, Any]:
        """Make a request with retry + rate-limit handling."""
        client = await self._get_client()

        for attempt in range(1, MAX_RETRIES + 1):
            try:
                resp = await client.request(method, url, params=params)

                # Rate limited
                if resp.status_code == 429:
                    wait = self.retry_base_delay * (2 ** (attempt - 1))
                    logger.warning(
                        f"Rate limited (429). Retrying in {wait}s (attempt {attempt}/{MAX_RETRIES})"
                    )
                    await asyncio.sleep(wait)
                    continue

                resp.raise_for_status()
                return resp.json()

            except httpx.HTTPStatusError as e:
                body = (
                    e.response.json()
                    if e.response.headers.get("content-type", "").startswith(
                        "application/json"
                    )
                    else {}
                )
                error_msg = body.get("error", {}).get("message", str(e))

                if attempt < MAX_RETRIES and e.response.status_code >= 500:
                    wait = self.retry_base_delay * (2 ** (attempt - 1))
                    logger.warning(
                        f"Server error {e.response.status_code}. Retrying in {wait}s"
                    )
                    await asyncio.sleep(wait)
                    continue

                raise WarehouseAPIError(error_msg, e.response.status_code) from e

            except httpx.RequestError as e:
                if attempt < MAX_RETRIES:
                    wait = self.retry_base_delay * (2 ** (attempt - 1))
                    logger.warning(f"Request error: {e}. Retrying in {wait}s")
                    await asyncio.sleep(wait)
                    continue
                raise WarehouseAPIError(
                    f"Connection failed after {MAX_RETRIES} retries: {e}"
                ) from e

        raise WarehouseAPIError("Max retries exhausted", 429)

    # ── Pagination ──

    async def _paginated_get(
        self,
        url: str,
        params: Dict[str, Any] | None = None,
        max_pages: int = 500,
    ) -> List[Dict[str, Any]]:
        """Fetch all pages of a paginated endpoint."""
        all_data: List[Dict[str, Any]] = []
        current_url = url

        for page in range(max_pages):
            result = await self._request(
                "GET", current_url, params if page == 0 else None
            )
            all_data.extend(result.get("data", []))

            # Check for next page
            next_url = result.get("paging", {}).get("next")
            if not next_url:
                break
            current_url = next_url

        logger.info(f"Fetched {len(all_data)} records from {url}")
        return all_data

    # ── FactSource ──

    async def fetch_accounts(
        self, window_start: date, window_end: date
    ) -> List[AccountRecord]:
        rows = await self._paginated_get(
            f"{self.base_url}/accounts",
            {
                "window_start": window_start.isoformat(),
                "window_end": window_end.isoformat(),
            },
        )
        return transform_accounts(rows)

    async def fetch_daily_totals(self, metric: str, day: date) -> List[DailyTotal]:
        get_metric(metric)
        rows = await self._paginated_get(
            f"{self.base_url}/facts/{metric}", {"date": day.isoformat()}
        )
        return transform_daily_totals(rows, metric)
