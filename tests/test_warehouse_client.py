"""Tests for the warehouse HTTP client and row transformer."""

from datetime import date

import httpx
import pytest

from churnwatch.connectors.warehouse.client import WarehouseAPIError, WarehouseClient
from churnwatch.connectors.warehouse.transformer import (
    transform_account,
    transform_daily_totals,
)
from churnwatch.models.account import AccountStatus

BASE = "https://warehouse.test/api/v1"


def _client(handler) -> WarehouseClient:
    return WarehouseClient(
        base_url=BASE,
        api_key="secret",
        transport=httpx.MockTransport(handler),
        retry_base_delay=0,
    )


class TestTransformer:
    def test_account_row(self):
        record = transform_account(
            {
                "account_id": "A1",
                "name": "Corner Cafe",
                "status": "LAUNCHED",
                "launched_at": {"value": "2024-10-01"},
                "archived_at": None,
                "owner": "agent-7",
            }
        )
        assert record.account_id == "A1"
        assert record.account_name == "Corner Cafe"
        assert record.status == AccountStatus.LAUNCHED
        assert record.launched_at == date(2024, 10, 1)
        assert record.owner == "agent-7"

    def test_timestamp_dates_truncated(self):
        record = transform_account(
            {
                "account_id": "A1",
                "status": "ARCHIVED",
                "launched_at": "2024-10-01T08:00:00Z",
                "earliest_unit_archived_at": "2025-08-03T23:59:59+00:00",
            }
        )
        assert record.earliest_unit_archived_at == date(2025, 8, 3)
        assert record.owner == "Unassigned"

    @pytest.mark.parametrize(
        "row",
        [
            {"status": "LAUNCHED"},
            {"account_id": "A1", "status": "DELETED"},
            {"account_id": "A1", "status": "ARCHIVED", "launched_at": "2024-10-01"},
        ],
    )
    def test_unusable_rows_dropped(self, row):
        assert transform_account(row) is None

    def test_daily_totals_drop_zero_and_missing_ids(self):
        totals = transform_daily_totals(
            [
                {"account_id": "A1", "total": "12.50"},
                {"account_id": "B2", "total": 0},
                {"account_id": "", "total": 4},
                {"account_id": "C3", "total": None},
            ],
            "spend",
        )
        assert [(t.account_id, t.total) for t in totals] == [("A1", 12.5)]


class TestWarehouseClient:
    async def test_fetch_daily_totals_paginates(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            if request.url.params.get("cursor") == "2":
                return httpx.Response(200, json={"data": [{"account_id": "B2", "total": 3}]})
            return httpx.Response(
                200,
                json={
                    "data": [{"account_id": "A1", "total": 5}],
                    "paging": {"next": f"{BASE}/facts/redemptions?date=2025-08-14&cursor=2"},
                },
            )

        client = _client(handler)
        try:
            totals = await client.fetch_daily_totals("redemptions", date(2025, 8, 14))
        finally:
            await client.close()

        assert [(t.account_id, t.total) for t in totals] == [("A1", 5.0), ("B2", 3.0)]
        assert len(seen) == 2
        assert seen[0].url.path == "/api/v1/facts/redemptions"
        assert seen[0].url.params["date"] == "2025-08-14"
        assert seen[0].headers["Authorization"] == "Bearer secret"

    async def test_fetch_accounts_sends_window(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.params["window_start"] == "2024-08-01"
            assert request.url.params["window_end"] == "2025-08-14"
            return httpx.Response(
                200,
                json={
                    "data": [
                        {"account_id": "A1", "status": "ACTIVE", "launched_at": "2025-01-01"}
                    ]
                },
            )

        client = _client(handler)
        try:
            records = await client.fetch_accounts(date(2024, 8, 1), date(2025, 8, 14))
        finally:
            await client.close()

        assert len(records) == 1
        assert records[0].status == AccountStatus.LAUNCHED

    async def test_retries_server_errors(self):
        attempts = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            attempts["n"] += 1
            if attempts["n"] < 3:
                return httpx.Response(503, json={"error": {"message": "busy"}})
            return httpx.Response(200, json={"data": [{"account_id": "A1", "total": 1}]})

        client = _client(handler)
        try:
            totals = await client.fetch_daily_totals("spend", date(2025, 8, 14))
        finally:
            await client.close()

        assert attempts["n"] == 3
        assert len(totals) == 1

    async def test_client_error_raises_without_retry(self):
        attempts = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            attempts["n"] += 1
            return httpx.Response(403, json={"error": {"message": "forbidden"}})

        client = _client(handler)
        try:
            with pytest.raises(WarehouseAPIError, match="forbidden") as exc:
                await client.fetch_daily_totals("spend", date(2025, 8, 14))
        finally:
            await client.close()

        assert exc.value.status_code == 403
        assert attempts["n"] == 1

    async def test_rate_limit_exhausts_retries(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(429)

        client = _client(handler)
        try:
            with pytest.raises(WarehouseAPIError) as exc:
                await client.fetch_daily_totals("spend", date(2025, 8, 14))
        finally:
            await client.close()
        assert exc.value.status_code == 429

    async def test_unknown_metric_rejected(self):
        client = _client(lambda request: httpx.Response(200, json={"data": []}))
        with pytest.raises(KeyError, match="Unknown metric"):
            await client.fetch_daily_totals("clicks", date(2025, 8, 14))
        await client.close()
