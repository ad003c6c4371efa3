"""Tests for the monthly rollup engine."""

from datetime import date

import pytest

from churnwatch.etl.monthly_rollup import (
    RollupError,
    aggregate_account_month,
    is_eligible_for_month,
    rollup_month,
)
from churnwatch.models.account import Account, AccountStatus
from churnwatch.models.metrics_models import DailyMetric, MonthlyMetric
from churnwatch.storage.repository import SqlMetricsRepository


def _snapshot(repo, month):
    return [r.model_dump() for r in repo.monthly_metrics_for(month)]


class TestEligibility:
    def test_launched_mid_month_is_eligible(self):
        account = Account(account_id="A1", launched_at=date(2025, 3, 15))
        assert is_eligible_for_month(account, "2025-03")
        assert not is_eligible_for_month(account, "2025-02")

    def test_archived_account_visible_through_archive_month(self):
        account = Account(
            account_id="A1",
            status=AccountStatus.ARCHIVED.value,
            launched_at=date(2025, 1, 1),
            archived_at=date(2025, 6, 10),
        )
        assert is_eligible_for_month(account, "2025-05")
        assert is_eligible_for_month(account, "2025-06")
        assert not is_eligible_for_month(account, "2025-07")

    def test_earliest_archive_signal_wins(self):
        account = Account(
            account_id="A1",
            status=AccountStatus.ARCHIVED.value,
            launched_at=date(2025, 1, 1),
            archived_at=date(2025, 8, 1),
            earliest_unit_archived_at=date(2025, 6, 10),
        )
        assert not is_eligible_for_month(account, "2025-07")

    def test_unit_archive_alone_keeps_launched_account_visible(self):
        account = Account(
            account_id="A1",
            status=AccountStatus.LAUNCHED.value,
            launched_at=date(2025, 1, 1),
            earliest_unit_archived_at=date(2025, 6, 10),
        )
        assert is_eligible_for_month(account, "2025-06")
        assert is_eligible_for_month(account, "2025-07")

    def test_no_launch_date_is_ineligible(self):
        assert not is_eligible_for_month(Account(account_id="A1"), "2025-03")


class TestAggregation:
    def test_subscribers_are_averaged_not_summed(self):
        days = [
            DailyMetric(account_id="A1", date=date(2025, 8, d), active_subscribers=v, spend=1.25)
            for d, v in ((1, 100), (2, 200), (3, 300))
        ]
        row = aggregate_account_month("A1", "2025-08", days)
        assert row.avg_active_subscribers == 200
        assert row.total_spend == pytest.approx(3.75)
        assert row.days_with_data == 3
        assert row.month_label == "August 2025"

    def test_no_days_gives_zero_row(self):
        row = aggregate_account_month("A1", "2025-08", [])
        assert row.total_spend == 0
        assert row.total_messages == 0
        assert row.total_redemptions == 0
        assert row.avg_active_subscribers == 0
        assert row.days_with_data == 0


class TestRollupMonth:
    @pytest.fixture
    def seeded(self, repo, record_factory):
        repo.upsert_account(record_factory("A1", launched_at=date(2025, 1, 1)))
        repo.upsert_account(record_factory("B2", launched_at=date(2025, 1, 1)))
        repo.upsert_account(record_factory("C3", launched_at=date(2025, 9, 1)))
        for day, subs in ((1, 100), (2, 200), (3, 300)):
            repo.upsert_daily_value("A1", date(2025, 8, day), "active_subscribers", subs)
            repo.upsert_daily_value("A1", date(2025, 8, day), "spend", 10.5)
            repo.upsert_daily_value("A1", date(2025, 8, day), "redemptions", 2)
        repo.upsert_daily_value("A1", date(2025, 7, 31), "spend", 999.0)
        repo.commit()
        return repo

    def test_left_join_and_eligibility(self, seeded):
        result = rollup_month(seeded, "2025-08")
        assert result.accounts_processed == 2
        assert result.month_label == "August 2025"

        rows = {r.account_id: r for r in seeded.monthly_metrics_for("2025-08")}
        assert set(rows) == {"A1", "B2"}
        assert rows["A1"].total_spend == pytest.approx(31.5)
        assert rows["A1"].total_redemptions == 6
        assert rows["A1"].avg_active_subscribers == 200
        assert rows["B2"].total_spend == 0
        assert rows["B2"].days_with_data == 0

    def test_rerun_is_idempotent(self, seeded):
        rollup_month(seeded, "2025-08")
        first = _snapshot(seeded, "2025-08")
        rollup_month(seeded, "2025-08")
        assert _snapshot(seeded, "2025-08") == first

    def test_rerun_picks_up_late_daily_data(self, seeded):
        rollup_month(seeded, "2025-08")
        seeded.upsert_daily_value("B2", date(2025, 8, 4), "spend", 7.25)
        seeded.commit()
        rollup_month(seeded, "2025-08")
        rows = {r.account_id: r for r in seeded.monthly_metrics_for("2025-08")}
        assert rows["B2"].total_spend == pytest.approx(7.25)
        assert rows["A1"].total_spend == pytest.approx(31.5)

    def test_historical_levels_survive_rebuild(self, seeded):
        rollup_month(seeded, "2025-08")
        row = seeded.monthly_metrics_for("2025-08")[0]
        seeded.save_historical(row, "medium", ["Low Activity"])
        seeded.commit()

        rollup_month(seeded, "2025-08")
        rows = {r.account_id: r for r in seeded.monthly_metrics_for("2025-08")}
        assert rows["A1"].historical_risk_level == "medium"
        assert rows["A1"].historical_reasons == ["Low Activity"]
        assert rows["B2"].historical_risk_level is None

    def test_archived_account_dropped_after_archive_month(self, repo, record_factory):
        repo.upsert_account(
            record_factory(
                "A1",
                status=AccountStatus.ARCHIVED,
                launched_at=date(2025, 1, 1),
                archived_at=date(2025, 6, 10),
            )
        )
        assert rollup_month(repo, "2025-06").accounts_processed == 1
        assert rollup_month(repo, "2025-07").accounts_processed == 0

    def test_invalid_month(self, repo):
        with pytest.raises(ValueError):
            rollup_month(repo, "August")


class FailingReplaceRepository(SqlMetricsRepository):
    def replace_monthly_metrics(self, month, rows):
        raise RuntimeError("disk full")


class TestRollupFailure:
    def test_error_is_wrapped(self, session, record_factory):
        repo = FailingReplaceRepository(session)
        repo.upsert_account(record_factory("A1"))
        with pytest.raises(RollupError, match="2025-08.*disk full") as exc:
            rollup_month(repo, "2025-08")
        assert exc.value.month == "2025-08"

    def test_failed_replace_leaves_month_unchanged(self, repo, record_factory):
        repo.upsert_account(record_factory("A1"))
        rollup_month(repo, "2025-08")
        before = _snapshot(repo, "2025-08")

        duplicate = [
            MonthlyMetric(account_id="A1", month="2025-08", total_spend=1.0),
            MonthlyMetric(account_id="A1", month="2025-08", total_spend=2.0),
        ]
        with pytest.raises(Exception):
            repo.replace_monthly_metrics("2025-08", duplicate)

        assert _snapshot(repo, "2025-08") == before
