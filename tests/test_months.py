"""Tests for month and day helpers."""

from datetime import date

import pytest

from churnwatch.core.months import (
    date_range,
    days_in_month,
    month_bounds,
    month_label,
    month_of,
    month_progress,
    months_between,
    months_since_launch,
    next_month,
    parse_date,
    previous_month,
    rolling_window_start,
    validate_month,
)


class TestValidateMonth:
    @pytest.mark.parametrize("month", ["2025-08", "1999-12", "2024-01"])
    def test_valid(self, month):
        assert validate_month(month) == month

    @pytest.mark.parametrize("month", ["2025-13", "2025-8", "25-08", "2025-00", "", "2025-08-01"])
    def test_invalid(self, month):
        with pytest.raises(ValueError, match="expected YYYY-MM"):
            validate_month(month)


class TestMonthArithmetic:
    def test_bounds_and_days(self):
        assert month_bounds("2024-02") == (date(2024, 2, 1), date(2024, 2, 29))
        assert days_in_month("2025-02") == 28
        assert days_in_month("2025-08") == 31

    def test_label(self):
        assert month_label("2025-08") == "August 2025"

    def test_previous_and_next_wrap_years(self):
        assert previous_month("2025-01") == "2024-12"
        assert next_month("2024-12") == "2025-01"
        assert previous_month("2025-08") == "2025-07"

    def test_month_of(self):
        assert month_of(date(2025, 8, 14)) == "2025-08"

    def test_parse_date(self):
        assert parse_date("2025-08-14") == date(2025, 8, 14)


class TestMonthsSinceLaunch:
    def test_counts_calendar_months(self):
        assert months_since_launch(date(2024, 10, 20), "2025-08") == 10

    def test_floored_at_zero(self):
        assert months_since_launch(date(2025, 9, 1), "2025-08") == 0

    def test_missing_launch(self):
        assert months_since_launch(None, "2025-08") == 0


class TestMonthProgress:
    def test_day_one_is_zero(self):
        assert month_progress(1, "2025-08") == 0

    def test_complete_month_is_one(self):
        assert month_progress(32, "2025-08") == 1

    def test_mid_month(self):
        assert month_progress(16, "2025-06") == pytest.approx(0.5)


class TestRanges:
    def test_date_range_inclusive(self):
        days = list(date_range(date(2025, 7, 30), date(2025, 8, 2)))
        assert days == [
            date(2025, 7, 30),
            date(2025, 7, 31),
            date(2025, 8, 1),
            date(2025, 8, 2),
        ]

    def test_date_range_empty_when_reversed(self):
        assert list(date_range(date(2025, 8, 2), date(2025, 8, 1))) == []

    def test_months_between(self):
        assert months_between(date(2024, 11, 15), date(2025, 2, 1)) == [
            "2024-11",
            "2024-12",
            "2025-01",
            "2025-02",
        ]

    def test_rolling_window_start(self):
        assert rolling_window_start(date(2025, 8, 14), 12) == date(2024, 8, 1)
        assert rolling_window_start(date(2025, 1, 5), 1) == date(2024, 12, 1)
