"""Tests for anchor date arithmetic."""

from datetime import UTC, date, datetime

from billing_engine.services.billing.dates import (
    anchor_date_for_month,
    count_missed_anchors,
    latest_anchor_on_or_before,
    local_date,
    next_anchor_date,
    period_for_anchor,
    start_of_local_day,
)


class TestAnchorDates:
    def test_anchor_day_clamped_to_short_month(self):
        assert anchor_date_for_month(2026, 2, 31) == date(2026, 2, 28)
        assert anchor_date_for_month(2024, 2, 31) == date(2024, 2, 29)
        assert anchor_date_for_month(2026, 4, 31) == date(2026, 4, 30)

    def test_next_anchor_returns_to_original_day(self):
        """Clamping in February does not drift later anchors."""
        feb = next_anchor_date(date(2026, 1, 31), 31)
        assert feb == date(2026, 2, 28)
        assert next_anchor_date(feb, 31) == date(2026, 3, 31)

    def test_next_anchor_crosses_year(self):
        assert next_anchor_date(date(2026, 12, 8), 8) == date(2027, 1, 8)

    def test_latest_anchor_on_or_before(self):
        assert latest_anchor_on_or_before(date(2026, 3, 8), 8) == date(2026, 3, 8)
        assert latest_anchor_on_or_before(date(2026, 3, 20), 8) == date(2026, 3, 8)
        assert latest_anchor_on_or_before(date(2026, 3, 7), 8) == date(2026, 2, 8)

    def test_period_ends_day_before_next_anchor(self):
        assert period_for_anchor(date(2026, 3, 8), 8) == (date(2026, 3, 8), date(2026, 4, 7))
        assert period_for_anchor(date(2026, 1, 31), 31) == (
            date(2026, 1, 31),
            date(2026, 2, 27),
        )

    def test_count_missed_anchors(self):
        assert count_missed_anchors(date(2026, 1, 8), date(2026, 4, 8), 8) == 2
        assert count_missed_anchors(date(2026, 3, 8), date(2026, 4, 8), 8) == 0


class TestLocalDates:
    def test_local_date_uses_subscription_timezone(self):
        """02:00 UTC is still the previous day in Buenos Aires (UTC-3)."""
        moment = datetime(2026, 3, 8, 2, 0, tzinfo=UTC)
        assert local_date(moment, "America/Argentina/Buenos_Aires") == date(2026, 3, 7)
        assert local_date(moment, "UTC") == date(2026, 3, 8)

    def test_naive_datetime_treated_as_utc(self):
        assert local_date(datetime(2026, 3, 8, 2, 0), "America/Argentina/Buenos_Aires") == date(
            2026, 3, 7
        )

    def test_plain_date_passes_through(self):
        assert local_date(date(2026, 3, 8), "Asia/Tokyo") == date(2026, 3, 8)

    def test_start_of_local_day(self):
        start = start_of_local_day(date(2026, 3, 8), "America/Argentina/Buenos_Aires")
        assert start == datetime(2026, 3, 8, 3, 0, tzinfo=UTC)
