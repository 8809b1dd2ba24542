"""Anchor date arithmetic in a subscription's local timezone."""

from __future__ import annotations

import calendar
from datetime import UTC, date, datetime, time, timedelta
from zoneinfo import ZoneInfo


def _clamp_day(year: int, month: int, anchor_day: int) -> int:
    day = min(max(int(anchor_day), 1), 31)
    return min(day, calendar.monthrange(year, month)[1])


def _shift_month(year: int, month: int, delta: int) -> tuple[int, int]:
    index = year * 12 + (month - 1) + delta
    return index // 12, index % 12 + 1


def anchor_date_for_month(year: int, month: int, anchor_day: int) -> date:
    """Anchor date for a month, clamping the day to the month's length."""
    return date(year, month, _clamp_day(year, month, anchor_day))


def next_anchor_date(anchor: date, anchor_day: int) -> date:
    year, month = _shift_month(anchor.year, anchor.month, 1)
    return anchor_date_for_month(year, month, anchor_day)


def previous_anchor_date(anchor: date, anchor_day: int) -> date:
    year, month = _shift_month(anchor.year, anchor.month, -1)
    return anchor_date_for_month(year, month, anchor_day)


def latest_anchor_on_or_before(run_date: date, anchor_day: int) -> date:
    """Most recent anchor date that is not after ``run_date``."""
    anchor = anchor_date_for_month(run_date.year, run_date.month, anchor_day)
    if anchor <= run_date:
        return anchor
    return previous_anchor_date(anchor, anchor_day)


def period_for_anchor(anchor: date, anchor_day: int) -> tuple[date, date]:
    """Billing period covered by the cycle starting at ``anchor``."""
    return anchor, next_anchor_date(anchor, anchor_day) - timedelta(days=1)


def local_date(moment: datetime | date, tz_name: str) -> date:
    """Calendar date of ``moment`` in ``tz_name``.

    Plain dates are taken to already be local. Naive datetimes are treated
    as UTC.
    """
    if not isinstance(moment, datetime):
        return moment
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment.astimezone(ZoneInfo(tz_name)).date()


def start_of_local_day(day: date, tz_name: str) -> datetime:
    """UTC instant at which ``day`` begins in ``tz_name``."""
    local = datetime.combine(day, time.min, tzinfo=ZoneInfo(tz_name))
    return local.astimezone(UTC)


def count_missed_anchors(last_due: date, current: date, anchor_day: int) -> int:
    """Number of anchors strictly between ``last_due`` and ``current``."""
    missed = 0
    cursor = next_anchor_date(last_due, anchor_day)
    while cursor < current:
        missed += 1
        cursor = next_anchor_date(cursor, anchor_day)
    return missed
