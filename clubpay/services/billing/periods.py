"""Billing period arithmetic with day-of-month clamping."""
from __future__ import annotations

import calendar
from datetime import date, datetime

from clubpay.models.billing import BillingFrequency


def add_months(value: datetime, months: int, day: int | None = None) -> datetime:
    """Move ``value`` forward by whole months.

    The day of month is ``day`` (or the original day) clamped to the last day
    of the target month, so Jan 31 + 1 month is Feb 28/29, never Mar 3.
    """
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return value.replace(year=year, month=month, day=min(day or value.day, last_day))


def months_in_period(frequency: BillingFrequency | str) -> int:
    return 12 if BillingFrequency(frequency) == BillingFrequency.annual else 1


def period_end(start: datetime, frequency: BillingFrequency | str) -> datetime:
    return add_months(start, months_in_period(frequency))


def next_billing_date(
    now: datetime, frequency: BillingFrequency | str, billing_day: int
) -> date:
    """One period after ``now``, landing on ``billing_day`` where the month allows."""
    return add_months(now, months_in_period(frequency), day=billing_day).date()
