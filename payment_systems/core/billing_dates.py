"""Billing-date arithmetic for plan cadences."""
from datetime import date, timedelta
from typing import TypeVar

from dateutil.relativedelta import relativedelta

from .enums import BillingInterval

D = TypeVar("D", bound=date)

_MONTHS_PER_UNIT = {
    BillingInterval.MONTHLY: 1,
    BillingInterval.QUARTERLY: 3,
    BillingInterval.YEARLY: 12,
}


def add_months(value: D, months: int) -> D:
    """
    Advance by whole months with calendar rollover.

    A day of month missing from the target month spills into the next one,
    so Jan 31 + 1 month is Mar 2 (2024) and Feb 29 + 12 months is Mar 1.
    """
    first_of_month = value.replace(day=1) + relativedelta(months=months)
    return first_of_month + timedelta(days=value.day - 1)


def calculate_next_billing_date(value: D, interval: BillingInterval, count: int = 1) -> D:
    """
    Advance a billing date by ``count`` units of ``interval``.

    Args:
        value: Current billing date (date or datetime; time of day is kept)
        interval: Plan billing interval
        count: Number of intervals per billing cycle

    Returns:
        Next billing date of the same type as ``value``

    Raises:
        ValueError: If count is not positive
    """
    if count < 1:
        raise ValueError(f"Interval count must be positive, got {count}")

    interval = BillingInterval(interval)
    if interval == BillingInterval.DAILY:
        return value + timedelta(days=count)
    if interval == BillingInterval.WEEKLY:
        return value + timedelta(weeks=count)
    return add_months(value, _MONTHS_PER_UNIT[interval] * count)
