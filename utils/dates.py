"""Date helpers shared by billing code."""

import calendar
from collections.abc import Callable
from datetime import UTC, datetime

from core.constants import BillingPeriod

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and normalize aware ones."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def add_months(value: datetime, months: int) -> datetime:
    """Add calendar months, clamping to the last day of the target month."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def add_billing_period(start: datetime, period: BillingPeriod) -> datetime:
    """Return the end of one billing cycle starting at ``start``."""
    if period == BillingPeriod.YEARLY:
        return add_months(start, 12)
    return add_months(start, 1)
