"""Calendar helpers for billing periods (month-start dates)."""

import calendar
from datetime import date


def month_start(value: date) -> date:
    """First calendar day of value's month."""
    return value.replace(day=1)


def add_months(value: date, months: int) -> date:
    """
    Shift a date by whole months, clamping the day to the target month's length.

    Examples:
        >>> add_months(date(2026, 1, 31), 1)
        datetime.date(2026, 2, 28)
        >>> add_months(date(2026, 11, 1), 3)
        datetime.date(2027, 2, 1)
    """
    index = value.year * 12 + (value.month - 1) + months
    year, month = divmod(index, 12)
    month += 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def day_in_month(reference: date, day_of_month: int) -> date:
    """reference's month on day_of_month, clamped to the month's last day."""
    last = calendar.monthrange(reference.year, reference.month)[1]
    return reference.replace(day=min(day_of_month, last))


def period_label(period_start: date) -> str:
    """Human label for a billing month, e.g. 'October 2026'."""
    return period_start.strftime("%B %Y")
