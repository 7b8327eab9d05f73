from __future__ import annotations

import re
from calendar import monthrange
from datetime import date
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from payroll_ledger.errors import ValidationError
from payroll_ledger.models import CounterKind

DAY_QUANTUM = Decimal("0.01")
AMOUNT_QUANTUM = Decimal("0.01")
PAID_LEAVE_PERIOD_START_MONTH = 6

_PERIOD_RE = re.compile(r"^(\d{4})-(\d{2})$")
_ANNUAL_KEY_RE = re.compile(r"^(\d{4})$")
_PAID_LEAVE_KEY_RE = re.compile(r"^(\d{4})-(\d{4})$")


def quantize_days(value: Decimal) -> Decimal:
    return Decimal(value).quantize(DAY_QUANTUM, rounding=ROUND_HALF_UP)


def quantize_amount(value: Decimal) -> Decimal:
    return Decimal(value).quantize(AMOUNT_QUANTUM, rounding=ROUND_HALF_UP)


def parse_decimal(value: Any, *, field: str) -> Decimal:
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{field} must be a decimal number", field=field, value=value)
    if isinstance(value, float):
        value = repr(value)
    try:
        parsed = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a decimal number", field=field, value=value) from None
    if not parsed.is_finite():
        raise ValidationError(f"{field} must be a finite number", field=field, value=value)
    return parsed


def parse_period(period: str) -> tuple[int, int]:
    match = _PERIOD_RE.match(period or "")
    if match is None:
        raise ValidationError("period must use the YYYY-MM format", field="period", value=period)
    year, month = int(match.group(1)), int(match.group(2))
    if not 1 <= month <= 12:
        raise ValidationError("period month must be between 01 and 12", field="period", value=period)
    return year, month


def format_period(year: int, month: int) -> str:
    return f"{year:04d}-{month:02d}"


def previous_period(period: str) -> str:
    year, month = parse_period(period)
    if month == 1:
        return format_period(year - 1, 12)
    return format_period(year, month - 1)


def month_bounds(year: int, month: int) -> tuple[date, date]:
    return date(year, month, 1), date(year, month, monthrange(year, month)[1])


def prorata(hire_date: date | None, year: int, month: int) -> Decimal:
    """Share of the month covered by employment, from the hire day inclusive."""
    if hire_date is None:
        return Decimal("1")

    month_start, month_end = month_bounds(year, month)
    if hire_date > month_end:
        return Decimal("0")
    if hire_date <= month_start:
        return Decimal("1")

    days_in_month = month_end.day
    remaining = days_in_month - hire_date.day + 1
    ratio = Decimal(remaining) / Decimal(days_in_month)
    return min(Decimal("1"), max(Decimal("0"), ratio))


def monthly_accrual(base_rate: Decimal, hire_date: date | None, year: int, month: int) -> Decimal:
    return quantize_days(Decimal(base_rate) * prorata(hire_date, year, month))


def paid_leave_period_key(year: int, month: int) -> str:
    if month >= PAID_LEAVE_PERIOD_START_MONTH:
        return f"{year}-{year + 1}"
    return f"{year - 1}-{year}"


def annual_period_key(year: int) -> str:
    return f"{year:04d}"


def period_key_for(kind: CounterKind, year: int, month: int) -> str:
    if kind == CounterKind.PAID_LEAVE:
        return paid_leave_period_key(year, month)
    return annual_period_key(year)


def parse_period_key(kind: CounterKind, key: str) -> int:
    """Return the starting year of a counter period key."""
    if kind == CounterKind.PAID_LEAVE:
        match = _PAID_LEAVE_KEY_RE.match(key or "")
        if match is None or int(match.group(2)) != int(match.group(1)) + 1:
            raise ValidationError(
                "paid leave period key must look like YYYY-YYYY with consecutive years",
                field="period_key",
                value=key,
            )
        return int(match.group(1))

    match = _ANNUAL_KEY_RE.match(key or "")
    if match is None:
        raise ValidationError("annual period key must look like YYYY", field="period_key", value=key)
    return int(match.group(1))


def previous_period_key(kind: CounterKind, key: str) -> str:
    start_year = parse_period_key(kind, key)
    if kind == CounterKind.PAID_LEAVE:
        return f"{start_year - 1}-{start_year}"
    return annual_period_key(start_year - 1)


def next_period_key(kind: CounterKind, key: str) -> str:
    start_year = parse_period_key(kind, key)
    if kind == CounterKind.PAID_LEAVE:
        return f"{start_year + 1}-{start_year + 2}"
    return annual_period_key(start_year + 1)


def period_key_months(kind: CounterKind, key: str) -> list[str]:
    start_year = parse_period_key(kind, key)
    if kind == CounterKind.ANNUAL_DAYS:
        return [format_period(start_year, month) for month in range(1, 13)]
    months = [format_period(start_year, month) for month in range(PAID_LEAVE_PERIOD_START_MONTH, 13)]
    months.extend(format_period(start_year + 1, month) for month in range(1, PAID_LEAVE_PERIOD_START_MONTH))
    return months


def count_weekdays(start: date, end: date) -> int:
    if end < start:
        return 0
    total_days = (end - start).days + 1
    full_weeks, remainder = divmod(total_days, 7)
    weekdays = full_weeks * 5
    first_weekday = start.weekday()
    for offset in range(remainder):
        if (first_weekday + offset) % 7 < 5:
            weekdays += 1
    return weekdays
