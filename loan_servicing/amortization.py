"""
Amortization Calculator

Fixed-installment (EMI) schedule for a loan: monthly installment, total
payable and the per-period due and grace-period-end dates. Pure functions,
no storage and no I/O.

Installments are rounded to the nearest whole currency unit and the schedule
is not corrected for the resulting rounding drift, so installment × tenure
may differ slightly from the exact amortized total.
"""

import calendar
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import List, Union

from .currency import NumberLike, round_whole, to_decimal
from .errors import ValidationError

DEFAULT_GRACE_PERIOD_DAYS = 10


@dataclass(frozen=True)
class SchedulePeriod:
    """One scheduled obligation: ordinal plus its due and grace-end instants"""
    installment_number: int
    due_date: datetime
    grace_period_end_date: datetime


@dataclass(frozen=True)
class AmortizationResult:
    monthly_installment: Decimal
    total_payable: Decimal
    start_date: datetime
    end_date: datetime
    periods: List[SchedulePeriod]


def as_utc_datetime(value: Union[date, datetime]) -> datetime:
    """Normalize a date (midnight) or naive datetime to an aware UTC datetime"""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def add_months(start: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day to the target month's length"""
    month = start.month - 1 + months
    year = start.year + month // 12
    month = month % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def monthly_installment(principal: NumberLike, annual_rate: NumberLike,
                        tenure_months: int) -> Decimal:
    """
    Fixed monthly installment, rounded to whole currency units.

    With monthly rate i = annual_rate / 1200:
        installment = P * i * (1 + i)^n / ((1 + i)^n - 1)
    and simply P / n when the rate is zero.
    """
    p = to_decimal(principal)
    r = to_decimal(annual_rate)
    n = int(tenure_months)

    if p <= 0:
        raise ValidationError("principal", "Principal must be positive")
    if r < 0:
        raise ValidationError("interest_rate", "Interest rate cannot be negative")
    if n < 1:
        raise ValidationError("tenure_months", "Tenure must be at least one month")

    i = r / Decimal(1200)
    if i == 0:
        return round_whole(p / Decimal(n))

    growth = (Decimal(1) + i) ** n
    return round_whole(p * i * growth / (growth - Decimal(1)))


def build_schedule(principal: NumberLike, annual_rate: NumberLike, tenure_months: int,
                   start_date: Union[date, datetime],
                   grace_period_days: int = DEFAULT_GRACE_PERIOD_DAYS) -> AmortizationResult:
    """
    Compute the full repayment schedule.

    Period k (1..n) is due ``start_date + k months``; its grace period ends
    ``grace_period_days`` after the due date.
    """
    installment = monthly_installment(principal, annual_rate, tenure_months)
    start = as_utc_datetime(start_date)
    grace = timedelta(days=grace_period_days)

    periods = []
    for k in range(1, tenure_months + 1):
        due = add_months(start, k)
        periods.append(SchedulePeriod(k, due, due + grace))

    return AmortizationResult(
        monthly_installment=installment,
        total_payable=installment * tenure_months,
        start_date=start,
        end_date=add_months(start, tenure_months),
        periods=periods
    )
