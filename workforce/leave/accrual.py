"""Accrual math for policy grants. Pure functions, no database access."""

from __future__ import annotations

import calendar
import math
from datetime import date, timedelta
from typing import Optional

from workforce.common.constants import MINUTES_PER_HOUR, ProrationBasis


def add_months(d: date, months: int) -> date:
    """Shift *d* by *months*, clamping the day to the target month's length."""
    index = d.year * 12 + (d.month - 1) + months
    year, month = divmod(index, 12)
    month += 1
    day = min(d.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def anniversary_in_year(joined: date, year: int) -> date:
    """Anniversary of *joined* in *year*; Feb 29 falls on Feb 28 in common years."""
    if joined.month == 2 and joined.day == 29 and not calendar.isleap(year):
        return date(year, 2, 28)
    return joined.replace(year=year)


def previous_month(grant_date: date) -> tuple[date, date]:
    """First and last day of the month before *grant_date*."""
    last = grant_date.replace(day=1) - timedelta(days=1)
    return last.replace(day=1), last


def expiry_for(grant_date: date, expire_months: Optional[int]) -> Optional[date]:
    if expire_months is None:
        return None
    return add_months(grant_date, expire_months)


# ── Eligibility ─────────────────────────────────────────────────────

def anniversary_service_years(
    joined: date,
    grant_date: date,
    offset_days: int = 0,
) -> Optional[int]:
    """Service years when *grant_date* is the (offset) work anniversary, else None."""
    for year in (grant_date.year - 1, grant_date.year, grant_date.year + 1):
        if year < joined.year:
            continue
        if anniversary_in_year(joined, year) + timedelta(days=offset_days) == grant_date:
            return year - joined.year
    return None


def fiscal_service_years(
    joined: date,
    grant_date: date,
    fiscal_start_month: int,
) -> Optional[int]:
    """Service years when *grant_date* opens the fiscal year, else None."""
    if grant_date.day != 1 or grant_date.month != fiscal_start_month:
        return None
    if joined > grant_date:
        return None
    return grant_date.year - joined.year


def is_monthly_grant_day(grant_date: date) -> bool:
    return grant_date.day == 1


# ── Quantities ──────────────────────────────────────────────────────

def base_days_for_service(table: dict[str, float], service_years: int) -> float:
    """Days for the largest service-year key not above *service_years*."""
    best_key: Optional[int] = None
    for key in table:
        try:
            years = int(key)
        except ValueError:
            continue
        if years <= service_years and (best_key is None or years > best_key):
            best_key = years
    if best_key is None:
        return 0.0
    return float(table[str(best_key)])


def attendance_rate(
    basis: ProrationBasis,
    *,
    attended_days: int,
    worked_minutes: int,
    business_days: int,
    day_hours: int,
) -> float:
    """Attendance rate for the proration period, clipped to ``[0, 1]``."""
    if basis == ProrationBasis.days:
        rate = attended_days / business_days if business_days > 0 else 0.0
    else:
        expected_hours = business_days * day_hours
        rate = (worked_minutes / MINUTES_PER_HOUR) / expected_hours if expected_hours > 0 else 0.0
    return max(0.0, min(1.0, rate))


def prorate(base_days: float, rate: float, min_rate: float) -> float:
    if rate < min_rate:
        return 0.0
    return base_days * rate


def carryover_minutes(leftover_minutes: int, cap_days: float, day_hours: int) -> int:
    cap = max(0, math.floor(cap_days * day_hours * MINUTES_PER_HOUR))
    return min(cap, max(0, leftover_minutes))


def grant_minutes(base_days: float, day_hours: int, carryover: int = 0) -> int:
    return math.floor(base_days * day_hours * MINUTES_PER_HOUR) + carryover
