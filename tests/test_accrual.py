"""Accrual math — pure functions, no database."""

from __future__ import annotations

from datetime import date

from workforce.common.constants import ProrationBasis
from workforce.leave import accrual


class TestDates:

    def test_add_months_clamps_day(self):
        assert accrual.add_months(date(2026, 1, 31), 1) == date(2026, 2, 28)
        assert accrual.add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
        assert accrual.add_months(date(2026, 11, 15), 3) == date(2027, 2, 15)
        assert accrual.add_months(date(2026, 3, 31), -1) == date(2026, 2, 28)

    def test_leap_day_anniversary(self):
        assert accrual.anniversary_in_year(date(2024, 2, 29), 2025) == date(2025, 2, 28)
        assert accrual.anniversary_in_year(date(2024, 2, 29), 2028) == date(2028, 2, 29)

    def test_previous_month(self):
        assert accrual.previous_month(date(2026, 3, 1)) == (date(2026, 2, 1), date(2026, 2, 28))
        assert accrual.previous_month(date(2026, 1, 1)) == (date(2025, 12, 1), date(2025, 12, 31))

    def test_expiry(self):
        assert accrual.expiry_for(date(2026, 4, 1), 24) == date(2028, 4, 1)
        assert accrual.expiry_for(date(2026, 4, 1), None) is None


class TestEligibility:

    def test_anniversary(self):
        joined = date(2024, 4, 1)
        assert accrual.anniversary_service_years(joined, date(2026, 4, 1)) == 2
        assert accrual.anniversary_service_years(joined, date(2026, 4, 2)) is None
        assert accrual.anniversary_service_years(joined, date(2024, 4, 1)) == 0

    def test_anniversary_with_offset(self):
        joined = date(2024, 4, 1)
        assert accrual.anniversary_service_years(joined, date(2026, 3, 25), -7) == 2
        assert accrual.anniversary_service_years(joined, date(2026, 4, 8), 7) == 2

    def test_negative_offset_crosses_year_boundary(self):
        joined = date(2024, 1, 3)
        # 2026-01-03 minus seven days
        assert accrual.anniversary_service_years(joined, date(2025, 12, 27), -7) == 2

    def test_fiscal_year_start(self):
        joined = date(2023, 6, 15)
        assert accrual.fiscal_service_years(joined, date(2026, 4, 1), 4) == 3
        assert accrual.fiscal_service_years(joined, date(2026, 5, 1), 4) is None
        assert accrual.fiscal_service_years(joined, date(2026, 4, 2), 4) is None
        assert accrual.fiscal_service_years(date(2026, 5, 1), date(2026, 4, 1), 4) is None

    def test_monthly_grant_day(self):
        assert accrual.is_monthly_grant_day(date(2026, 3, 1)) is True
        assert accrual.is_monthly_grant_day(date(2026, 3, 2)) is False


class TestQuantities:

    def test_base_days_uses_largest_key_not_above_service(self):
        table = {"0": 10, "1": 11, "6": 20}
        assert accrual.base_days_for_service(table, 0) == 10
        assert accrual.base_days_for_service(table, 3) == 11
        assert accrual.base_days_for_service(table, 7) == 20
        assert accrual.base_days_for_service({"1": 11}, 0) == 0.0
        assert accrual.base_days_for_service({}, 5) == 0.0

    def test_attendance_rate_by_days(self):
        rate = accrual.attendance_rate(
            ProrationBasis.days,
            attended_days=18, worked_minutes=0, business_days=20, day_hours=8,
        )
        assert rate == 0.9

    def test_attendance_rate_by_hours(self):
        rate = accrual.attendance_rate(
            ProrationBasis.hours,
            attended_days=0, worked_minutes=80 * 60, business_days=20, day_hours=8,
        )
        assert rate == 0.5

    def test_attendance_rate_clipped(self):
        assert accrual.attendance_rate(
            ProrationBasis.days,
            attended_days=25, worked_minutes=0, business_days=20, day_hours=8,
        ) == 1.0
        assert accrual.attendance_rate(
            ProrationBasis.days,
            attended_days=5, worked_minutes=0, business_days=0, day_hours=8,
        ) == 0.0

    def test_prorate_below_minimum_rate(self):
        assert accrual.prorate(10, 0.5, 0.8) == 0.0
        assert accrual.prorate(10, 0.9, 0.8) == 9.0

    def test_carryover_capped(self):
        assert accrual.carryover_minutes(1000, 1.5, 8) == 720
        assert accrual.carryover_minutes(100, 5, 8) == 100
        assert accrual.carryover_minutes(-30, 5, 8) == 0
        assert accrual.carryover_minutes(100, 0, 8) == 0

    def test_grant_minutes(self):
        assert accrual.grant_minutes(10, 8) == 4800
        assert accrual.grant_minutes(10, 8, 60) == 4860
        assert accrual.grant_minutes(0.5, 8) == 240
        assert accrual.grant_minutes(1.5, 6) == 540
