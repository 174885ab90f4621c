"""Calendar service — business-day resolution and calendar maintenance.

A date is a non-business day when:
  - its calendar row is a blackout, or has any day type other than ``workday``;
  - it has no calendar row and its weekday is one of the company's weekly offs.

A ``workday`` row therefore turns a weekly off into a working day.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterable, Optional
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from workforce.calendar.models import CompanyCalendarDate
from workforce.calendar.schemas import CalendarDateIn, CalendarDateOut
from workforce.common.audit import create_audit_entry
from workforce.common.constants import DEFAULT_WEEKLY_OFF_DAYS, CalendarDayType
from workforce.common.exceptions import NotFoundException, ValidationException
from workforce.organization.models import Company

# day_type, is_blackout
DayOverride = tuple[CalendarDayType, bool]


def iter_dates(from_date: date, to_date: date) -> Iterable[date]:
    """Yield every date from *from_date* to *to_date* inclusive."""
    current = from_date
    while current <= to_date:
        yield current
        current += timedelta(days=1)


def as_aware(dt: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=timezone.utc)


def local_date(dt: datetime, tz_name: str) -> date:
    return as_aware(dt).astimezone(ZoneInfo(tz_name)).date()


def covered_dates(start_at: datetime, end_at: datetime, tz_name: str) -> list[date]:
    """Local dates touched by the period ``[start_at, end_at)``.

    An end exactly at local midnight does not cover the new day.
    """
    tz = ZoneInfo(tz_name)
    start = as_aware(start_at).astimezone(tz)
    end = as_aware(end_at).astimezone(tz)
    last = end.date()
    if end.time() == time.min and end > start:
        last -= timedelta(days=1)
    return list(iter_dates(start.date(), max(last, start.date())))


class CalendarService:
    """Async calendar operations scoped to a company."""

    # ─────────────────────────────────────────────────────────────────
    # Pure helpers
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    def _is_non_business(
        d: date,
        weekly_offs: set[int],
        override: Optional[DayOverride],
    ) -> bool:
        if override is not None:
            day_type, is_blackout = override
            return is_blackout or day_type != CalendarDayType.workday
        return d.weekday() in weekly_offs

    @staticmethod
    def non_business_days(
        from_date: date,
        to_date: date,
        weekly_offs: set[int],
        overrides: dict[date, DayOverride],
    ) -> set[date]:
        """Return the non-business dates in ``[from_date, to_date]``."""
        return {
            d
            for d in iter_dates(from_date, to_date)
            if CalendarService._is_non_business(d, weekly_offs, overrides.get(d))
        }

    # ─────────────────────────────────────────────────────────────────
    # Queries
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def _get_company(db: AsyncSession, company_id: uuid.UUID) -> Company:
        result = await db.execute(select(Company).where(Company.id == company_id))
        company = result.scalars().first()
        if company is None:
            raise NotFoundException("Company", str(company_id))
        return company

    @staticmethod
    async def _load_overrides(
        db: AsyncSession,
        company_id: uuid.UUID,
        from_date: date,
        to_date: date,
    ) -> dict[date, DayOverride]:
        result = await db.execute(
            select(
                CompanyCalendarDate.calendar_date,
                CompanyCalendarDate.day_type,
                CompanyCalendarDate.is_blackout,
            ).where(
                CompanyCalendarDate.company_id == company_id,
                CompanyCalendarDate.calendar_date >= from_date,
                CompanyCalendarDate.calendar_date <= to_date,
            )
        )
        return {
            row.calendar_date: (row.day_type, bool(row.is_blackout))
            for row in result.all()
        }

    @staticmethod
    async def resolve_non_business_days(
        db: AsyncSession,
        company_id: uuid.UUID,
        from_date: date,
        to_date: date,
    ) -> set[date]:
        """Non-business dates for the company in the inclusive range."""
        if from_date > to_date:
            return set()
        company = await CalendarService._get_company(db, company_id)
        weekly_offs = set(company.weekly_off_days or DEFAULT_WEEKLY_OFF_DAYS)
        overrides = await CalendarService._load_overrides(
            db, company_id, from_date, to_date,
        )
        return CalendarService.non_business_days(
            from_date, to_date, weekly_offs, overrides,
        )

    @staticmethod
    async def count_business_days(
        db: AsyncSession,
        company_id: uuid.UUID,
        from_date: date,
        to_date: date,
    ) -> int:
        if from_date > to_date:
            return 0
        off = await CalendarService.resolve_non_business_days(
            db, company_id, from_date, to_date,
        )
        return (to_date - from_date).days + 1 - len(off)

    @staticmethod
    async def list_dates(
        db: AsyncSession,
        company_id: uuid.UUID,
        from_date: date,
        to_date: date,
    ) -> list[CalendarDateOut]:
        result = await db.execute(
            select(CompanyCalendarDate)
            .where(
                CompanyCalendarDate.company_id == company_id,
                CompanyCalendarDate.calendar_date >= from_date,
                CompanyCalendarDate.calendar_date <= to_date,
            )
            .order_by(CompanyCalendarDate.calendar_date)
        )
        return [CalendarDateOut.model_validate(r) for r in result.scalars().all()]

    # ─────────────────────────────────────────────────────────────────
    # Maintenance
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def upsert_dates(
        db: AsyncSession,
        company_id: uuid.UUID,
        dates: list[CalendarDateIn],
        *,
        actor_id: Optional[uuid.UUID] = None,
    ) -> list[CalendarDateOut]:
        """Create or overwrite calendar rows, one per date."""

        if not dates:
            raise ValidationException({"dates": ["At least one date is required."]})

        now = datetime.now(timezone.utc)
        wanted = {d.calendar_date: d for d in dates}

        result = await db.execute(
            select(CompanyCalendarDate).where(
                CompanyCalendarDate.company_id == company_id,
                CompanyCalendarDate.calendar_date.in_(list(wanted)),
            )
        )
        existing = {row.calendar_date: row for row in result.scalars().all()}

        rows: list[CompanyCalendarDate] = []
        for calendar_date, data in sorted(wanted.items()):
            row = existing.get(calendar_date)
            if row is None:
                row = CompanyCalendarDate(
                    company_id=company_id,
                    calendar_date=calendar_date,
                )
                db.add(row)
            row.day_type = data.day_type
            row.is_blackout = data.is_blackout
            row.note = data.note
            row.updated_at = now
            rows.append(row)

        await db.flush()

        await create_audit_entry(
            db,
            action="upsert",
            entity_type="company_calendar",
            company_id=company_id,
            actor_id=actor_id,
            new_values={
                "dates": [d.isoformat() for d in sorted(wanted)],
            },
        )

        return [CalendarDateOut.model_validate(r) for r in rows]
