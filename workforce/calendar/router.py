"""Calendar router — business days and company calendar maintenance."""


from datetime import date

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from workforce.auth.dependencies import get_current_user, require_permission
from workforce.calendar.schemas import (
    BusinessDaysOut,
    CalendarDateOut,
    CalendarDatesUpsert,
)
from workforce.calendar.service import CalendarService
from workforce.common.exceptions import ValidationException
from workforce.database import get_db
from workforce.organization.models import User

router = APIRouter(prefix="", tags=["calendar"])


def _check_range(from_date: date, to_date: date) -> None:
    if from_date > to_date:
        raise ValidationException({"from_date": ["from_date must be on or before to_date."]})
    if (to_date - from_date).days > 366:
        raise ValidationException({"to_date": ["Range cannot exceed 366 days."]})


# ── GET /dates ──────────────────────────────────────────────────────

@router.get("/dates", response_model=list[CalendarDateOut])
async def list_calendar_dates(
    from_date: date = Query(...),
    to_date: date = Query(...),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """List explicit calendar rows for the caller's company."""
    _check_range(from_date, to_date)
    return await CalendarService.list_dates(db, user.company_id, from_date, to_date)


# ── PUT /dates ──────────────────────────────────────────────────────

@router.put("/dates", response_model=list[CalendarDateOut])
async def upsert_calendar_dates(
    body: CalendarDatesUpsert,
    user: User = Depends(require_permission("calendar:configure")),
    db: AsyncSession = Depends(get_db),
):
    """Create or overwrite calendar rows (holidays, blackouts, working weekends)."""
    return await CalendarService.upsert_dates(
        db, user.company_id, body.dates, actor_id=user.id,
    )


# ── GET /business-days ──────────────────────────────────────────────

@router.get("/business-days", response_model=BusinessDaysOut)
async def business_days(
    from_date: date = Query(...),
    to_date: date = Query(...),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Count business days in a range and list the non-business dates."""
    _check_range(from_date, to_date)
    off = await CalendarService.resolve_non_business_days(
        db, user.company_id, from_date, to_date,
    )
    return BusinessDaysOut(
        from_date=from_date,
        to_date=to_date,
        business_days=(to_date - from_date).days + 1 - len(off),
        non_business_dates=sorted(off),
    )
