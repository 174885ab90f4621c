"""Calendar Pydantic v2 schemas."""

from __future__ import annotations

import uuid
from datetime import date
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from workforce.common.constants import CalendarDayType


class CalendarDateIn(BaseModel):
    """Single calendar day to create or overwrite."""

    calendar_date: date
    day_type: CalendarDayType = CalendarDayType.workday
    is_blackout: bool = False
    note: Optional[str] = Field(None, max_length=200)


class CalendarDatesUpsert(BaseModel):
    """Bulk upsert payload."""

    dates: list[CalendarDateIn] = Field(..., min_length=1, max_length=400)

    @model_validator(mode="after")
    def unique_dates(self) -> "CalendarDatesUpsert":
        seen = [d.calendar_date for d in self.dates]
        if len(seen) != len(set(seen)):
            raise ValueError("Each calendar_date may appear only once.")
        return self


class CalendarDateOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    calendar_date: date
    day_type: CalendarDayType
    is_blackout: bool
    note: Optional[str] = None


class BusinessDaysOut(BaseModel):
    """Business-day summary for a date range."""

    from_date: date
    to_date: date
    business_days: int
    non_business_dates: list[date]
