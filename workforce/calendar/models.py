"""Company calendar ORM model: per-date day type and blackout flag."""

from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from workforce.common.constants import CalendarDayType
from workforce.database import Base


class CompanyCalendarDate(Base):
    __tablename__ = "company_calendar_dates"
    __table_args__ = (
        sa.UniqueConstraint(
            "company_id", "calendar_date", name="uq_company_calendar_date"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    company_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("companies.id"), nullable=False
    )
    calendar_date: Mapped[date] = mapped_column(sa.Date, nullable=False)
    day_type: Mapped[CalendarDayType] = mapped_column(
        sa.Enum(CalendarDayType, name="calendar_day_type"),
        default=CalendarDayType.workday,
    )
    is_blackout: Mapped[bool] = mapped_column(sa.Boolean, default=False)
    note: Mapped[Optional[str]] = mapped_column(sa.String(200))
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
