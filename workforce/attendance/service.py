"""Attendance summaries consumed by leave accrual."""

from __future__ import annotations

import uuid
from datetime import date

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from workforce.attendance.models import AttendanceRecord


class AttendanceService:

    @staticmethod
    async def summarize(
        db: AsyncSession,
        user_id: uuid.UUID,
        from_date: date,
        to_date: date,
    ) -> dict:
        """Return ``attended_days`` (distinct days with worked minutes) and ``worked_minutes``."""
        result = await db.execute(
            select(AttendanceRecord.work_date, AttendanceRecord.actual_work_minutes).where(
                AttendanceRecord.user_id == user_id,
                AttendanceRecord.is_current.is_(True),
                AttendanceRecord.deleted_at.is_(None),
                AttendanceRecord.work_date >= from_date,
                AttendanceRecord.work_date <= to_date,
            )
        )
        days: set[date] = set()
        minutes = 0
        for work_date, worked in result.all():
            if worked and worked > 0:
                days.add(work_date)
                minutes += worked
        return {"attended_days": len(days), "worked_minutes": minutes}
