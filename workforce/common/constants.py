"""Enums and constants for the workforce platform — matching PostgreSQL ENUM types."""

from __future__ import annotations

import enum


# ── Auth / Roles ────────────────────────────────────────────────────

class UserRole(str, enum.Enum):
    employee = "employee"
    manager = "manager"
    hr_admin = "hr_admin"
    system_admin = "system_admin"


# ── Calendar ────────────────────────────────────────────────────────

class CalendarDayType(str, enum.Enum):
    workday = "workday"
    weekend = "weekend"
    holiday = "holiday"
    company_holiday = "company_holiday"
    public_holiday = "public_holiday"


# ── Leave ───────────────────────────────────────────────────────────

class LeaveUnit(str, enum.Enum):
    day = "day"
    half = "half"
    hour = "hour"


class HalfDayMode(str, enum.Enum):
    fixed_hours = "fixed_hours"
    am_pm = "am_pm"


class DeductionTiming(str, enum.Enum):
    apply = "apply"
    approve = "approve"


class AccrualMethod(str, enum.Enum):
    anniversary = "anniversary"
    fiscal_fixed = "fiscal_fixed"
    monthly = "monthly"


class ProrationBasis(str, enum.Enum):
    days = "days"
    hours = "hours"


class GrantSource(str, enum.Enum):
    manual = "manual"
    correction = "correction"
    policy = "policy"
    import_ = "import"


class LeaveRequestStatus(str, enum.Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"
    cancelled = "cancelled"


class GrantRunStatus(str, enum.Enum):
    running = "running"
    finished = "finished"
    failed = "failed"


# ── Role-based permissions ──────────────────────────────────────────

PERMISSIONS: dict[UserRole, list[str]] = {
    UserRole.employee: [
        "leave:request",
        "leave:read_own",
        "calendar:read",
    ],
    UserRole.manager: [
        "leave:request",
        "leave:read_own",
        "leave:read_team",
        "leave:approve",
        "leave:reject",
        "calendar:read",
    ],
    UserRole.hr_admin: [
        "leave:request",
        "leave:read_own",
        "leave:read_all",
        "leave:approve",
        "leave:reject",
        "leave:configure",
        "leave:grant",
        "calendar:read",
        "calendar:configure",
        "audit:read",
    ],
    UserRole.system_admin: [
        "leave:request",
        "leave:read_own",
        "leave:read_all",
        "leave:approve",
        "leave:reject",
        "leave:configure",
        "leave:grant",
        "calendar:read",
        "calendar:configure",
        "audit:read",
        "system:configure",
    ],
}

# ── Misc constants ──────────────────────────────────────────────────

MAX_PAGE_SIZE = 100
DEFAULT_PAGE_SIZE = 50
DEFAULT_WEEKLY_OFF_DAYS = [5, 6]   # Saturday, Sunday
MINUTES_PER_HOUR = 60
