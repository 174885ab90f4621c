"""Leave Pydantic v2 schemas — request / response validation.

Naming conventions:
  - *Create / *In / *Update  → request bodies (write)
  - *Out                     → response bodies (read)

All quantities are integer minutes unless the field name says days.
"""

from __future__ import annotations

import math
import uuid
from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from workforce.common.constants import (
    AccrualMethod,
    DeductionTiming,
    GrantSource,
    HalfDayMode,
    LeaveRequestStatus,
    LeaveUnit,
    ProrationBasis,
)


# ═════════════════════════════════════════════════════════════════════
# Leave Type
# ═════════════════════════════════════════════════════════════════════


class LeaveTypeCreate(BaseModel):
    code: str = Field(..., min_length=1, max_length=20)
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    requires_approval: bool = True
    display_order: int = 0


class LeaveTypeOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    code: str
    name: str
    description: Optional[str] = None
    requires_approval: bool = True
    display_order: int = 0
    is_active: bool = True


# ═════════════════════════════════════════════════════════════════════
# Leave Policy
# ═════════════════════════════════════════════════════════════════════


class LeavePolicyIn(BaseModel):
    """Full policy body; PUT replaces every field."""

    accrual_method: AccrualMethod = AccrualMethod.anniversary
    base_days_by_service: dict[str, float] = Field(default_factory=dict)
    carryover_max_days: Optional[float] = Field(None, ge=0)
    expire_months: Optional[int] = Field(24, ge=1, le=120)
    allow_negative: bool = False
    hold_on_apply: bool = True
    deduction_timing: DeductionTiming = DeductionTiming.approve
    business_day_only: bool = True
    blackout_dates: list[date] = Field(default_factory=list)
    day_hours: int = Field(8, ge=1, le=24)
    min_booking_unit_minutes: int = Field(60, ge=1, le=480)
    rounding_minutes: int = Field(15, ge=1, le=240)
    allowed_units: list[LeaveUnit] = Field(
        default_factory=lambda: [LeaveUnit.day, LeaveUnit.half, LeaveUnit.hour],
        min_length=1,
    )
    half_day_mode: HalfDayMode = HalfDayMode.fixed_hours
    allow_multi_day: bool = True
    fiscal_start_month: int = Field(4, ge=1, le=12)
    anniversary_offset_days: int = Field(0, ge=-366, le=366)
    monthly_proration: bool = False
    monthly_proration_basis: ProrationBasis = ProrationBasis.days
    monthly_min_attendance_rate: float = Field(0, ge=0, le=1)

    @field_validator("base_days_by_service")
    @classmethod
    def service_keys_are_years(cls, v: dict[str, float]) -> dict[str, float]:
        for key, days in v.items():
            if not key.isdigit():
                raise ValueError(f"Service year key '{key}' must be a non-negative integer.")
            if days < 0:
                raise ValueError(f"Days for service year {key} cannot be negative.")
        return v

    @field_validator("allowed_units")
    @classmethod
    def dedupe_units(cls, v: list[LeaveUnit]) -> list[LeaveUnit]:
        return list(dict.fromkeys(v))


class LeavePolicyOut(LeavePolicyIn):
    """Policy in effect; ``is_default`` when no policy row exists yet."""

    model_config = ConfigDict(from_attributes=True)

    id: Optional[uuid.UUID] = None
    leave_type_id: uuid.UUID
    is_default: bool = False


# ═════════════════════════════════════════════════════════════════════
# Balances
# ═════════════════════════════════════════════════════════════════════


class LeaveBalanceOut(BaseModel):
    leave_type_id: uuid.UUID
    leave_type_code: str
    leave_type_name: str
    granted_minutes: int
    consumed_minutes: int
    held_minutes: int
    balance_minutes: int
    balance_days: float
    day_hours: int


class UserBalancesOut(BaseModel):
    user_id: uuid.UUID
    as_of: date
    balances: list[LeaveBalanceOut]


class GrantStatementLine(BaseModel):
    grant_id: uuid.UUID
    granted_on: date
    expires_on: Optional[date] = None
    source: GrantSource
    quantity_minutes: int
    consumed_minutes: int
    remaining_minutes: int


# ═════════════════════════════════════════════════════════════════════
# Grants
# ═════════════════════════════════════════════════════════════════════


class GrantCreate(BaseModel):
    user_id: uuid.UUID
    leave_type_id: uuid.UUID
    quantity_minutes: float = Field(..., gt=0)
    granted_on: date
    expires_on: Optional[date] = None
    source: GrantSource = GrantSource.manual
    note: Optional[str] = Field(None, max_length=500)

    @field_validator("source")
    @classmethod
    def manual_sources_only(cls, v: GrantSource) -> GrantSource:
        if v not in (GrantSource.manual, GrantSource.correction):
            raise ValueError("Only 'manual' or 'correction' grants can be created by hand.")
        return v

    @model_validator(mode="after")
    def validate_dates(self) -> "GrantCreate":
        if math.floor(self.quantity_minutes) < 1:
            raise ValueError("quantity_minutes must be at least one whole minute.")
        if self.expires_on is not None and self.expires_on < self.granted_on:
            raise ValueError("expires_on cannot be before granted_on.")
        return self


class GrantUpdate(BaseModel):
    """Partial update. Send ``expires_on: null`` to remove the expiry."""

    quantity_minutes: Optional[float] = Field(None, gt=0)
    expires_on: Optional[date] = None
    note: Optional[str] = Field(None, max_length=500)


class GrantOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    user_id: uuid.UUID
    leave_type_id: uuid.UUID
    quantity_minutes: int
    granted_on: date
    expires_on: Optional[date] = None
    source: GrantSource
    note: Optional[str] = None
    created_by: Optional[uuid.UUID] = None
    created_at: datetime


class GrantRunIn(BaseModel):
    leave_type_id: uuid.UUID
    grant_date: date


class GrantPreviewLine(BaseModel):
    user_id: uuid.UUID
    display_name: Optional[str] = None
    joined_date: Optional[date] = None
    eligible: bool
    reason: Optional[str] = None
    service_years: Optional[int] = None
    base_days: float = 0
    carryover_minutes: int = 0
    quantity_minutes: int = 0
    expires_on: Optional[date] = None
    duplicate: bool = False


class GrantPreviewOut(BaseModel):
    leave_type_id: uuid.UUID
    grant_date: date
    accrual_method: AccrualMethod
    lines: list[GrantPreviewLine]


class GrantRunOut(BaseModel):
    run_id: uuid.UUID
    status: str
    granted: int
    skipped: int


# ═════════════════════════════════════════════════════════════════════
# Requests
# ═════════════════════════════════════════════════════════════════════


class LeaveRequestDetailIn(BaseModel):
    leave_type_id: uuid.UUID
    start_at: datetime
    end_at: datetime
    unit: LeaveUnit
    quantity_minutes: int = Field(..., gt=0)


class LeaveRequestCreate(BaseModel):
    details: list[LeaveRequestDetailIn] = Field(..., min_length=1, max_length=31)
    reason: Optional[str] = Field(None, max_length=1000)


class LeaveDecision(BaseModel):
    note: Optional[str] = Field(None, max_length=1000)


class LeaveRequestDetailOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    leave_type_id: uuid.UUID
    start_at: datetime
    end_at: datetime
    unit: LeaveUnit
    quantity_minutes: int


class LeaveRequestOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    user_id: uuid.UUID
    status: LeaveRequestStatus
    reason: Optional[str] = None
    decided_by: Optional[uuid.UUID] = None
    decided_at: Optional[datetime] = None
    decision_note: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime
    details: list[LeaveRequestDetailOut] = []


class ConsumptionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    grant_id: Optional[uuid.UUID] = None
    leave_type_id: uuid.UUID
    quantity_minutes: int
    consumed_on: date
    created_by: Optional[uuid.UUID] = None
    created_at: datetime
    deleted_at: Optional[datetime] = None


# ═════════════════════════════════════════════════════════════════════
# Validation
# ═════════════════════════════════════════════════════════════════════


class ValidationIssue(BaseModel):
    code: str
    message: str
    detail_index: Optional[int] = None
    detail_id: Optional[uuid.UUID] = None


class ValidationResult(BaseModel):
    valid: bool
    issues: list[ValidationIssue] = []
