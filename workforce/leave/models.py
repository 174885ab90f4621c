"""Leave ORM models: LeaveType, LeavePolicy, LeaveGrant, LeaveConsumption,
LeaveRequest, LeaveRequestDetail, LeaveGrantRun.

Balances are never stored. A balance is the sum of live grants minus the
signed consumptions booked against them.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from workforce.common.constants import (
    AccrualMethod,
    DeductionTiming,
    GrantRunStatus,
    GrantSource,
    HalfDayMode,
    LeaveRequestStatus,
    LeaveUnit,
    ProrationBasis,
)
from workforce.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ═════════════════════════════════════════════════════════════════════
# Configuration
# ═════════════════════════════════════════════════════════════════════


class LeaveType(Base):
    __tablename__ = "leave_types"
    __table_args__ = (
        sa.UniqueConstraint("company_id", "code", name="uq_leave_type_company_code"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    company_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("companies.id"), nullable=False, index=True
    )
    code: Mapped[str] = mapped_column(sa.String(20), nullable=False)
    name: Mapped[str] = mapped_column(sa.String(100), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(sa.Text)
    requires_approval: Mapped[bool] = mapped_column(sa.Boolean, default=True)
    display_order: Mapped[int] = mapped_column(sa.Integer, default=0)
    is_active: Mapped[bool] = mapped_column(sa.Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=_utcnow
    )


class LeavePolicy(Base):
    """Accrual and booking rules for one leave type of one company."""

    __tablename__ = "leave_policies"
    __table_args__ = (
        sa.UniqueConstraint(
            "company_id", "leave_type_id", name="uq_leave_policy_company_type"
        ),
        sa.CheckConstraint("day_hours BETWEEN 1 AND 24", name="ck_policy_day_hours"),
        sa.CheckConstraint(
            "min_booking_unit_minutes BETWEEN 1 AND 480", name="ck_policy_min_booking"
        ),
        sa.CheckConstraint(
            "rounding_minutes BETWEEN 1 AND 240", name="ck_policy_rounding"
        ),
        sa.CheckConstraint(
            "fiscal_start_month BETWEEN 1 AND 12", name="ck_policy_fiscal_month"
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
    leave_type_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("leave_types.id"), nullable=False
    )

    # ── Accrual ─────────────────────────────────────────────────────
    accrual_method: Mapped[AccrualMethod] = mapped_column(
        sa.Enum(AccrualMethod, name="accrual_method"),
        default=AccrualMethod.anniversary,
    )
    # {"<service years>": days}
    base_days_by_service: Mapped[dict] = mapped_column(JSONB, default=dict)
    carryover_max_days: Mapped[Optional[Decimal]] = mapped_column(sa.Numeric(6, 2))
    expire_months: Mapped[Optional[int]] = mapped_column(sa.Integer)
    fiscal_start_month: Mapped[int] = mapped_column(sa.Integer, default=4)
    anniversary_offset_days: Mapped[int] = mapped_column(sa.Integer, default=0)
    monthly_proration: Mapped[bool] = mapped_column(sa.Boolean, default=False)
    monthly_proration_basis: Mapped[ProrationBasis] = mapped_column(
        sa.Enum(ProrationBasis, name="proration_basis"),
        default=ProrationBasis.days,
    )
    monthly_min_attendance_rate: Mapped[Decimal] = mapped_column(
        sa.Numeric(3, 2), default=Decimal("0")
    )

    # ── Deduction ───────────────────────────────────────────────────
    allow_negative: Mapped[bool] = mapped_column(sa.Boolean, default=False)
    hold_on_apply: Mapped[bool] = mapped_column(sa.Boolean, default=True)
    deduction_timing: Mapped[DeductionTiming] = mapped_column(
        sa.Enum(DeductionTiming, name="deduction_timing"),
        default=DeductionTiming.approve,
    )

    # ── Booking ─────────────────────────────────────────────────────
    business_day_only: Mapped[bool] = mapped_column(sa.Boolean, default=True)
    # ISO dates
    blackout_dates: Mapped[list] = mapped_column(JSONB, default=list)
    day_hours: Mapped[int] = mapped_column(sa.Integer, default=8)
    min_booking_unit_minutes: Mapped[int] = mapped_column(sa.Integer, default=60)
    rounding_minutes: Mapped[int] = mapped_column(sa.Integer, default=15)
    allowed_units: Mapped[list] = mapped_column(
        JSONB, default=lambda: [u.value for u in LeaveUnit]
    )
    half_day_mode: Mapped[HalfDayMode] = mapped_column(
        sa.Enum(HalfDayMode, name="half_day_mode"),
        default=HalfDayMode.fixed_hours,
    )
    allow_multi_day: Mapped[bool] = mapped_column(sa.Boolean, default=True)

    is_active: Mapped[bool] = mapped_column(sa.Boolean, default=True)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=_utcnow
    )


# ═════════════════════════════════════════════════════════════════════
# Ledger
# ═════════════════════════════════════════════════════════════════════


class LeaveGrant(Base):
    """Credit of leave minutes, valid from ``granted_on`` through ``expires_on``."""

    __tablename__ = "leave_grants"
    __table_args__ = (
        sa.CheckConstraint("quantity_minutes > 0", name="ck_grant_quantity_positive"),
        sa.Index("idx_grants_user_type_date", "user_id", "leave_type_id", "granted_on"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    company_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("companies.id"), nullable=False
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=False
    )
    leave_type_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("leave_types.id"), nullable=False
    )
    quantity_minutes: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    granted_on: Mapped[date] = mapped_column(sa.Date, nullable=False)
    expires_on: Mapped[Optional[date]] = mapped_column(sa.Date)
    source: Mapped[GrantSource] = mapped_column(
        sa.Enum(
            GrantSource,
            name="grant_source",
            values_callable=lambda e: [m.value for m in e],
        ),
        default=GrantSource.manual,
    )
    note: Mapped[Optional[str]] = mapped_column(sa.Text)
    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("users.id")
    )
    deleted_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=_utcnow
    )


class LeaveConsumption(Base):
    """Signed debit against a grant. ``grant_id`` NULL is an overdraft."""

    __tablename__ = "leave_consumptions"
    __table_args__ = (
        sa.Index("idx_consumptions_grant", "grant_id"),
        sa.Index("idx_consumptions_request", "request_id"),
        sa.Index("idx_consumptions_user_type", "user_id", "leave_type_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    company_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("companies.id"), nullable=False
    )
    request_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("leave_requests.id")
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=False
    )
    leave_type_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("leave_types.id"), nullable=False
    )
    grant_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("leave_grants.id")
    )
    quantity_minutes: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    consumed_on: Mapped[date] = mapped_column(sa.Date, nullable=False)
    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("users.id")
    )
    deleted_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=_utcnow
    )


# ═════════════════════════════════════════════════════════════════════
# Requests
# ═════════════════════════════════════════════════════════════════════


class LeaveRequest(Base):
    __tablename__ = "leave_requests"
    __table_args__ = (
        sa.Index("idx_leave_requests_company_status", "company_id", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    company_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("companies.id"), nullable=False
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=False, index=True
    )
    status: Mapped[LeaveRequestStatus] = mapped_column(
        sa.Enum(LeaveRequestStatus, name="leave_request_status"),
        default=LeaveRequestStatus.pending,
    )
    reason: Mapped[Optional[str]] = mapped_column(sa.Text)
    decided_by: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("users.id")
    )
    decided_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True))
    decision_note: Mapped[Optional[str]] = mapped_column(sa.Text)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=_utcnow
    )

    # Relationships
    details: Mapped[list[LeaveRequestDetail]] = relationship(
        back_populates="request",
        order_by="LeaveRequestDetail.position",
        cascade="all, delete-orphan",
        lazy="selectin",
    )


class LeaveRequestDetail(Base):
    """One period of a request, charged to a single leave type."""

    __tablename__ = "leave_request_details"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    request_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        sa.ForeignKey("leave_requests.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    leave_type_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("leave_types.id"), nullable=False
    )
    start_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)
    end_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)
    unit: Mapped[LeaveUnit] = mapped_column(
        sa.Enum(LeaveUnit, name="leave_unit"), nullable=False
    )
    quantity_minutes: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    position: Mapped[int] = mapped_column(sa.Integer, default=0)

    # Relationships
    request: Mapped[LeaveRequest] = relationship(back_populates="details")


# ═════════════════════════════════════════════════════════════════════
# Accrual runs
# ═════════════════════════════════════════════════════════════════════


class LeaveGrantRun(Base):
    """Run lock and outcome of one policy accrual, keyed by (company, type, date)."""

    __tablename__ = "leave_grant_runs"
    __table_args__ = (
        sa.UniqueConstraint(
            "company_id", "leave_type_id", "grant_date", name="uq_leave_grant_run"
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
    leave_type_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("leave_types.id"), nullable=False
    )
    grant_date: Mapped[date] = mapped_column(sa.Date, nullable=False)
    status: Mapped[GrantRunStatus] = mapped_column(
        sa.Enum(GrantRunStatus, name="grant_run_status"),
        default=GrantRunStatus.running,
    )
    granted: Mapped[int] = mapped_column(sa.Integer, default=0)
    skipped: Mapped[int] = mapped_column(sa.Integer, default=0)
    error: Mapped[Optional[str]] = mapped_column(sa.Text)
    trace_id: Mapped[Optional[str]] = mapped_column(sa.String(64))
    started_by: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("users.id")
    )
    started_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=_utcnow
    )
    finished_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True))
