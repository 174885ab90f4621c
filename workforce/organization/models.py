"""Organization ORM models: Company (tenant), User.

Every ledger row hangs off a company; users belong to exactly one company.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from workforce.common.constants import DEFAULT_WEEKLY_OFF_DAYS, UserRole
from workforce.config import settings
from workforce.database import Base


# ═════════════════════════════════════════════════════════════════════
# Company
# ═════════════════════════════════════════════════════════════════════


class Company(Base):
    """Tenant."""

    __tablename__ = "companies"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    name: Mapped[str] = mapped_column(sa.String(200), nullable=False)
    code: Mapped[Optional[str]] = mapped_column(sa.String(50), unique=True)
    timezone: Mapped[str] = mapped_column(
        sa.String(50), default=lambda: settings.DEFAULT_TIMEZONE,
    )
    # Weekday numbers (0=Mon … 6=Sun) that are off unless the calendar says otherwise
    weekly_off_days: Mapped[list] = mapped_column(
        JSONB, default=lambda: list(DEFAULT_WEEKLY_OFF_DAYS),
    )
    is_active: Mapped[bool] = mapped_column(sa.Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
    )

    # ── Relationships ───────────────────────────────────────────────
    users: Mapped[list[User]] = relationship(back_populates="company")

    def __repr__(self) -> str:
        return f"<Company {self.name!r}>"


# ═════════════════════════════════════════════════════════════════════
# User
# ═════════════════════════════════════════════════════════════════════


class User(Base):
    """Member of a company. ``id`` is the identity provider's subject."""

    __tablename__ = "users"
    __table_args__ = (
        sa.UniqueConstraint("company_id", "email", name="uq_user_company_email"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    company_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("companies.id"), nullable=False, index=True,
    )
    email: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    display_name: Mapped[Optional[str]] = mapped_column(sa.String(200))
    role: Mapped[UserRole] = mapped_column(
        sa.Enum(UserRole, name="user_role"), default=UserRole.employee,
    )
    manager_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("users.id"),
    )
    joined_date: Mapped[Optional[date]] = mapped_column(sa.Date)
    is_active: Mapped[bool] = mapped_column(sa.Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
    )

    # ── Relationships ───────────────────────────────────────────────
    company: Mapped[Company] = relationship(back_populates="users")

    def __repr__(self) -> str:
        return f"<User {self.email!r} ({self.role.value})>"
