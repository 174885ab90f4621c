"""Leave types and leave policies.

Every ledger operation resolves the policy through ``fetch_policy_or_default``:
the active policy row for (company, leave type), or the built-in default when
HR has not configured one.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from workforce.common.audit import create_audit_entry
from workforce.common.constants import MINUTES_PER_HOUR, DeductionTiming, LeaveUnit
from workforce.common.exceptions import ConflictError, NotFoundException
from workforce.leave.models import LeavePolicy, LeaveType
from workforce.leave.schemas import (
    LeavePolicyIn,
    LeavePolicyOut,
    LeaveTypeCreate,
    LeaveTypeOut,
)

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════
# Policy math
# ═════════════════════════════════════════════════════════════════════


def default_policy(leave_type_id: uuid.UUID) -> LeavePolicyOut:
    """Anniversary accrual, 24-month expiry, hold on apply, 8h day, 60/15 min units."""
    return LeavePolicyOut(leave_type_id=leave_type_id, is_default=True)


def minutes_for_unit(unit: LeaveUnit, day_hours: int) -> int:
    if unit == LeaveUnit.day:
        return day_hours * MINUTES_PER_HOUR
    if unit == LeaveUnit.half:
        return (day_hours * MINUTES_PER_HOUR) // 2
    return MINUTES_PER_HOUR


def holds_on_apply(policy: LeavePolicyOut) -> bool:
    """Whether balance is taken when the request is filed rather than approved."""
    return policy.hold_on_apply or policy.deduction_timing == DeductionTiming.apply


# ═════════════════════════════════════════════════════════════════════
# PolicyService
# ═════════════════════════════════════════════════════════════════════


class PolicyService:
    """Leave type catalogue and policy configuration per company."""

    # ── Leave types ─────────────────────────────────────────────────

    @staticmethod
    async def list_types(
        db: AsyncSession,
        company_id: uuid.UUID,
        *,
        include_inactive: bool = False,
    ) -> list[LeaveTypeOut]:
        query = select(LeaveType).where(LeaveType.company_id == company_id)
        if not include_inactive:
            query = query.where(LeaveType.is_active.is_(True))
        query = query.order_by(LeaveType.display_order, LeaveType.name)
        result = await db.execute(query)
        return [LeaveTypeOut.model_validate(t) for t in result.scalars().all()]

    @staticmethod
    async def get_type(
        db: AsyncSession,
        company_id: uuid.UUID,
        leave_type_id: uuid.UUID,
    ) -> LeaveType:
        result = await db.execute(
            select(LeaveType).where(
                LeaveType.id == leave_type_id,
                LeaveType.company_id == company_id,
            )
        )
        leave_type = result.scalars().first()
        if leave_type is None:
            raise NotFoundException("LeaveType", str(leave_type_id))
        return leave_type

    @staticmethod
    async def create_type(
        db: AsyncSession,
        company_id: uuid.UUID,
        data: LeaveTypeCreate,
        *,
        actor_id: Optional[uuid.UUID] = None,
    ) -> LeaveTypeOut:
        code = data.code.strip().upper()
        existing = await db.execute(
            select(LeaveType.id).where(
                LeaveType.company_id == company_id,
                LeaveType.code == code,
            )
        )
        if existing.scalar() is not None:
            raise ConflictError("code", code)

        leave_type = LeaveType(
            company_id=company_id,
            code=code,
            name=data.name,
            description=data.description,
            requires_approval=data.requires_approval,
            display_order=data.display_order,
        )
        db.add(leave_type)
        await db.flush()

        await create_audit_entry(
            db,
            action="create",
            entity_type="leave_type",
            entity_id=leave_type.id,
            company_id=company_id,
            actor_id=actor_id,
            new_values={"code": code, "name": data.name},
        )
        return LeaveTypeOut.model_validate(leave_type)

    # ── Policies ────────────────────────────────────────────────────

    @staticmethod
    async def _active_policy_row(
        db: AsyncSession,
        company_id: uuid.UUID,
        leave_type_id: uuid.UUID,
    ) -> Optional[LeavePolicy]:
        result = await db.execute(
            select(LeavePolicy).where(
                LeavePolicy.company_id == company_id,
                LeavePolicy.leave_type_id == leave_type_id,
                LeavePolicy.is_active.is_(True),
                LeavePolicy.deleted_at.is_(None),
            )
        )
        return result.scalars().first()

    @staticmethod
    async def fetch_policy_or_default(
        db: AsyncSession,
        company_id: uuid.UUID,
        leave_type_id: uuid.UUID,
    ) -> LeavePolicyOut:
        row = await PolicyService._active_policy_row(db, company_id, leave_type_id)
        if row is None:
            return default_policy(leave_type_id)
        return LeavePolicyOut.model_validate(row)

    @staticmethod
    async def get_policy(
        db: AsyncSession,
        company_id: uuid.UUID,
        leave_type_id: uuid.UUID,
    ) -> LeavePolicyOut:
        await PolicyService.get_type(db, company_id, leave_type_id)
        return await PolicyService.fetch_policy_or_default(db, company_id, leave_type_id)

    @staticmethod
    async def upsert_policy(
        db: AsyncSession,
        company_id: uuid.UUID,
        leave_type_id: uuid.UUID,
        data: LeavePolicyIn,
        *,
        actor_id: Optional[uuid.UUID] = None,
    ) -> LeavePolicyOut:
        """Create the policy for a leave type, or replace every field of it."""

        await PolicyService.get_type(db, company_id, leave_type_id)

        result = await db.execute(
            select(LeavePolicy).where(
                LeavePolicy.company_id == company_id,
                LeavePolicy.leave_type_id == leave_type_id,
            )
        )
        policy = result.scalars().first()
        old_values = (
            LeavePolicyIn.model_validate(policy, from_attributes=True).model_dump(mode="json")
            if policy is not None and policy.deleted_at is None
            else None
        )

        values = data.model_dump(mode="json")
        if policy is None:
            policy = LeavePolicy(company_id=company_id, leave_type_id=leave_type_id)
            db.add(policy)
        for field, value in values.items():
            setattr(policy, field, value)
        policy.is_active = True
        policy.deleted_at = None
        policy.updated_at = datetime.now(timezone.utc)
        await db.flush()

        await create_audit_entry(
            db,
            action="upsert",
            entity_type="leave_policy",
            entity_id=policy.id,
            company_id=company_id,
            actor_id=actor_id,
            old_values=old_values,
            new_values=values,
        )
        logger.info("Leave policy saved for type %s (company %s)", leave_type_id, company_id)
        return LeavePolicyOut.model_validate(policy)
