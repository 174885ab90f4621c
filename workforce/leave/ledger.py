"""Leave ledger — balances and FIFO consumption of grants.

Rules:
  - A balance is never stored. It is recomputed from the grants that are live
    on a date (not deleted, already granted, not yet expired) minus the signed
    consumptions booked against them, minus overdraft rows (``grant_id`` NULL).
  - Consumption is allocated oldest grant first (``granted_on``, then creation
    time). A grant's net consumption never exceeds its quantity.
  - Request transitions:
      hold      (apply)    — allocate now when the policy deducts on apply
      finalize  (approve)  — allocate whatever was not held
      release   (reject / cancel while pending) — soft-delete the rows
      reverse   (cancel after approval)         — book negative offsets
  - hold/finalize skip a leave type that already has a positive net
    consumption for the request; reverse only offsets a positive net. Running
    any transition twice leaves the ledger unchanged.
"""

from __future__ import annotations

import logging
import uuid
from datetime import date, datetime, timezone
from typing import Optional, Sequence

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from workforce.calendar.service import local_date
from workforce.common.audit import create_audit_entry
from workforce.common.constants import MINUTES_PER_HOUR, LeaveRequestStatus
from workforce.common.exceptions import (
    InsufficientBalanceError,
    NotFoundException,
    ValidationException,
)
from workforce.leave.models import (
    LeaveConsumption,
    LeaveGrant,
    LeaveRequest,
    LeaveType,
)
from workforce.leave.policy import PolicyService, holds_on_apply
from workforce.leave.schemas import GrantStatementLine, LeaveBalanceOut
from workforce.organization.models import Company

logger = logging.getLogger(__name__)

INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
INSUFFICIENT_ALLOCATABLE_GRANTS = "INSUFFICIENT_ALLOCATABLE_GRANTS"


def plan_fifo(
    grants: Sequence[tuple[uuid.UUID, int]],
    quantity_minutes: int,
) -> tuple[list[tuple[uuid.UUID, int]], int]:
    """Split *quantity_minutes* across ``(grant_id, remaining)`` pairs in order.

    Returns the takes and the minutes left unallocated.
    """
    needed = quantity_minutes
    takes: list[tuple[uuid.UUID, int]] = []
    for grant_id, remaining in grants:
        if needed <= 0:
            break
        if remaining <= 0:
            continue
        take = min(remaining, needed)
        takes.append((grant_id, take))
        needed -= take
    return takes, needed


# ═════════════════════════════════════════════════════════════════════
# LedgerService
# ═════════════════════════════════════════════════════════════════════


class LedgerService:
    """Async ledger operations: balances, statements, FIFO allocation, transitions."""

    # ─────────────────────────────────────────────────────────────────
    # Helpers
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    def _live_grant_conditions(
        user_id: uuid.UUID,
        leave_type_id: uuid.UUID,
        as_of: date,
    ) -> list:
        return [
            LeaveGrant.user_id == user_id,
            LeaveGrant.leave_type_id == leave_type_id,
            LeaveGrant.deleted_at.is_(None),
            LeaveGrant.granted_on <= as_of,
            or_(LeaveGrant.expires_on.is_(None), LeaveGrant.expires_on >= as_of),
        ]

    @staticmethod
    async def consumed_by_grant(
        db: AsyncSession,
        grant_ids: Sequence[uuid.UUID],
    ) -> dict[uuid.UUID, int]:
        if not grant_ids:
            return {}
        result = await db.execute(
            select(LeaveConsumption.grant_id, func.sum(LeaveConsumption.quantity_minutes))
            .where(
                LeaveConsumption.grant_id.in_(list(grant_ids)),
                LeaveConsumption.deleted_at.is_(None),
            )
            .group_by(LeaveConsumption.grant_id)
        )
        return {grant_id: int(total or 0) for grant_id, total in result.all()}

    @staticmethod
    async def _overdraft_minutes(
        db: AsyncSession,
        user_id: uuid.UUID,
        leave_type_id: uuid.UUID,
    ) -> int:
        result = await db.execute(
            select(func.coalesce(func.sum(LeaveConsumption.quantity_minutes), 0)).where(
                LeaveConsumption.user_id == user_id,
                LeaveConsumption.leave_type_id == leave_type_id,
                LeaveConsumption.grant_id.is_(None),
                LeaveConsumption.deleted_at.is_(None),
            )
        )
        return int(result.scalar() or 0)

    @staticmethod
    async def _live_grants(
        db: AsyncSession,
        user_id: uuid.UUID,
        leave_type_id: uuid.UUID,
        as_of: date,
        *,
        lock: bool = False,
    ) -> list[tuple[LeaveGrant, int]]:
        """Live grants in FIFO order, each with its remaining minutes."""
        query = (
            select(LeaveGrant)
            .where(*LedgerService._live_grant_conditions(user_id, leave_type_id, as_of))
            .order_by(LeaveGrant.granted_on, LeaveGrant.created_at, LeaveGrant.id)
        )
        if lock:
            query = query.with_for_update()
        result = await db.execute(query)
        grants = list(result.scalars().all())
        consumed = await LedgerService.consumed_by_grant(db, [g.id for g in grants])
        return [(g, g.quantity_minutes - consumed.get(g.id, 0)) for g in grants]

    @staticmethod
    async def _get_company(db: AsyncSession, company_id: uuid.UUID) -> Company:
        result = await db.execute(select(Company).where(Company.id == company_id))
        company = result.scalars().first()
        if company is None:
            raise NotFoundException("Company", str(company_id))
        return company

    @staticmethod
    async def net_by_leave_type(
        db: AsyncSession,
        request_id: uuid.UUID,
    ) -> dict[uuid.UUID, int]:
        """Net live consumption of a request per leave type."""
        result = await db.execute(
            select(LeaveConsumption.leave_type_id, func.sum(LeaveConsumption.quantity_minutes))
            .where(
                LeaveConsumption.request_id == request_id,
                LeaveConsumption.deleted_at.is_(None),
            )
            .group_by(LeaveConsumption.leave_type_id)
        )
        return {lt: int(total or 0) for lt, total in result.all()}

    # ─────────────────────────────────────────────────────────────────
    # Balances
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def get_balance_minutes(
        db: AsyncSession,
        user_id: uuid.UUID,
        leave_type_id: uuid.UUID,
        as_of: Optional[date] = None,
    ) -> int:
        as_of = as_of or date.today()
        live = await LedgerService._live_grants(db, user_id, leave_type_id, as_of)
        remaining = sum(r for _, r in live)
        overdraft = await LedgerService._overdraft_minutes(db, user_id, leave_type_id)
        return remaining - overdraft

    @staticmethod
    async def get_balances(
        db: AsyncSession,
        company_id: uuid.UUID,
        user_id: uuid.UUID,
        as_of: Optional[date] = None,
    ) -> list[LeaveBalanceOut]:
        """Balance breakdown for every active leave type of the company."""

        as_of = as_of or date.today()
        types_result = await db.execute(
            select(LeaveType)
            .where(LeaveType.company_id == company_id, LeaveType.is_active.is_(True))
            .order_by(LeaveType.display_order, LeaveType.name)
        )
        leave_types = types_result.scalars().all()

        # Minutes of still-pending requests, per leave type
        held_result = await db.execute(
            select(LeaveConsumption.leave_type_id, func.sum(LeaveConsumption.quantity_minutes))
            .join(LeaveRequest, LeaveRequest.id == LeaveConsumption.request_id)
            .where(
                LeaveConsumption.user_id == user_id,
                LeaveConsumption.deleted_at.is_(None),
                LeaveRequest.status == LeaveRequestStatus.pending,
            )
            .group_by(LeaveConsumption.leave_type_id)
        )
        held_by_type = {lt: int(total or 0) for lt, total in held_result.all()}

        balances: list[LeaveBalanceOut] = []
        for lt in leave_types:
            live = await LedgerService._live_grants(db, user_id, lt.id, as_of)
            granted = sum(g.quantity_minutes for g, _ in live)
            remaining = sum(r for _, r in live)
            overdraft = await LedgerService._overdraft_minutes(db, user_id, lt.id)
            policy = await PolicyService.fetch_policy_or_default(db, company_id, lt.id)

            balance = remaining - overdraft
            balances.append(
                LeaveBalanceOut(
                    leave_type_id=lt.id,
                    leave_type_code=lt.code,
                    leave_type_name=lt.name,
                    granted_minutes=granted,
                    consumed_minutes=granted - balance,
                    held_minutes=held_by_type.get(lt.id, 0),
                    balance_minutes=balance,
                    balance_days=round(balance / (policy.day_hours * MINUTES_PER_HOUR), 2),
                    day_hours=policy.day_hours,
                )
            )
        return balances

    @staticmethod
    async def grant_statement(
        db: AsyncSession,
        user_id: uuid.UUID,
        leave_type_id: uuid.UUID,
        as_of: Optional[date] = None,
    ) -> list[GrantStatementLine]:
        as_of = as_of or date.today()
        live = await LedgerService._live_grants(db, user_id, leave_type_id, as_of)
        return [
            GrantStatementLine(
                grant_id=g.id,
                granted_on=g.granted_on,
                expires_on=g.expires_on,
                source=g.source,
                quantity_minutes=g.quantity_minutes,
                consumed_minutes=g.quantity_minutes - remaining,
                remaining_minutes=remaining,
            )
            for g, remaining in live
        ]

    # ─────────────────────────────────────────────────────────────────
    # Allocation
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def allocate_fifo(
        db: AsyncSession,
        *,
        company_id: uuid.UUID,
        user_id: uuid.UUID,
        leave_type_id: uuid.UUID,
        quantity_minutes: int,
        consumed_on: date,
        request_id: Optional[uuid.UUID] = None,
        created_by: Optional[uuid.UUID] = None,
        allow_negative: bool = False,
    ) -> dict:
        """Book *quantity_minutes* against live grants, oldest first.

        Returns ``{"inserted": <rows>, "remaining": <minutes booked as overdraft>}``.
        """

        if quantity_minutes <= 0:
            raise ValidationException(
                {"quantity_minutes": ["Quantity to consume must be positive."]}
            )

        if not allow_negative:
            balance = await LedgerService.get_balance_minutes(
                db, user_id, leave_type_id, consumed_on,
            )
            if balance < quantity_minutes:
                raise InsufficientBalanceError(INSUFFICIENT_BALANCE, quantity_minutes, balance)

        live = await LedgerService._live_grants(
            db, user_id, leave_type_id, consumed_on, lock=True,
        )
        takes, rest = plan_fifo([(g.id, r) for g, r in live], quantity_minutes)

        if rest > 0 and not allow_negative:
            raise InsufficientBalanceError(
                INSUFFICIENT_ALLOCATABLE_GRANTS, quantity_minutes, quantity_minutes - rest,
            )

        rows = [
            LeaveConsumption(
                company_id=company_id,
                request_id=request_id,
                user_id=user_id,
                leave_type_id=leave_type_id,
                grant_id=grant_id,
                quantity_minutes=take,
                consumed_on=consumed_on,
                created_by=created_by,
            )
            for grant_id, take in takes
        ]
        if rest > 0:
            rows.append(
                LeaveConsumption(
                    company_id=company_id,
                    request_id=request_id,
                    user_id=user_id,
                    leave_type_id=leave_type_id,
                    grant_id=None,
                    quantity_minutes=rest,
                    consumed_on=consumed_on,
                    created_by=created_by,
                )
            )
            logger.warning(
                "Overdraft of %d minute(s) booked for user %s, leave type %s",
                rest, user_id, leave_type_id,
            )

        db.add_all(rows)
        await db.flush()
        return {"inserted": len(rows), "remaining": rest}

    # ─────────────────────────────────────────────────────────────────
    # Request transitions
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def _allocate_details(
        db: AsyncSession,
        request: LeaveRequest,
        actor_id: Optional[uuid.UUID],
        *,
        at_apply: bool,
    ) -> int:
        company = await LedgerService._get_company(db, request.company_id)
        already = await LedgerService.net_by_leave_type(db, request.id)

        inserted = 0
        for detail in request.details:
            if already.get(detail.leave_type_id, 0) > 0:
                continue
            policy = await PolicyService.fetch_policy_or_default(
                db, request.company_id, detail.leave_type_id,
            )
            if at_apply and not holds_on_apply(policy):
                continue
            outcome = await LedgerService.allocate_fifo(
                db,
                company_id=request.company_id,
                user_id=request.user_id,
                leave_type_id=detail.leave_type_id,
                quantity_minutes=detail.quantity_minutes,
                consumed_on=local_date(detail.start_at, company.timezone),
                request_id=request.id,
                created_by=actor_id,
                allow_negative=policy.allow_negative,
            )
            inserted += outcome["inserted"]
        return inserted

    @staticmethod
    async def hold_for_request(
        db: AsyncSession,
        request: LeaveRequest,
        actor_id: Optional[uuid.UUID] = None,
    ) -> int:
        """Take balance at apply time for details whose policy deducts on apply."""
        inserted = await LedgerService._allocate_details(db, request, actor_id, at_apply=True)
        await create_audit_entry(
            db,
            action="leave_hold_created",
            entity_type="leave_request",
            entity_id=request.id,
            company_id=request.company_id,
            actor_id=actor_id,
            new_values={"rows": inserted},
        )
        return inserted

    @staticmethod
    async def finalize_on_approve(
        db: AsyncSession,
        request: LeaveRequest,
        approver_id: Optional[uuid.UUID] = None,
    ) -> int:
        """Allocate every detail not already held."""
        inserted = await LedgerService._allocate_details(db, request, approver_id, at_apply=False)
        await create_audit_entry(
            db,
            action="leave_consumption_finalized",
            entity_type="leave_request",
            entity_id=request.id,
            company_id=request.company_id,
            actor_id=approver_id,
            new_values={"rows": inserted},
        )
        return inserted

    @staticmethod
    async def release_for_request(
        db: AsyncSession,
        request: LeaveRequest,
        actor_id: Optional[uuid.UUID] = None,
    ) -> int:
        """Soft-delete every live consumption of the request."""
        result = await db.execute(
            update(LeaveConsumption)
            .where(
                LeaveConsumption.request_id == request.id,
                LeaveConsumption.deleted_at.is_(None),
            )
            .values(deleted_at=datetime.now(timezone.utc))
        )
        released = result.rowcount or 0
        await create_audit_entry(
            db,
            action="leave_hold_released",
            entity_type="leave_request",
            entity_id=request.id,
            company_id=request.company_id,
            actor_id=actor_id,
            new_values={"rows": released},
        )
        return released

    @staticmethod
    async def reverse_for_request(
        db: AsyncSession,
        request: LeaveRequest,
        actor_id: Optional[uuid.UUID] = None,
    ) -> int:
        """Offset the request's positive net consumption, one row per (grant, leave type)."""

        result = await db.execute(
            select(
                LeaveConsumption.grant_id,
                LeaveConsumption.leave_type_id,
                func.sum(LeaveConsumption.quantity_minutes),
                func.min(LeaveConsumption.consumed_on),
            )
            .where(
                LeaveConsumption.request_id == request.id,
                LeaveConsumption.deleted_at.is_(None),
            )
            .group_by(LeaveConsumption.grant_id, LeaveConsumption.leave_type_id)
        )

        offsets: dict[tuple[Optional[uuid.UUID], uuid.UUID], tuple[int, date]] = {}
        for grant_id, leave_type_id, net, consumed_on in result.all():
            if net and net > 0:
                offsets[(grant_id, leave_type_id)] = (int(net), consumed_on)

        rows = [
            LeaveConsumption(
                company_id=request.company_id,
                request_id=request.id,
                user_id=request.user_id,
                leave_type_id=leave_type_id,
                grant_id=grant_id,
                quantity_minutes=-net,
                consumed_on=consumed_on,
                created_by=actor_id,
            )
            for (grant_id, leave_type_id), (net, consumed_on) in offsets.items()
        ]
        if rows:
            db.add_all(rows)
            await db.flush()

        await create_audit_entry(
            db,
            action="leave_consumption_reversed",
            entity_type="leave_request",
            entity_id=request.id,
            company_id=request.company_id,
            actor_id=actor_id,
            new_values={"rows": len(rows)},
        )
        return len(rows)
