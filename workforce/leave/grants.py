"""Grant service — manual grants and policy accrual runs.

Policy runs are keyed by (company, leave type, grant date). The run row in
``leave_grant_runs`` doubles as the lock: it is taken with ``FOR UPDATE NOWAIT``
so a second run for the same key is refused instead of queued, and per-user
grants are skipped when a ``policy`` grant for the same date already exists,
so re-running a finished key is safe.
"""

from __future__ import annotations

import logging
import math
import uuid
from datetime import date, datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from workforce.attendance.service import AttendanceService
from workforce.calendar.service import CalendarService
from workforce.common.audit import create_audit_entry
from workforce.common.constants import AccrualMethod, GrantRunStatus, GrantSource
from workforce.common.exceptions import (
    LockedError,
    NotFoundException,
    ValidationException,
)
from workforce.common.filters import apply_filters
from workforce.common.pagination import PaginatedResponse, PaginationParams, paginate
from workforce.leave import accrual
from workforce.leave.ledger import LedgerService
from workforce.leave.models import LeaveGrant, LeaveGrantRun
from workforce.leave.policy import PolicyService
from workforce.leave.schemas import (
    GrantCreate,
    GrantOut,
    GrantPreviewLine,
    GrantPreviewOut,
    GrantRunOut,
    GrantUpdate,
    LeavePolicyOut,
)
from workforce.organization.models import User

logger = logging.getLogger(__name__)

# PostgreSQL lock_not_available
LOCK_NOT_AVAILABLE = "55P03"


def _lock_not_available(exc: DBAPIError) -> bool:
    orig = exc.orig
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    return code == LOCK_NOT_AVAILABLE


# ═════════════════════════════════════════════════════════════════════
# GrantService
# ═════════════════════════════════════════════════════════════════════


class GrantService:
    """Async grant operations: manual CRUD, accrual preview and runs."""

    # ─────────────────────────────────────────────────────────────────
    # Helpers
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def _get_user(
        db: AsyncSession,
        company_id: uuid.UUID,
        user_id: uuid.UUID,
    ) -> User:
        result = await db.execute(
            select(User).where(User.id == user_id, User.company_id == company_id)
        )
        user = result.scalars().first()
        if user is None:
            raise NotFoundException("User", str(user_id))
        return user

    @staticmethod
    async def _get_grant(
        db: AsyncSession,
        company_id: uuid.UUID,
        grant_id: uuid.UUID,
    ) -> LeaveGrant:
        result = await db.execute(
            select(LeaveGrant).where(
                LeaveGrant.id == grant_id,
                LeaveGrant.company_id == company_id,
                LeaveGrant.deleted_at.is_(None),
            )
        )
        grant = result.scalars().first()
        if grant is None:
            raise NotFoundException("LeaveGrant", str(grant_id))
        return grant

    @staticmethod
    async def _net_consumed(db: AsyncSession, grant_id: uuid.UUID) -> int:
        consumed = await LedgerService.consumed_by_grant(db, [grant_id])
        return consumed.get(grant_id, 0)

    @staticmethod
    def _snapshot(grant: LeaveGrant) -> dict:
        return {
            "quantity_minutes": grant.quantity_minutes,
            "expires_on": grant.expires_on.isoformat() if grant.expires_on else None,
            "note": grant.note,
        }

    # ─────────────────────────────────────────────────────────────────
    # Manual grants
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def create_manual_grant(
        db: AsyncSession,
        company_id: uuid.UUID,
        data: GrantCreate,
        *,
        actor_id: Optional[uuid.UUID] = None,
    ) -> GrantOut:
        await GrantService._get_user(db, company_id, data.user_id)
        await PolicyService.get_type(db, company_id, data.leave_type_id)

        grant = LeaveGrant(
            company_id=company_id,
            user_id=data.user_id,
            leave_type_id=data.leave_type_id,
            quantity_minutes=math.floor(data.quantity_minutes),
            granted_on=data.granted_on,
            expires_on=data.expires_on,
            source=data.source,
            note=data.note,
            created_by=actor_id,
        )
        db.add(grant)
        await db.flush()

        await create_audit_entry(
            db,
            action="leave_grant_created",
            entity_type="leave_grant",
            entity_id=grant.id,
            company_id=company_id,
            actor_id=actor_id,
            new_values={
                "user_id": str(data.user_id),
                "leave_type_id": str(data.leave_type_id),
                "source": grant.source.value,
                **GrantService._snapshot(grant),
            },
        )
        return GrantOut.model_validate(grant)

    @staticmethod
    async def update_grant(
        db: AsyncSession,
        company_id: uuid.UUID,
        grant_id: uuid.UUID,
        data: GrantUpdate,
        *,
        actor_id: Optional[uuid.UUID] = None,
    ) -> GrantOut:
        """Edit quantity, expiry or note. Quantity cannot go below what is consumed."""

        grant = await GrantService._get_grant(db, company_id, grant_id)
        old_values = GrantService._snapshot(grant)
        fields = data.model_fields_set

        if "quantity_minutes" in fields:
            if data.quantity_minutes is None:
                raise ValidationException({"quantity_minutes": ["Quantity cannot be null."]})
            quantity = math.floor(data.quantity_minutes)
            consumed = await GrantService._net_consumed(db, grant.id)
            if quantity < max(consumed, 1):
                raise ValidationException(
                    {"quantity_minutes": [
                        f"Quantity cannot be below the {consumed} minute(s) already consumed."
                    ]}
                )
            grant.quantity_minutes = quantity

        if "expires_on" in fields:
            if data.expires_on is not None and data.expires_on < grant.granted_on:
                raise ValidationException(
                    {"expires_on": ["expires_on cannot be before granted_on."]}
                )
            grant.expires_on = data.expires_on

        if "note" in fields:
            grant.note = data.note

        grant.updated_at = datetime.now(timezone.utc)
        await db.flush()

        await create_audit_entry(
            db,
            action="leave_grant_updated",
            entity_type="leave_grant",
            entity_id=grant.id,
            company_id=company_id,
            actor_id=actor_id,
            old_values=old_values,
            new_values=GrantService._snapshot(grant),
        )
        return GrantOut.model_validate(grant)

    @staticmethod
    async def delete_grant(
        db: AsyncSession,
        company_id: uuid.UUID,
        grant_id: uuid.UUID,
        *,
        actor_id: Optional[uuid.UUID] = None,
    ) -> None:
        """Soft delete; refused while the grant still backs any consumption."""

        grant = await GrantService._get_grant(db, company_id, grant_id)
        consumed = await GrantService._net_consumed(db, grant.id)
        if consumed > 0:
            raise ValidationException(
                {"grant": [f"Grant has {consumed} minute(s) consumed and cannot be deleted."]}
            )

        grant.deleted_at = datetime.now(timezone.utc)
        await db.flush()

        await create_audit_entry(
            db,
            action="leave_grant_deleted",
            entity_type="leave_grant",
            entity_id=grant.id,
            company_id=company_id,
            actor_id=actor_id,
            old_values=GrantService._snapshot(grant),
        )

    @staticmethod
    async def list_grants(
        db: AsyncSession,
        company_id: uuid.UUID,
        params: PaginationParams,
        *,
        user_id: Optional[uuid.UUID] = None,
        leave_type_id: Optional[uuid.UUID] = None,
        source: Optional[GrantSource] = None,
        granted_from: Optional[date] = None,
        granted_to: Optional[date] = None,
        no_expiry: Optional[bool] = None,
    ) -> PaginatedResponse:
        query = select(LeaveGrant).where(
            LeaveGrant.company_id == company_id,
            LeaveGrant.deleted_at.is_(None),
        )
        query = apply_filters(
            query,
            LeaveGrant,
            {
                "user_id": user_id,
                "leave_type_id": leave_type_id,
                "source": source,
                "granted_on__from": granted_from,
                "granted_on__to": granted_to,
                "expires_on__isnull": no_expiry,
            },
        )
        query = query.order_by(LeaveGrant.granted_on.desc(), LeaveGrant.created_at.desc())
        return await paginate(db, query, params, model=LeaveGrant, item_schema=GrantOut)

    # ─────────────────────────────────────────────────────────────────
    # Accrual
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def _carryover_leftover(
        db: AsyncSession,
        user_id: uuid.UUID,
        leave_type_id: uuid.UUID,
        period_end: date,
    ) -> int:
        """Unused minutes of grants that expire on *period_end*."""
        result = await db.execute(
            select(LeaveGrant).where(
                LeaveGrant.user_id == user_id,
                LeaveGrant.leave_type_id == leave_type_id,
                LeaveGrant.expires_on == period_end,
                LeaveGrant.deleted_at.is_(None),
            )
        )
        grants = result.scalars().all()
        consumed = await LedgerService.consumed_by_grant(db, [g.id for g in grants])
        return sum(max(0, g.quantity_minutes - consumed.get(g.id, 0)) for g in grants)

    @staticmethod
    async def _has_policy_grant(
        db: AsyncSession,
        user_id: uuid.UUID,
        leave_type_id: uuid.UUID,
        grant_date: date,
    ) -> bool:
        result = await db.execute(
            select(LeaveGrant.id).where(
                LeaveGrant.user_id == user_id,
                LeaveGrant.leave_type_id == leave_type_id,
                LeaveGrant.granted_on == grant_date,
                LeaveGrant.source == GrantSource.policy,
                LeaveGrant.deleted_at.is_(None),
            ).limit(1)
        )
        return result.scalar() is not None

    @staticmethod
    async def _compute_line(
        db: AsyncSession,
        company_id: uuid.UUID,
        policy: LeavePolicyOut,
        leave_type_id: uuid.UUID,
        user: User,
        grant_date: date,
    ) -> GrantPreviewLine:
        line = GrantPreviewLine(
            user_id=user.id,
            display_name=user.display_name,
            joined_date=user.joined_date,
            eligible=False,
        )
        method = policy.accrual_method

        # 1) eligibility and service years
        if method == AccrualMethod.anniversary:
            if user.joined_date is None:
                line.reason = "no joined date"
                return line
            years = accrual.anniversary_service_years(
                user.joined_date, grant_date, policy.anniversary_offset_days,
            )
            if years is None:
                line.reason = "not the work anniversary"
                return line
        elif method == AccrualMethod.fiscal_fixed:
            if user.joined_date is None:
                line.reason = "no joined date"
                return line
            years = accrual.fiscal_service_years(
                user.joined_date, grant_date, policy.fiscal_start_month,
            )
            if years is None:
                line.reason = "not the fiscal year start"
                return line
        else:
            if not accrual.is_monthly_grant_day(grant_date):
                line.reason = "not the first day of the month"
                return line
            years = 0
        line.service_years = years

        # 2) base days, prorated by last month's attendance for monthly accrual
        base_days = accrual.base_days_for_service(policy.base_days_by_service, years)
        if method == AccrualMethod.monthly and policy.monthly_proration:
            period_start, period_end = accrual.previous_month(grant_date)
            business_days = await CalendarService.count_business_days(
                db, company_id, period_start, period_end,
            )
            summary = await AttendanceService.summarize(db, user.id, period_start, period_end)
            rate = accrual.attendance_rate(
                policy.monthly_proration_basis,
                attended_days=summary["attended_days"],
                worked_minutes=summary["worked_minutes"],
                business_days=business_days,
                day_hours=policy.day_hours,
            )
            base_days = accrual.prorate(base_days, rate, policy.monthly_min_attendance_rate)
        line.base_days = base_days

        # 3) carryover of the leftover that expires the day before
        if method != AccrualMethod.monthly and policy.carryover_max_days is not None:
            leftover = await GrantService._carryover_leftover(
                db, user.id, leave_type_id, grant_date - timedelta(days=1),
            )
            line.carryover_minutes = accrual.carryover_minutes(
                leftover, policy.carryover_max_days, policy.day_hours,
            )

        line.quantity_minutes = accrual.grant_minutes(
            base_days, policy.day_hours, line.carryover_minutes,
        )
        if line.quantity_minutes <= 0:
            line.reason = "nothing to grant"
            return line

        line.expires_on = accrual.expiry_for(grant_date, policy.expire_months)
        line.duplicate = await GrantService._has_policy_grant(
            db, user.id, leave_type_id, grant_date,
        )
        line.eligible = True
        if line.duplicate:
            line.reason = "already granted"
        return line

    @staticmethod
    async def _company_users(db: AsyncSession, company_id: uuid.UUID) -> list[User]:
        result = await db.execute(
            select(User)
            .where(User.company_id == company_id, User.is_active.is_(True))
            .order_by(User.email)
        )
        return list(result.scalars().all())

    @staticmethod
    async def preview_policy_grant(
        db: AsyncSession,
        company_id: uuid.UUID,
        leave_type_id: uuid.UUID,
        grant_date: date,
    ) -> GrantPreviewOut:
        """What a policy run would grant on *grant_date*. Writes nothing."""

        await PolicyService.get_type(db, company_id, leave_type_id)
        policy = await PolicyService.fetch_policy_or_default(db, company_id, leave_type_id)
        users = await GrantService._company_users(db, company_id)

        lines = [
            await GrantService._compute_line(
                db, company_id, policy, leave_type_id, user, grant_date,
            )
            for user in users
        ]
        return GrantPreviewOut(
            leave_type_id=leave_type_id,
            grant_date=grant_date,
            accrual_method=policy.accrual_method,
            lines=lines,
        )

    @staticmethod
    async def _acquire_run(
        db: AsyncSession,
        company_id: uuid.UUID,
        leave_type_id: uuid.UUID,
        grant_date: date,
        actor_id: Optional[uuid.UUID],
    ) -> LeaveGrantRun:
        lock_key = f"{company_id}/{leave_type_id}/{grant_date.isoformat()}"
        try:
            result = await db.execute(
                select(LeaveGrantRun)
                .where(
                    LeaveGrantRun.company_id == company_id,
                    LeaveGrantRun.leave_type_id == leave_type_id,
                    LeaveGrantRun.grant_date == grant_date,
                )
                .with_for_update(nowait=True)
            )
        except DBAPIError as exc:
            if not _lock_not_available(exc):
                raise
            logger.warning("Grant run %s refused: row locked by another run", lock_key)
            raise LockedError(f"A grant run for {lock_key} is already in progress.") from exc
        run = result.scalars().first()

        now = datetime.now(timezone.utc)
        if run is None:
            run = LeaveGrantRun(
                company_id=company_id,
                leave_type_id=leave_type_id,
                grant_date=grant_date,
            )
            db.add(run)
        run.status = GrantRunStatus.running
        run.granted = 0
        run.skipped = 0
        run.error = None
        run.trace_id = uuid.uuid4().hex
        run.started_by = actor_id
        run.started_at = now
        run.finished_at = None
        try:
            await db.flush()
        except IntegrityError:
            raise LockedError(f"A grant run for {lock_key} is already in progress.")
        return run

    @staticmethod
    async def run_policy_grant(
        db: AsyncSession,
        company_id: uuid.UUID,
        leave_type_id: uuid.UUID,
        grant_date: date,
        *,
        actor_id: Optional[uuid.UUID] = None,
    ) -> GrantRunOut:
        """Grant policy leave to every eligible user of the company.

        A failure inside the run rolls back the grants written so far, marks the
        run ``failed`` and returns it.
        """

        await PolicyService.get_type(db, company_id, leave_type_id)
        policy = await PolicyService.fetch_policy_or_default(db, company_id, leave_type_id)
        run = await GrantService._acquire_run(db, company_id, leave_type_id, grant_date, actor_id)

        details = {
            "accrual_method": policy.accrual_method.value,
            "leave_type_id": str(leave_type_id),
            "grant_date": grant_date.isoformat(),
            "trace_id": run.trace_id,
        }
        await create_audit_entry(
            db,
            action="leave_grant_run_started",
            entity_type="leave_grant_run",
            entity_id=run.id,
            company_id=company_id,
            actor_id=actor_id,
            new_values=details,
            trace_id=details["trace_id"],
        )

        granted = 0
        skipped = 0
        try:
            async with db.begin_nested():
                users = await GrantService._company_users(db, company_id)
                for user in users:
                    line = await GrantService._compute_line(
                        db, company_id, policy, leave_type_id, user, grant_date,
                    )
                    if not line.eligible or line.duplicate:
                        skipped += 1
                        continue
                    db.add(
                        LeaveGrant(
                            company_id=company_id,
                            user_id=user.id,
                            leave_type_id=leave_type_id,
                            quantity_minutes=line.quantity_minutes,
                            granted_on=grant_date,
                            expires_on=line.expires_on,
                            source=GrantSource.policy,
                            note=(
                                f"carryover:{line.carryover_minutes}"
                                if line.carryover_minutes > 0
                                else None
                            ),
                            created_by=actor_id,
                        )
                    )
                    granted += 1
                await db.flush()
        except Exception as exc:
            logger.exception("Grant run %s failed", details["trace_id"])
            # The savepoint rollback expires what it touched
            await db.refresh(run)
            run.status = GrantRunStatus.failed
            run.error = str(exc)[:1000]
            run.finished_at = datetime.now(timezone.utc)
            await db.flush()
            await create_audit_entry(
                db,
                action="leave_grant_run_failed",
                entity_type="leave_grant_run",
                entity_id=run.id,
                company_id=company_id,
                actor_id=actor_id,
                new_values={**details, "error": run.error},
                trace_id=details["trace_id"],
            )
            return GrantRunOut(
                run_id=run.id, status=GrantRunStatus.failed.value, granted=0, skipped=0,
            )

        run.status = GrantRunStatus.finished
        run.granted = granted
        run.skipped = skipped
        run.finished_at = datetime.now(timezone.utc)
        await db.flush()

        await create_audit_entry(
            db,
            action="leave_grant_run_finished",
            entity_type="leave_grant_run",
            entity_id=run.id,
            company_id=company_id,
            actor_id=actor_id,
            new_values={**details, "granted": granted, "skipped": skipped},
            trace_id=details["trace_id"],
        )
        logger.info(
            "Grant run %s finished: %d granted, %d skipped", run.trace_id, granted, skipped,
        )
        return GrantRunOut(
            run_id=run.id, status=run.status.value, granted=granted, skipped=skipped,
        )
