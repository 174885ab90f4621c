"""Leave request service — apply, approve, reject, cancel and read requests.

Business logic:
  - Details are validated before anything is stored; a request with issues is
    refused as a whole (422, errors grouped by issue code)
  - Balance moves through the ledger: hold on apply, finalize on approve,
    release on reject or pending cancel, reverse on approved cancel
  - Leave types that do not require approval are approved on apply
  - Approvers are the requester's manager or an admin, never the requester
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from workforce.auth.dependencies import is_admin
from workforce.calendar.service import as_aware
from workforce.common.audit import create_audit_entry
from workforce.common.constants import LeaveRequestStatus
from workforce.common.exceptions import (
    ForbiddenException,
    NotFoundException,
    ValidationException,
)
from workforce.common.pagination import PaginatedResponse, PaginationParams, paginate
from workforce.leave.ledger import LedgerService
from workforce.leave.models import (
    LeaveConsumption,
    LeaveRequest,
    LeaveRequestDetail,
    LeaveType,
)
from workforce.leave.schemas import (
    ConsumptionOut,
    LeaveRequestCreate,
    LeaveRequestOut,
    ValidationResult,
)
from workforce.leave.validation import issues_to_errors, validate_details, validate_request
from workforce.organization.models import Company, User

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════
# LeaveRequestService
# ═════════════════════════════════════════════════════════════════════


class LeaveRequestService:
    """Async leave request workflow bound to the ledger."""

    # ─────────────────────────────────────────────────────────────────
    # Helpers
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def _get_company(db: AsyncSession, company_id: uuid.UUID) -> Company:
        result = await db.execute(select(Company).where(Company.id == company_id))
        company = result.scalars().first()
        if company is None:
            raise NotFoundException("Company", str(company_id))
        return company

    @staticmethod
    async def _get_request(
        db: AsyncSession,
        company_id: uuid.UUID,
        request_id: uuid.UUID,
        *,
        lock: bool = False,
    ) -> LeaveRequest:
        query = select(LeaveRequest).where(
            LeaveRequest.id == request_id,
            LeaveRequest.company_id == company_id,
        )
        if lock:
            query = query.with_for_update()
        result = await db.execute(query)
        request = result.scalars().first()
        if request is None:
            raise NotFoundException("LeaveRequest", str(request_id))
        return request

    @staticmethod
    async def _get_requester(db: AsyncSession, request: LeaveRequest) -> User:
        result = await db.execute(select(User).where(User.id == request.user_id))
        return result.scalars().one()

    @staticmethod
    async def _check_decider(
        db: AsyncSession,
        actor: User,
        request: LeaveRequest,
    ) -> None:
        """Manager of the requester or an admin; never the requester."""
        if actor.id == request.user_id:
            raise ForbiddenException(detail="You cannot decide on your own leave request.")
        if is_admin(actor):
            return
        requester = await LeaveRequestService._get_requester(db, request)
        if requester.manager_id != actor.id:
            raise ForbiddenException(
                detail="Only the requester's manager or an HR admin can decide on this request.",
            )

    @staticmethod
    async def _check_visible(
        db: AsyncSession,
        actor: User,
        request: LeaveRequest,
    ) -> None:
        if actor.id == request.user_id or is_admin(actor):
            return
        requester = await LeaveRequestService._get_requester(db, request)
        if requester.manager_id != actor.id:
            raise ForbiddenException(detail="You cannot view this leave request.")

    @staticmethod
    def _require_pending(request: LeaveRequest) -> None:
        if request.status != LeaveRequestStatus.pending:
            raise ValidationException(
                {"status": [f"Leave request is already {request.status.value}."]}
            )

    # ─────────────────────────────────────────────────────────────────
    # Apply
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def apply(
        db: AsyncSession,
        user: User,
        data: LeaveRequestCreate,
    ) -> LeaveRequestOut:
        """File a leave request for *user*, holding balance where the policy says so."""

        company = await LeaveRequestService._get_company(db, user.company_id)

        type_ids = {d.leave_type_id for d in data.details}
        types_result = await db.execute(
            select(LeaveType).where(
                LeaveType.id.in_(type_ids),
                LeaveType.company_id == company.id,
                LeaveType.is_active.is_(True),
            )
        )
        leave_types = {lt.id: lt for lt in types_result.scalars().all()}
        missing = type_ids - leave_types.keys()
        if missing:
            raise NotFoundException("LeaveType", str(sorted(missing, key=str)[0]))

        result = await validate_details(db, company, user.id, data.details)
        if not result.valid:
            raise ValidationException(issues_to_errors(result.issues))

        request = LeaveRequest(
            company_id=company.id,
            user_id=user.id,
            status=LeaveRequestStatus.pending,
            reason=data.reason,
            details=[
                LeaveRequestDetail(
                    leave_type_id=d.leave_type_id,
                    start_at=as_aware(d.start_at).astimezone(timezone.utc),
                    end_at=as_aware(d.end_at).astimezone(timezone.utc),
                    unit=d.unit,
                    quantity_minutes=d.quantity_minutes,
                    position=i,
                )
                for i, d in enumerate(data.details)
            ],
        )
        db.add(request)
        await db.flush()

        await create_audit_entry(
            db,
            action="leave_request_created",
            entity_type="leave_request",
            entity_id=request.id,
            company_id=company.id,
            actor_id=user.id,
            new_values={
                "details": len(data.details),
                "minutes": sum(d.quantity_minutes for d in data.details),
            },
        )

        needs_approval = any(leave_types[t].requires_approval for t in type_ids)
        if needs_approval:
            await LedgerService.hold_for_request(db, request, user.id)
        else:
            await LedgerService.finalize_on_approve(db, request, user.id)
            request.status = LeaveRequestStatus.approved
            request.decided_at = datetime.now(timezone.utc)
            request.decision_note = "auto-approved"
            request.updated_at = request.decided_at
            await db.flush()

        logger.info(
            "Leave request %s filed by %s (%s)", request.id, user.id, request.status.value,
        )
        return LeaveRequestOut.model_validate(request)

    # ─────────────────────────────────────────────────────────────────
    # Decisions
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def approve(
        db: AsyncSession,
        actor: User,
        request_id: uuid.UUID,
        *,
        note: Optional[str] = None,
    ) -> LeaveRequestOut:
        request = await LeaveRequestService._get_request(
            db, actor.company_id, request_id, lock=True,
        )
        LeaveRequestService._require_pending(request)
        await LeaveRequestService._check_decider(db, actor, request)

        await LedgerService.finalize_on_approve(db, request, actor.id)

        now = datetime.now(timezone.utc)
        request.status = LeaveRequestStatus.approved
        request.decided_by = actor.id
        request.decided_at = now
        request.decision_note = note
        request.updated_at = now
        await db.flush()

        await create_audit_entry(
            db,
            action="leave_request_approved",
            entity_type="leave_request",
            entity_id=request.id,
            company_id=request.company_id,
            actor_id=actor.id,
            old_values={"status": LeaveRequestStatus.pending.value},
            new_values={"status": request.status.value},
        )
        return LeaveRequestOut.model_validate(request)

    @staticmethod
    async def reject(
        db: AsyncSession,
        actor: User,
        request_id: uuid.UUID,
        *,
        note: Optional[str] = None,
    ) -> LeaveRequestOut:
        request = await LeaveRequestService._get_request(
            db, actor.company_id, request_id, lock=True,
        )
        LeaveRequestService._require_pending(request)
        await LeaveRequestService._check_decider(db, actor, request)

        await LedgerService.release_for_request(db, request, actor.id)

        now = datetime.now(timezone.utc)
        request.status = LeaveRequestStatus.rejected
        request.decided_by = actor.id
        request.decided_at = now
        request.decision_note = note
        request.updated_at = now
        await db.flush()

        await create_audit_entry(
            db,
            action="leave_request_rejected",
            entity_type="leave_request",
            entity_id=request.id,
            company_id=request.company_id,
            actor_id=actor.id,
            old_values={"status": LeaveRequestStatus.pending.value},
            new_values={"status": request.status.value},
        )
        return LeaveRequestOut.model_validate(request)

    @staticmethod
    async def cancel(
        db: AsyncSession,
        actor: User,
        request_id: uuid.UUID,
    ) -> LeaveRequestOut:
        """Withdraw a request: release a pending hold, reverse an approved one."""

        request = await LeaveRequestService._get_request(
            db, actor.company_id, request_id, lock=True,
        )
        if actor.id != request.user_id and not is_admin(actor):
            raise ForbiddenException(detail="Only the requester or an HR admin can cancel.")

        previous = request.status
        if previous == LeaveRequestStatus.pending:
            await LedgerService.release_for_request(db, request, actor.id)
        elif previous == LeaveRequestStatus.approved:
            await LedgerService.reverse_for_request(db, request, actor.id)
        else:
            raise ValidationException(
                {"status": [f"Leave request is already {previous.value}."]}
            )

        now = datetime.now(timezone.utc)
        request.status = LeaveRequestStatus.cancelled
        request.cancelled_at = now
        request.updated_at = now
        await db.flush()

        await create_audit_entry(
            db,
            action="leave_request_cancelled",
            entity_type="leave_request",
            entity_id=request.id,
            company_id=request.company_id,
            actor_id=actor.id,
            old_values={"status": previous.value},
            new_values={"status": request.status.value},
        )
        return LeaveRequestOut.model_validate(request)

    # ─────────────────────────────────────────────────────────────────
    # Reads
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def get(
        db: AsyncSession,
        actor: User,
        request_id: uuid.UUID,
    ) -> LeaveRequestOut:
        request = await LeaveRequestService._get_request(db, actor.company_id, request_id)
        await LeaveRequestService._check_visible(db, actor, request)
        return LeaveRequestOut.model_validate(request)

    @staticmethod
    async def validation(
        db: AsyncSession,
        actor: User,
        request_id: uuid.UUID,
    ) -> ValidationResult:
        """Re-run validation of a stored request against today's policy and calendar."""
        company = await LeaveRequestService._get_company(db, actor.company_id)
        found = await db.execute(
            select(LeaveRequest).where(
                LeaveRequest.id == request_id,
                LeaveRequest.company_id == company.id,
            )
        )
        request = found.scalars().first()
        if request is not None:
            await LeaveRequestService._check_visible(db, actor, request)
        return await validate_request(db, company, request_id)

    @staticmethod
    async def list_mine(
        db: AsyncSession,
        user: User,
        params: PaginationParams,
        *,
        status: Optional[LeaveRequestStatus] = None,
    ) -> PaginatedResponse:
        query = select(LeaveRequest).where(
            LeaveRequest.company_id == user.company_id,
            LeaveRequest.user_id == user.id,
        )
        if status is not None:
            query = query.where(LeaveRequest.status == status)
        query = query.order_by(LeaveRequest.created_at.desc())
        return await paginate(db, query, params, model=LeaveRequest, item_schema=LeaveRequestOut)

    @staticmethod
    async def list_company(
        db: AsyncSession,
        actor: User,
        params: PaginationParams,
        *,
        status: Optional[LeaveRequestStatus] = None,
        user_id: Optional[uuid.UUID] = None,
    ) -> PaginatedResponse:
        """All requests of the company for admins; direct reports for managers."""
        query = select(LeaveRequest).where(LeaveRequest.company_id == actor.company_id)
        if not is_admin(actor):
            reports = select(User.id).where(
                User.company_id == actor.company_id,
                User.manager_id == actor.id,
            )
            query = query.where(LeaveRequest.user_id.in_(reports))
        if status is not None:
            query = query.where(LeaveRequest.status == status)
        if user_id is not None:
            query = query.where(LeaveRequest.user_id == user_id)
        query = query.order_by(LeaveRequest.created_at.desc())
        return await paginate(db, query, params, model=LeaveRequest, item_schema=LeaveRequestOut)

    @staticmethod
    async def consumptions(
        db: AsyncSession,
        actor: User,
        request_id: uuid.UUID,
    ) -> list[ConsumptionOut]:
        """Every ledger row of the request, released ones included."""
        request = await LeaveRequestService._get_request(db, actor.company_id, request_id)
        await LeaveRequestService._check_visible(db, actor, request)
        result = await db.execute(
            select(LeaveConsumption)
            .where(LeaveConsumption.request_id == request.id)
            .order_by(LeaveConsumption.created_at, LeaveConsumption.id)
        )
        return [ConsumptionOut.model_validate(c) for c in result.scalars().all()]
