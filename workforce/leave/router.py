"""Leave router — types, policies, balances, grants, accrual runs, requests and audit history.

All endpoints require authentication. Configuration and grant endpoints
enforce permissions; request decisions are checked against the requester's
manager in the service layer.
"""


import uuid
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, Response
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from workforce.auth.dependencies import get_current_user, is_admin, require_permission
from workforce.common.audit import AuditEntryOut, list_audit_entries
from workforce.common.constants import GrantSource, LeaveRequestStatus
from workforce.common.exceptions import ForbiddenException, NotFoundException
from workforce.common.pagination import PaginatedResponse, PaginationParams
from workforce.common.rate_limit import limiter
from workforce.database import get_db
from workforce.leave.grants import GrantService
from workforce.leave.ledger import LedgerService
from workforce.leave.policy import PolicyService
from workforce.leave.schemas import (
    ConsumptionOut,
    GrantCreate,
    GrantOut,
    GrantPreviewOut,
    GrantRunIn,
    GrantRunOut,
    GrantStatementLine,
    GrantUpdate,
    LeaveDecision,
    LeavePolicyIn,
    LeavePolicyOut,
    LeaveRequestCreate,
    LeaveRequestOut,
    LeaveTypeCreate,
    LeaveTypeOut,
    UserBalancesOut,
    ValidationResult,
)
from workforce.leave.service import LeaveRequestService
from workforce.organization.models import User

router = APIRouter(prefix="", tags=["leave"])


async def _visible_user(db: AsyncSession, actor: User, user_id: uuid.UUID) -> User:
    """Self, an admin, or the user's manager may read a user's ledger."""
    result = await db.execute(
        select(User).where(User.id == user_id, User.company_id == actor.company_id)
    )
    target = result.scalars().first()
    if target is None:
        raise NotFoundException("User", str(user_id))
    if target.id != actor.id and not is_admin(actor) and target.manager_id != actor.id:
        raise ForbiddenException(detail="You cannot view this user's leave balance.")
    return target


# ═════════════════════════════════════════════════════════════════════
# Types & policies
# ═════════════════════════════════════════════════════════════════════


@router.get("/types", response_model=list[LeaveTypeOut])
async def list_leave_types(
    include_inactive: bool = Query(False),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Leave types of the caller's company, in display order."""
    return await PolicyService.list_types(db, user.company_id, include_inactive=include_inactive)


@router.post("/types", response_model=LeaveTypeOut, status_code=201)
async def create_leave_type(
    body: LeaveTypeCreate,
    user: User = Depends(require_permission("leave:configure")),
    db: AsyncSession = Depends(get_db),
):
    return await PolicyService.create_type(db, user.company_id, body, actor_id=user.id)


@router.get("/policies/{leave_type_id}", response_model=LeavePolicyOut)
async def get_leave_policy(
    leave_type_id: uuid.UUID,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Policy in effect for a leave type (the default one when none is configured)."""
    return await PolicyService.get_policy(db, user.company_id, leave_type_id)


@router.put("/policies/{leave_type_id}", response_model=LeavePolicyOut)
async def put_leave_policy(
    leave_type_id: uuid.UUID,
    body: LeavePolicyIn,
    user: User = Depends(require_permission("leave:configure")),
    db: AsyncSession = Depends(get_db),
):
    return await PolicyService.upsert_policy(
        db, user.company_id, leave_type_id, body, actor_id=user.id,
    )


# ═════════════════════════════════════════════════════════════════════
# Balances
# ═════════════════════════════════════════════════════════════════════


# ── GET /balances ───────────────────────────────────────────────────

@router.get("/balances", response_model=UserBalancesOut)
async def my_balances(
    as_of: Optional[date] = Query(None),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Caller's balance per leave type, recomputed from the ledger."""
    as_of = as_of or date.today()
    balances = await LedgerService.get_balances(db, user.company_id, user.id, as_of)
    return UserBalancesOut(user_id=user.id, as_of=as_of, balances=balances)


# ── GET /balances/{user_id} ─────────────────────────────────────────

@router.get("/balances/{user_id}", response_model=UserBalancesOut)
async def user_balances(
    user_id: uuid.UUID,
    as_of: Optional[date] = Query(None),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    target = await _visible_user(db, user, user_id)
    as_of = as_of or date.today()
    balances = await LedgerService.get_balances(db, user.company_id, target.id, as_of)
    return UserBalancesOut(user_id=target.id, as_of=as_of, balances=balances)


# ── GET /balances/{user_id}/statement ───────────────────────────────

@router.get("/balances/{user_id}/statement", response_model=list[GrantStatementLine])
async def grant_statement(
    user_id: uuid.UUID,
    leave_type_id: uuid.UUID = Query(...),
    as_of: Optional[date] = Query(None),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Live grants of a user with consumed and remaining minutes, oldest first."""
    target = await _visible_user(db, user, user_id)
    await PolicyService.get_type(db, user.company_id, leave_type_id)
    return await LedgerService.grant_statement(db, target.id, leave_type_id, as_of)


# ═════════════════════════════════════════════════════════════════════
# Grants
# ═════════════════════════════════════════════════════════════════════


@router.get("/grants", response_model=PaginatedResponse[GrantOut])
async def list_grants(
    user_id: Optional[uuid.UUID] = Query(None),
    leave_type_id: Optional[uuid.UUID] = Query(None),
    source: Optional[GrantSource] = Query(None),
    granted_from: Optional[date] = Query(None),
    granted_to: Optional[date] = Query(None),
    no_expiry: Optional[bool] = Query(None, description="true: grants without expiry; false: expiring grants"),
    pagination: PaginationParams = Depends(),
    user: User = Depends(require_permission("leave:grant")),
    db: AsyncSession = Depends(get_db),
):
    return await GrantService.list_grants(
        db,
        user.company_id,
        pagination,
        user_id=user_id,
        leave_type_id=leave_type_id,
        source=source,
        granted_from=granted_from,
        granted_to=granted_to,
        no_expiry=no_expiry,
    )


@router.post("/grants", response_model=GrantOut, status_code=201)
async def create_grant(
    body: GrantCreate,
    user: User = Depends(require_permission("leave:grant")),
    db: AsyncSession = Depends(get_db),
):
    """Grant leave by hand (``manual``) or fix a balance (``correction``)."""
    return await GrantService.create_manual_grant(db, user.company_id, body, actor_id=user.id)


@router.patch("/grants/{grant_id}", response_model=GrantOut)
async def update_grant(
    grant_id: uuid.UUID,
    body: GrantUpdate,
    user: User = Depends(require_permission("leave:grant")),
    db: AsyncSession = Depends(get_db),
):
    return await GrantService.update_grant(
        db, user.company_id, grant_id, body, actor_id=user.id,
    )


@router.delete("/grants/{grant_id}", status_code=204)
async def delete_grant(
    grant_id: uuid.UUID,
    user: User = Depends(require_permission("leave:grant")),
    db: AsyncSession = Depends(get_db),
):
    await GrantService.delete_grant(db, user.company_id, grant_id, actor_id=user.id)
    return Response(status_code=204)


@router.post("/grants/preview", response_model=GrantPreviewOut)
async def preview_grant_run(
    body: GrantRunIn,
    user: User = Depends(require_permission("leave:grant")),
    db: AsyncSession = Depends(get_db),
):
    """Dry run of a policy accrual: who would get what on ``grant_date``."""
    return await GrantService.preview_policy_grant(
        db, user.company_id, body.leave_type_id, body.grant_date,
    )


@router.post("/grants/run", response_model=GrantRunOut)
@limiter.limit("10/minute")
async def run_grants(
    request: Request,
    body: GrantRunIn,
    user: User = Depends(require_permission("leave:grant")),
    db: AsyncSession = Depends(get_db),
):
    """Run the policy accrual for a leave type on ``grant_date``. 409 while another run holds the lock."""
    return await GrantService.run_policy_grant(
        db, user.company_id, body.leave_type_id, body.grant_date, actor_id=user.id,
    )


# ═════════════════════════════════════════════════════════════════════
# Requests
# ═════════════════════════════════════════════════════════════════════


# ── POST /requests ──────────────────────────────────────────────────

@router.post("/requests", response_model=LeaveRequestOut, status_code=201)
async def apply_leave(
    body: LeaveRequestCreate,
    user: User = Depends(require_permission("leave:request")),
    db: AsyncSession = Depends(get_db),
):
    """Apply for leave. Validates units, calendar and balance; holds balance per policy."""
    return await LeaveRequestService.apply(db, user, body)


# ── GET /requests/my ────────────────────────────────────────────────

@router.get("/requests/my", response_model=PaginatedResponse[LeaveRequestOut])
async def my_requests(
    status: Optional[LeaveRequestStatus] = Query(None),
    pagination: PaginationParams = Depends(),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await LeaveRequestService.list_mine(db, user, pagination, status=status)


# ── GET /requests ───────────────────────────────────────────────────

@router.get("/requests", response_model=PaginatedResponse[LeaveRequestOut])
async def company_requests(
    status: Optional[LeaveRequestStatus] = Query(None),
    user_id: Optional[uuid.UUID] = Query(None),
    pagination: PaginationParams = Depends(),
    user: User = Depends(require_permission("leave:approve")),
    db: AsyncSession = Depends(get_db),
):
    """Company requests for admins, direct reports' requests for managers."""
    return await LeaveRequestService.list_company(
        db, user, pagination, status=status, user_id=user_id,
    )


# ── GET /requests/{id} ──────────────────────────────────────────────

@router.get("/requests/{request_id}", response_model=LeaveRequestOut)
async def get_request(
    request_id: uuid.UUID,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await LeaveRequestService.get(db, user, request_id)


# ── GET /requests/{id}/validation ───────────────────────────────────

@router.get("/requests/{request_id}/validation", response_model=ValidationResult)
async def validate_leave_request(
    request_id: uuid.UUID,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Re-check a stored request against the current policy, calendar and balance."""
    return await LeaveRequestService.validation(db, user, request_id)


# ── GET /requests/{id}/consumptions ─────────────────────────────────

@router.get("/requests/{request_id}/consumptions", response_model=list[ConsumptionOut])
async def request_consumptions(
    request_id: uuid.UUID,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await LeaveRequestService.consumptions(db, user, request_id)


# ── PUT /requests/{id}/approve ──────────────────────────────────────

@router.put("/requests/{request_id}/approve", response_model=LeaveRequestOut)
async def approve_request(
    request_id: uuid.UUID,
    body: LeaveDecision = LeaveDecision(),
    user: User = Depends(require_permission("leave:approve")),
    db: AsyncSession = Depends(get_db),
):
    """Approve a pending request and finalize its consumption."""
    return await LeaveRequestService.approve(db, user, request_id, note=body.note)


# ── PUT /requests/{id}/reject ───────────────────────────────────────

@router.put("/requests/{request_id}/reject", response_model=LeaveRequestOut)
async def reject_request(
    request_id: uuid.UUID,
    body: LeaveDecision = LeaveDecision(),
    user: User = Depends(require_permission("leave:reject")),
    db: AsyncSession = Depends(get_db),
):
    """Reject a pending request and release any hold."""
    return await LeaveRequestService.reject(db, user, request_id, note=body.note)


# ── PUT /requests/{id}/cancel ───────────────────────────────────────

@router.put("/requests/{request_id}/cancel", response_model=LeaveRequestOut)
async def cancel_request(
    request_id: uuid.UUID,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Cancel a request: a pending hold is released, an approved one reversed."""
    return await LeaveRequestService.cancel(db, user, request_id)


# ═════════════════════════════════════════════════════════════════════
# Audit
# ═════════════════════════════════════════════════════════════════════


@router.get("/audit", response_model=PaginatedResponse[AuditEntryOut])
async def audit_entries(
    entity_type: Optional[str] = Query(None),
    entity_id: Optional[uuid.UUID] = Query(None),
    action: Optional[str] = Query(None),
    trace_id: Optional[str] = Query(None),
    pagination: PaginationParams = Depends(),
    user: User = Depends(require_permission("audit:read")),
    db: AsyncSession = Depends(get_db),
):
    """Ledger and configuration history of the caller's company, newest first."""
    return await list_audit_entries(
        db,
        user.company_id,
        pagination,
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        trace_id=trace_id,
    )
