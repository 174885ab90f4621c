"""Leave request validation — units, rounding, calendar and balance rules.

Validation reports problems, it does not raise for them: the result carries
``valid`` plus the list of issues, each tagged with a stable code. Dates are
evaluated in the company's timezone.
"""

from __future__ import annotations

import uuid
from collections import defaultdict
from datetime import date
from typing import Any, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from workforce.calendar.service import CalendarService, as_aware, covered_dates
from workforce.common.constants import LeaveUnit
from workforce.leave.ledger import LedgerService
from workforce.leave.models import LeaveRequest
from workforce.leave.policy import PolicyService, minutes_for_unit
from workforce.leave.schemas import LeavePolicyOut, ValidationIssue, ValidationResult
from workforce.organization.models import Company

INVALID_PERIOD = "INVALID_PERIOD"
UNIT_NOT_ALLOWED = "UNIT_NOT_ALLOWED"
MULTI_DAY_NOT_ALLOWED = "MULTI_DAY_NOT_ALLOWED"
QUANTITY_MISMATCH = "QUANTITY_MISMATCH"
ROUNDING_VIOLATION = "ROUNDING_VIOLATION"
MIN_UNIT_VIOLATION = "MIN_UNIT_VIOLATION"
BLACKOUT_POLICY = "BLACKOUT_POLICY"
NON_BUSINESS_DAY = "NON_BUSINESS_DAY"
INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
REQUEST_NOT_FOUND = "REQUEST_NOT_FOUND"


def _fmt(d: date) -> str:
    return d.isoformat()


def check_detail(
    detail: Any,
    policy: LeavePolicyOut,
    dates: list[date],
    non_business: set[date],
    *,
    index: Optional[int] = None,
    detail_id: Optional[uuid.UUID] = None,
) -> list[ValidationIssue]:
    """Unit, quantity and calendar rules for one detail whose period is valid.

    *dates* are the local dates the period covers; *non_business* holds the
    company's non-business dates over at least that range.
    """

    issues: list[ValidationIssue] = []

    def issue(code: str, message: str) -> None:
        issues.append(
            ValidationIssue(code=code, message=message, detail_index=index, detail_id=detail_id)
        )

    unit = LeaveUnit(detail.unit)
    quantity = detail.quantity_minutes
    # Days the detail is charged for; non-business days inside the period are free
    charged = dates
    if policy.business_day_only:
        charged = [d for d in dates if d not in non_business]

    if unit not in policy.allowed_units:
        issue(UNIT_NOT_ALLOWED, f"Unit '{unit.value}' is not allowed for this leave type.")

    if len(dates) > 1 and not policy.allow_multi_day:
        issue(MULTI_DAY_NOT_ALLOWED, "This leave type must be taken within a single day.")

    if unit == LeaveUnit.day:
        expected = minutes_for_unit(LeaveUnit.day, policy.day_hours) * len(charged)
        if charged and quantity != expected:
            issue(
                QUANTITY_MISMATCH,
                f"A {len(charged)}-day period must be {expected} minutes, got {quantity}.",
            )
    elif unit == LeaveUnit.half:
        expected = minutes_for_unit(LeaveUnit.half, policy.day_hours)
        if quantity != expected:
            issue(QUANTITY_MISMATCH, f"A half day must be {expected} minutes, got {quantity}.")
    elif quantity % policy.rounding_minutes != 0:
        issue(
            ROUNDING_VIOLATION,
            f"Hourly leave must be a multiple of {policy.rounding_minutes} minutes.",
        )

    if quantity % policy.min_booking_unit_minutes != 0:
        issue(
            MIN_UNIT_VIOLATION,
            f"Quantity must be a multiple of {policy.min_booking_unit_minutes} minutes.",
        )

    blackout = set(policy.blackout_dates)
    blocked = [d for d in dates if d in blackout]
    if blocked:
        issue(
            BLACKOUT_POLICY,
            "Leave cannot be taken on " + ", ".join(_fmt(d) for d in blocked) + ".",
        )

    if policy.business_day_only:
        # A period may span non-business days but must start and end on business days
        off = [d for d in dict.fromkeys((dates[0], dates[-1])) if d in non_business]
        if off:
            issue(
                NON_BUSINESS_DAY,
                ", ".join(_fmt(d) for d in off) + " is not a business day.",
            )

    return issues


async def validate_details(
    db: AsyncSession,
    company: Company,
    user_id: uuid.UUID,
    details: Sequence[Any],
    *,
    request_id: Optional[uuid.UUID] = None,
) -> ValidationResult:
    """Validate request details for *user_id*.

    With *request_id*, the request's own live consumption counts as available
    so that an already-held request still validates.
    """

    issues: list[ValidationIssue] = []
    policies: dict[uuid.UUID, LeavePolicyOut] = {}
    periods: list[Optional[list[date]]] = []

    for detail in details:
        if as_aware(detail.start_at) >= as_aware(detail.end_at):
            periods.append(None)
            continue
        periods.append(covered_dates(detail.start_at, detail.end_at, company.timezone))
        if detail.leave_type_id not in policies:
            policies[detail.leave_type_id] = await PolicyService.fetch_policy_or_default(
                db, company.id, detail.leave_type_id,
            )

    all_dates = [d for dates in periods if dates for d in dates]
    non_business: set[date] = set()
    if all_dates and any(p.business_day_only for p in policies.values()):
        non_business = await CalendarService.resolve_non_business_days(
            db, company.id, min(all_dates), max(all_dates),
        )

    totals: dict[uuid.UUID, int] = defaultdict(int)
    earliest: dict[uuid.UUID, date] = {}

    for index, (detail, dates) in enumerate(zip(details, periods)):
        detail_id = getattr(detail, "id", None)
        if dates is None:
            issues.append(
                ValidationIssue(
                    code=INVALID_PERIOD,
                    message="start_at must be before end_at.",
                    detail_index=index,
                    detail_id=detail_id,
                )
            )
            continue

        policy = policies[detail.leave_type_id]
        issues.extend(
            check_detail(
                detail, policy, dates, non_business, index=index, detail_id=detail_id,
            )
        )
        totals[detail.leave_type_id] += detail.quantity_minutes
        first = dates[0]
        if detail.leave_type_id not in earliest or first < earliest[detail.leave_type_id]:
            earliest[detail.leave_type_id] = first

    own: dict[uuid.UUID, int] = {}
    if request_id is not None:
        own = await LedgerService.net_by_leave_type(db, request_id)

    for leave_type_id, requested in totals.items():
        if policies[leave_type_id].allow_negative:
            continue
        balance = await LedgerService.get_balance_minutes(
            db, user_id, leave_type_id, earliest[leave_type_id],
        )
        available = balance + max(own.get(leave_type_id, 0), 0)
        if requested > available:
            issues.append(
                ValidationIssue(
                    code=INSUFFICIENT_BALANCE,
                    message=(
                        f"Requested {requested} minutes but only {available} "
                        f"minutes are available."
                    ),
                )
            )

    return ValidationResult(valid=not issues, issues=issues)


async def validate_request(
    db: AsyncSession,
    company: Company,
    request_id: uuid.UUID,
) -> ValidationResult:
    """Re-validate a stored request against the current policy and calendar."""
    result = await db.execute(
        select(LeaveRequest).where(
            LeaveRequest.id == request_id,
            LeaveRequest.company_id == company.id,
        )
    )
    request = result.scalars().first()
    if request is None:
        return ValidationResult(
            valid=False,
            issues=[ValidationIssue(code=REQUEST_NOT_FOUND, message="Request not found.")],
        )
    return await validate_details(
        db, company, request.user_id, request.details, request_id=request.id,
    )


def issues_to_errors(issues: Sequence[ValidationIssue]) -> dict[str, list[str]]:
    """Group issues by code for a problem+json ``errors`` member."""
    errors: dict[str, list[str]] = {}
    for item in issues:
        prefix = f"details[{item.detail_index}]: " if item.detail_index is not None else ""
        errors.setdefault(item.code, []).append(prefix + item.message)
    return errors
