"""Leave request test suite — apply, approve, reject and cancel through the
ledger, visibility rules, and the HTTP API.

Tests run against SQLite via the shared conftest.py fixtures.
"""

from __future__ import annotations

import uuid
from datetime import date

import pytest
from sqlalchemy import func, select

from workforce.common.constants import LeaveRequestStatus, LeaveUnit, UserRole
from workforce.common.exceptions import (
    ForbiddenException,
    NotFoundException,
    ValidationException,
)
from workforce.common.pagination import PaginationParams
from workforce.leave.ledger import LedgerService
from workforce.leave.models import LeaveConsumption
from workforce.leave.schemas import LeaveRequestCreate, LeaveRequestDetailIn
from workforce.leave.service import LeaveRequestService
from workforce.leave.validation import INSUFFICIENT_BALANCE, NON_BUSINESS_DAY
from tests.conftest import (
    auth_headers,
    create_access_token,
    seed_grant,
    seed_leave_type,
    seed_policy,
    seed_user,
    tokyo,
)

MARCH_2 = date(2026, 3, 2)  # Monday


def _one_day(leave_type_id: uuid.UUID, day: int = 2) -> LeaveRequestDetailIn:
    return LeaveRequestDetailIn(
        leave_type_id=leave_type_id,
        start_at=tokyo(2026, 3, day),
        end_at=tokyo(2026, 3, day + 1),
        unit=LeaveUnit.day,
        quantity_minutes=480,
    )


def _apply_body(leave_type_id: uuid.UUID, day: int = 2, minutes: int = 480) -> dict:
    return {
        "reason": "family",
        "details": [
            {
                "leave_type_id": str(leave_type_id),
                "start_at": tokyo(2026, 3, day).isoformat(),
                "end_at": tokyo(2026, 3, day + 1).isoformat(),
                "unit": "day",
                "quantity_minutes": minutes,
            }
        ],
    }


async def _balance(db, user, leave_type_id) -> int:
    return await LedgerService.get_balance_minutes(db, user.id, leave_type_id, MARCH_2)


def _params() -> PaginationParams:
    return PaginationParams(page=1, page_size=50, sort=None)


# ═════════════════════════════════════════════════════════════════════
# 1. Apply
# ═════════════════════════════════════════════════════════════════════


class TestApply:

    async def test_apply_holds_balance(self, db, employee, leave_type):
        await seed_grant(db, employee, leave_type.id, quantity_minutes=480 * 3)

        result = await LeaveRequestService.apply(
            db, employee, LeaveRequestCreate(details=[_one_day(leave_type.id)], reason="rest"),
        )

        assert result.status == LeaveRequestStatus.pending
        assert result.user_id == employee.id
        assert len(result.details) == 1
        assert await _balance(db, employee, leave_type.id) == 480 * 2

    async def test_apply_without_hold_keeps_balance(self, db, company, employee, leave_type):
        await seed_policy(db, company.id, leave_type.id, hold_on_apply=False)
        await seed_grant(db, employee, leave_type.id, quantity_minutes=480)

        result = await LeaveRequestService.apply(
            db, employee, LeaveRequestCreate(details=[_one_day(leave_type.id)]),
        )

        assert result.status == LeaveRequestStatus.pending
        assert await _balance(db, employee, leave_type.id) == 480

    async def test_apply_auto_approves_when_no_approval_needed(self, db, company, employee):
        lt = await seed_leave_type(db, company.id, code="SPECIAL", requires_approval=False)
        await seed_grant(db, employee, lt.id, quantity_minutes=480)

        result = await LeaveRequestService.apply(
            db, employee, LeaveRequestCreate(details=[_one_day(lt.id)]),
        )

        assert result.status == LeaveRequestStatus.approved
        assert result.decision_note == "auto-approved"
        assert await _balance(db, employee, lt.id) == 0

    async def test_mixed_types_need_approval(self, db, company, employee, leave_type):
        free = await seed_leave_type(db, company.id, code="SPECIAL", requires_approval=False)
        await seed_grant(db, employee, leave_type.id, quantity_minutes=480)
        await seed_grant(db, employee, free.id, quantity_minutes=480)

        result = await LeaveRequestService.apply(
            db,
            employee,
            LeaveRequestCreate(details=[_one_day(leave_type.id), _one_day(free.id, day=3)]),
        )

        assert result.status == LeaveRequestStatus.pending

    async def test_apply_rejects_issues(self, db, employee, leave_type):
        await seed_grant(db, employee, leave_type.id, quantity_minutes=240)

        with pytest.raises(ValidationException) as exc_info:
            await LeaveRequestService.apply(
                db, employee, LeaveRequestCreate(details=[_one_day(leave_type.id, day=7)]),
            )

        errors = exc_info.value.errors
        assert set(errors) == {NON_BUSINESS_DAY, INSUFFICIENT_BALANCE}
        assert errors[NON_BUSINESS_DAY][0].startswith("details[0]: ")
        count = await db.execute(select(func.count(LeaveConsumption.id)))
        assert count.scalar() == 0

    async def test_apply_unknown_leave_type(self, db, employee):
        with pytest.raises(NotFoundException):
            await LeaveRequestService.apply(
                db, employee, LeaveRequestCreate(details=[_one_day(uuid.uuid4())]),
            )

    async def test_apply_inactive_leave_type(self, db, company, employee):
        lt = await seed_leave_type(db, company.id, code="OLD", is_active=False)

        with pytest.raises(NotFoundException):
            await LeaveRequestService.apply(
                db, employee, LeaveRequestCreate(details=[_one_day(lt.id)]),
            )


# ═════════════════════════════════════════════════════════════════════
# 2. Decisions
# ═════════════════════════════════════════════════════════════════════


class TestDecisions:

    async def _pending(self, db, employee, leave_type):
        await seed_grant(db, employee, leave_type.id, quantity_minutes=480 * 2)
        return await LeaveRequestService.apply(
            db, employee, LeaveRequestCreate(details=[_one_day(leave_type.id)]),
        )

    async def test_manager_approves(self, db, employee, manager, leave_type):
        pending = await self._pending(db, employee, leave_type)

        result = await LeaveRequestService.approve(db, manager, pending.id, note="enjoy")

        assert result.status == LeaveRequestStatus.approved
        assert result.decided_by == manager.id
        assert result.decision_note == "enjoy"
        # The hold becomes the consumption; nothing is booked twice
        assert await LedgerService.net_by_leave_type(db, pending.id) == {leave_type.id: 480}
        assert await _balance(db, employee, leave_type.id) == 480

    async def test_approve_finalizes_when_not_held(self, db, company, employee, manager, leave_type):
        await seed_policy(db, company.id, leave_type.id, hold_on_apply=False)
        pending = await self._pending(db, employee, leave_type)
        assert await _balance(db, employee, leave_type.id) == 960

        await LeaveRequestService.approve(db, manager, pending.id)

        assert await _balance(db, employee, leave_type.id) == 480

    async def test_approve_own_request_forbidden(self, db, company, hr_admin, leave_type):
        pending = await self._pending(db, hr_admin, leave_type)

        with pytest.raises(ForbiddenException):
            await LeaveRequestService.approve(db, hr_admin, pending.id)

    async def test_other_manager_forbidden(self, db, company, employee, leave_type):
        other = await seed_user(db, company.id, role=UserRole.manager)
        pending = await self._pending(db, employee, leave_type)

        with pytest.raises(ForbiddenException):
            await LeaveRequestService.approve(db, other, pending.id)

    async def test_admin_approves_anyone(self, db, employee, hr_admin, leave_type):
        pending = await self._pending(db, employee, leave_type)

        result = await LeaveRequestService.approve(db, hr_admin, pending.id)

        assert result.status == LeaveRequestStatus.approved

    async def test_approve_twice_refused(self, db, employee, manager, leave_type):
        pending = await self._pending(db, employee, leave_type)
        await LeaveRequestService.approve(db, manager, pending.id)

        with pytest.raises(ValidationException):
            await LeaveRequestService.approve(db, manager, pending.id)

    async def test_reject_releases_hold(self, db, employee, manager, leave_type):
        pending = await self._pending(db, employee, leave_type)

        result = await LeaveRequestService.reject(db, manager, pending.id, note="busy week")

        assert result.status == LeaveRequestStatus.rejected
        assert await _balance(db, employee, leave_type.id) == 960
        rows = await LeaveRequestService.consumptions(db, employee, pending.id)
        assert len(rows) == 1
        assert rows[0].deleted_at is not None

    async def test_request_of_other_company_not_found(self, db, employee, leave_type):
        from tests.conftest import seed_company

        pending = await self._pending(db, employee, leave_type)
        other = await seed_company(db, name="Other")
        outsider = await seed_user(db, other.id, role=UserRole.hr_admin)

        with pytest.raises(NotFoundException):
            await LeaveRequestService.approve(db, outsider, pending.id)


# ═════════════════════════════════════════════════════════════════════
# 3. Cancel
# ═════════════════════════════════════════════════════════════════════


class TestCancel:

    async def test_cancel_pending_releases(self, db, employee, leave_type):
        await seed_grant(db, employee, leave_type.id, quantity_minutes=480)
        pending = await LeaveRequestService.apply(
            db, employee, LeaveRequestCreate(details=[_one_day(leave_type.id)]),
        )

        result = await LeaveRequestService.cancel(db, employee, pending.id)

        assert result.status == LeaveRequestStatus.cancelled
        assert result.cancelled_at is not None
        assert await _balance(db, employee, leave_type.id) == 480

    async def test_cancel_approved_reverses(self, db, employee, manager, leave_type):
        await seed_grant(db, employee, leave_type.id, quantity_minutes=480)
        pending = await LeaveRequestService.apply(
            db, employee, LeaveRequestCreate(details=[_one_day(leave_type.id)]),
        )
        await LeaveRequestService.approve(db, manager, pending.id)

        await LeaveRequestService.cancel(db, employee, pending.id)

        assert await _balance(db, employee, leave_type.id) == 480
        rows = await LeaveRequestService.consumptions(db, employee, pending.id)
        assert sorted(r.quantity_minutes for r in rows) == [-480, 480]

    async def test_cancel_twice_refused(self, db, employee, leave_type):
        await seed_grant(db, employee, leave_type.id, quantity_minutes=480)
        pending = await LeaveRequestService.apply(
            db, employee, LeaveRequestCreate(details=[_one_day(leave_type.id)]),
        )
        await LeaveRequestService.cancel(db, employee, pending.id)

        with pytest.raises(ValidationException):
            await LeaveRequestService.cancel(db, employee, pending.id)

    async def test_colleague_cannot_cancel(self, db, company, employee, leave_type):
        colleague = await seed_user(db, company.id)
        await seed_grant(db, employee, leave_type.id, quantity_minutes=480)
        pending = await LeaveRequestService.apply(
            db, employee, LeaveRequestCreate(details=[_one_day(leave_type.id)]),
        )

        with pytest.raises(ForbiddenException):
            await LeaveRequestService.cancel(db, colleague, pending.id)


# ═════════════════════════════════════════════════════════════════════
# 4. Reads
# ═════════════════════════════════════════════════════════════════════


class TestReads:

    async def test_manager_sees_direct_reports_only(self, db, company, employee, manager, leave_type):
        stranger = await seed_user(db, company.id)
        for user in (employee, stranger):
            await seed_grant(db, user, leave_type.id, quantity_minutes=480)
            await LeaveRequestService.apply(
                db, user, LeaveRequestCreate(details=[_one_day(leave_type.id)]),
            )

        team = await LeaveRequestService.list_company(db, manager, _params())

        assert team.meta.total == 1
        assert team.data[0].user_id == employee.id

    async def test_admin_sees_company(self, db, company, employee, hr_admin, leave_type):
        stranger = await seed_user(db, company.id)
        for user in (employee, stranger):
            await seed_grant(db, user, leave_type.id, quantity_minutes=480)
            await LeaveRequestService.apply(
                db, user, LeaveRequestCreate(details=[_one_day(leave_type.id)]),
            )

        everyone = await LeaveRequestService.list_company(
            db, hr_admin, _params(), status=LeaveRequestStatus.pending,
        )

        assert everyone.meta.total == 2

    async def test_colleague_cannot_view(self, db, company, employee, leave_type):
        colleague = await seed_user(db, company.id)
        await seed_grant(db, employee, leave_type.id, quantity_minutes=480)
        pending = await LeaveRequestService.apply(
            db, employee, LeaveRequestCreate(details=[_one_day(leave_type.id)]),
        )

        with pytest.raises(ForbiddenException):
            await LeaveRequestService.get(db, colleague, pending.id)
        with pytest.raises(ForbiddenException):
            await LeaveRequestService.validation(db, colleague, pending.id)


# ═════════════════════════════════════════════════════════════════════
# 5. HTTP API
# ═════════════════════════════════════════════════════════════════════


class TestLeaveAPI:

    async def test_health(self, client):
        resp = await client.get("/api/v1/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "healthy"

    async def test_missing_token(self, client):
        resp = await client.get("/api/v1/leave/balances")
        assert resp.status_code == 401
        assert resp.headers["content-type"].startswith("application/problem+json")
        assert resp.json()["title"] == "Unauthorized"

    async def test_wrong_audience(self, client, db, employee):
        await db.commit()
        token = create_access_token(employee.id, audience="someone-else")

        resp = await client.get(
            "/api/v1/leave/balances", headers={"Authorization": f"Bearer {token}"},
        )
        assert resp.status_code == 401

    async def test_expired_token(self, client, db, employee):
        await db.commit()
        token = create_access_token(employee.id, expired=True)

        resp = await client.get(
            "/api/v1/leave/balances", headers={"Authorization": f"Bearer {token}"},
        )
        assert resp.status_code == 401

    async def test_full_request_flow(self, client, db, employee, manager, leave_type):
        await seed_grant(db, employee, leave_type.id, quantity_minutes=480 * 3)
        await db.commit()

        resp = await client.post(
            "/api/v1/leave/requests",
            json=_apply_body(leave_type.id),
            headers=auth_headers(employee),
        )
        assert resp.status_code == 201, resp.text
        request_id = resp.json()["id"]
        assert resp.json()["status"] == "pending"

        resp = await client.get(
            "/api/v1/leave/balances",
            params={"as_of": "2026-03-02"},
            headers=auth_headers(employee),
        )
        balance = resp.json()["balances"][0]
        assert balance["held_minutes"] == 480
        assert balance["balance_minutes"] == 960

        resp = await client.get("/api/v1/leave/requests/my", headers=auth_headers(employee))
        assert resp.json()["meta"]["total"] == 1

        resp = await client.put(
            f"/api/v1/leave/requests/{request_id}/approve",
            json={"note": "ok"},
            headers=auth_headers(manager),
        )
        assert resp.status_code == 200, resp.text
        assert resp.json()["status"] == "approved"

        resp = await client.get(
            f"/api/v1/leave/requests/{request_id}/consumptions",
            headers=auth_headers(employee),
        )
        assert [row["quantity_minutes"] for row in resp.json()] == [480]

        resp = await client.get(
            f"/api/v1/leave/requests/{request_id}/validation",
            headers=auth_headers(manager),
        )
        assert resp.json() == {"valid": True, "issues": []}

        resp = await client.put(
            f"/api/v1/leave/requests/{request_id}/cancel",
            headers=auth_headers(employee),
        )
        assert resp.status_code == 200
        assert resp.json()["status"] == "cancelled"

        resp = await client.get(
            f"/api/v1/leave/balances/{employee.id}",
            params={"as_of": "2026-03-02"},
            headers=auth_headers(manager),
        )
        assert resp.json()["balances"][0]["balance_minutes"] == 480 * 3

    async def test_apply_problem_document(self, client, db, employee, leave_type):
        await seed_grant(db, employee, leave_type.id, quantity_minutes=60)
        await db.commit()

        resp = await client.post(
            "/api/v1/leave/requests",
            json=_apply_body(leave_type.id),
            headers=auth_headers(employee),
        )

        assert resp.status_code == 422
        assert resp.headers["content-type"].startswith("application/problem+json")
        body = resp.json()
        assert body["title"] == "Validation Error"
        assert INSUFFICIENT_BALANCE in body["errors"]

    async def test_approve_without_body(self, client, db, employee, hr_admin, leave_type):
        await seed_grant(db, employee, leave_type.id, quantity_minutes=480)
        await db.commit()
        resp = await client.post(
            "/api/v1/leave/requests",
            json=_apply_body(leave_type.id),
            headers=auth_headers(employee),
        )
        request_id = resp.json()["id"]

        resp = await client.put(
            f"/api/v1/leave/requests/{request_id}/reject",
            headers=auth_headers(hr_admin),
        )

        assert resp.status_code == 200, resp.text
        assert resp.json()["status"] == "rejected"

    async def test_employee_cannot_list_company_requests(self, client, db, employee):
        await db.commit()
        resp = await client.get("/api/v1/leave/requests", headers=auth_headers(employee))
        assert resp.status_code == 403

    async def test_colleague_balance_forbidden(self, client, db, company, employee):
        colleague = await seed_user(db, company.id)
        await db.commit()

        resp = await client.get(
            f"/api/v1/leave/balances/{employee.id}", headers=auth_headers(colleague),
        )
        assert resp.status_code == 403


class TestConfigurationAPI:

    async def test_types_and_policy(self, client, db, hr_admin, employee):
        await db.commit()

        resp = await client.post(
            "/api/v1/leave/types",
            json={"code": "sick", "name": "Sick Leave"},
            headers=auth_headers(hr_admin),
        )
        assert resp.status_code == 201, resp.text
        leave_type_id = resp.json()["id"]
        assert resp.json()["code"] == "SICK"

        resp = await client.post(
            "/api/v1/leave/types",
            json={"code": "SICK", "name": "Duplicate"},
            headers=auth_headers(hr_admin),
        )
        assert resp.status_code == 409

        resp = await client.get(
            f"/api/v1/leave/policies/{leave_type_id}", headers=auth_headers(employee),
        )
        assert resp.json()["is_default"] is True
        assert resp.json()["day_hours"] == 8

        policy = resp.json()
        policy.update({"day_hours": 7, "blackout_dates": ["2026-12-31"], "carryover_max_days": 5})
        resp = await client.put(
            f"/api/v1/leave/policies/{leave_type_id}",
            json=policy,
            headers=auth_headers(hr_admin),
        )
        assert resp.status_code == 200, resp.text
        assert resp.json()["is_default"] is False
        assert resp.json()["day_hours"] == 7
        assert resp.json()["blackout_dates"] == ["2026-12-31"]

        resp = await client.put(
            f"/api/v1/leave/policies/{leave_type_id}",
            json={**policy, "base_days_by_service": {"one": 10}},
            headers=auth_headers(hr_admin),
        )
        assert resp.status_code == 422

        resp = await client.put(
            f"/api/v1/leave/policies/{leave_type_id}",
            json=policy,
            headers=auth_headers(employee),
        )
        assert resp.status_code == 403

    async def test_grant_endpoints(self, client, db, hr_admin, employee, leave_type):
        await db.commit()

        resp = await client.post(
            "/api/v1/leave/grants",
            json={
                "user_id": str(employee.id),
                "leave_type_id": str(leave_type.id),
                "quantity_minutes": 960,
                "granted_on": "2026-01-01",
            },
            headers=auth_headers(employee),
        )
        assert resp.status_code == 403

        resp = await client.post(
            "/api/v1/leave/grants",
            json={
                "user_id": str(employee.id),
                "leave_type_id": str(leave_type.id),
                "quantity_minutes": 960,
                "granted_on": "2026-01-01",
            },
            headers=auth_headers(hr_admin),
        )
        assert resp.status_code == 201, resp.text
        grant_id = resp.json()["id"]

        resp = await client.patch(
            f"/api/v1/leave/grants/{grant_id}",
            json={"expires_on": "2026-12-31"},
            headers=auth_headers(hr_admin),
        )
        assert resp.json()["expires_on"] == "2026-12-31"

        resp = await client.get(
            f"/api/v1/leave/balances/{employee.id}/statement",
            params={"leave_type_id": str(leave_type.id), "as_of": "2026-03-02"},
            headers=auth_headers(employee),
        )
        assert resp.json()[0]["remaining_minutes"] == 960

        resp = await client.get(
            "/api/v1/leave/grants",
            params={"user_id": str(employee.id)},
            headers=auth_headers(hr_admin),
        )
        assert resp.json()["meta"]["total"] == 1

        resp = await client.delete(
            f"/api/v1/leave/grants/{grant_id}", headers=auth_headers(hr_admin),
        )
        assert resp.status_code == 204

        resp = await client.delete(
            f"/api/v1/leave/grants/{grant_id}", headers=auth_headers(hr_admin),
        )
        assert resp.status_code == 404

    async def test_grant_run_endpoints(self, client, db, company, hr_admin, leave_type):
        await seed_policy(db, company.id, leave_type.id, base_days_by_service={"0": 10})
        await db.commit()
        body = {"leave_type_id": str(leave_type.id), "grant_date": "2026-04-01"}

        resp = await client.post(
            "/api/v1/leave/grants/preview", json=body, headers=auth_headers(hr_admin),
        )
        assert resp.status_code == 200
        assert resp.json()["lines"][0]["quantity_minutes"] == 4800

        resp = await client.post(
            "/api/v1/leave/grants/run", json=body, headers=auth_headers(hr_admin),
        )
        assert resp.status_code == 200, resp.text
        assert resp.json()["status"] == "finished"
        assert resp.json()["granted"] == 1
        run_id = resp.json()["run_id"]

        resp = await client.get(
            "/api/v1/leave/audit",
            params={"entity_type": "leave_grant_run", "entity_id": run_id},
            headers=auth_headers(hr_admin),
        )
        assert resp.status_code == 200, resp.text
        entries = resp.json()["data"]
        assert {e["action"] for e in entries} == {
            "leave_grant_run_started", "leave_grant_run_finished",
        }
        assert len({e["trace_id"] for e in entries}) == 1
        assert entries[0]["trace_id"] is not None

    async def test_audit_requires_permission(self, client, db, employee):
        await db.commit()

        resp = await client.get("/api/v1/leave/audit", headers=auth_headers(employee))

        assert resp.status_code == 403

    async def test_grant_run_rate_limited(self, client, db, hr_admin):
        await db.commit()
        body = {"leave_type_id": str(uuid.uuid4()), "grant_date": "2026-04-01"}

        for i in range(10):
            resp = await client.post(
                "/api/v1/leave/grants/run", json=body, headers=auth_headers(hr_admin),
            )
            assert resp.status_code == 404, f"Request {i + 1} should reach the handler"

        resp = await client.post(
            "/api/v1/leave/grants/run", json=body, headers=auth_headers(hr_admin),
        )
        assert resp.status_code == 429
        assert resp.json()["type"].endswith("/rate-limited")
