#!/usr/bin/env python3
"""Leave accrual — scheduled cron wrapper for policy grants.

Designed to run once a day shortly after midnight (company time):
    10 0 * * *

Runs the policy accrual for every active leave policy of every active
company on the given date. Anniversary, fiscal and monthly policies decide
per user whether the date is a grant day; re-running a date is safe.

Usage:
    python scripts/run_leave_grants.py                      # today
    python scripts/run_leave_grants.py --date 2026-04-01    # a specific date
    python scripts/run_leave_grants.py --company <uuid>     # one company
    python scripts/run_leave_grants.py --dry-run            # preview only

Requires .env at project root:
    DATABASE_URL, JWT_SECRET
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import uuid
from datetime import date
from pathlib import Path

# ── Path setup ────────────────────────────────────────────────────────
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from dotenv import load_dotenv

load_dotenv(PROJECT_ROOT / ".env")

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s — %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("run_leave_grants")

from sqlalchemy import select  # noqa: E402

from workforce.common.exceptions import AppException, LockedError  # noqa: E402
from workforce.database import async_session_factory, engine  # noqa: E402
from workforce.leave.grants import GrantService  # noqa: E402
from workforce.leave.models import LeavePolicy  # noqa: E402
from workforce.organization.models import Company  # noqa: E402


async def _active_policies(company_id: uuid.UUID | None) -> list[tuple[uuid.UUID, uuid.UUID]]:
    async with async_session_factory() as session:
        query = (
            select(LeavePolicy.company_id, LeavePolicy.leave_type_id)
            .join(Company, Company.id == LeavePolicy.company_id)
            .where(
                Company.is_active.is_(True),
                LeavePolicy.is_active.is_(True),
                LeavePolicy.deleted_at.is_(None),
            )
            .order_by(LeavePolicy.company_id)
        )
        if company_id is not None:
            query = query.where(LeavePolicy.company_id == company_id)
        result = await session.execute(query)
        return [(row[0], row[1]) for row in result.all()]


async def run(grant_date: date, company_id: uuid.UUID | None, dry_run: bool) -> int:
    """Return the number of failed runs."""
    failures = 0
    policies = await _active_policies(company_id)
    logger.info("Running accrual for %d policy(ies) on %s", len(policies), grant_date)

    for cid, leave_type_id in policies:
        async with async_session_factory() as session:
            try:
                if dry_run:
                    preview = await GrantService.preview_policy_grant(
                        session, cid, leave_type_id, grant_date,
                    )
                    eligible = [
                        line for line in preview.lines if line.eligible and not line.duplicate
                    ]
                    logger.info(
                        "[DRY RUN] %s/%s: %d user(s) would be granted",
                        cid, leave_type_id, len(eligible),
                    )
                    continue

                outcome = await GrantService.run_policy_grant(
                    session, cid, leave_type_id, grant_date,
                )
                await session.commit()
            except LockedError as e:
                await session.rollback()
                logger.warning("%s/%s: %s", cid, leave_type_id, e.detail)
                continue
            except AppException as e:
                await session.rollback()
                failures += 1
                logger.error("%s/%s: %s", cid, leave_type_id, e.detail)
                continue

        if outcome.status == "failed":
            failures += 1
            logger.error("%s/%s: run failed", cid, leave_type_id)
        else:
            logger.info(
                "%s/%s: %d granted, %d skipped",
                cid, leave_type_id, outcome.granted, outcome.skipped,
            )

    await engine.dispose()
    return failures


def main() -> None:
    parser = argparse.ArgumentParser(description="Run leave policy grants")
    parser.add_argument("--date", type=date.fromisoformat, default=date.today(),
                        help="Grant date (YYYY-MM-DD), default today")
    parser.add_argument("--company", type=uuid.UUID, default=None,
                        help="Only this company id")
    parser.add_argument("--dry-run", action="store_true",
                        help="Preview eligible users without writing grants")
    args = parser.parse_args()

    failures = asyncio.run(run(args.date, args.company, args.dry_run))
    sys.exit(1 if failures else 0)


if __name__ == "__main__":
    main()
