"""Shared test fixtures — async DB, client, auth helpers, factories.

Reusable across all test modules (calendar, ledger, grants, requests, etc.).
Uses SQLite + aiosqlite for fast isolated tests without PostgreSQL.
"""

from __future__ import annotations

import os

# Set test JWT_SECRET before any other import touches pydantic-settings
os.environ.setdefault("JWT_SECRET", "test-secret-for-ci-do-not-use-in-production")

import uuid
from datetime import date, datetime, timedelta, timezone
from typing import AsyncGenerator, Optional

import pytest
from httpx import ASGITransport, AsyncClient
from jose import jwt
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from workforce.common.constants import GrantSource, UserRole
from workforce.config import settings
from workforce.database import Base, get_db
from workforce.main import create_app

# Import ALL model modules so every table is registered on Base.metadata
import workforce.attendance.models  # noqa: F401
import workforce.calendar.models  # noqa: F401
import workforce.common.audit  # noqa: F401
import workforce.leave.models  # noqa: F401
import workforce.organization.models  # noqa: F401

from workforce.leave.models import LeaveGrant, LeavePolicy, LeaveType
from workforce.organization.models import Company, User

# ── SQLite compat: compile PG-specific types to TEXT/BLOB ───────────

from sqlalchemy.dialects.postgresql import JSONB, UUID as PG_UUID
from sqlalchemy.ext.compiler import compiles


@compiles(JSONB, "sqlite")
def _jsonb_sqlite(element, compiler, **kw):
    return "TEXT"


@compiles(PG_UUID, "sqlite")
def _uuid_sqlite(element, compiler, **kw):
    return "CHAR(36)"


# ── Test database (SQLite in-memory) ────────────────────────────────

TEST_DATABASE_URL = "sqlite+aiosqlite://"

engine = create_async_engine(
    TEST_DATABASE_URL,
    echo=False,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)


@event.listens_for(engine.sync_engine, "connect")
def _register_sqlite_functions(dbapi_conn, connection_record):
    """Register NOW() as a SQLite custom function."""
    dbapi_conn.create_function(
        "NOW", 0, lambda: datetime.now(timezone.utc).isoformat(),
    )


TestSessionFactory = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False,
)


@pytest.fixture(autouse=True)
async def _setup_db():
    """Create all tables before each test, drop after."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture(autouse=True)
def _reset_rate_limiter():
    """Reset rate limiter storage between tests to prevent cross-test interference."""
    from workforce.common.rate_limit import limiter

    limiter.reset()
    yield


async def _override_get_db() -> AsyncGenerator[AsyncSession, None]:
    async with TestSessionFactory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


# ── FastAPI test client ─────────────────────────────────────────────

@pytest.fixture
async def app():
    """Create a fresh app instance with DB dependency overridden."""
    application = create_app()
    application.dependency_overrides[get_db] = _override_get_db
    yield application
    application.dependency_overrides.clear()


@pytest.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client wired to the test app."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


# ── Database session (for direct DB operations in tests) ────────────

@pytest.fixture
async def db() -> AsyncGenerator[AsyncSession, None]:
    async with TestSessionFactory() as session:
        yield session
        await session.commit()


# ── Time helpers ────────────────────────────────────────────────────

TOKYO = timezone(timedelta(hours=9))


def tokyo(year: int, month: int, day: int, hour: int = 0, minute: int = 0) -> datetime:
    """Tokyo wall time as an aware UTC datetime."""
    return datetime(year, month, day, hour, minute, tzinfo=TOKYO).astimezone(timezone.utc)


# ── Model factories ─────────────────────────────────────────────────

def _make_company(
    *,
    name: str = "Acme KK",
    tz: str = "Asia/Tokyo",
    weekly_off_days: Optional[list[int]] = None,
) -> dict:
    return dict(
        id=uuid.uuid4(),
        name=name,
        code=f"C-{uuid.uuid4().hex[:6].upper()}",
        timezone=tz,
        weekly_off_days=weekly_off_days if weekly_off_days is not None else [5, 6],
        is_active=True,
        created_at=datetime.now(timezone.utc),
        updated_at=datetime.now(timezone.utc),
    )


def _make_user(
    company_id: uuid.UUID,
    *,
    email: Optional[str] = None,
    display_name: str = "Test User",
    role: UserRole = UserRole.employee,
    manager_id: Optional[uuid.UUID] = None,
    joined_date: Optional[date] = date(2024, 4, 1),
) -> dict:
    return dict(
        id=uuid.uuid4(),
        company_id=company_id,
        email=email or f"user.{uuid.uuid4().hex[:8]}@example.com",
        display_name=display_name,
        role=role,
        manager_id=manager_id,
        joined_date=joined_date,
        is_active=True,
        created_at=datetime.now(timezone.utc),
        updated_at=datetime.now(timezone.utc),
    )


async def seed_company(db: AsyncSession, **kwargs) -> Company:
    company = Company(**_make_company(**kwargs))
    db.add(company)
    await db.flush()
    return company


async def seed_user(db: AsyncSession, company_id: uuid.UUID, **kwargs) -> User:
    user = User(**_make_user(company_id, **kwargs))
    db.add(user)
    await db.flush()
    return user


async def seed_leave_type(
    db: AsyncSession,
    company_id: uuid.UUID,
    *,
    code: str = "ANNUAL",
    name: str = "Annual Leave",
    requires_approval: bool = True,
    is_active: bool = True,
) -> LeaveType:
    lt = LeaveType(
        id=uuid.uuid4(),
        company_id=company_id,
        code=code,
        name=name,
        requires_approval=requires_approval,
        display_order=0,
        is_active=is_active,
        created_at=datetime.now(timezone.utc),
        updated_at=datetime.now(timezone.utc),
    )
    db.add(lt)
    await db.flush()
    return lt


async def seed_policy(
    db: AsyncSession,
    company_id: uuid.UUID,
    leave_type_id: uuid.UUID,
    **overrides,
) -> LeavePolicy:
    policy = LeavePolicy(
        id=uuid.uuid4(),
        company_id=company_id,
        leave_type_id=leave_type_id,
        base_days_by_service={},
        blackout_dates=[],
        allowed_units=["day", "half", "hour"],
        expire_months=24,
        is_active=True,
    )
    for field, value in overrides.items():
        setattr(policy, field, value)
    db.add(policy)
    await db.flush()
    return policy


async def seed_grant(
    db: AsyncSession,
    user: User,
    leave_type_id: uuid.UUID,
    *,
    quantity_minutes: int = 480 * 10,
    granted_on: date = date(2026, 1, 1),
    expires_on: Optional[date] = None,
    source: GrantSource = GrantSource.manual,
    created_at: Optional[datetime] = None,
) -> LeaveGrant:
    grant = LeaveGrant(
        id=uuid.uuid4(),
        company_id=user.company_id,
        user_id=user.id,
        leave_type_id=leave_type_id,
        quantity_minutes=quantity_minutes,
        granted_on=granted_on,
        expires_on=expires_on,
        source=source,
        created_at=created_at or datetime.now(timezone.utc),
        updated_at=datetime.now(timezone.utc),
    )
    db.add(grant)
    await db.flush()
    return grant


@pytest.fixture
async def company(db) -> Company:
    return await seed_company(db)


@pytest.fixture
async def hr_admin(db, company) -> User:
    return await seed_user(db, company.id, display_name="HR Admin", role=UserRole.hr_admin)


@pytest.fixture
async def manager(db, company) -> User:
    return await seed_user(db, company.id, display_name="Manager", role=UserRole.manager)


@pytest.fixture
async def employee(db, company, manager) -> User:
    return await seed_user(db, company.id, display_name="Employee", manager_id=manager.id)


@pytest.fixture
async def leave_type(db, company) -> LeaveType:
    return await seed_leave_type(db, company.id)


# ── Auth helpers ────────────────────────────────────────────────────

def create_access_token(
    user_id: uuid.UUID,
    *,
    expired: bool = False,
    audience: str = "authenticated",
) -> str:
    """Generate an identity-provider style JWT for testing."""
    if expired:
        exp = datetime.now(timezone.utc) - timedelta(hours=1)
    else:
        exp = datetime.now(timezone.utc) + timedelta(hours=1)
    payload = {
        "sub": str(user_id),
        "aud": audience,
        "exp": exp,
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def auth_headers(user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user.id)}"}
