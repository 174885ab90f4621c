"""001 – Initial schema: tenants, calendar, attendance, leave ledger, audit.

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-17 09:00:00.000000+09:00
"""

from alembic import op
import sqlalchemy as sa

# Revision identifiers
revision = "001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

ENUM_TYPES: list[tuple[str, list[str]]] = [
    ("user_role", ["employee", "manager", "hr_admin", "system_admin"]),
    (
        "calendar_day_type",
        ["workday", "weekend", "holiday", "company_holiday", "public_holiday"],
    ),
    ("leave_unit", ["day", "half", "hour"]),
    ("half_day_mode", ["fixed_hours", "am_pm"]),
    ("deduction_timing", ["apply", "approve"]),
    ("accrual_method", ["anniversary", "fiscal_fixed", "monthly"]),
    ("proration_basis", ["days", "hours"]),
    ("grant_source", ["manual", "correction", "policy", "import"]),
    ("leave_request_status", ["pending", "approved", "rejected", "cancelled"]),
    ("grant_run_status", ["running", "finished", "failed"]),
]


def _create_enum(name: str, values: list[str]) -> None:
    vals = ", ".join(f"'{v}'" for v in values)
    op.execute(f"CREATE TYPE {name} AS ENUM ({vals})")


def _drop_enum(name: str) -> None:
    op.execute(f"DROP TYPE IF EXISTS {name}")


# ---------------------------------------------------------------------------
# UPGRADE
# ---------------------------------------------------------------------------


def upgrade() -> None:
    # ── Extensions ────────────────────────────────────────────────────────
    op.execute('CREATE EXTENSION IF NOT EXISTS "uuid-ossp"')

    # ── Enum types ────────────────────────────────────────────────────────
    for name, values in ENUM_TYPES:
        _create_enum(name, values)

    # ── 1. companies ──────────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE companies (
            id               UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            name             VARCHAR(200) NOT NULL,
            code             VARCHAR(50) UNIQUE,
            timezone         VARCHAR(50) DEFAULT 'Asia/Tokyo',
            weekly_off_days  JSONB DEFAULT '[5, 6]'::jsonb,
            is_active        BOOLEAN DEFAULT TRUE,
            created_at       TIMESTAMPTZ DEFAULT NOW(),
            updated_at       TIMESTAMPTZ DEFAULT NOW()
        )
    """)

    # ── 2. users ──────────────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE users (
            id            UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            company_id    UUID NOT NULL REFERENCES companies(id),
            email         VARCHAR(255) NOT NULL,
            display_name  VARCHAR(200),
            role          user_role DEFAULT 'employee',
            manager_id    UUID REFERENCES users(id),
            joined_date   DATE,
            is_active     BOOLEAN DEFAULT TRUE,
            created_at    TIMESTAMPTZ DEFAULT NOW(),
            updated_at    TIMESTAMPTZ DEFAULT NOW(),
            CONSTRAINT uq_user_company_email UNIQUE (company_id, email)
        )
    """)
    op.execute("CREATE INDEX ix_users_company_id ON users(company_id)")

    # ── 3. company_calendar_dates ─────────────────────────────────────────
    op.execute("""
        CREATE TABLE company_calendar_dates (
            id             UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            company_id     UUID NOT NULL REFERENCES companies(id),
            calendar_date  DATE NOT NULL,
            day_type       calendar_day_type DEFAULT 'workday',
            is_blackout    BOOLEAN DEFAULT FALSE,
            note           VARCHAR(200),
            created_at     TIMESTAMPTZ DEFAULT NOW(),
            updated_at     TIMESTAMPTZ DEFAULT NOW(),
            CONSTRAINT uq_company_calendar_date UNIQUE (company_id, calendar_date)
        )
    """)

    # ── 4. attendance_records ─────────────────────────────────────────────
    op.execute("""
        CREATE TABLE attendance_records (
            id                   UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            company_id           UUID NOT NULL REFERENCES companies(id),
            user_id              UUID NOT NULL REFERENCES users(id),
            work_date            DATE NOT NULL,
            actual_work_minutes  INTEGER DEFAULT 0,
            is_current           BOOLEAN DEFAULT TRUE,
            deleted_at           TIMESTAMPTZ,
            created_at           TIMESTAMPTZ DEFAULT NOW()
        )
    """)
    op.execute(
        "CREATE INDEX idx_attendance_user_date ON attendance_records(user_id, work_date)"
    )

    # ── 5. leave_types ────────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE leave_types (
            id                 UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            company_id         UUID NOT NULL REFERENCES companies(id),
            code               VARCHAR(20) NOT NULL,
            name               VARCHAR(100) NOT NULL,
            description        TEXT,
            requires_approval  BOOLEAN DEFAULT TRUE,
            display_order      INTEGER DEFAULT 0,
            is_active          BOOLEAN DEFAULT TRUE,
            created_at         TIMESTAMPTZ DEFAULT NOW(),
            updated_at         TIMESTAMPTZ DEFAULT NOW(),
            CONSTRAINT uq_leave_type_company_code UNIQUE (company_id, code)
        )
    """)
    op.execute("CREATE INDEX ix_leave_types_company_id ON leave_types(company_id)")

    # ── 6. leave_policies ─────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE leave_policies (
            id                           UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            company_id                   UUID NOT NULL REFERENCES companies(id),
            leave_type_id                UUID NOT NULL REFERENCES leave_types(id),
            accrual_method               accrual_method DEFAULT 'anniversary',
            base_days_by_service         JSONB DEFAULT '{}'::jsonb,
            carryover_max_days           NUMERIC(6,2),
            expire_months                INTEGER,
            fiscal_start_month           INTEGER DEFAULT 4,
            anniversary_offset_days      INTEGER DEFAULT 0,
            monthly_proration            BOOLEAN DEFAULT FALSE,
            monthly_proration_basis      proration_basis DEFAULT 'days',
            monthly_min_attendance_rate  NUMERIC(3,2) DEFAULT 0,
            allow_negative               BOOLEAN DEFAULT FALSE,
            hold_on_apply                BOOLEAN DEFAULT TRUE,
            deduction_timing             deduction_timing DEFAULT 'approve',
            business_day_only            BOOLEAN DEFAULT TRUE,
            blackout_dates               JSONB DEFAULT '[]'::jsonb,
            day_hours                    INTEGER DEFAULT 8,
            min_booking_unit_minutes     INTEGER DEFAULT 60,
            rounding_minutes             INTEGER DEFAULT 15,
            allowed_units                JSONB DEFAULT '["day", "half", "hour"]'::jsonb,
            half_day_mode                half_day_mode DEFAULT 'fixed_hours',
            allow_multi_day              BOOLEAN DEFAULT TRUE,
            is_active                    BOOLEAN DEFAULT TRUE,
            deleted_at                   TIMESTAMPTZ,
            created_at                   TIMESTAMPTZ DEFAULT NOW(),
            updated_at                   TIMESTAMPTZ DEFAULT NOW(),
            CONSTRAINT uq_leave_policy_company_type UNIQUE (company_id, leave_type_id),
            CONSTRAINT ck_policy_day_hours CHECK (day_hours BETWEEN 1 AND 24),
            CONSTRAINT ck_policy_min_booking
                CHECK (min_booking_unit_minutes BETWEEN 1 AND 480),
            CONSTRAINT ck_policy_rounding CHECK (rounding_minutes BETWEEN 1 AND 240),
            CONSTRAINT ck_policy_fiscal_month CHECK (fiscal_start_month BETWEEN 1 AND 12)
        )
    """)

    # ── 7. leave_grants ───────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE leave_grants (
            id                UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            company_id        UUID NOT NULL REFERENCES companies(id),
            user_id           UUID NOT NULL REFERENCES users(id),
            leave_type_id     UUID NOT NULL REFERENCES leave_types(id),
            quantity_minutes  INTEGER NOT NULL,
            granted_on        DATE NOT NULL,
            expires_on        DATE,
            source            grant_source DEFAULT 'manual',
            note              TEXT,
            created_by        UUID REFERENCES users(id),
            deleted_at        TIMESTAMPTZ,
            created_at        TIMESTAMPTZ DEFAULT NOW(),
            updated_at        TIMESTAMPTZ DEFAULT NOW(),
            CONSTRAINT ck_grant_quantity_positive CHECK (quantity_minutes > 0)
        )
    """)
    op.execute(
        "CREATE INDEX idx_grants_user_type_date "
        "ON leave_grants(user_id, leave_type_id, granted_on)"
    )

    # ── 8. leave_requests ─────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE leave_requests (
            id             UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            company_id     UUID NOT NULL REFERENCES companies(id),
            user_id        UUID NOT NULL REFERENCES users(id),
            status         leave_request_status DEFAULT 'pending',
            reason         TEXT,
            decided_by     UUID REFERENCES users(id),
            decided_at     TIMESTAMPTZ,
            decision_note  TEXT,
            cancelled_at   TIMESTAMPTZ,
            created_at     TIMESTAMPTZ DEFAULT NOW(),
            updated_at     TIMESTAMPTZ DEFAULT NOW()
        )
    """)
    op.execute("CREATE INDEX ix_leave_requests_user_id ON leave_requests(user_id)")
    op.execute(
        "CREATE INDEX idx_leave_requests_company_status "
        "ON leave_requests(company_id, status)"
    )

    # ── 9. leave_request_details ──────────────────────────────────────────
    op.execute("""
        CREATE TABLE leave_request_details (
            id                UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            request_id        UUID NOT NULL REFERENCES leave_requests(id) ON DELETE CASCADE,
            leave_type_id     UUID NOT NULL REFERENCES leave_types(id),
            start_at          TIMESTAMPTZ NOT NULL,
            end_at            TIMESTAMPTZ NOT NULL,
            unit              leave_unit NOT NULL,
            quantity_minutes  INTEGER NOT NULL,
            position          INTEGER DEFAULT 0
        )
    """)
    op.execute(
        "CREATE INDEX ix_leave_request_details_request_id "
        "ON leave_request_details(request_id)"
    )

    # ── 10. leave_consumptions ────────────────────────────────────────────
    op.execute("""
        CREATE TABLE leave_consumptions (
            id                UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            company_id        UUID NOT NULL REFERENCES companies(id),
            request_id        UUID REFERENCES leave_requests(id),
            user_id           UUID NOT NULL REFERENCES users(id),
            leave_type_id     UUID NOT NULL REFERENCES leave_types(id),
            grant_id          UUID REFERENCES leave_grants(id),
            quantity_minutes  INTEGER NOT NULL,
            consumed_on       DATE NOT NULL,
            created_by        UUID REFERENCES users(id),
            deleted_at        TIMESTAMPTZ,
            created_at        TIMESTAMPTZ DEFAULT NOW()
        )
    """)
    op.execute("CREATE INDEX idx_consumptions_grant   ON leave_consumptions(grant_id)")
    op.execute("CREATE INDEX idx_consumptions_request ON leave_consumptions(request_id)")
    op.execute(
        "CREATE INDEX idx_consumptions_user_type "
        "ON leave_consumptions(user_id, leave_type_id)"
    )

    # ── 11. leave_grant_runs ──────────────────────────────────────────────
    op.execute("""
        CREATE TABLE leave_grant_runs (
            id             UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            company_id     UUID NOT NULL REFERENCES companies(id),
            leave_type_id  UUID NOT NULL REFERENCES leave_types(id),
            grant_date     DATE NOT NULL,
            status         grant_run_status DEFAULT 'running',
            granted        INTEGER DEFAULT 0,
            skipped        INTEGER DEFAULT 0,
            error          TEXT,
            trace_id       VARCHAR(64),
            started_by     UUID REFERENCES users(id),
            started_at     TIMESTAMPTZ DEFAULT NOW(),
            finished_at    TIMESTAMPTZ,
            CONSTRAINT uq_leave_grant_run UNIQUE (company_id, leave_type_id, grant_date)
        )
    """)

    # ── 12. audit_trail ───────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE audit_trail (
            id           UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            company_id   UUID REFERENCES companies(id),
            actor_id     UUID REFERENCES users(id),
            action       VARCHAR(50) NOT NULL,
            entity_type  VARCHAR(50) NOT NULL,
            entity_id    UUID,
            old_values   JSONB,
            new_values   JSONB,
            trace_id     VARCHAR(64),
            created_at   TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    op.execute("CREATE INDEX ix_audit_trail_company_id ON audit_trail(company_id)")
    op.execute("CREATE INDEX ix_audit_trail_actor_id   ON audit_trail(actor_id)")
    op.execute("CREATE INDEX ix_audit_trail_entity     ON audit_trail(entity_type, entity_id)")
    op.execute("CREATE INDEX ix_audit_trail_created_at ON audit_trail(created_at)")
    op.execute("CREATE INDEX ix_audit_trail_action     ON audit_trail(action)")
    op.execute("CREATE INDEX ix_audit_trail_trace_id   ON audit_trail(trace_id)")


# ---------------------------------------------------------------------------
# DOWNGRADE
# ---------------------------------------------------------------------------


def downgrade() -> None:
    # Drop tables in reverse dependency order
    tables = [
        "audit_trail",
        "leave_grant_runs",
        "leave_consumptions",
        "leave_request_details",
        "leave_requests",
        "leave_grants",
        "leave_policies",
        "leave_types",
        "attendance_records",
        "company_calendar_dates",
        "users",
        "companies",
    ]
    for t in tables:
        op.execute(f"DROP TABLE IF EXISTS {t} CASCADE")

    for name, _ in reversed(ENUM_TYPES):
        _drop_enum(name)
