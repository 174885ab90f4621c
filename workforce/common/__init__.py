"""Common module — shared utilities for the workforce platform."""

from workforce.common.audit import (
    AuditEntryOut,
    AuditTrail,
    create_audit_entry,
    list_audit_entries,
)
from workforce.common.constants import (
    DEFAULT_PAGE_SIZE,
    MAX_PAGE_SIZE,
    PERMISSIONS,
    AccrualMethod,
    CalendarDayType,
    DeductionTiming,
    GrantRunStatus,
    GrantSource,
    HalfDayMode,
    LeaveRequestStatus,
    LeaveUnit,
    ProrationBasis,
    UserRole,
)
from workforce.common.exceptions import (
    AppException,
    ConflictError,
    ForbiddenException,
    InsufficientBalanceError,
    LockedError,
    NotFoundException,
    ValidationException,
    register_exception_handlers,
)
from workforce.common.filters import apply_filters
from workforce.common.pagination import (
    PaginatedResponse,
    PaginationMeta,
    PaginationParams,
    paginate,
)

__all__ = [
    # Audit
    "AuditTrail",
    "AuditEntryOut",
    "create_audit_entry",
    "list_audit_entries",
    # Constants / Enums
    "AccrualMethod",
    "CalendarDayType",
    "DeductionTiming",
    "GrantRunStatus",
    "GrantSource",
    "HalfDayMode",
    "LeaveRequestStatus",
    "LeaveUnit",
    "ProrationBasis",
    "UserRole",
    "PERMISSIONS",
    "DEFAULT_PAGE_SIZE",
    "MAX_PAGE_SIZE",
    # Exceptions
    "AppException",
    "ConflictError",
    "ForbiddenException",
    "InsufficientBalanceError",
    "LockedError",
    "NotFoundException",
    "ValidationException",
    "register_exception_handlers",
    # Filters
    "apply_filters",
    # Pagination
    "PaginatedResponse",
    "PaginationMeta",
    "PaginationParams",
    "paginate",
]
