"""Generic filtering utilities for list endpoints."""

from __future__ import annotations

from typing import Any, Callable, Optional

from sqlalchemy import Select, and_
from sqlalchemy.orm import InstrumentedAttribute

# suffix -> condition builder(column, value)
_OPERATORS: dict[str, Callable[[Any, Any], Any]] = {
    "__ilike": lambda col, value: col.ilike(f"%{value}%"),
    "__from": lambda col, value: col >= value,
    "__to": lambda col, value: col <= value,
    "__in": lambda col, value: col.in_(value),
    "__isnull": lambda col, value: col.is_(None) if value else col.is_not(None),
}


def apply_filters(
    query: Select,
    model: Any,
    filters: dict[str, Any],
) -> Select:
    """
    Apply a dict of filter parameters to a SQLAlchemy ``Select``.

    Key suffixes determine the operator:

    ============  ==================================
    Suffix        Operator
    ============  ==================================
    (none)        ``==``
    ``__ilike``   case-insensitive LIKE (wraps ``%…%``)
    ``__from``    ``>=``
    ``__to``      ``<=``
    ``__in``      ``IN (…)``
    ``__isnull``  ``IS NULL`` / ``IS NOT NULL``
    ============  ==================================

    ``None`` values are silently skipped, as are unknown columns.
    """
    conditions: list = []

    for key, value in filters.items():
        if value is None:
            continue

        name, build = key, None
        for suffix, operator in _OPERATORS.items():
            if key.endswith(suffix):
                name, build = key.removesuffix(suffix), operator
                break

        col = _get_column(model, name)
        if col is None:
            continue
        conditions.append(build(col, value) if build else col == value)

    if conditions:
        query = query.where(and_(*conditions))

    return query


def _get_column(model: Any, name: str) -> Optional[InstrumentedAttribute]:
    """Safely retrieve a mapped column attribute by name."""
    return getattr(model, name, None)
