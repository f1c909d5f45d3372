"""Common helper functions for the service layer.

This module provides reusable utilities for:
- UUID handling
- Timezone normalisation and calendar arithmetic
- Query ordering and pagination
- Enum validation
"""

from __future__ import annotations

import uuid
from calendar import monthrange
from datetime import UTC, datetime
from typing import TYPE_CHECKING, TypeVar

from fastapi import HTTPException

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

T = TypeVar("T")


def coerce_uuid(value):
    """Convert value to UUID, returning None if value is None."""
    if value is None:
        return None
    if isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


def as_utc(value: datetime | None) -> datetime | None:
    """Return an aware UTC datetime.

    Naive values (SQLite drops tzinfo on the way back) are assumed UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def utcnow() -> datetime:
    return datetime.now(UTC)


def add_months(value: datetime, months: int) -> datetime:
    total = value.month - 1 + months
    year = value.year + total // 12
    month = total % 12 + 1
    day = min(value.day, monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def apply_ordering(query, order_by: str, order_dir: str, allowed_columns: dict):
    """Apply ordering to a query with validation.

    Raises:
        HTTPException: 400 if order_by is not in allowed_columns
    """
    if order_by not in allowed_columns:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid order_by. Allowed: {', '.join(sorted(allowed_columns))}",
        )
    column = allowed_columns[order_by]
    if order_dir == "desc":
        return query.order_by(column.desc())
    return query.order_by(column.asc())


def apply_pagination(query, limit: int, offset: int):
    return query.limit(limit).offset(offset)


def validate_enum(value, enum_cls, label: str):
    """Validate and convert a value to an enum member.

    Raises:
        HTTPException: 400 if value is not a valid enum member
    """
    if value is None:
        return None
    try:
        return enum_cls(value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid {label}") from exc


def validate_uuid(value, label: str = "id"):
    """Convert a query value to a UUID.

    Raises:
        HTTPException: 400 if value is not a valid UUID
    """
    if value is None:
        return None
    try:
        return coerce_uuid(value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid {label}") from exc


def get_by_id(db: Session, model: type[T], value, **kwargs) -> T | None:
    """Get entity by ID, returning None if not found, None, or not a valid UUID."""
    if value is None:
        return None
    try:
        key = coerce_uuid(value)
    except ValueError:
        return None
    return db.get(model, key, **kwargs)
