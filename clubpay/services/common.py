"""Shared helpers for service queries."""
from __future__ import annotations

import uuid
from typing import Any

from sqlalchemy import Select

from clubpay.errors import ValidationError


def coerce_uuid(value: Any) -> uuid.UUID | None:
    """Convert a string or UUID to UUID, or return None."""
    if value is None:
        return None
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError as exc:
        raise ValidationError(f"Invalid identifier: {value}") from exc


def apply_ordering(
    query: Select[Any],
    order_by: str,
    order_dir: str,
    allowed_columns: dict[str, Any],
) -> Select[Any]:
    """Apply ordering to a select statement with validation."""
    if order_by not in allowed_columns:
        raise ValidationError(
            f"Invalid order_by. Allowed: {', '.join(sorted(allowed_columns))}"
        )
    column = allowed_columns[order_by]
    if order_dir == "desc":
        return query.order_by(column.desc())
    return query.order_by(column.asc())


def apply_pagination(query: Select[Any], limit: int, offset: int) -> Select[Any]:
    """Apply limit/offset to a select statement."""
    return query.limit(limit).offset(offset)
