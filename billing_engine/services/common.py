"""Common helper functions for the service layer.

This module provides reusable utilities for:
- UUID handling
- Entity retrieval with 404 handling
- Find-or-create on natural keys
- Monetary rounding
"""

from __future__ import annotations

import logging
import uuid
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING, Any, TypeVar

from fastapi import HTTPException
from sqlalchemy.exc import IntegrityError

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

T = TypeVar("T")

MONEY_QUANT = Decimal("0.01")


def coerce_uuid(value):
    """Convert value to UUID, returning None if value is None."""
    if value is None:
        return None
    if isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


def apply_pagination(query, limit: int, offset: int):
    """Apply limit/offset pagination to a query."""
    return query.limit(limit).offset(offset)


def validate_enum(value, enum_cls, label: str):
    """Validate and convert a value to an enum member.

    Raises:
        HTTPException: 400 if value is not a valid enum member
    """
    if value is None:
        return None
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid {label}") from exc


def get_or_404(db: Session, model: type[T], id, detail: str | None = None) -> T:
    """Get entity by ID or raise 404.

    Raises:
        HTTPException: 404 if entity not found
    """
    try:
        key = coerce_uuid(id)
    except ValueError as exc:
        raise HTTPException(
            status_code=404, detail=detail or f"{model.__name__} not found"
        ) from exc
    entity = db.get(model, key)
    if not entity:
        raise HTTPException(
            status_code=404, detail=detail or f"{model.__name__} not found"
        )
    return entity


def find_or_create(
    db: Session,
    model: type[T],
    lookup: dict[str, Any],
    defaults: dict[str, Any] | None = None,
) -> tuple[T, bool]:
    """Return the row matching ``lookup``, inserting it when missing.

    The insert runs inside a SAVEPOINT. When a concurrent writer wins the race
    on the unique constraint the savepoint is rolled back and the winner's row
    is returned instead, so callers never see a duplicate-key error.

    Returns:
        (instance, created)
    """
    existing = db.query(model).filter_by(**lookup).first()
    if existing is not None:
        return existing, False

    instance = model(**lookup, **(defaults or {}))
    try:
        with db.begin_nested():
            db.add(instance)
            db.flush()
    except IntegrityError:
        logger.info(
            "Concurrent insert detected for %s %s; reusing existing row",
            model.__name__,
            lookup,
        )
        existing = db.query(model).filter_by(**lookup).first()
        if existing is None:
            raise
        return existing, False
    return instance, True


def round_money(value: Decimal | int | float | str) -> Decimal:
    """Round monetary value to 2 decimal places, half up."""
    return Decimal(str(value)).quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)


def money_str(value: Decimal | int | float | str) -> str:
    """Format a monetary value with exactly two decimals."""
    return f"{round_money(value):.2f}"
