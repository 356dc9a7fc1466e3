"""Input normalization shared by ledger-facing services."""

from __future__ import annotations

from enum import Enum
from typing import Any, Type, TypeVar

from services.errors import ValidationError


E = TypeVar("E", bound=Enum)

# Credit amounts and balances are stored in 32-bit integer columns.
MAX_AMOUNT = 2**31 - 1


def parse_choice(enum_cls: Type[E], value: Any, field: str) -> E:
    """Coerce ``value`` into ``enum_cls`` or raise ValidationError."""
    if isinstance(value, enum_cls):
        return value
    token = str(value or "").strip().upper()
    try:
        return enum_cls(token)
    except ValueError as exc:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValidationError(
            f"Unknown {field}: {value!r}. Expected one of: {allowed}.",
            details={"field": field},
        ) from exc


def require_positive_amount(value: Any, field: str = "amount") -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer.", details={"field": field})
    if value <= 0:
        raise ValidationError(f"{field} must be greater than 0.", details={"field": field})
    if value > MAX_AMOUNT:
        raise ValidationError(f"{field} must be at most {MAX_AMOUNT}.", details={"field": field})
    return value


def require_identifier(value: Any, field: str) -> str:
    text = str(value or "").strip()
    if not text:
        raise ValidationError(f"{field} must be non-empty.", details={"field": field})
    return text


def normalize_reason(value: Any) -> str:
    text = " ".join(str(value or "").split())
    if not text:
        raise ValidationError("reason must be non-empty.", details={"field": "reason"})
    return text[:500]
