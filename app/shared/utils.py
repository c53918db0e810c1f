"""Shared utility functions."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

_CENT = Decimal("0.01")


def utc_now() -> datetime:
    """Return aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_money(value: object) -> Decimal:
    """Convert a numeric value (str, int, float, Decimal) to a 2-place Decimal.

    Floats go through ``str`` first so that ``999.0`` becomes ``999.00``
    rather than its binary expansion.
    """
    if isinstance(value, bool) or value is None:
        raise ValueError(f"Not a monetary amount: {value!r}")
    if isinstance(value, float):
        value = str(value)
    try:
        amount = Decimal(value)  # type: ignore[arg-type]
        if not amount.is_finite():
            raise ValueError(f"Not a monetary amount: {value!r}")
        return amount.quantize(_CENT, rounding=ROUND_HALF_UP)
    except (InvalidOperation, TypeError) as exc:
        raise ValueError(f"Not a monetary amount: {value!r}") from exc
