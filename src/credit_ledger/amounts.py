from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from .errors import InvalidAmount

# Two decimal places, matching the NUMERIC(15, 2) columns of the ledger tables.
CREDIT_QUANTUM = Decimal("0.01")
ZERO = Decimal("0.00")
# Largest magnitude a NUMERIC(15, 2) column holds.
MAX_CREDITS = Decimal("9999999999999.99")


def to_credits(value: Any) -> Decimal:
    """Coerce an int/float/str/Decimal into a quantized credit amount."""
    if isinstance(value, bool):
        raise InvalidAmount(f"invalid credit amount: {value!r}")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError) as exc:
        raise InvalidAmount(f"invalid credit amount: {value!r}") from exc
    if not amount.is_finite():
        raise InvalidAmount(f"invalid credit amount: {value!r}")
    if abs(amount) > MAX_CREDITS:
        raise InvalidAmount(f"credit amount out of range: {value!r}")
    try:
        return amount.quantize(CREDIT_QUANTUM, rounding=ROUND_HALF_UP)
    except InvalidOperation as exc:
        raise InvalidAmount(f"invalid credit amount: {value!r}") from exc


def positive_credits(value: Any) -> Decimal:
    amount = to_credits(value)
    if amount <= 0:
        raise InvalidAmount("amount must be positive")
    return amount
