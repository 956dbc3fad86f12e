"""
Monetary Value Type

DESIGN DECISION: Every balance and amount in VaultPay is a Decimal with
exactly two fractional digits. Binary floats never enter the ledger.

- Inputs with more than 2 decimal places are REJECTED, not rounded.
  Silently rounding a payment amount is a silent correction.
- Percentages are rounded for display only. Stored balances are never
  rounded.
- Invariant checks compare the exact Decimal values.
"""

from decimal import ROUND_HALF_EVEN, Decimal, InvalidOperation
from typing import Annotated, Iterable, Union

from pydantic import AfterValidator, Field, PlainSerializer


CENT = Decimal("0.01")
ZERO = Decimal("0.00")
HUNDRED = Decimal("100")

# Largest amount we store: 12 integer digits + 2 fractional digits
MAX_DIGITS = 14


def _normalize(value: Decimal) -> Decimal:
    """Pin the exponent to 2 places so Decimal('5') == Decimal('5.00') renders the same."""
    return value.quantize(CENT)


Money = Annotated[
    Decimal,
    Field(max_digits=MAX_DIGITS, decimal_places=2, allow_inf_nan=False),
    AfterValidator(_normalize),
    PlainSerializer(lambda v: str(v), return_type=str, when_used="json"),
]
"""Pydantic field type for a 2-decimal fixed-point amount."""


def to_money(value: Union[Decimal, int, str]) -> Decimal:
    """
    Convert a value to a money Decimal.

    Floats are refused: they already carry binary drift by the time
    they reach us.

    Raises:
        ValueError: If the value is a float, not numeric, or has more
            than 2 fractional digits.
    """
    if isinstance(value, float):
        raise ValueError("Monetary values must not be floats; pass a str or Decimal")
    try:
        amount = Decimal(value)
    except (InvalidOperation, TypeError) as e:
        raise ValueError(f"Not a monetary value: {value!r}") from e
    if not amount.is_finite():
        raise ValueError(f"Not a monetary value: {value!r}")
    if amount != amount.quantize(CENT):
        raise ValueError(f"Monetary values allow at most 2 decimal places: {value}")
    return _normalize(amount)


def sum_money(amounts: Iterable[Decimal]) -> Decimal:
    """Exact sum of amounts, ZERO for an empty iterable."""
    total = ZERO
    for amount in amounts:
        total += amount
    return _normalize(total)


def percentage(part: Decimal, whole: Decimal, places: int = 2) -> Decimal:
    """
    part / whole * 100, rounded half-even to `places` for display.

    A zero (or negative) whole yields 0 rather than a division error.
    """
    if whole <= 0:
        return Decimal(0).quantize(Decimal(1).scaleb(-places))
    raw = part / whole * HUNDRED
    return raw.quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_EVEN)


def to_minor_units(amount: Decimal) -> int:
    """Convert 12.34 to 1234 (paise). Used by the SQL backend."""
    return int(_normalize(amount) * 100)


def from_minor_units(units: int) -> Decimal:
    """Convert 1234 (paise) back to Decimal('12.34')."""
    return _normalize(Decimal(units) / 100)


def format_inr(amount: Decimal) -> str:
    """Human-readable rupee amount for messages, e.g. ₹1,500.00."""
    return f"₹{amount:,.2f}"
