"""
Values -- Decimal money and currency helpers.

Responsibility:
    Canonical coercion of monetary amounts and currency codes.  Every amount
    that enters the engine passes through ``to_money`` so that comparisons are
    made on 2-place Decimals and never on floats.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Invariants enforced:
    - Amounts are ``Decimal`` quantized to MONEY_DECIMAL_PLACES with
      ROUND_HALF_UP.  ``float`` input is rejected outright; binary floats
      cannot represent minor units exactly.
    - Currency codes are three upper-case ASCII letters.

Failure modes:
    - TypeError when a float (or other non-numeric type) is passed.
    - ValueError when a string is not a finite decimal number.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

MONEY_DECIMAL_PLACES = 2
MONEY_QUANTUM = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value: Any) -> Decimal:
    """
    Coerce a value to a 2-place Decimal.

    Accepts ``Decimal``, ``int`` and numeric strings (surrounding whitespace
    and thousands separators are tolerated in strings).

    Raises:
        TypeError: if value is a float, bool or unsupported type.
        ValueError: if value is not a finite number.
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise TypeError(
            f"Monetary amounts must be Decimal, int or str, not {type(value).__name__}"
        )
    if isinstance(value, Decimal):
        amount = value
    elif isinstance(value, int):
        amount = Decimal(value)
    elif isinstance(value, str):
        cleaned = value.strip().replace(",", "")
        try:
            amount = Decimal(cleaned)
        except InvalidOperation as exc:
            raise ValueError(f"Invalid amount: {value!r}") from exc
    else:
        raise TypeError(f"Unsupported amount type: {type(value).__name__}")

    if not amount.is_finite():
        raise ValueError(f"Amount must be finite: {value!r}")
    return amount.quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)


def format_money(amount: Decimal) -> str:
    """Render an amount with exactly two decimal places (e.g. ``50.00``)."""
    return str(to_money(amount))


def normalize_currency(code: str | None) -> str | None:
    """Upper-case and strip a currency code; ``None`` and blanks become None."""
    if code is None:
        return None
    normalized = code.strip().upper()
    return normalized or None


def is_valid_currency(code: str | None) -> bool:
    """True for a three-letter alphabetic ISO 4217 style code."""
    return (
        code is not None
        and len(code) == 3
        and code.isascii()
        and code.isalpha()
        and code.isupper()
    )
