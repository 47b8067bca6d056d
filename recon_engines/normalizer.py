"""
recon_engines.normalizer -- reference, amount and date comparison primitives.

Responsibility:
    Pure helpers shared by every cascade pass: reference normalization,
    tolerance comparison of amounts, and calendar-day windows.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import recon_kernel/domain.

Invariants enforced:
    - Deterministic and locale independent: ``str.upper`` and a fixed
      character class, never locale-aware collation.
    - Decimal arithmetic only; floats are rejected by ``quantize_amount``.
"""

from __future__ import annotations

import re
from datetime import date
from decimal import Decimal
from typing import Any

from recon_kernel.domain.values import to_money

# Whitespace, hyphens, underscores, periods and commas.
_REFERENCE_NOISE = re.compile(r"[\s\-_.,]")


def normalize_reference(raw: str | None) -> str:
    """
    Strip whitespace, hyphens, underscores, periods and commas, then
    upper-case.  ``None`` normalizes to the empty string.

    >>> normalize_reference(" inv-1000.")
    'INV1000'
    """
    if raw is None:
        return ""
    return _REFERENCE_NOISE.sub("", raw).upper()


def quantize_amount(value: Any) -> Decimal:
    """Quantize to 2 places (ROUND_HALF_UP).  Floats raise TypeError."""
    return to_money(value)


def amounts_within_tolerance(
    a: Decimal,
    b: Decimal,
    absolute_limit: Decimal,
    percent_limit: Decimal,
) -> bool:
    """
    True if ``|a-b| <= absolute_limit`` or
    ``|a-b| <= percent_limit * max(|a|, |b|)``.

    ``percent_limit`` is a fraction: 0.005 means 0.5%.
    """
    difference = abs(a - b)
    if difference <= absolute_limit:
        return True
    return difference <= percent_limit * max(abs(a), abs(b))


def date_difference_days(a: date | None, b: date | None) -> int | None:
    """Absolute calendar-day difference, or None if either date is missing."""
    if a is None or b is None:
        return None
    return abs((a - b).days)


def dates_within_window(a: date | None, b: date | None, days: int) -> bool:
    """True if both dates are present and at most ``days`` apart."""
    difference = date_difference_days(a, b)
    return difference is not None and difference <= days
