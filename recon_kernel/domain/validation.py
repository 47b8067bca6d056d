"""
Statement line validation at the ingestion boundary.

``parse_statement_line`` turns a loosely-typed mapping (CSV row, JSON body)
into a ``StatementLine`` or a ``LineValidationError``; ``validate_statement_line``
checks an already-typed line before it enters the cascade.  Neither raises
for bad data: a malformed line never aborts a batch.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import date, datetime
from typing import Any

from recon_kernel.domain.results import LineValidationError
from recon_kernel.domain.statement import StatementLine
from recon_kernel.domain.values import is_valid_currency, normalize_currency, to_money


def validate_statement_line(
    line: StatementLine,
    counterparty_id: str | None = None,
) -> LineValidationError | None:
    """Return the line's validation failure, or None if it may be matched."""
    issues: list[str] = []
    if line.claimed_amount is None:
        issues.append("amount is required")
    if line.currency is None:
        issues.append("currency is required")
    elif not is_valid_currency(line.currency):
        issues.append(f"currency must be a 3-letter code, got {line.currency!r}")
    if line.claimed_date is None:
        issues.append("date is required")
    if counterparty_id is not None and line.counterparty_id != counterparty_id:
        issues.append(
            f"line belongs to counterparty {line.counterparty_id!r}, not {counterparty_id!r}"
        )
    if issues:
        return LineValidationError(line_id=line.line_id, issues=tuple(issues))
    return None


def _parse_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value).strip())


def parse_statement_line(data: Mapping[str, Any]) -> StatementLine | LineValidationError:
    """
    Build a StatementLine from raw ingestion data.

    Recognised keys: line_id, document_reference, claimed_date,
    claimed_amount, currency, counterparty_id, line_number, description.
    Unparseable values are reported as issues, not raised.
    """
    line_id = str(data.get("line_id") or "").strip()
    issues: list[str] = []
    if not line_id:
        issues.append("line_id is required")

    amount = None
    raw_amount = data.get("claimed_amount")
    if raw_amount is not None and str(raw_amount).strip() != "":
        try:
            amount = to_money(raw_amount)
        except (TypeError, ValueError):
            issues.append(f"amount {raw_amount!r} is not a decimal number")

    claimed_date = None
    raw_date = data.get("claimed_date")
    if raw_date not in (None, ""):
        try:
            claimed_date = _parse_date(raw_date)
        except ValueError:
            issues.append(f"date {raw_date!r} is not an ISO date")

    if issues:
        return LineValidationError(line_id=line_id, issues=tuple(issues))

    line = StatementLine(
        line_id=line_id,
        document_reference=str(data.get("document_reference") or "").strip(),
        claimed_date=claimed_date,
        claimed_amount=amount,
        currency=normalize_currency(data.get("currency")),
        counterparty_id=str(data.get("counterparty_id") or ""),
        line_number=int(data["line_number"]) if data.get("line_number") is not None else None,
        description=str(data.get("description") or ""),
    )
    return validate_statement_line(line) or line
