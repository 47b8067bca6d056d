"""
Statement and candidate records -- the engine's two input shapes.

Responsibility:
    Immutable value objects for a counterparty's claimed statement lines and
    the internal records (invoices, credit notes, payments) they are matched
    against.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Invariants enforced:
    - Amounts are 2-place Decimals; floats are rejected at construction.
    - Currency codes are upper-cased at construction.
    - Records are never mutated by the engine; status changes on the system
      of record arrive as a fresh snapshot.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from enum import Enum

from recon_kernel.domain.values import normalize_currency, to_money


class RecordStatus(str, Enum):
    """Status of a candidate record on the system of record."""

    OPEN = "open"
    SETTLED = "settled"
    VOIDED = "voided"


class RecordKind(str, Enum):
    """What kind of internal document a candidate record is."""

    INVOICE = "invoice"
    CREDIT_NOTE = "credit_note"
    PAYMENT = "payment"


@dataclass(frozen=True, slots=True)
class StatementLine:
    """
    One claimed transaction from the counterparty's statement.

    Amount, currency and date may be missing when the ingestion
    collaborator could not extract them; such lines are reported as
    validation failures rather than rejected here.
    """

    line_id: str
    document_reference: str
    claimed_date: date | None
    claimed_amount: Decimal | None
    currency: str | None
    counterparty_id: str
    line_number: int | None = None
    description: str = ""

    def __post_init__(self) -> None:
        if self.claimed_amount is not None:
            object.__setattr__(self, "claimed_amount", to_money(self.claimed_amount))
        object.__setattr__(self, "currency", normalize_currency(self.currency))
        if self.document_reference is None:
            object.__setattr__(self, "document_reference", "")


@dataclass(frozen=True, slots=True)
class CandidateRecord:
    """
    A known internal record eligible for matching.

    ``amount`` is signed: positive for invoices/debits, negative for
    credits and payments.
    """

    record_id: str
    document_reference: str
    record_date: date | None
    amount: Decimal
    currency: str
    status: RecordStatus
    counterparty_id: str
    kind: RecordKind = RecordKind.INVOICE

    def __post_init__(self) -> None:
        object.__setattr__(self, "amount", to_money(self.amount))
        object.__setattr__(self, "currency", normalize_currency(self.currency) or "")
        object.__setattr__(self, "status", RecordStatus(self.status))
        object.__setattr__(self, "kind", RecordKind(self.kind))
        if self.document_reference is None:
            object.__setattr__(self, "document_reference", "")

    @property
    def is_open(self) -> bool:
        return self.status == RecordStatus.OPEN
