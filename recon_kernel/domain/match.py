"""
Match -- the outcome linking a statement line to candidate records.

Responsibility:
    Immutable Match value object plus the closed enumerations used by the
    cascade and the ledger.  Status transitions never mutate a Match; the
    ledger stores a new version produced with ``dataclasses.replace``.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Invariants enforced:
    - ``record_ids`` is non-empty and ordered (selected candidate first).
    - ``confidence_score`` is an integer in 0..100.
    - ``pass_number`` is one of the five numbered rules, or None for a
      manual match.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum, IntEnum
from typing import Any
from uuid import UUID


class MatchPass(IntEnum):
    """The numbered cascade rules, in evaluation order."""

    EXACT = 1
    DATE_TOLERANCE = 2
    NORMALIZED_REFERENCE = 3
    AMOUNT_TOLERANCE = 4
    PARTIAL_SETTLEMENT = 5

    @property
    def label(self) -> str:
        return self.name.lower()


DEFAULT_PASS_CONFIDENCE: Mapping[MatchPass, int] = {
    MatchPass.EXACT: 100,
    MatchPass.DATE_TOLERANCE: 95,
    MatchPass.NORMALIZED_REFERENCE: 90,
    MatchPass.AMOUNT_TOLERANCE: 85,
    MatchPass.PARTIAL_SETTLEMENT: 75,
}


class MatchStatus(str, Enum):
    """Lifecycle status of a match."""

    PROPOSED = "proposed"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"


# Allowed status transitions (from -> set of valid next states)
ALLOWED_MATCH_TRANSITIONS: Mapping[MatchStatus, frozenset[MatchStatus]] = {
    MatchStatus.PROPOSED: frozenset({MatchStatus.CONFIRMED, MatchStatus.REJECTED}),
    MatchStatus.CONFIRMED: frozenset({MatchStatus.REJECTED}),
    MatchStatus.REJECTED: frozenset(),  # Terminal
}


class MatchedBy(str, Enum):
    """Who created the match."""

    SYSTEM = "system"
    MANUAL = "manual"


@dataclass(frozen=True, slots=True)
class Match:
    """
    A proposed, confirmed or rejected link between a line and records.

    ``variance_amount`` is claimed minus matched for passes 1-4 and manual
    matches; for a partial settlement it is the residual still outstanding
    on the record (record amount minus claimed amount).
    """

    match_id: UUID
    run_id: UUID
    line_id: str
    record_ids: tuple[str, ...]
    pass_number: MatchPass | None
    confidence_score: int
    is_exact: bool
    variance_amount: Decimal
    status: MatchStatus
    created_at: datetime
    claimed_amount: Decimal
    matched_amount: Decimal
    is_ambiguous: bool = False
    alternative_record_ids: tuple[str, ...] = ()
    criteria: tuple[tuple[str, Any], ...] = ()
    matched_by: MatchedBy = MatchedBy.SYSTEM
    date_difference_days: int | None = None
    confirmed_by: str | None = None
    confirmed_at: datetime | None = None
    rejected_by: str | None = None
    rejected_at: datetime | None = None
    rejection_reason: str | None = None

    def __post_init__(self) -> None:
        if not self.record_ids:
            raise ValueError("Match requires at least one record id")
        if not 0 <= self.confidence_score <= 100:
            raise ValueError(
                f"Confidence score must be within 0..100: {self.confidence_score}"
            )

    @property
    def is_active(self) -> bool:
        """True if this match is the line's confirmed match."""
        return self.status == MatchStatus.CONFIRMED

    @property
    def is_partial(self) -> bool:
        return self.pass_number == MatchPass.PARTIAL_SETTLEMENT

    @property
    def has_variance(self) -> bool:
        return self.variance_amount != 0

    @property
    def requires_manual_confirmation(self) -> bool:
        """Ambiguous and manual proposals are never auto-confirmed."""
        return self.is_ambiguous or self.pass_number is None

    @property
    def criteria_dict(self) -> dict[str, Any]:
        return dict(self.criteria)

    def proposal_key(self) -> tuple:
        """The fields that must be identical across two runs of the cascade."""
        return (
            self.line_id,
            self.record_ids,
            int(self.pass_number) if self.pass_number is not None else None,
            self.confidence_score,
            self.is_exact,
            str(self.variance_amount),
            self.is_ambiguous,
            self.alternative_record_ids,
        )

    def to_state(self) -> dict[str, Any]:
        """Snapshot used for audit history (previous/new state)."""
        return {
            "match_id": str(self.match_id),
            "line_id": self.line_id,
            "record_ids": list(self.record_ids),
            "pass_number": int(self.pass_number) if self.pass_number is not None else None,
            "confidence_score": self.confidence_score,
            "is_exact": self.is_exact,
            "variance_amount": str(self.variance_amount),
            "status": self.status.value,
            "is_ambiguous": self.is_ambiguous,
            "matched_by": self.matched_by.value,
        }
