"""
ReconciliationRun -- the aggregate over one statement.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Invariants enforced:
    - SIGNED_OFF is terminal: no transition leaves it.  Corrections require
      a new run.
    - ``signed_off_by``/``signed_off_at`` are set exactly when the run is
      signed off.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from recon_kernel.domain.values import ZERO


class SignoffStatus(str, Enum):
    """Sign-off lifecycle of a run.

    Contract: NOT_READY <-> READY -> SIGNED_OFF.  SIGNED_OFF never reopens.
    """

    NOT_READY = "not_ready"
    READY = "ready"
    SIGNED_OFF = "signed_off"


class AcknowledgementType(str, Enum):
    """How the statement was acknowledged at sign-off."""

    FULL = "full"                        # no open discrepancies
    WITH_EXCEPTIONS = "with_exceptions"  # open discrepancies within tolerance


@dataclass(frozen=True, slots=True)
class StatementPeriod:
    """Inclusive date range a statement covers."""

    start: date
    end: date

    def __post_init__(self) -> None:
        if self.start > self.end:
            raise ValueError(f"Statement period start {self.start} is after end {self.end}")

    def __str__(self) -> str:
        return f"{self.start.isoformat()}..{self.end.isoformat()}"


@dataclass(frozen=True, slots=True)
class ReconciliationRun:
    """Aggregate totals and sign-off state for one statement."""

    run_id: UUID
    counterparty_id: str
    statement_period: StatementPeriod
    created_at: datetime
    total_claimed: Decimal = ZERO
    total_matched: Decimal = ZERO
    net_variance: Decimal = ZERO
    signoff_status: SignoffStatus = SignoffStatus.NOT_READY
    signed_off_by: str | None = None
    signed_off_at: datetime | None = None
    acknowledgement_type: AcknowledgementType | None = None

    @property
    def is_signed_off(self) -> bool:
        return self.signoff_status == SignoffStatus.SIGNED_OFF

    def to_state(self) -> dict[str, Any]:
        """Snapshot used for audit history (previous/new state)."""
        return {
            "run_id": str(self.run_id),
            "counterparty_id": self.counterparty_id,
            "statement_period": str(self.statement_period),
            "total_claimed": str(self.total_claimed),
            "total_matched": str(self.total_matched),
            "net_variance": str(self.net_variance),
            "signoff_status": self.signoff_status.value,
            "signed_off_by": self.signed_off_by,
            "acknowledgement_type": (
                self.acknowledgement_type.value if self.acknowledgement_type else None
            ),
        }
