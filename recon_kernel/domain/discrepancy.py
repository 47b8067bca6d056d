"""
Discrepancy -- a tracked variance or unmatched condition.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Invariants enforced:
    - ``resolution_reason`` is non-empty whenever status is not OPEN.
    - Discrepancies are never deleted; closing one produces a new version.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from recon_kernel.domain.values import ZERO


class DiscrepancyKind(str, Enum):
    """What kind of residual issue a discrepancy tracks."""

    UNMATCHED = "unmatched"
    AMOUNT_VARIANCE = "amount_variance"
    DATE_VARIANCE = "date_variance"
    DUPLICATE_CLAIM = "duplicate_claim"  # more than one record qualifies


class DiscrepancyStatus(str, Enum):
    """Resolution status of a discrepancy."""

    OPEN = "open"
    RESOLVED = "resolved"
    WAIVED = "waived"


class DiscrepancySeverity(str, Enum):
    """How much attention a discrepancy needs."""

    LOW = "low"            # within tolerance
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"  # invalid input; cannot be matched at all


@dataclass(frozen=True, slots=True)
class Discrepancy:
    """A residual issue for one statement line."""

    discrepancy_id: UUID
    run_id: UUID
    line_id: str
    kind: DiscrepancyKind
    amount: Decimal
    status: DiscrepancyStatus
    severity: DiscrepancySeverity
    detected_at: datetime
    description: str = ""
    reference_amount: Decimal = ZERO
    match_id: UUID | None = None
    detected_by: str = "system"
    resolution_reason: str | None = None
    resolved_by: str | None = None
    resolved_at: datetime | None = None

    def __post_init__(self) -> None:
        if self.status != DiscrepancyStatus.OPEN and not (self.resolution_reason or "").strip():
            raise ValueError(
                f"Discrepancy {self.discrepancy_id} left OPEN without a resolution reason"
            )

    @property
    def is_open(self) -> bool:
        return self.status == DiscrepancyStatus.OPEN

    def to_state(self) -> dict[str, Any]:
        """Snapshot used for audit history (previous/new state)."""
        return {
            "discrepancy_id": str(self.discrepancy_id),
            "line_id": self.line_id,
            "kind": self.kind.value,
            "amount": str(self.amount),
            "status": self.status.value,
            "severity": self.severity.value,
            "resolution_reason": self.resolution_reason,
        }


@dataclass(frozen=True, slots=True)
class DiscrepancyCreated:
    """Event for the case collaborator: one per discrepancy created."""

    run_id: UUID
    discrepancy_id: UUID
    line_id: str
    kind: DiscrepancyKind
    amount: Decimal
    severity: DiscrepancySeverity
    description: str = ""
