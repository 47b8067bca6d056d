"""
Result types returned by the cascade, the gate and the service facade.

Validation failures and gate refusals are returned as values, never raised:
the caller decides what to do with an unmatched or blocked outcome.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from recon_kernel.domain.discrepancy import DiscrepancyCreated
from recon_kernel.domain.match import Match
from recon_kernel.domain.run import AcknowledgementType
from recon_kernel.domain.values import ZERO


@dataclass(frozen=True, slots=True)
class LineValidationError:
    """A statement line lacking a required field or carrying a malformed one."""

    line_id: str
    issues: tuple[str, ...]
    code: str = "VALIDATION_ERROR"

    @property
    def message(self) -> str:
        return "invalid input: " + "; ".join(self.issues)


@dataclass(frozen=True, slots=True)
class LineOutcome:
    """What the cascade decided for a single line."""

    line_id: str
    match: Match | None = None
    error: LineValidationError | None = None
    discrepancy_id: UUID | None = None

    @property
    def is_matched(self) -> bool:
        return self.match is not None and self.match.is_active

    @property
    def is_pending(self) -> bool:
        return self.match is not None and not self.match.is_active


@dataclass(frozen=True, slots=True)
class MatchSummary:
    """
    Counts for a run.

    Confirmed lines fall in exactly one bucket: ``matched_exact`` (pass 1),
    ``matched_partial`` (pass 5), ``matched_manual`` (a reviewer-chosen
    match, no pass) or ``matched_tolerant`` (passes 2-4).  ``unmatched``
    counts lines without a confirmed match.
    """

    run_id: UUID
    total_lines: int
    matched_exact: int
    matched_tolerant: int
    matched_partial: int
    unmatched: int
    net_variance: Decimal
    pending_confirmation: int = 0
    invalid: int = 0
    matched_manual: int = 0

    @property
    def matched(self) -> int:
        return (
            self.matched_exact
            + self.matched_tolerant
            + self.matched_partial
            + self.matched_manual
        )

    @property
    def match_rate(self) -> Decimal:
        """Share of lines with a confirmed match, as a percentage."""
        if self.total_lines == 0:
            return ZERO
        return (Decimal(self.matched) * 100 / Decimal(self.total_lines)).quantize(
            Decimal("0.01")
        )


@dataclass(frozen=True, slots=True)
class CascadeResult:
    """Outcome of one cascade pass over a run's lines."""

    run_id: UUID
    summary: MatchSummary
    outcomes: tuple[LineOutcome, ...]
    errors: tuple[LineValidationError, ...] = ()
    events: tuple[DiscrepancyCreated, ...] = ()
    duration_ms: float = 0.0

    @property
    def proposals(self) -> tuple[Match, ...]:
        return tuple(o.match for o in self.outcomes if o.match is not None)


@dataclass(frozen=True, slots=True)
class ReadinessResult:
    """Whether a run may be signed off, and if not, why."""

    run_id: UUID
    ready: bool
    aggregate_variance: Decimal
    absolute_limit: Decimal
    percent_limit: Decimal
    blocking_reason: str | None = None
    blocking_amount: Decimal | None = None
    open_discrepancies: int = 0


@dataclass(frozen=True)
class SignOffResult:
    """Result of a sign-off attempt.  Refusals carry a code and a reason."""

    run_id: UUID
    success: bool
    code: str | None = None
    blocking_reason: str | None = None
    blocking_amount: Decimal | None = None
    signed_off_by: str | None = None
    signed_off_at: datetime | None = None
    acknowledgement_type: AcknowledgementType | None = None
    readiness: ReadinessResult | None = field(default=None, compare=False)

    @classmethod
    def signed(
        cls,
        run_id: UUID,
        actor: str,
        at: datetime,
        acknowledgement_type: AcknowledgementType,
        readiness: ReadinessResult | None = None,
    ) -> SignOffResult:
        return cls(
            run_id=run_id,
            success=True,
            signed_off_by=actor,
            signed_off_at=at,
            acknowledgement_type=acknowledgement_type,
            readiness=readiness,
        )

    @classmethod
    def refused(
        cls,
        run_id: UUID,
        code: str,
        reason: str,
        blocking_amount: Decimal | None = None,
        readiness: ReadinessResult | None = None,
    ) -> SignOffResult:
        return cls(
            run_id=run_id,
            success=False,
            code=code,
            blocking_reason=reason,
            blocking_amount=blocking_amount,
            readiness=readiness,
        )
