"""
DiscrepancyTracker -- lifecycle of residual issues for one run.

Responsibility:
    Creates, updates and closes Discrepancies (unmatched lines, amount
    variances, ambiguous claims, invalid input) and sums the open variance
    the sign-off gate evaluates.

Architecture position:
    Services -- in-memory, owned by one RunContext.  Called by the
    MatchLedger and the ReconciliationService.

Invariants enforced:
    - ``ensure_discrepancy`` is idempotent per (line, kind): a second call
      updates the open record instead of duplicating it.
    - At most one OPEN discrepancy per line: opening one of a different
      kind resolves the previous one as superseded.
    - Leaving OPEN requires a non-empty reason; closed items never reopen.
    - Items closed by resolve or waive are remembered as review decisions
      so that a rerun can leave them settled.

Failure modes:
    - DiscrepancyNotFoundError, ResolutionReasonRequiredError,
      DiscrepancyNotOpenError on resolve/waive.
    - RunNotFoundError when ``aggregate_variance`` is asked about another run.

Audit relevance:
    Every create, update, resolve and waive appends an AuditEntry with
    previous and new state.  Each creation publishes a DiscrepancyCreated
    event for the case collaborator.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import replace
from decimal import Decimal
from uuid import UUID

from recon_config.schema import SeverityThresholds, ToleranceConfig
from recon_engines.normalizer import amounts_within_tolerance
from recon_kernel.domain.audit import AuditAction, AuditEntityType
from recon_kernel.domain.clock import Clock, SystemClock
from recon_kernel.domain.discrepancy import (
    Discrepancy,
    DiscrepancyCreated,
    DiscrepancyKind,
    DiscrepancySeverity,
    DiscrepancyStatus,
)
from recon_kernel.domain.values import ZERO, to_money
from recon_kernel.exceptions import (
    DiscrepancyNotFoundError,
    DiscrepancyNotOpenError,
    ResolutionReasonRequiredError,
    RunNotFoundError,
)
from recon_kernel.logging_config import get_logger
from recon_kernel.utils.hashing import derive_id
from recon_services.audit_trail import AuditTrail

logger = get_logger("services.discrepancy_tracker")

DiscrepancySubscriber = Callable[[DiscrepancyCreated], None]


class DiscrepancyTracker:
    """
    Tracks discrepancies for one reconciliation run.

    Contract:
        All amounts are 2-place Decimals.  ``reference_amount`` is the
        line's claimed amount and is the base of the percentage tolerance.

    Guarantees:
        - Thread-safe; per-line operations are serialized by one lock.
        - Identifiers are derived from (run, line, sequence) so identical
          runs produce identical ids.

    Non-goals:
        - Does NOT decide readiness; see SignoffGate.
    """

    def __init__(
        self,
        run_id: UUID,
        audit: AuditTrail,
        clock: Clock | None = None,
        tolerance: ToleranceConfig | None = None,
        severity: SeverityThresholds | None = None,
    ):
        self._run_id = run_id
        self._audit = audit
        self._clock = clock or SystemClock()
        self._tolerance = tolerance or ToleranceConfig()
        self._severity = severity or SeverityThresholds()
        self._items: dict[UUID, Discrepancy] = {}
        self._per_line_count: dict[str, int] = {}
        self._reviewed: set[UUID] = set()
        self._events: list[DiscrepancyCreated] = []
        self._subscribers: list[DiscrepancySubscriber] = []
        self._lock = threading.RLock()

    @property
    def run_id(self) -> UUID:
        return self._run_id

    def subscribe(self, callback: DiscrepancySubscriber) -> None:
        """Register a callback for every DiscrepancyCreated event."""
        self._subscribers.append(callback)

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    def is_within_tolerance(self, amount: Decimal, reference_amount: Decimal) -> bool:
        """Whether a residual of ``amount`` against ``reference_amount`` is tolerable."""
        return amounts_within_tolerance(
            reference_amount,
            reference_amount - amount,
            self._tolerance.absolute,
            self._tolerance.percent,
        )

    def classify(self, amount: Decimal, reference_amount: Decimal) -> DiscrepancySeverity:
        if self.is_within_tolerance(amount, reference_amount):
            return DiscrepancySeverity.LOW
        magnitude = abs(amount)
        if magnitude >= self._severity.high_at:
            return DiscrepancySeverity.HIGH
        if magnitude >= self._severity.medium_at:
            return DiscrepancySeverity.MEDIUM
        return DiscrepancySeverity.LOW

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def ensure_discrepancy(
        self,
        line_id: str,
        kind: DiscrepancyKind,
        amount: Decimal,
        *,
        reference_amount: Decimal = ZERO,
        description: str = "",
        match_id: UUID | None = None,
        severity: DiscrepancySeverity | None = None,
        actor: str = "system",
    ) -> Discrepancy:
        """
        Open a discrepancy of ``kind`` for the line, or update the open one.

        Returns the open Discrepancy after the call.
        """
        amount = to_money(amount)
        reference_amount = to_money(reference_amount)
        severity = severity or self.classify(amount, reference_amount)
        created: DiscrepancyCreated | None = None

        with self._lock:
            current = self.open_for_line(line_id)

            if current is not None and current.kind == kind:
                if (
                    current.amount == amount
                    and current.reference_amount == reference_amount
                    and current.severity == severity
                    and current.match_id == match_id
                    and current.description == description
                ):
                    return current
                updated = replace(
                    current,
                    amount=amount,
                    reference_amount=reference_amount,
                    severity=severity,
                    match_id=match_id,
                    description=description,
                )
                self._items[updated.discrepancy_id] = updated
                self._audit.record(
                    AuditEntityType.DISCREPANCY,
                    updated.discrepancy_id,
                    AuditAction.DISCREPANCY_UPDATED,
                    actor,
                    previous_state=current.to_state(),
                    new_state=updated.to_state(),
                )
                logger.info(
                    "discrepancy_updated",
                    extra={
                        "discrepancy_id": str(updated.discrepancy_id),
                        "line_id": line_id,
                        "kind": kind.value,
                        "previous_amount": str(current.amount),
                        "amount": str(amount),
                    },
                )
                return updated

            if current is not None:
                self._close(
                    current,
                    DiscrepancyStatus.RESOLVED,
                    actor,
                    f"superseded by {kind.value}",
                )

            seq = self._per_line_count.get(line_id, 0) + 1
            self._per_line_count[line_id] = seq
            discrepancy = Discrepancy(
                discrepancy_id=derive_id(self._run_id, "discrepancy", line_id, seq),
                run_id=self._run_id,
                line_id=line_id,
                kind=kind,
                amount=amount,
                status=DiscrepancyStatus.OPEN,
                severity=severity,
                detected_at=self._clock.now(),
                description=description,
                reference_amount=reference_amount,
                match_id=match_id,
                detected_by=actor,
            )
            self._items[discrepancy.discrepancy_id] = discrepancy
            self._audit.record(
                AuditEntityType.DISCREPANCY,
                discrepancy.discrepancy_id,
                AuditAction.DISCREPANCY_OPENED,
                actor,
                new_state=discrepancy.to_state(),
            )
            created = DiscrepancyCreated(
                run_id=self._run_id,
                discrepancy_id=discrepancy.discrepancy_id,
                line_id=line_id,
                kind=kind,
                amount=amount,
                severity=severity,
                description=description,
            )
            self._events.append(created)

        logger.info(
            "discrepancy_opened",
            extra={
                "discrepancy_id": str(discrepancy.discrepancy_id),
                "line_id": line_id,
                "kind": kind.value,
                "amount": str(amount),
                "severity": severity.value,
            },
        )
        for callback in list(self._subscribers):
            callback(created)
        return discrepancy

    def _close(
        self,
        discrepancy: Discrepancy,
        status: DiscrepancyStatus,
        actor: str,
        reason: str,
    ) -> Discrepancy:
        closed = replace(
            discrepancy,
            status=status,
            resolution_reason=reason,
            resolved_by=actor,
            resolved_at=self._clock.now(),
        )
        self._items[closed.discrepancy_id] = closed
        action = (
            AuditAction.DISCREPANCY_WAIVED
            if status == DiscrepancyStatus.WAIVED
            else AuditAction.DISCREPANCY_RESOLVED
        )
        self._audit.record(
            AuditEntityType.DISCREPANCY,
            closed.discrepancy_id,
            action,
            actor,
            previous_state=discrepancy.to_state(),
            new_state=closed.to_state(),
            reason=reason,
        )
        logger.info(
            f"discrepancy_{status.value}",
            extra={
                "discrepancy_id": str(closed.discrepancy_id),
                "line_id": closed.line_id,
                "kind": closed.kind.value,
                "amount": str(closed.amount),
                "actor": actor,
            },
        )
        return closed

    def _close_by_id(
        self,
        discrepancy_id: UUID,
        status: DiscrepancyStatus,
        actor: str,
        reason: str | None,
    ) -> Discrepancy:
        if reason is None or not reason.strip():
            raise ResolutionReasonRequiredError(str(discrepancy_id))
        with self._lock:
            current = self.get(discrepancy_id)
            if not current.is_open:
                raise DiscrepancyNotOpenError(str(discrepancy_id), current.status.value)
            closed = self._close(current, status, actor, reason.strip())
            self._reviewed.add(closed.discrepancy_id)
            return closed

    def resolve(self, discrepancy_id: UUID, actor: str, reason: str) -> Discrepancy:
        """Close an open discrepancy as RESOLVED."""
        return self._close_by_id(discrepancy_id, DiscrepancyStatus.RESOLVED, actor, reason)

    def waive(self, discrepancy_id: UUID, actor: str, reason: str) -> Discrepancy:
        """Close an open discrepancy as WAIVED (accepted without correction)."""
        return self._close_by_id(discrepancy_id, DiscrepancyStatus.WAIVED, actor, reason)

    def auto_resolve(self, line_id: str, actor: str, reason: str) -> Discrepancy | None:
        """Resolve the line's open discrepancy, if any."""
        with self._lock:
            current = self.open_for_line(line_id)
            if current is None:
                return None
            return self._close(current, DiscrepancyStatus.RESOLVED, actor, reason)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, discrepancy_id: UUID) -> Discrepancy:
        with self._lock:
            try:
                return self._items[discrepancy_id]
            except KeyError:
                raise DiscrepancyNotFoundError(str(discrepancy_id)) from None

    def open_for_line(self, line_id: str) -> Discrepancy | None:
        with self._lock:
            for discrepancy in self._items.values():
                if discrepancy.line_id == line_id and discrepancy.is_open:
                    return discrepancy
            return None

    def for_line(self, line_id: str) -> list[Discrepancy]:
        with self._lock:
            return [d for d in self._items.values() if d.line_id == line_id]

    def latest_for_line(self, line_id: str) -> Discrepancy | None:
        """The line's most recently detected discrepancy, open or closed."""
        items = self.for_line(line_id)
        return items[-1] if items else None

    def settled_on_review(
        self,
        line_id: str,
        kind: DiscrepancyKind,
        amount: Decimal,
        match_id: UUID | None = None,
    ) -> bool:
        """
        True if a reviewer already closed this exact outcome for the line.

        The line's latest discrepancy must have been closed by ``resolve`` or
        ``waive`` and carry the same kind, amount and match.
        """
        latest = self.latest_for_line(line_id)
        with self._lock:
            return (
                latest is not None
                and not latest.is_open
                and latest.discrepancy_id in self._reviewed
                and latest.kind == kind
                and latest.amount == to_money(amount)
                and latest.match_id == match_id
            )

    def open_discrepancies(self) -> list[Discrepancy]:
        """Open items in (line_id, detected order)."""
        with self._lock:
            return sorted(
                (d for d in self._items.values() if d.is_open),
                key=lambda d: d.line_id,
            )

    def all_discrepancies(self) -> list[Discrepancy]:
        with self._lock:
            return list(self._items.values())

    def events(self) -> tuple[DiscrepancyCreated, ...]:
        with self._lock:
            return tuple(self._events)

    def aggregate_variance(self, run_id: UUID | None = None) -> Decimal:
        """Sum of ``amount`` over all open discrepancies of the run."""
        if run_id is not None and run_id != self._run_id:
            raise RunNotFoundError(str(run_id))
        with self._lock:
            return sum(
                (d.amount for d in self._items.values() if d.is_open),
                ZERO,
            )
