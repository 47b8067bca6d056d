"""
recon_services.reconciliation_service -- statement reconciliation facade.

Responsibility:
    Opens reconciliation runs, drives the matching cascade over a run's
    statement lines, applies the results through the MatchLedger and the
    DiscrepancyTracker, exposes the manual review actions and hands
    sign-off to the SignoffGate.

Architecture position:
    Services -- stateful orchestration over engines + kernel.
    Composes MatchingCascade and CandidateIndex (pure engines) with the
    run-scoped MatchLedger, DiscrepancyTracker and AuditTrail held in a
    RunContext.  No module-level state: every call names its run.

Invariants enforced:
    - One cascade per run at a time (non-blocking lock, ConcurrentRunError).
    - Lines with a confirmed match are never re-evaluated; confirmed
      matches are never disturbed by a rerun.
    - Claims are applied by a single writer in line_id order, so the
      outcome does not depend on how many threads evaluated the lines.
    - Malformed lines never abort a batch: each becomes a per-line
      LineValidationError plus an UNMATCHED discrepancy noted
      "invalid input".
    - A signed-off run accepts no further mutation.

Failure modes:
    - RunNotFoundError, LineNotFoundError, RecordNotFoundError for unknown
      identifiers.
    - ConcurrentRunError when a cascade is already in flight (retryable).
    - RunAlreadySignedOffError for any mutation after sign-off.
    - Ledger and tracker errors propagate unchanged from manual actions.

Audit relevance:
    RUN_OPENED, LINE_INVALID and CASCADE_COMPLETED are recorded here; all
    match and discrepancy changes are recorded by their owners.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import replace
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from recon_config import get_active_config
from recon_config.schema import ReconConfig
from recon_engines.candidate_index import CandidateIndex
from recon_engines.cascade import (
    CandidateSelection,
    LineEvaluation,
    MatchingCascade,
    MatchingPolicy,
)
from recon_kernel.domain.audit import AuditAction, AuditEntityType
from recon_kernel.domain.clock import Clock, SystemClock
from recon_kernel.domain.discrepancy import (
    Discrepancy,
    DiscrepancyCreated,
    DiscrepancyKind,
    DiscrepancySeverity,
)
from recon_kernel.domain.match import Match, MatchedBy, MatchPass
from recon_kernel.domain.results import (
    CascadeResult,
    LineOutcome,
    LineValidationError,
    MatchSummary,
    ReadinessResult,
    SignOffResult,
)
from recon_kernel.domain.run import ReconciliationRun, SignoffStatus, StatementPeriod
from recon_kernel.domain.statement import CandidateRecord, StatementLine
from recon_kernel.domain.validation import validate_statement_line
from recon_kernel.domain.values import ZERO, to_money
from recon_kernel.exceptions import (
    CandidateUnavailableError,
    ConcurrentRunError,
    LineNotFoundError,
    RecordNotFoundError,
    RunAlreadySignedOffError,
    RunNotFoundError,
)
from recon_kernel.logging_config import LogContext, get_logger
from recon_services.audit_trail import AuditTrail
from recon_services.discrepancy_tracker import DiscrepancyTracker
from recon_services.match_ledger import (
    CANDIDATE_CONSUMED_REASON,
    NO_CANDIDATE_REASON,
    MatchLedger,
)
from recon_services.run_context import RunContext
from recon_services.signoff_gate import SignoffGate

logger = get_logger("services.reconciliation")

SYSTEM_ACTOR = "system"


def _selection_key(selection: CandidateSelection) -> tuple:
    """Same shape as ``Match.proposal_key`` for an evaluated selection."""
    return (
        selection.line_id,
        selection.record_ids,
        int(selection.pass_number),
        selection.confidence,
        selection.is_exact,
        str(to_money(selection.variance_amount)),
        selection.is_ambiguous,
        selection.alternative_record_ids,
    )


class ReconciliationService:
    """
    Entry point for statement reconciliation.

    Contract:
        ``open_run`` returns a RunContext; every other operation takes the
        run_id.  Results are returned as values (CascadeResult,
        MatchSummary, ReadinessResult, SignOffResult); exceptions are
        reserved for unknown ids, concurrency conflicts and invariant
        violations.

    Guarantees:
        - Independent runs never share state and may be driven from
          different threads in parallel.
        - Two cascades over the same inputs produce identical proposals.

    Non-goals:
        - Does NOT parse statements or fetch candidate records; callers
          supply both as typed records.
        - Does NOT persist; see RunStore.
    """

    def __init__(self, config: ReconConfig | None = None, clock: Clock | None = None):
        self._config = config or get_active_config()
        self._clock = clock or SystemClock()
        self._cascade = MatchingCascade(
            MatchingPolicy(
                tolerance_absolute=self._config.tolerance.absolute,
                tolerance_percent=self._config.tolerance.percent,
                date_window_days=self._config.date_window_days,
                pass_confidence=dict(self._config.pass_confidence),
                allow_partial=self._config.allow_partial,
            )
        )
        self._gate = SignoffGate(self._config.tolerance, self._clock)
        self._runs: dict[UUID, RunContext] = {}
        self._registry_lock = threading.Lock()
        self._subscribers: list[Callable[[DiscrepancyCreated], None]] = []

    @property
    def config(self) -> ReconConfig:
        return self._config

    @property
    def gate(self) -> SignoffGate:
        return self._gate

    # ------------------------------------------------------------------
    # Run registry
    # ------------------------------------------------------------------

    def open_run(
        self,
        counterparty_id: str,
        statement_period: StatementPeriod,
        lines: Iterable[StatementLine],
        candidates: Iterable[CandidateRecord],
        *,
        run_id: UUID | None = None,
        actor: str = SYSTEM_ACTOR,
    ) -> RunContext:
        """
        Register a run over one statement and the counterparty's snapshot.

        Raises:
            ValueError: on a duplicate line_id or candidate record_id.
        """
        run_id = run_id or uuid4()
        by_line: dict[str, StatementLine] = {}
        for line in lines:
            if line.line_id in by_line:
                raise ValueError(f"Duplicate statement line id: {line.line_id}")
            by_line[line.line_id] = line

        audit = AuditTrail(run_id, self._clock)
        tracker = DiscrepancyTracker(
            run_id,
            audit,
            self._clock,
            tolerance=self._config.tolerance,
            severity=self._config.severity,
        )
        for callback in self._subscribers:
            tracker.subscribe(callback)
        index = CandidateIndex(candidates, counterparty_id=counterparty_id)
        ledger = MatchLedger(run_id, index, tracker, audit, self._clock)

        total_claimed = sum(
            (ln.claimed_amount for ln in by_line.values() if ln.claimed_amount is not None),
            ZERO,
        )
        run = ReconciliationRun(
            run_id=run_id,
            counterparty_id=counterparty_id,
            statement_period=statement_period,
            created_at=self._clock.now(),
            total_claimed=total_claimed,
        )
        context = RunContext(
            run=run,
            lines=by_line,
            index=index,
            ledger=ledger,
            tracker=tracker,
            audit=audit,
        )

        with self._registry_lock:
            if run_id in self._runs:
                raise ValueError(f"Run already registered: {run_id}")
            self._runs[run_id] = context

        audit.record(
            AuditEntityType.RUN,
            run_id,
            AuditAction.RUN_OPENED,
            actor,
            new_state=run.to_state(),
        )
        logger.info(
            "run_opened",
            extra={
                "run_id": str(run_id),
                "counterparty_id": counterparty_id,
                "statement_period": str(statement_period),
                "line_count": len(by_line),
                "candidate_count": len(index),
                "total_claimed": str(total_claimed),
            },
        )
        return context

    def get_context(self, run_id: UUID) -> RunContext:
        with self._registry_lock:
            try:
                return self._runs[run_id]
            except KeyError:
                raise RunNotFoundError(str(run_id)) from None

    def get_run(self, run_id: UUID) -> ReconciliationRun:
        return self.get_context(run_id).run

    def subscribe(self, callback: Callable[[DiscrepancyCreated], None]) -> None:
        """Deliver every DiscrepancyCreated event, for current and future runs."""
        with self._registry_lock:
            self._subscribers.append(callback)
            contexts = list(self._runs.values())
        for context in contexts:
            context.tracker.subscribe(callback)

    # ------------------------------------------------------------------
    # Cascade
    # ------------------------------------------------------------------

    @contextmanager
    def _exclusive(self, context: RunContext, wait: bool) -> Iterator[None]:
        if not context.cascade_lock.acquire(blocking=wait):
            logger.warning("cascade_in_progress", extra={"run_id": str(context.run_id)})
            raise ConcurrentRunError(str(context.run_id))
        try:
            yield
        finally:
            context.cascade_lock.release()

    def run_cascade(
        self,
        run_id: UUID,
        *,
        actor: str = SYSTEM_ACTOR,
        wait: bool = False,
    ) -> CascadeResult:
        """
        Match every line of the run that has no confirmed match.

        Raises:
            ConcurrentRunError: another cascade is running and ``wait`` is False.
            RunAlreadySignedOffError: the run is closed.
        """
        context = self.get_context(run_id)
        with self._exclusive(context, wait), LogContext.bind(run_id=run_id, actor_id=actor):
            return self._execute_cascade(context, actor)

    def rerun(
        self,
        run_id: UUID,
        candidates: Iterable[CandidateRecord] | None = None,
        *,
        actor: str = SYSTEM_ACTOR,
        wait: bool = False,
    ) -> CascadeResult:
        """
        Rerun the cascade, optionally against a refreshed candidate snapshot.

        Confirmed matches and their consumed records are kept; only lines
        without a confirmed match are evaluated again.  A proposal over
        records a review rejected for the line stays PROPOSED, and an
        outcome a reviewer resolved or waived is not reopened.
        """
        context = self.get_context(run_id)
        with self._exclusive(context, wait), LogContext.bind(run_id=run_id, actor_id=actor):
            self._ensure_open(context, "rerun")
            if candidates is not None:
                context.index.rebuild(candidates)
                logger.info(
                    "candidate_snapshot_refreshed",
                    extra={"run_id": str(run_id), "candidate_count": len(context.index)},
                )
            return self._execute_cascade(context, actor)

    def _execute_cascade(self, context: RunContext, actor: str) -> CascadeResult:
        t0 = time.monotonic()
        self._ensure_open(context, "run_cascade")
        run_id = context.run_id
        events_before = len(context.tracker.events())

        errors: list[LineValidationError] = []
        pending_lines: list[StatementLine] = []
        for line in context.ordered_lines():
            error = validate_statement_line(line, context.run.counterparty_id)
            if error is not None:
                errors.append(error)
                self._record_invalid(context, line, error, actor)
                continue
            if context.ledger.active_match(line.line_id) is None:
                pending_lines.append(line)

        logger.info(
            "cascade_started",
            extra={
                "run_id": str(run_id),
                "line_count": len(context.lines),
                "eligible_count": len(pending_lines),
                "invalid_count": len(errors),
                "attempt": context.cascade_runs + 1,
            },
        )

        evaluations = self._cascade.evaluate_all(
            pending_lines, context.index, max_workers=self._config.max_workers,
        )
        for evaluation in evaluations:
            self._apply_evaluation(context, context.lines[evaluation.line_id], evaluation, actor)

        with context.state_lock:
            context.cascade_runs += 1
        self._refresh(context)

        summary = self.summary(run_id)
        outcomes = tuple(self._outcome(context, line_id) for line_id in sorted(context.lines))
        events = context.tracker.events()[events_before:]
        duration_ms = round((time.monotonic() - t0) * 1000, 2)

        context.audit.record(
            AuditEntityType.RUN,
            run_id,
            AuditAction.CASCADE_COMPLETED,
            actor,
            new_state={
                "total_lines": summary.total_lines,
                "matched_exact": summary.matched_exact,
                "matched_tolerant": summary.matched_tolerant,
                "matched_partial": summary.matched_partial,
                "matched_manual": summary.matched_manual,
                "unmatched": summary.unmatched,
                "pending_confirmation": summary.pending_confirmation,
                "net_variance": str(summary.net_variance),
            },
        )
        logger.info(
            "cascade_completed",
            extra={
                "run_id": str(run_id),
                "matched": summary.matched,
                "unmatched": summary.unmatched,
                "pending_confirmation": summary.pending_confirmation,
                "invalid": summary.invalid,
                "net_variance": str(summary.net_variance),
                "discrepancies_created": len(events),
                "duration_ms": duration_ms,
            },
        )
        return CascadeResult(
            run_id=run_id,
            summary=summary,
            outcomes=outcomes,
            errors=tuple(errors),
            events=events,
            duration_ms=duration_ms,
        )

    def _record_invalid(
        self,
        context: RunContext,
        line: StatementLine,
        error: LineValidationError,
        actor: str,
    ) -> None:
        with context.state_lock:
            first_time = line.line_id not in context.validation_errors
            context.validation_errors[line.line_id] = error
        if first_time:
            context.audit.record(
                AuditEntityType.LINE,
                line.line_id,
                AuditAction.LINE_INVALID,
                actor,
                new_state={"issues": list(error.issues)},
                reason=error.message,
            )
            logger.warning(
                "line_invalid",
                extra={"line_id": line.line_id, "issues": list(error.issues)},
            )
        amount = line.claimed_amount if line.claimed_amount is not None else ZERO
        self._note_discrepancy(
            context,
            line.line_id,
            DiscrepancyKind.UNMATCHED,
            amount,
            reference_amount=amount,
            description=error.message,
            severity=DiscrepancySeverity.CRITICAL,
            actor=actor,
        )

    def _apply_evaluation(
        self,
        context: RunContext,
        line: StatementLine,
        evaluation: LineEvaluation,
        actor: str,
    ) -> None:
        """Single-writer step: turn one line's evaluation into ledger state."""
        ledger = context.ledger
        with ledger.line_lock(line.line_id), LogContext.bind(line_id=line.line_id):
            while True:
                evaluation = self._cascade.revalidate(evaluation, line, context.index)
                selection = evaluation.selection
                pending = ledger.pending_match(line.line_id)

                if selection is None:
                    if pending is not None:
                        ledger.reject(
                            pending.match_id,
                            actor,
                            NO_CANDIDATE_REASON,
                            open_unmatched=False,
                        )
                    self._note_discrepancy(
                        context,
                        line.line_id,
                        DiscrepancyKind.UNMATCHED,
                        line.claimed_amount,
                        reference_amount=line.claimed_amount,
                        description="no candidate record satisfied any matching pass",
                        actor=actor,
                    )
                    return

                if pending is not None and pending.proposal_key() == _selection_key(selection):
                    if pending.is_ambiguous:
                        self._flag_ambiguous(context, line, pending, actor)
                    return

                match = ledger.propose(
                    line.line_id,
                    selection.record_ids,
                    selection.pass_number,
                    selection.confidence,
                    selection.variance_amount,
                    claimed_amount=selection.claimed_amount,
                    matched_amount=selection.matched_amount,
                    is_exact=selection.is_exact,
                    is_ambiguous=selection.is_ambiguous,
                    alternative_record_ids=selection.alternative_record_ids,
                    criteria=selection.criteria,
                    date_difference_days=selection.date_difference_days,
                    actor=actor,
                )

                if match.is_ambiguous:
                    self._flag_ambiguous(context, line, match, actor)
                    return

                if ledger.rejected_on_review(line.line_id, match.record_ids):
                    logger.info(
                        "proposal_held_for_review",
                        extra={"match_id": str(match.match_id), "record_ids": list(match.record_ids)},
                    )
                    return

                try:
                    ledger.confirm(match.match_id, actor)
                    return
                except CandidateUnavailableError:
                    ledger.reject(
                        match.match_id,
                        actor,
                        CANDIDATE_CONSUMED_REASON,
                        open_unmatched=False,
                    )

    @classmethod
    def _flag_ambiguous(
        cls,
        context: RunContext,
        line: StatementLine,
        match: Match,
        actor: str,
    ) -> None:
        candidates = ", ".join(match.record_ids + match.alternative_record_ids)
        cls._note_discrepancy(
            context,
            line.line_id,
            DiscrepancyKind.DUPLICATE_CLAIM,
            line.claimed_amount,
            reference_amount=line.claimed_amount,
            description=(
                f"{1 + len(match.alternative_record_ids)} candidates qualify under "
                f"pass {int(match.pass_number)}: {candidates}"
            ),
            match_id=match.match_id,
            actor=actor,
        )

    @staticmethod
    def _note_discrepancy(
        context: RunContext,
        line_id: str,
        kind: DiscrepancyKind,
        amount: Decimal,
        **details: Any,
    ) -> None:
        """Record a cascade outcome unless a reviewer already settled it."""
        if context.tracker.settled_on_review(
            line_id, kind, amount, details.get("match_id"),
        ):
            logger.debug(
                "discrepancy_left_settled",
                extra={"line_id": line_id, "kind": kind.value},
            )
            return
        context.tracker.ensure_discrepancy(line_id, kind, amount, **details)

    # ------------------------------------------------------------------
    # Manual review actions
    # ------------------------------------------------------------------

    def propose_manual_match(
        self,
        run_id: UUID,
        line_id: str,
        record_ids: Sequence[str],
        actor: str,
    ) -> Match:
        """
        Propose a reviewer-chosen match.  It still requires ``confirm_match``.

        Raises:
            LineNotFoundError, RecordNotFoundError, ValueError (line has
            invalid input or no records given), DuplicateActiveMatchError
            (reject the confirmed match first).
        """
        context = self.get_context(run_id)
        self._ensure_open(context, "propose_manual_match")
        line = context.lines.get(line_id)
        if line is None:
            raise LineNotFoundError(str(run_id), line_id)
        if line_id in context.validation_errors or line.claimed_amount is None:
            raise ValueError(f"Line {line_id} has invalid input and cannot be matched")
        if not record_ids:
            raise ValueError("A manual match requires at least one record id")

        records = []
        for record_id in record_ids:
            record = context.index.get(record_id)
            if record is None:
                raise RecordNotFoundError(record_id)
            records.append(record)
        matched_amount = sum((r.amount for r in records), ZERO)

        with LogContext.bind(run_id=run_id, actor_id=actor, line_id=line_id):
            match = context.ledger.propose(
                line_id,
                tuple(record_ids),
                None,
                100,
                line.claimed_amount - matched_amount,
                claimed_amount=line.claimed_amount,
                matched_amount=matched_amount,
                is_exact=False,
                criteria=(("selection", "manual"),),
                matched_by=MatchedBy.MANUAL,
                actor=actor,
            )
        self._refresh(context)
        return match

    def confirm_match(self, run_id: UUID, match_id: UUID, actor: str) -> Match:
        context = self.get_context(run_id)
        self._ensure_open(context, "confirm_match")
        with LogContext.bind(run_id=run_id, actor_id=actor):
            match = context.ledger.confirm(match_id, actor)
        self._refresh(context)
        return match

    def reject_match(self, run_id: UUID, match_id: UUID, actor: str, reason: str) -> Match:
        context = self.get_context(run_id)
        self._ensure_open(context, "reject_match")
        with LogContext.bind(run_id=run_id, actor_id=actor):
            match = context.ledger.reject(match_id, actor, reason)
        self._refresh(context)
        return match

    def resolve_discrepancy(
        self, run_id: UUID, discrepancy_id: UUID, actor: str, reason: str,
    ) -> Discrepancy:
        context = self.get_context(run_id)
        self._ensure_open(context, "resolve_discrepancy")
        with LogContext.bind(run_id=run_id, actor_id=actor):
            discrepancy = context.tracker.resolve(discrepancy_id, actor, reason)
        self._refresh(context)
        return discrepancy

    def waive_discrepancy(
        self, run_id: UUID, discrepancy_id: UUID, actor: str, reason: str,
    ) -> Discrepancy:
        context = self.get_context(run_id)
        self._ensure_open(context, "waive_discrepancy")
        with LogContext.bind(run_id=run_id, actor_id=actor):
            discrepancy = context.tracker.waive(discrepancy_id, actor, reason)
        self._refresh(context)
        return discrepancy

    # ------------------------------------------------------------------
    # Reporting and sign-off
    # ------------------------------------------------------------------

    def summary(self, run_id: UUID) -> MatchSummary:
        """Counts of the run's lines by outcome."""
        context = self.get_context(run_id)
        exact = tolerant = partial = manual = unmatched = pending = invalid = 0
        for line_id in sorted(context.lines):
            if line_id in context.validation_errors:
                invalid += 1
                unmatched += 1
                continue
            active = context.ledger.active_match(line_id)
            if active is None:
                unmatched += 1
                if context.ledger.pending_match(line_id) is not None:
                    pending += 1
            elif active.pass_number == MatchPass.EXACT:
                exact += 1
            elif active.pass_number == MatchPass.PARTIAL_SETTLEMENT:
                partial += 1
            elif active.pass_number is None:
                manual += 1
            else:
                tolerant += 1
        return MatchSummary(
            run_id=run_id,
            total_lines=len(context.lines),
            matched_exact=exact,
            matched_tolerant=tolerant,
            matched_partial=partial,
            unmatched=unmatched,
            net_variance=context.tracker.aggregate_variance(run_id),
            pending_confirmation=pending,
            invalid=invalid,
            matched_manual=manual,
        )

    def aggregate_variance(self, run_id: UUID) -> Decimal:
        return self.get_context(run_id).tracker.aggregate_variance(run_id)

    def evaluate_readiness(self, run_id: UUID) -> ReadinessResult:
        return self._gate.evaluate_readiness(self.get_context(run_id))

    def sign_off(self, run_id: UUID, actor: str) -> SignOffResult:
        context = self.get_context(run_id)
        with LogContext.bind(run_id=run_id, actor_id=actor):
            return self._gate.sign_off(context, actor)

    def matches(self, run_id: UUID) -> list[Match]:
        return self.get_context(run_id).ledger.all_matches()

    def discrepancies(self, run_id: UUID) -> list[Discrepancy]:
        return self.get_context(run_id).tracker.all_discrepancies()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _ensure_open(context: RunContext, operation: str) -> None:
        if context.run.is_signed_off:
            raise RunAlreadySignedOffError(str(context.run_id), operation)

    def _refresh(self, context: RunContext) -> None:
        """Recompute run totals and the READY / NOT_READY status."""
        with context.state_lock:
            if context.run.is_signed_off:
                return
            total_matched = sum(
                (m.matched_amount for m in context.ledger.all_matches() if m.is_active),
                ZERO,
            )
            net_variance = context.tracker.aggregate_variance(context.run_id)
            readiness = self._gate.evaluate_readiness(context)
            context.run = replace(
                context.run,
                total_matched=total_matched,
                net_variance=net_variance,
                signoff_status=(
                    SignoffStatus.READY if readiness.ready else SignoffStatus.NOT_READY
                ),
            )

    def _outcome(self, context: RunContext, line_id: str) -> LineOutcome:
        ledger = context.ledger
        match = ledger.active_match(line_id) or ledger.pending_match(line_id)
        discrepancy = context.tracker.open_for_line(line_id)
        return LineOutcome(
            line_id=line_id,
            match=match,
            error=context.validation_errors.get(line_id),
            discrepancy_id=discrepancy.discrepancy_id if discrepancy else None,
        )
