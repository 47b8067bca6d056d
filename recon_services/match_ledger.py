"""
MatchLedger -- append-only record of proposed, confirmed and rejected matches.

Responsibility:
    Owns every Match version of one run.  Enforces at most one CONFIRMED
    match per statement line, claims candidate records in the run's
    CandidateIndex on confirmation and keeps the line's discrepancy in step
    with its match state.

Architecture position:
    Services -- in-memory, owned by one RunContext.  Collaborates with the
    CandidateIndex (claims), the DiscrepancyTracker and the AuditTrail.

Invariants enforced:
    - At most one CONFIRMED match per line at any time.
    - At most one PROPOSED match per line: a new proposal rejects the older
      one as superseded.
    - Status changes are compare-and-swap under a per-line lock; history is
      never overwritten, each version is audited with its previous state.

Failure modes:
    - DuplicateActiveMatchError: proposing for a line that is already
      confirmed.  An invariant defect, logged at CRITICAL.
    - InvalidMatchTransitionError: e.g. confirming a rejected match.
    - CandidateUnavailableError: a record was consumed by another match
      between proposal and confirmation.
    - MatchNotFoundError, RejectionReasonRequiredError.

Audit relevance:
    MATCH_PROPOSED, MATCH_CONFIRMED and MATCH_REJECTED entries carry the
    actor, timestamp and full previous/new state of the match.
"""

from __future__ import annotations

import threading
from collections import defaultdict
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import replace
from decimal import Decimal
from typing import Any
from uuid import UUID

from recon_engines.candidate_index import CandidateIndex
from recon_kernel.domain.audit import AuditAction, AuditEntityType, AuditEntry
from recon_kernel.domain.clock import Clock, SystemClock
from recon_kernel.domain.discrepancy import DiscrepancyKind
from recon_kernel.domain.match import (
    ALLOWED_MATCH_TRANSITIONS,
    Match,
    MatchedBy,
    MatchPass,
    MatchStatus,
)
from recon_kernel.domain.values import format_money, to_money
from recon_kernel.exceptions import (
    CandidateUnavailableError,
    DuplicateActiveMatchError,
    InvalidMatchTransitionError,
    MatchNotFoundError,
    RejectionReasonRequiredError,
)
from recon_kernel.logging_config import LogContext, get_logger
from recon_kernel.utils.hashing import derive_id
from recon_services.audit_trail import AuditTrail
from recon_services.discrepancy_tracker import DiscrepancyTracker

logger = get_logger("services.match_ledger")

SUPERSEDED_REASON = "superseded by a newer proposal"
NO_CANDIDATE_REASON = "no candidate qualifies any longer"
CANDIDATE_CONSUMED_REASON = "candidate record consumed by another match"

# Rejections the cascade makes of its own proposals.  Any other rejection
# is a review decision.
WITHDRAWAL_REASONS = frozenset({
    SUPERSEDED_REASON,
    NO_CANDIDATE_REASON,
    CANDIDATE_CONSUMED_REASON,
})


class MatchLedger:
    """
    Match lifecycle for one reconciliation run.

    Contract:
        propose -> PROPOSED; confirm PROPOSED -> CONFIRMED;
        reject PROPOSED|CONFIRMED -> REJECTED (terminal).

    Guarantees:
        - Operations on one line are serialized; different lines proceed
          in parallel.
        - Match ids are derived from (run, line, sequence).

    Non-goals:
        - Does NOT decide which records match; see MatchingCascade.
    """

    def __init__(
        self,
        run_id: UUID,
        index: CandidateIndex,
        tracker: DiscrepancyTracker,
        audit: AuditTrail,
        clock: Clock | None = None,
    ):
        self._run_id = run_id
        self._index = index
        self._tracker = tracker
        self._audit = audit
        self._clock = clock or SystemClock()
        self._matches: dict[UUID, Match] = {}
        self._by_line: dict[str, list[UUID]] = defaultdict(list)
        self._line_seq: dict[str, int] = defaultdict(int)
        self._line_locks: dict[str, threading.RLock] = {}
        self._guard = threading.Lock()

    @property
    def run_id(self) -> UUID:
        return self._run_id

    @contextmanager
    def line_lock(self, line_id: str) -> Iterator[None]:
        """Hold the line's lock; re-entrant for the owning thread."""
        with self._guard:
            lock = self._line_locks.setdefault(line_id, threading.RLock())
        with lock:
            yield

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def propose(
        self,
        line_id: str,
        record_ids: tuple[str, ...],
        pass_number: MatchPass | None,
        confidence: int,
        variance: Decimal,
        *,
        claimed_amount: Decimal,
        matched_amount: Decimal | None = None,
        is_exact: bool = False,
        is_ambiguous: bool = False,
        alternative_record_ids: tuple[str, ...] = (),
        criteria: tuple[tuple[str, Any], ...] = (),
        matched_by: MatchedBy = MatchedBy.SYSTEM,
        date_difference_days: int | None = None,
        actor: str = "system",
    ) -> Match:
        """
        Record a new PROPOSED match for the line.

        Raises:
            DuplicateActiveMatchError: if the line already has a confirmed match.
        """
        with self.line_lock(line_id):
            active = self.active_match(line_id)
            if active is not None:
                logger.critical(
                    "duplicate_active_match",
                    extra={"line_id": line_id, "active_match_id": str(active.match_id)},
                )
                raise DuplicateActiveMatchError(line_id, str(active.match_id))

            pending = self.pending_match(line_id)
            if pending is not None:
                self._reject(pending, actor, SUPERSEDED_REASON)

            self._line_seq[line_id] += 1
            claimed = to_money(claimed_amount)
            if matched_amount is None:
                matched_amount = claimed - to_money(variance)
            match = Match(
                match_id=derive_id(self._run_id, "match", line_id, self._line_seq[line_id]),
                run_id=self._run_id,
                line_id=line_id,
                record_ids=tuple(record_ids),
                pass_number=pass_number,
                confidence_score=confidence,
                is_exact=is_exact,
                variance_amount=to_money(variance),
                status=MatchStatus.PROPOSED,
                created_at=self._clock.now(),
                claimed_amount=claimed,
                matched_amount=to_money(matched_amount),
                is_ambiguous=is_ambiguous,
                alternative_record_ids=tuple(alternative_record_ids),
                criteria=tuple(criteria),
                matched_by=matched_by,
                date_difference_days=date_difference_days,
            )
            self._store(match)
            self._audit.record(
                AuditEntityType.MATCH,
                match.match_id,
                AuditAction.MATCH_PROPOSED,
                actor,
                new_state=match.to_state(),
            )

        logger.info(
            "match_proposed",
            extra={
                "match_id": str(match.match_id),
                "line_id": line_id,
                "record_ids": list(match.record_ids),
                "pass_number": int(pass_number) if pass_number is not None else None,
                "confidence": confidence,
                "variance_amount": str(match.variance_amount),
                "is_ambiguous": is_ambiguous,
            },
        )
        return match

    def confirm(self, match_id: UUID, actor: str) -> Match:
        """
        PROPOSED -> CONFIRMED, claiming the referenced records.

        A zero variance resolves the line's open discrepancy; any other
        variance leaves an AMOUNT_VARIANCE discrepancy open.
        """
        line_id = self.get(match_id).line_id
        with self.line_lock(line_id), LogContext.bind(match_id=str(match_id)):
            current = self.get(match_id)
            if current.status != MatchStatus.PROPOSED:
                raise InvalidMatchTransitionError(
                    str(match_id), current.status.value, MatchStatus.CONFIRMED.value,
                )
            active = self.active_match(line_id)
            if active is not None:
                logger.critical(
                    "duplicate_active_match",
                    extra={"line_id": line_id, "active_match_id": str(active.match_id)},
                )
                raise DuplicateActiveMatchError(line_id, str(active.match_id))

            if not self._index.claim(current.record_ids):
                unavailable = tuple(
                    rid for rid in current.record_ids if not self._index.is_available(rid)
                )
                raise CandidateUnavailableError(str(match_id), unavailable)

            confirmed = replace(
                current,
                status=MatchStatus.CONFIRMED,
                confirmed_by=actor,
                confirmed_at=self._clock.now(),
            )
            self._store(confirmed)
            self._audit.record(
                AuditEntityType.MATCH,
                match_id,
                AuditAction.MATCH_CONFIRMED,
                actor,
                previous_state=current.to_state(),
                new_state=confirmed.to_state(),
            )

            if confirmed.variance_amount == 0:
                self._tracker.auto_resolve(line_id, actor, f"matched by {match_id}")
            else:
                self._tracker.ensure_discrepancy(
                    line_id,
                    DiscrepancyKind.AMOUNT_VARIANCE,
                    confirmed.variance_amount,
                    reference_amount=confirmed.claimed_amount,
                    description=self._variance_description(confirmed),
                    match_id=match_id,
                    actor=actor,
                )

            logger.info(
                "match_confirmed",
                extra={
                    "match_id": str(match_id),
                    "line_id": line_id,
                    "record_ids": list(confirmed.record_ids),
                    "actor": actor,
                    "variance_amount": str(confirmed.variance_amount),
                },
            )
        return confirmed

    def reject(
        self,
        match_id: UUID,
        actor: str,
        reason: str,
        *,
        open_unmatched: bool = True,
    ) -> Match:
        """
        PROPOSED|CONFIRMED -> REJECTED.

        A confirmed match releases its records.  Unless ``open_unmatched`` is
        False, a line left without a confirmed match gets an UNMATCHED
        discrepancy.
        """
        if reason is None or not reason.strip():
            raise RejectionReasonRequiredError(str(match_id))
        line_id = self.get(match_id).line_id
        with self.line_lock(line_id):
            rejected = self._reject(self.get(match_id), actor, reason.strip())
            if open_unmatched and self.active_match(line_id) is None:
                self._tracker.ensure_discrepancy(
                    line_id,
                    DiscrepancyKind.UNMATCHED,
                    rejected.claimed_amount,
                    reference_amount=rejected.claimed_amount,
                    description=f"match rejected: {reason.strip()}",
                    actor=actor,
                )
        return rejected

    def replace(
        self,
        match_id: UUID,
        actor: str,
        reason: str,
        record_ids: tuple[str, ...],
        pass_number: MatchPass | None,
        confidence: int,
        variance: Decimal,
        **proposal: Any,
    ) -> Match:
        """Reject ``match_id`` and propose a replacement atomically for its line."""
        if reason is None or not reason.strip():
            raise RejectionReasonRequiredError(str(match_id))
        line_id = self.get(match_id).line_id
        with self.line_lock(line_id):
            self.reject(match_id, actor, reason, open_unmatched=False)
            return self.propose(
                line_id,
                record_ids,
                pass_number,
                confidence,
                variance,
                actor=actor,
                **proposal,
            )

    def _reject(self, current: Match, actor: str, reason: str) -> Match:
        if MatchStatus.REJECTED not in ALLOWED_MATCH_TRANSITIONS[current.status]:
            raise InvalidMatchTransitionError(
                str(current.match_id), current.status.value, MatchStatus.REJECTED.value,
            )
        if current.status == MatchStatus.CONFIRMED:
            self._index.release(current.record_ids)

        rejected = replace(
            current,
            status=MatchStatus.REJECTED,
            rejected_by=actor,
            rejected_at=self._clock.now(),
            rejection_reason=reason,
        )
        self._store(rejected)
        self._audit.record(
            AuditEntityType.MATCH,
            current.match_id,
            AuditAction.MATCH_REJECTED,
            actor,
            previous_state=current.to_state(),
            new_state=rejected.to_state(),
            reason=reason,
        )
        logger.info(
            "match_rejected",
            extra={
                "match_id": str(current.match_id),
                "line_id": current.line_id,
                "previous_status": current.status.value,
                "actor": actor,
                "reason": reason,
            },
        )
        return rejected

    def _store(self, match: Match) -> None:
        with self._guard:
            if match.match_id not in self._matches:
                self._by_line[match.line_id].append(match.match_id)
            self._matches[match.match_id] = match

    @staticmethod
    def _variance_description(match: Match) -> str:
        if match.is_partial:
            return f"partial settlement, {format_money(match.variance_amount)} outstanding"
        return f"claimed {format_money(match.claimed_amount)} vs matched {format_money(match.matched_amount)}"

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, match_id: UUID) -> Match:
        with self._guard:
            try:
                return self._matches[match_id]
            except KeyError:
                raise MatchNotFoundError(str(match_id)) from None

    def matches_for_line(self, line_id: str) -> list[Match]:
        """Every version's current state for the line, oldest first."""
        with self._guard:
            return [self._matches[mid] for mid in self._by_line.get(line_id, [])]

    def active_match(self, line_id: str) -> Match | None:
        """The line's CONFIRMED match, if any."""
        for match in self.matches_for_line(line_id):
            if match.status == MatchStatus.CONFIRMED:
                return match
        return None

    def pending_match(self, line_id: str) -> Match | None:
        for match in self.matches_for_line(line_id):
            if match.status == MatchStatus.PROPOSED:
                return match
        return None

    def rejected_on_review(self, line_id: str, record_ids: tuple[str, ...]) -> bool:
        """
        True if a rejection of the line's earlier match over any of
        ``record_ids`` was a review decision.

        Decided from the stored rejection reason alone, so it holds
        whoever runs the cascade afterwards.
        """
        wanted = set(record_ids)
        return any(
            m.status == MatchStatus.REJECTED
            and m.rejection_reason not in WITHDRAWAL_REASONS
            and wanted.intersection(m.record_ids)
            for m in self.matches_for_line(line_id)
        )

    def all_matches(self) -> list[Match]:
        with self._guard:
            return list(self._matches.values())

    def confirmed_record_ids(self) -> frozenset[str]:
        with self._guard:
            return frozenset(
                rid
                for match in self._matches.values()
                if match.status == MatchStatus.CONFIRMED
                for rid in match.record_ids
            )

    def history(self, match_id: UUID) -> tuple[AuditEntry, ...]:
        """Audit entries of one match, oldest first."""
        self.get(match_id)
        return self._audit.history(AuditEntityType.MATCH, match_id)
