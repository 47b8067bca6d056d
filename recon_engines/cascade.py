"""
recon_engines.cascade -- the five-pass matching cascade.

Responsibility:
    Decide, for one statement line, which candidate records qualify under
    the first pass that yields any candidate, and which of them is selected.
    Evaluation is pure: it reads the CandidateIndex and never claims.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import recon_kernel/domain and sibling engine modules.

Pass table (evaluated in order, first non-empty pass wins):

    Pass | Criteria                                                | Conf
    -----|---------------------------------------------------------|-----
    1    | raw reference, amount, currency equal; same date when   | 100
         | both dates are known                                    |
    2    | as pass 1, dates within the window (7 days)             |  95
    3    | normalized reference, amount, currency equal            |  90
    4    | normalized reference, currency equal, amount within     |  85
         | tolerance (1.00 absolute or 0.5%)                       |
    5    | normalized reference, currency equal, 0 < claimed <     |  75
         | record amount (partial settlement)                      |

Invariants enforced:
    - Short-circuit: once a pass yields a candidate, later passes are never
      evaluated for that line.
    - Deterministic selection: candidates are ranked by (smallest absolute
      amount difference, highest amount, earliest date, record_id).  More
      than one candidate makes the result ambiguous; it is never confirmed
      automatically.
    - Identical inputs produce identical evaluations regardless of thread
      count or line order.

Failure modes:
    - ValueError if a line without amount or currency reaches ``evaluate``
      (lines are validated before the cascade).
"""

from __future__ import annotations

import time
from collections.abc import Callable, Collection, Iterable, Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any

from recon_engines.candidate_index import CandidateIndex
from recon_engines.normalizer import (
    amounts_within_tolerance,
    date_difference_days,
    dates_within_window,
    normalize_reference,
)
from recon_engines.tracer import traced_engine
from recon_kernel.domain.match import DEFAULT_PASS_CONFIDENCE, MatchPass
from recon_kernel.domain.statement import CandidateRecord, StatementLine
from recon_kernel.logging_config import get_logger

logger = get_logger("engines.cascade")

_FAR_FUTURE = date.max


@dataclass(frozen=True)
class MatchingPolicy:
    """Tolerances and confidences the cascade evaluates with."""

    tolerance_absolute: Decimal = Decimal("1.00")
    tolerance_percent: Decimal = Decimal("0.005")
    date_window_days: int = 7
    pass_confidence: Mapping[MatchPass, int] = field(
        default_factory=lambda: dict(DEFAULT_PASS_CONFIDENCE)
    )
    allow_partial: bool = True


@dataclass(frozen=True)
class CandidateSelection:
    """The qualifying candidates of the winning pass, best first."""

    line_id: str
    pass_number: MatchPass
    confidence: int
    selected: CandidateRecord
    alternatives: tuple[CandidateRecord, ...]
    claimed_amount: Decimal
    variance_amount: Decimal
    date_difference_days: int | None
    criteria: tuple[tuple[str, Any], ...]

    @property
    def is_ambiguous(self) -> bool:
        return bool(self.alternatives)

    @property
    def is_exact(self) -> bool:
        return self.pass_number == MatchPass.EXACT

    @property
    def record_ids(self) -> tuple[str, ...]:
        return (self.selected.record_id,)

    @property
    def alternative_record_ids(self) -> tuple[str, ...]:
        return tuple(r.record_id for r in self.alternatives)

    @property
    def candidate_ids(self) -> tuple[str, ...]:
        return self.record_ids + self.alternative_record_ids

    @property
    def matched_amount(self) -> Decimal:
        return self.selected.amount


@dataclass(frozen=True)
class LineEvaluation:
    """Outcome of running the cascade for one line."""

    line_id: str
    passes_attempted: tuple[MatchPass, ...]
    selection: CandidateSelection | None = None

    @property
    def found(self) -> bool:
        return self.selection is not None


def rank_candidates(
    claimed_amount: Decimal,
    candidates: Iterable[CandidateRecord],
) -> list[CandidateRecord]:
    """
    Order candidates best first for selection.

    The closest amount to the claim ranks first; "highest amount" only
    breaks ties between equally close candidates.  For a partial
    settlement of 500.00 against records of 600.00 and 1000.00 the 600.00
    record is selected, leaving the smallest outstanding residual, and the
    1000.00 record is listed as an alternative.
    """
    return sorted(
        candidates,
        key=lambda r: (
            abs(claimed_amount - r.amount),
            -r.amount,
            r.record_date or _FAR_FUTURE,
            r.record_id,
        ),
    )


_Finder = Callable[[StatementLine, CandidateIndex, Collection[str]], list[CandidateRecord]]


class MatchingCascade:
    """
    Five-pass matching cascade.

    Contract:
        ``evaluate`` returns the first pass with at least one candidate, or
        no selection when all passes are empty.  ``start_pass`` lets a line
        that lost a claim resume where it left off.

    Guarantees:
        - Pure: no clock, no claims, no mutation of inputs.

    Non-goals:
        - Does NOT confirm or persist matches; see MatchLedger.
    """

    def __init__(self, policy: MatchingPolicy | None = None):
        self._policy = policy or MatchingPolicy()
        self._passes: tuple[tuple[MatchPass, _Finder], ...] = (
            (MatchPass.EXACT, self._find_exact),
            (MatchPass.DATE_TOLERANCE, self._find_date_tolerant),
            (MatchPass.NORMALIZED_REFERENCE, self._find_normalized),
            (MatchPass.AMOUNT_TOLERANCE, self._find_amount_tolerant),
            (MatchPass.PARTIAL_SETTLEMENT, self._find_partial),
        )

    @property
    def policy(self) -> MatchingPolicy:
        return self._policy

    # ------------------------------------------------------------------
    # Pass criteria
    # ------------------------------------------------------------------

    def _find_exact(self, line, index, exclude):
        candidates = index.lookup_exact(
            line.document_reference, line.currency, line.claimed_amount, exclude,
        )
        return [
            r for r in candidates
            if line.claimed_date is None
            or r.record_date is None
            or r.record_date == line.claimed_date
        ]

    def _find_date_tolerant(self, line, index, exclude):
        candidates = index.lookup_exact(
            line.document_reference, line.currency, line.claimed_amount, exclude,
        )
        return [
            r for r in candidates
            if dates_within_window(line.claimed_date, r.record_date, self._policy.date_window_days)
        ]

    def _find_normalized(self, line, index, exclude):
        candidates = index.lookup_by_normalized_reference(
            normalize_reference(line.document_reference), line.currency, exclude,
        )
        return [r for r in candidates if r.amount == line.claimed_amount]

    def _find_amount_tolerant(self, line, index, exclude):
        candidates = index.lookup_by_normalized_reference(
            normalize_reference(line.document_reference), line.currency, exclude,
        )
        return [
            r for r in candidates
            if amounts_within_tolerance(
                line.claimed_amount,
                r.amount,
                self._policy.tolerance_absolute,
                self._policy.tolerance_percent,
            )
        ]

    def _find_partial(self, line, index, exclude):
        if not self._policy.allow_partial or line.claimed_amount <= 0:
            return []
        candidates = index.lookup_by_normalized_reference(
            normalize_reference(line.document_reference), line.currency, exclude,
        )
        return [r for r in candidates if line.claimed_amount < r.amount]

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def _criteria(self, pass_number: MatchPass) -> tuple[tuple[str, Any], ...]:
        reference = "exact" if pass_number <= MatchPass.DATE_TOLERANCE else "normalized"
        if pass_number == MatchPass.AMOUNT_TOLERANCE:
            amount = "within_tolerance"
        elif pass_number == MatchPass.PARTIAL_SETTLEMENT:
            amount = "partial"
        else:
            amount = "exact"
        criteria = {"reference": reference, "amount": amount, "currency": "exact"}
        if pass_number == MatchPass.EXACT:
            criteria["date"] = "exact"
        elif pass_number == MatchPass.DATE_TOLERANCE:
            criteria["date"] = f"within_{self._policy.date_window_days}_days"
        return tuple(sorted(criteria.items()))

    def _select(
        self,
        line: StatementLine,
        pass_number: MatchPass,
        candidates: list[CandidateRecord],
    ) -> CandidateSelection:
        ranked = rank_candidates(line.claimed_amount, candidates)
        selected = ranked[0]
        if pass_number == MatchPass.PARTIAL_SETTLEMENT:
            variance = selected.amount - line.claimed_amount
        else:
            variance = line.claimed_amount - selected.amount
        return CandidateSelection(
            line_id=line.line_id,
            pass_number=pass_number,
            confidence=self._policy.pass_confidence[pass_number],
            selected=selected,
            alternatives=tuple(ranked[1:]),
            claimed_amount=line.claimed_amount,
            variance_amount=variance,
            date_difference_days=date_difference_days(line.claimed_date, selected.record_date),
            criteria=self._criteria(pass_number),
        )

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    @traced_engine("cascade", "1.0", fingerprint_fields=("line", "start_pass", "exclude"))
    def evaluate(
        self,
        *,
        line: StatementLine,
        index: CandidateIndex,
        start_pass: MatchPass = MatchPass.EXACT,
        exclude: Collection[str] = frozenset(),
    ) -> LineEvaluation:
        """
        Run the cascade for one validated line.

        Raises:
            ValueError: if the line has no amount or currency.
        """
        if line.claimed_amount is None or line.currency is None:
            raise ValueError(f"Line {line.line_id} must be validated before matching")

        if not normalize_reference(line.document_reference):
            logger.debug("line_blank_reference", extra={"line_id": line.line_id})
            return LineEvaluation(line_id=line.line_id, passes_attempted=())

        attempted: list[MatchPass] = []
        for pass_number, finder in self._passes:
            if pass_number < start_pass:
                continue
            attempted.append(pass_number)
            candidates = finder(line, index, exclude)
            if candidates:
                selection = self._select(line, pass_number, candidates)
                logger.debug(
                    "line_evaluated",
                    extra={
                        "line_id": line.line_id,
                        "pass_number": int(pass_number),
                        "candidate_count": len(candidates),
                        "selected_record_id": selection.selected.record_id,
                    },
                )
                return LineEvaluation(
                    line_id=line.line_id,
                    passes_attempted=tuple(attempted),
                    selection=selection,
                )

        logger.debug("line_unmatched", extra={"line_id": line.line_id})
        return LineEvaluation(line_id=line.line_id, passes_attempted=tuple(attempted))

    def evaluate_all(
        self,
        lines: Sequence[StatementLine],
        index: CandidateIndex,
        *,
        max_workers: int = 1,
    ) -> list[LineEvaluation]:
        """
        Evaluate every line against the same index snapshot.

        Results are returned in line_id order whatever the worker count.
        """
        ordered = sorted(lines, key=lambda ln: ln.line_id)
        t0 = time.monotonic()

        def _one(line: StatementLine) -> LineEvaluation:
            return self.evaluate(line=line, index=index)

        if max_workers > 1 and len(ordered) > 1:
            with ThreadPoolExecutor(max_workers=max_workers) as pool:
                evaluations = list(pool.map(_one, ordered))
        else:
            evaluations = [_one(line) for line in ordered]

        logger.info(
            "cascade_evaluated",
            extra={
                "line_count": len(ordered),
                "found_count": sum(1 for e in evaluations if e.found),
                "max_workers": max_workers,
                "duration_ms": round((time.monotonic() - t0) * 1000, 2),
            },
        )
        return evaluations

    def revalidate(
        self,
        evaluation: LineEvaluation,
        line: StatementLine,
        index: CandidateIndex,
    ) -> LineEvaluation:
        """
        Re-check a snapshot evaluation against the index's current state.

        If any candidate of the winning pass has since been claimed, the line
        re-enters the cascade at that pass; a pass whose only candidate was
        taken then falls through to the next one.
        """
        selection = evaluation.selection
        if selection is None:
            return evaluation
        if all(index.is_available(rid) for rid in selection.candidate_ids):
            return evaluation
        logger.info(
            "line_candidate_lost",
            extra={
                "line_id": line.line_id,
                "pass_number": int(selection.pass_number),
                "record_ids": list(selection.candidate_ids),
            },
        )
        resumed = self.evaluate(line=line, index=index, start_pass=selection.pass_number)
        return LineEvaluation(
            line_id=line.line_id,
            passes_attempted=evaluation.passes_attempted[:-1] + resumed.passes_attempted,
            selection=resumed.selection,
        )
