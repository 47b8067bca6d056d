"""
Tests for MatchLedger.

Covers:
- PROPOSED -> CONFIRMED -> REJECTED lifecycle and its audit history
- At most one confirmed and one pending match per line
- Record claims on confirmation and release on rejection
- Discrepancy side effects (auto-resolve, amount variance, unmatched)
"""

import pytest
from decimal import Decimal
from uuid import UUID

from recon_engines.candidate_index import CandidateIndex
from recon_kernel.domain.audit import AuditAction
from recon_kernel.domain.discrepancy import DiscrepancyKind, DiscrepancyStatus
from recon_kernel.domain.match import MatchPass, MatchStatus
from recon_kernel.exceptions import (
    CandidateUnavailableError,
    DuplicateActiveMatchError,
    InvalidMatchTransitionError,
    MatchNotFoundError,
    RejectionReasonRequiredError,
)
from recon_services.audit_trail import AuditTrail
from recon_services.discrepancy_tracker import DiscrepancyTracker
from recon_services.match_ledger import (
    CANDIDATE_CONSUMED_REASON,
    NO_CANDIDATE_REASON,
    SUPERSEDED_REASON,
    MatchLedger,
)

RUN_ID = UUID("0b5e8a4c-1d2f-4e6a-8c3b-9f7d1e2a3b4c")
CLAIMED = Decimal("100.00")


@pytest.fixture
def audit(deterministic_clock):
    return AuditTrail(RUN_ID, deterministic_clock)


@pytest.fixture
def tracker(audit, deterministic_clock):
    return DiscrepancyTracker(RUN_ID, audit, deterministic_clock)


@pytest.fixture
def index(make_record):
    return CandidateIndex([
        make_record("R-1"),
        make_record("R-2", amount="90.00"),
    ])


@pytest.fixture
def ledger(index, tracker, audit, deterministic_clock):
    return MatchLedger(RUN_ID, index, tracker, audit, deterministic_clock)


def propose_exact(ledger, line_id="L-1", record_ids=("R-1",), variance="0.00"):
    return ledger.propose(
        line_id,
        record_ids,
        MatchPass.EXACT,
        100,
        Decimal(variance),
        claimed_amount=CLAIMED,
        is_exact=variance == "0.00",
    )


class TestPropose:

    def test_proposal_is_pending_and_audited(self, ledger, audit):
        match = propose_exact(ledger)

        assert match.status == MatchStatus.PROPOSED
        assert match.matched_amount == Decimal("100.00")
        assert ledger.pending_match("L-1") == match
        assert ledger.active_match("L-1") is None

        entry = audit.entries()[-1]
        assert entry.action == AuditAction.MATCH_PROPOSED
        assert entry.previous_state is None
        assert entry.new_state["status"] == "proposed"

    def test_matched_amount_derived_from_variance(self, ledger):
        match = propose_exact(ledger, record_ids=("R-2",), variance="10.00")

        assert match.matched_amount == Decimal("90.00")

    def test_new_proposal_supersedes_pending(self, ledger):
        first = propose_exact(ledger)
        second = propose_exact(ledger, record_ids=("R-2",), variance="10.00")

        assert ledger.get(first.match_id).status == MatchStatus.REJECTED
        assert ledger.get(first.match_id).rejection_reason == SUPERSEDED_REASON
        assert ledger.pending_match("L-1") == second

    def test_proposal_on_confirmed_line_refused(self, ledger, captured_logs):
        ledger.confirm(propose_exact(ledger).match_id, "system")

        with pytest.raises(DuplicateActiveMatchError):
            propose_exact(ledger, record_ids=("R-2",))

        assert any(
            r["message"] == "duplicate_active_match" and r["level"] == "CRITICAL"
            for r in captured_logs()
        )

    def test_ids_are_deterministic(self, make_record, deterministic_clock):
        def build():
            audit = AuditTrail(RUN_ID, deterministic_clock)
            tracker = DiscrepancyTracker(RUN_ID, audit, deterministic_clock)
            return MatchLedger(
                RUN_ID, CandidateIndex([make_record("R-1")]), tracker, audit, deterministic_clock,
            )

        assert propose_exact(build()).match_id == propose_exact(build()).match_id


class TestConfirm:

    def test_confirm_claims_records(self, ledger, index, audit):
        match = propose_exact(ledger)
        confirmed = ledger.confirm(match.match_id, "reviewer")

        assert confirmed.status == MatchStatus.CONFIRMED
        assert confirmed.confirmed_by == "reviewer"
        assert not index.is_available("R-1")
        assert ledger.confirmed_record_ids() == frozenset({"R-1"})

        entry = audit.entries()[-1]
        assert entry.action == AuditAction.MATCH_CONFIRMED
        assert entry.previous_state["status"] == "proposed"
        assert entry.new_state["status"] == "confirmed"

    def test_zero_variance_resolves_open_discrepancy(self, ledger, tracker):
        tracker.ensure_discrepancy("L-1", DiscrepancyKind.UNMATCHED, CLAIMED, reference_amount=CLAIMED)

        ledger.confirm(propose_exact(ledger).match_id, "system")

        assert tracker.open_for_line("L-1") is None
        assert tracker.for_line("L-1")[0].status == DiscrepancyStatus.RESOLVED

    def test_variance_opens_amount_variance(self, ledger, tracker):
        match = propose_exact(ledger, record_ids=("R-2",), variance="10.00")
        ledger.confirm(match.match_id, "system")

        discrepancy = tracker.open_for_line("L-1")
        assert discrepancy.kind == DiscrepancyKind.AMOUNT_VARIANCE
        assert discrepancy.amount == Decimal("10.00")
        assert discrepancy.reference_amount == CLAIMED
        assert discrepancy.match_id == match.match_id
        assert "100.00" in discrepancy.description and "90.00" in discrepancy.description

    def test_confirm_twice_refused(self, ledger):
        match = propose_exact(ledger)
        ledger.confirm(match.match_id, "system")

        with pytest.raises(InvalidMatchTransitionError):
            ledger.confirm(match.match_id, "system")

    def test_confirm_rejected_refused(self, ledger):
        match = propose_exact(ledger)
        ledger.reject(match.match_id, "reviewer", "wrong invoice")

        with pytest.raises(InvalidMatchTransitionError):
            ledger.confirm(match.match_id, "reviewer")

    def test_record_consumed_by_other_line(self, ledger, index):
        first = propose_exact(ledger, line_id="L-1")
        second = propose_exact(ledger, line_id="L-2")
        ledger.confirm(first.match_id, "system")

        with pytest.raises(CandidateUnavailableError) as exc_info:
            ledger.confirm(second.match_id, "system")

        assert exc_info.value.code == "CANDIDATE_UNAVAILABLE"
        assert ledger.get(second.match_id).status == MatchStatus.PROPOSED
        assert ledger.active_match("L-1").match_id == first.match_id

    def test_unknown_match(self, ledger):
        with pytest.raises(MatchNotFoundError):
            ledger.confirm(UUID(int=0), "system")


class TestReject:

    @pytest.mark.parametrize("reason", ["", "   ", None])
    def test_reason_required(self, ledger, reason):
        match = propose_exact(ledger)

        with pytest.raises(RejectionReasonRequiredError):
            ledger.reject(match.match_id, "reviewer", reason)

    def test_reject_confirmed_releases_and_opens_unmatched(self, ledger, index, tracker):
        match = propose_exact(ledger)
        ledger.confirm(match.match_id, "system")

        rejected = ledger.reject(match.match_id, "reviewer", "duplicate payment")

        assert rejected.status == MatchStatus.REJECTED
        assert rejected.rejected_by == "reviewer"
        assert index.is_available("R-1")
        discrepancy = tracker.open_for_line("L-1")
        assert discrepancy.kind == DiscrepancyKind.UNMATCHED
        assert discrepancy.amount == CLAIMED
        assert discrepancy.description == "match rejected: duplicate payment"

    def test_reject_without_unmatched(self, ledger, tracker):
        match = propose_exact(ledger)

        ledger.reject(match.match_id, "reviewer", "not ours", open_unmatched=False)

        assert tracker.open_for_line("L-1") is None

    def test_rejected_is_terminal(self, ledger):
        match = propose_exact(ledger)
        ledger.reject(match.match_id, "reviewer", "not ours")

        with pytest.raises(InvalidMatchTransitionError):
            ledger.reject(match.match_id, "reviewer", "again")

    def test_history_keeps_every_version(self, ledger):
        match = propose_exact(ledger)
        ledger.confirm(match.match_id, "system")
        ledger.reject(match.match_id, "reviewer", "wrong invoice")

        actions = [e.action for e in ledger.history(match.match_id)]
        assert actions == [
            AuditAction.MATCH_PROPOSED,
            AuditAction.MATCH_CONFIRMED,
            AuditAction.MATCH_REJECTED,
        ]
        assert ledger.history(match.match_id)[-1].reason == "wrong invoice"


class TestRejectedOnReview:

    def test_review_rejection_counts_whoever_rejected(self, ledger):
        match = propose_exact(ledger)
        ledger.confirm(match.match_id, "system")
        ledger.reject(match.match_id, "system", "wrong invoice")

        assert ledger.rejected_on_review("L-1", ("R-1",))
        assert ledger.rejected_on_review("L-1", ("R-1", "R-2"))
        assert not ledger.rejected_on_review("L-1", ("R-2",))
        assert not ledger.rejected_on_review("L-2", ("R-1",))

    @pytest.mark.parametrize(
        "reason", [SUPERSEDED_REASON, NO_CANDIDATE_REASON, CANDIDATE_CONSUMED_REASON],
    )
    def test_withdrawals_are_not_review_decisions(self, ledger, reason):
        match = propose_exact(ledger)
        ledger.reject(match.match_id, "alice", reason, open_unmatched=False)

        assert not ledger.rejected_on_review("L-1", ("R-1",))

    def test_superseded_proposal_is_not_a_review_decision(self, ledger):
        propose_exact(ledger)
        propose_exact(ledger, record_ids=("R-2",), variance="10.00")

        assert not ledger.rejected_on_review("L-1", ("R-1",))


class TestReplace:

    def test_replace_confirmed_match(self, ledger, index, tracker):
        match = propose_exact(ledger)
        ledger.confirm(match.match_id, "system")

        replacement = ledger.replace(
            match.match_id,
            "reviewer",
            "booked against the wrong invoice",
            ("R-2",),
            None,
            100,
            Decimal("10.00"),
            claimed_amount=CLAIMED,
        )

        assert ledger.get(match.match_id).status == MatchStatus.REJECTED
        assert replacement.status == MatchStatus.PROPOSED
        assert replacement.record_ids == ("R-2",)
        assert index.is_available("R-1")
        assert tracker.open_for_line("L-1") is None
        assert [m.match_id for m in ledger.matches_for_line("L-1")] == [
            match.match_id,
            replacement.match_id,
        ]

    def test_replace_requires_reason(self, ledger):
        match = propose_exact(ledger)

        with pytest.raises(RejectionReasonRequiredError):
            ledger.replace(match.match_id, "reviewer", "", ("R-2",), None, 100, Decimal("0"),
                           claimed_amount=CLAIMED)
