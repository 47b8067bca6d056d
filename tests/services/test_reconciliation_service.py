"""
End-to-end tests for ReconciliationService.

Covers:
- The four reference scenarios (exact, normalized reference, partial, none)
- Per-line validation failures that never abort the batch
- Ambiguous candidates held for manual confirmation
- Claims applied in line order when lines compete for one record
- Rerun idempotence, refreshed candidate snapshots, reviewer rejections
- Manual review actions and their error cases
- Run registry errors and the one-cascade-per-run lock
"""

import pytest
from decimal import Decimal
from uuid import uuid4

from recon_kernel.domain.audit import AuditAction
from recon_kernel.domain.discrepancy import (
    DiscrepancyKind,
    DiscrepancySeverity,
    DiscrepancyStatus,
)
from recon_kernel.domain.match import MatchedBy, MatchPass, MatchStatus
from recon_kernel.exceptions import (
    ConcurrentRunError,
    DuplicateActiveMatchError,
    LineNotFoundError,
    RecordNotFoundError,
    RunNotFoundError,
)
from recon_services.reconciliation_service import ReconciliationService


class TestScenarios:
    """The reference scenarios, driven through the facade."""

    def test_a_exact(self, service, open_run, make_line, make_record):
        context = open_run([make_line()], [make_record()])

        result = service.run_cascade(context.run_id)

        (outcome,) = result.outcomes
        assert outcome.is_matched
        assert outcome.match.pass_number == MatchPass.EXACT
        assert outcome.match.confidence_score == 100
        assert outcome.match.variance_amount == Decimal("0.00")
        assert outcome.discrepancy_id is None
        assert result.summary.matched_exact == 1
        assert result.summary.match_rate == Decimal("100.00")
        assert result.events == ()

    def test_b_normalized_reference(self, service, open_run, make_line, make_record):
        context = open_run([make_line(reference="INV 1000")], [make_record(reference="INV-1000")])

        result = service.run_cascade(context.run_id)

        match = result.outcomes[0].match
        assert match.pass_number == MatchPass.NORMALIZED_REFERENCE
        assert match.confidence_score == 90
        assert match.status == MatchStatus.CONFIRMED
        assert result.summary.matched_tolerant == 1

    def test_c_partial_settlement(self, service, open_run, make_line, make_record):
        context = open_run([make_line(amount=Decimal("500.00"))], [make_record(amount="1000.00")])

        result = service.run_cascade(context.run_id)

        match = result.outcomes[0].match
        assert match.pass_number == MatchPass.PARTIAL_SETTLEMENT
        assert match.confidence_score == 75
        assert match.variance_amount == Decimal("500.00")
        assert result.summary.matched_partial == 1
        (event,) = result.events
        assert event.kind == DiscrepancyKind.AMOUNT_VARIANCE
        assert event.amount == Decimal("500.00")
        assert service.aggregate_variance(context.run_id) == Decimal("500.00")

    def test_d_unmatched(self, service, open_run, make_line, make_record):
        context = open_run([make_line(reference="INV-9999")], [make_record()])

        result = service.run_cascade(context.run_id)

        assert result.outcomes[0].match is None
        assert result.summary.unmatched == 1
        (event,) = result.events
        assert event.kind == DiscrepancyKind.UNMATCHED
        assert event.amount == Decimal("100.00")
        assert context.index.is_available("R-001")

    def test_totals_refreshed(self, service, open_run, make_line, make_record):
        lines = [make_line("L-1"), make_line("L-2", reference="INV-2", amount=Decimal("40.00"))]
        context = open_run(lines, [make_record()])

        service.run_cascade(context.run_id)

        run = service.get_run(context.run_id)
        assert run.total_claimed == Decimal("140.00")
        assert run.total_matched == Decimal("100.00")
        assert run.net_variance == Decimal("40.00")


class TestValidation:

    def test_invalid_line_does_not_abort_batch(self, service, open_run, make_line, make_record):
        lines = [make_line("L-1"), make_line("L-2", amount=None, currency=None)]
        context = open_run(lines, [make_record()])

        result = service.run_cascade(context.run_id)

        (error,) = result.errors
        assert error.line_id == "L-2"
        assert error.issues == ("amount is required", "currency is required")
        assert result.outcomes[0].is_matched
        assert result.outcomes[1].error == error
        assert result.summary.invalid == 1
        assert result.summary.unmatched == 1

        discrepancy = context.tracker.open_for_line("L-2")
        assert discrepancy.kind == DiscrepancyKind.UNMATCHED
        assert discrepancy.severity == DiscrepancySeverity.CRITICAL
        assert discrepancy.description.startswith("invalid input")

    def test_invalid_line_audited_once(self, service, open_run, make_line, make_record):
        context = open_run([make_line(on=None)], [make_record()])

        service.run_cascade(context.run_id)
        service.run_cascade(context.run_id)

        invalid = [e for e in context.audit.entries() if e.action == AuditAction.LINE_INVALID]
        assert len(invalid) == 1

    def test_foreign_counterparty_line(self, service, open_run, make_line, make_record):
        context = open_run([make_line(counterparty_id="CP-OTHER")], [make_record()])

        result = service.run_cascade(context.run_id)

        assert "counterparty" in result.errors[0].issues[0]
        assert context.index.is_available("R-001")

    def test_duplicate_line_id_refused(self, service, open_run, make_line, make_record):
        with pytest.raises(ValueError, match="Duplicate"):
            open_run([make_line("L-1"), make_line("L-1")], [make_record()])


class TestAmbiguity:

    def test_held_for_confirmation(self, service, open_run, make_line, make_record):
        context = open_run([make_line()], [make_record("R-2"), make_record("R-1")])

        result = service.run_cascade(context.run_id)

        outcome = result.outcomes[0]
        assert outcome.is_pending
        assert outcome.match.is_ambiguous
        assert outcome.match.record_ids == ("R-1",)
        assert outcome.match.alternative_record_ids == ("R-2",)
        assert result.summary.pending_confirmation == 1
        assert result.summary.unmatched == 1
        discrepancy = context.tracker.open_for_line("L-001")
        assert discrepancy.kind == DiscrepancyKind.DUPLICATE_CLAIM
        assert "R-1, R-2" in discrepancy.description
        assert context.index.is_available("R-1")

    def test_reviewer_confirms_ambiguous(self, service, open_run, make_line, make_record):
        context = open_run([make_line()], [make_record("R-2"), make_record("R-1")])
        result = service.run_cascade(context.run_id)

        confirmed = service.confirm_match(context.run_id, result.outcomes[0].match.match_id, "reviewer")

        assert confirmed.confirmed_by == "reviewer"
        assert context.tracker.open_for_line("L-001") is None
        assert service.summary(context.run_id).matched_exact == 1


class TestCompetingLines:

    def test_lower_line_id_claims_first(self, service, open_run, make_line, make_record):
        context = open_run([make_line("L-2"), make_line("L-1")], [make_record("R-1")])

        result = service.run_cascade(context.run_id)

        by_line = {o.line_id: o for o in result.outcomes}
        assert by_line["L-1"].match.record_ids == ("R-1",)
        assert by_line["L-2"].match is None
        assert context.tracker.open_for_line("L-2").kind == DiscrepancyKind.UNMATCHED

    def test_loser_falls_to_next_candidate(self, service, open_run, make_line, make_record):
        records = [make_record("R-1"), make_record("R-2", reference="inv 1000")]
        context = open_run([make_line("L-1"), make_line("L-2")], records)

        result = service.run_cascade(context.run_id)

        by_line = {o.line_id: o.match for o in result.outcomes}
        assert by_line["L-1"].record_ids == ("R-1",)
        assert by_line["L-2"].record_ids == ("R-2",)
        assert by_line["L-2"].pass_number == MatchPass.NORMALIZED_REFERENCE

    def test_each_record_confirmed_once(self, service, open_run, make_line, make_record):
        lines = [make_line(f"L-{i}") for i in range(5)]
        records = [make_record(f"R-{i}", on=None) for i in range(3)]
        context = open_run(lines, records)

        service.run_cascade(context.run_id)
        service.confirm_match(
            context.run_id, context.ledger.pending_match("L-0").match_id, "reviewer",
        )

        confirmed = [m for m in service.matches(context.run_id) if m.is_active]
        claimed = [rid for m in confirmed for rid in m.record_ids]
        assert len(claimed) == len(set(claimed))


class TestRerun:

    def test_rerun_is_idempotent(self, service, open_run, make_line, make_record):
        lines = [
            make_line("L-1"),
            make_line("L-2", reference="INV-2000"),
            make_line("L-3", reference="INV-3000"),
            make_line("L-4", amount=None),
        ]
        records = [
            make_record("R-1"),
            make_record("R-2", reference="INV-2000"),
            make_record("R-3", reference="INV-2000"),
        ]
        context = open_run(lines, records)
        first = service.run_cascade(context.run_id)
        matches = sorted(service.matches(context.run_id), key=lambda m: str(m.match_id))
        discrepancies = sorted(service.discrepancies(context.run_id), key=lambda d: str(d.discrepancy_id))
        audit_len = len(context.audit)

        second = service.rerun(context.run_id)

        assert sorted(service.matches(context.run_id), key=lambda m: str(m.match_id)) == matches
        assert sorted(
            service.discrepancies(context.run_id), key=lambda d: str(d.discrepancy_id)
        ) == discrepancies
        assert len(context.audit) == audit_len + 1
        assert context.audit.entries()[-1].action == AuditAction.CASCADE_COMPLETED
        assert second.summary == first.summary
        assert second.events == ()

    def test_new_candidate_matches_on_rerun(self, service, open_run, make_line, make_record):
        lines = [make_line("L-1"), make_line("L-2", reference="INV-2000")]
        context = open_run(lines, [make_record("R-1")])
        service.run_cascade(context.run_id)
        first_match = context.ledger.active_match("L-1")

        service.rerun(context.run_id, [make_record("R-1"), make_record("R-2", reference="INV-2000")])

        assert context.ledger.active_match("L-1") == first_match
        assert context.ledger.active_match("L-2").record_ids == ("R-2",)
        assert context.tracker.open_for_line("L-2") is None

    def test_reviewer_rejection_is_not_overridden(self, service, open_run, make_line, make_record):
        context = open_run([make_line("L-1")], [make_record("R-1")])
        service.run_cascade(context.run_id)
        match = context.ledger.active_match("L-1")
        service.reject_match(context.run_id, match.match_id, "reviewer", "belongs to another statement")

        service.rerun(context.run_id)

        assert context.ledger.active_match("L-1") is None
        pending = context.ledger.pending_match("L-1")
        assert pending.record_ids == ("R-1",)
        assert pending.pass_number == MatchPass.EXACT
        assert context.tracker.open_for_line("L-1").kind == DiscrepancyKind.UNMATCHED
        assert service.summary(context.run_id).pending_confirmation == 1

    def test_rejection_holds_when_rejecter_reruns(self, service, open_run, make_line, make_record):
        context = open_run([make_line("L-1")], [make_record("R-1")])
        service.run_cascade(context.run_id)
        match = context.ledger.active_match("L-1")
        service.reject_match(context.run_id, match.match_id, "alice", "wrong invoice")

        service.rerun(context.run_id, actor="alice")

        assert context.ledger.active_match("L-1") is None
        pending = context.ledger.pending_match("L-1")
        assert pending.record_ids == ("R-1",)
        assert pending.confirmed_by is None
        assert not any(
            e.action == AuditAction.MATCH_CONFIRMED and e.actor == "alice"
            for e in context.audit.entries()
        )

    def test_waived_unmatched_line_stays_settled(self, service, open_run, make_line, make_record):
        context = open_run([make_line("L-1", reference="INV-9")], [make_record("R-1")])
        service.run_cascade(context.run_id)
        discrepancy = context.tracker.open_for_line("L-1")
        service.waive_discrepancy(
            context.run_id, discrepancy.discrepancy_id, "controller", "supplier error",
        )
        assert service.evaluate_readiness(context.run_id).ready

        result = service.rerun(context.run_id)

        assert result.events == ()
        assert context.tracker.open_for_line("L-1") is None
        assert context.tracker.latest_for_line("L-1").status == DiscrepancyStatus.WAIVED
        assert service.evaluate_readiness(context.run_id).ready

    def test_waived_invalid_line_stays_settled(self, service, open_run, make_line, make_record):
        context = open_run(
            [make_line("L-1"), make_line("L-2", amount=None)],
            [make_record("R-1")],
        )
        service.run_cascade(context.run_id)
        discrepancy = context.tracker.open_for_line("L-2")
        assert discrepancy.severity == DiscrepancySeverity.CRITICAL
        service.waive_discrepancy(
            context.run_id, discrepancy.discrepancy_id, "controller", "line voided by supplier",
        )
        assert service.evaluate_readiness(context.run_id).ready

        result = service.rerun(context.run_id)

        assert result.events == ()
        assert context.tracker.open_for_line("L-2") is None
        assert service.evaluate_readiness(context.run_id).ready

    def test_waived_duplicate_claim_stays_settled(self, service, open_run, make_line, make_record):
        context = open_run([make_line("L-1")], [make_record("R-1"), make_record("R-2")])
        service.run_cascade(context.run_id)
        discrepancy = context.tracker.open_for_line("L-1")
        assert discrepancy.kind == DiscrepancyKind.DUPLICATE_CLAIM
        service.waive_discrepancy(
            context.run_id, discrepancy.discrepancy_id, "controller", "both invoices disputed",
        )

        result = service.rerun(context.run_id)

        assert result.events == ()
        assert context.tracker.open_for_line("L-1") is None

    def test_changed_outcome_after_waive_is_recorded(self, service, open_run, make_line, make_record):
        context = open_run([make_line("L-1", reference="INV-9")], [make_record("R-1")])
        service.run_cascade(context.run_id)
        discrepancy = context.tracker.open_for_line("L-1")
        service.waive_discrepancy(
            context.run_id, discrepancy.discrepancy_id, "controller", "supplier error",
        )

        result = service.rerun(
            context.run_id, [make_record("R-1"), make_record("R-9", reference="INV-9", amount="150.00")],
        )

        assert context.ledger.active_match("L-1").record_ids == ("R-9",)
        assert context.tracker.open_for_line("L-1").kind == DiscrepancyKind.AMOUNT_VARIANCE
        assert len(result.events) == 1

    def test_lost_pending_candidate_is_withdrawn(self, service, open_run, make_line, make_record):
        context = open_run([make_line("L-1")], [make_record("R-2"), make_record("R-1")])
        service.run_cascade(context.run_id)
        pending = context.ledger.pending_match("L-1")

        service.rerun(context.run_id, [])

        assert context.ledger.get(pending.match_id).status == MatchStatus.REJECTED
        assert context.tracker.open_for_line("L-1").kind == DiscrepancyKind.UNMATCHED

    def test_identical_runs_identical_proposals(self, recon_config, deterministic_clock,
                                                statement_period, make_line, make_record):
        lines = [make_line(f"L-{i}", reference=f"INV-{i % 4}") for i in range(12)]
        records = [make_record(f"R-{i}", reference=f"inv {i % 4}", on=None) for i in range(6)]
        run_id = uuid4()

        def proposals():
            service = ReconciliationService(config=recon_config, clock=deterministic_clock)
            context = service.open_run("CP-ACME", statement_period, lines, records, run_id=run_id)
            service.run_cascade(context.run_id)
            return sorted(
                (str(m.match_id), m.status.value, m.proposal_key())
                for m in service.matches(run_id)
            )

        assert proposals() == proposals()


class TestManualActions:

    def test_manual_match_flow(self, service, open_run, make_line, make_record):
        lines = [make_line("L-1", reference="INV-2000")]
        context = open_run(lines, [make_record("R-7", reference="MISC")])
        service.run_cascade(context.run_id)

        proposed = service.propose_manual_match(context.run_id, "L-1", ["R-7"], "reviewer")
        confirmed = service.confirm_match(context.run_id, proposed.match_id, "reviewer")

        assert proposed.requires_manual_confirmation
        assert confirmed.matched_by == MatchedBy.MANUAL
        assert confirmed.pass_number is None
        assert confirmed.confidence_score == 100
        assert context.tracker.open_for_line("L-1") is None
        summary = service.summary(context.run_id)
        assert summary.matched_manual == 1
        assert summary.matched_tolerant == 0
        assert summary.matched == 1

    def test_manual_match_errors(self, service, open_run, make_line, make_record):
        context = open_run(
            [make_line("L-1"), make_line("L-2", amount=None)],
            [make_record("R-1")],
        )
        service.run_cascade(context.run_id)

        with pytest.raises(LineNotFoundError):
            service.propose_manual_match(context.run_id, "L-404", ["R-1"], "reviewer")
        with pytest.raises(RecordNotFoundError):
            service.propose_manual_match(context.run_id, "L-1", ["R-404"], "reviewer")
        with pytest.raises(ValueError, match="invalid input"):
            service.propose_manual_match(context.run_id, "L-2", ["R-1"], "reviewer")
        with pytest.raises(DuplicateActiveMatchError):
            service.propose_manual_match(context.run_id, "L-1", ["R-1"], "reviewer")

    def test_resolve_discrepancy(self, service, open_run, make_line, make_record):
        context = open_run([make_line(reference="INV-9")], [make_record()])
        service.run_cascade(context.run_id)
        (discrepancy,) = context.tracker.open_discrepancies()

        resolved = service.resolve_discrepancy(
            context.run_id, discrepancy.discrepancy_id, "reviewer", "line withdrawn by supplier",
        )

        assert resolved.status == DiscrepancyStatus.RESOLVED
        assert service.aggregate_variance(context.run_id) == Decimal("0.00")


class TestRunRegistry:

    def test_unknown_run(self, service):
        with pytest.raises(RunNotFoundError):
            service.run_cascade(uuid4())

    def test_run_opened_audited(self, service, open_run, make_line, make_record):
        context = open_run([make_line()], [make_record()])

        (entry,) = context.audit.entries()
        assert entry.action == AuditAction.RUN_OPENED
        assert entry.new_state["counterparty_id"] == "CP-ACME"

    def test_cascade_in_flight_refused(self, service, open_run, make_line, make_record):
        context = open_run([make_line()], [make_record()])
        context.cascade_lock.acquire()
        try:
            with pytest.raises(ConcurrentRunError):
                service.run_cascade(context.run_id)
        finally:
            context.cascade_lock.release()

        assert service.run_cascade(context.run_id).summary.matched == 1

    def test_subscribers_receive_events(self, service, open_run, make_line, make_record):
        received = []
        service.subscribe(received.append)
        context = open_run([make_line(reference="INV-9")], [make_record()])

        service.run_cascade(context.run_id)

        assert [e.kind for e in received] == [DiscrepancyKind.UNMATCHED]
        assert received[0].run_id == context.run_id

    def test_cascade_logged_with_run_context(self, service, open_run, make_line, make_record,
                                             captured_logs):
        context = open_run([make_line()], [make_record()])

        service.run_cascade(context.run_id, actor="scheduler")

        records = [r for r in captured_logs() if r["message"] == "cascade_completed"]
        assert len(records) == 1
        assert records[0]["run_id"] == str(context.run_id)
        assert records[0]["actor_id"] == "scheduler"
        assert records[0]["matched"] == 1
        assert "duration_ms" in records[0]
