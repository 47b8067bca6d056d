"""
recon_services.run_store -- SQLAlchemy persistence of reconciliation runs.

Responsibility:
    Writes a RunContext's run aggregate, match versions, discrepancies and
    audit chain to the database and reads them back as domain objects.

Architecture position:
    Services -- the only recon_services module that touches a Session.
    Transaction boundaries belong to the caller (``session_scope``); the
    store flushes but never commits.

Invariants enforced:
    - ``save`` is idempotent: rows that already match the domain state are
      left untouched, and audit entries already persisted are never
      rewritten (only higher ``seq`` values are inserted).
    - Immutability listeners are registered on construction, so a
      signed-off run or any audit row cannot be altered through the ORM.

Failure modes:
    - ImmutabilityViolationError from the ORM listeners.
    - AuditChainBrokenError from ``verify_audit_chain``.
    - RunNotFoundError from ``load_run``.
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from recon_kernel.db.immutability import register_immutability_listeners
from recon_kernel.domain.audit import AuditEntry
from recon_kernel.domain.discrepancy import Discrepancy
from recon_kernel.domain.match import Match
from recon_kernel.domain.run import ReconciliationRun
from recon_kernel.exceptions import RunNotFoundError
from recon_kernel.logging_config import get_logger
from recon_kernel.models import (
    AuditEventModel,
    DiscrepancyModel,
    MatchModel,
    ReconciliationRunModel,
)
from recon_services.audit_trail import verify_entries
from recon_services.run_context import RunContext

logger = get_logger("services.run_store")


class RunStore:
    """Persists and loads run snapshots through one Session."""

    def __init__(self, session: Session):
        self._session = session
        register_immutability_listeners()

    def save(self, context: RunContext) -> int:
        """
        Persist the run snapshot.  Returns the number of audit rows inserted.
        """
        with context.state_lock:
            run = context.run
            matches = context.ledger.all_matches()
            discrepancies = context.tracker.all_discrepancies()
            entries = context.audit.entries()

        self._save_run(run)
        # Run row first so FK targets exist.
        self._session.flush()

        for match in matches:
            self._save_match(match)
        for discrepancy in discrepancies:
            self._save_discrepancy(discrepancy)

        persisted_seq = self._session.scalar(
            select(func.max(AuditEventModel.seq)).where(AuditEventModel.run_id == run.run_id)
        ) or 0
        new_entries = [e for e in entries if e.seq > persisted_seq]
        for entry in new_entries:
            self._session.add(AuditEventModel.from_domain(entry))
        self._session.flush()

        logger.info(
            "run_saved",
            extra={
                "run_id": str(run.run_id),
                "signoff_status": run.signoff_status.value,
                "match_count": len(matches),
                "discrepancy_count": len(discrepancies),
                "audit_rows_inserted": len(new_entries),
            },
        )
        return len(new_entries)

    def _save_run(self, run: ReconciliationRun) -> None:
        model = self._session.get(ReconciliationRunModel, run.run_id)
        if model is None:
            self._session.add(ReconciliationRunModel.from_domain(run))
        elif model.to_domain() != run:
            model.apply(run)

    def _save_match(self, match: Match) -> None:
        model = self._session.get(MatchModel, match.match_id)
        if model is None:
            self._session.add(MatchModel.from_domain(match))
        elif model.to_domain() != match:
            model.apply(match)

    def _save_discrepancy(self, discrepancy: Discrepancy) -> None:
        model = self._session.get(DiscrepancyModel, discrepancy.discrepancy_id)
        if model is None:
            self._session.add(DiscrepancyModel.from_domain(discrepancy))
        elif model.to_domain() != discrepancy:
            model.apply(discrepancy)

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def load_run(self, run_id: UUID) -> ReconciliationRun:
        model = self._session.get(ReconciliationRunModel, run_id)
        if model is None:
            raise RunNotFoundError(str(run_id))
        return model.to_domain()

    def load_matches(self, run_id: UUID) -> list[Match]:
        rows = self._session.scalars(
            select(MatchModel)
            .where(MatchModel.run_id == run_id)
            .order_by(MatchModel.line_id, MatchModel.created_at)
        )
        return [row.to_domain() for row in rows]

    def load_discrepancies(self, run_id: UUID) -> list[Discrepancy]:
        rows = self._session.scalars(
            select(DiscrepancyModel)
            .where(DiscrepancyModel.run_id == run_id)
            .order_by(DiscrepancyModel.line_id, DiscrepancyModel.detected_at)
        )
        return [row.to_domain() for row in rows]

    def load_audit_trail(self, run_id: UUID) -> list[AuditEntry]:
        rows = self._session.scalars(
            select(AuditEventModel)
            .where(AuditEventModel.run_id == run_id)
            .order_by(AuditEventModel.seq)
        )
        return [row.to_domain() for row in rows]

    def verify_audit_chain(self, run_id: UUID) -> bool:
        """Recompute the persisted chain; raises AuditChainBrokenError."""
        return verify_entries(self.load_audit_trail(run_id))
