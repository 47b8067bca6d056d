"""
RunContext -- explicit per-run state passed through every service call.

Everything a reconciliation run mutates lives here: the run aggregate, its
statement lines, the candidate index, the ledger, the tracker and the audit
trail.  Nothing is shared between runs.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from uuid import UUID

from recon_engines.candidate_index import CandidateIndex
from recon_kernel.domain.results import LineValidationError
from recon_kernel.domain.run import ReconciliationRun
from recon_kernel.domain.statement import StatementLine
from recon_services.audit_trail import AuditTrail
from recon_services.discrepancy_tracker import DiscrepancyTracker
from recon_services.match_ledger import MatchLedger


@dataclass
class RunContext:
    """
    Mutable holder for one run's collaborators.

    ``cascade_lock`` admits one cascade at a time; ``state_lock`` guards
    the ``run`` aggregate and ``validation_errors``.
    """

    run: ReconciliationRun
    lines: dict[str, StatementLine]
    index: CandidateIndex
    ledger: MatchLedger
    tracker: DiscrepancyTracker
    audit: AuditTrail
    cascade_lock: threading.Lock = field(default_factory=threading.Lock)
    state_lock: threading.RLock = field(default_factory=threading.RLock)
    validation_errors: dict[str, LineValidationError] = field(default_factory=dict)
    cascade_runs: int = 0

    @property
    def run_id(self) -> UUID:
        return self.run.run_id

    def ordered_lines(self) -> list[StatementLine]:
        """Lines in canonical line_id order."""
        return [self.lines[line_id] for line_id in sorted(self.lines)]
