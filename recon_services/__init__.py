"""
Reconciliation services -- run-scoped orchestration over the pure engines.

- audit_trail: hash-chained history of every state change
- discrepancy_tracker: residual issue lifecycle and aggregate variance
- match_ledger: proposed/confirmed/rejected matches, one confirmed per line
- signoff_gate: readiness evaluation and one-way sign-off
- reconciliation_service: facade opening runs and driving the cascade
- run_store: SQLAlchemy persistence of run snapshots
"""

from recon_services.audit_trail import AuditTrail, verify_entries
from recon_services.discrepancy_tracker import DiscrepancyTracker
from recon_services.match_ledger import MatchLedger
from recon_services.reconciliation_service import ReconciliationService
from recon_services.run_context import RunContext
from recon_services.run_store import RunStore
from recon_services.signoff_gate import ALREADY_SIGNED_OFF, NOT_READY, SignoffGate

__all__ = [
    "ALREADY_SIGNED_OFF",
    "AuditTrail",
    "DiscrepancyTracker",
    "MatchLedger",
    "NOT_READY",
    "ReconciliationService",
    "RunContext",
    "RunStore",
    "SignoffGate",
    "verify_entries",
]
