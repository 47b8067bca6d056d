"""ORM models for reconciliation persistence."""

from recon_kernel.models.audit_event import AuditEventModel
from recon_kernel.models.discrepancy import DiscrepancyModel
from recon_kernel.models.match import MatchModel
from recon_kernel.models.run import ReconciliationRunModel

__all__ = [
    "AuditEventModel",
    "DiscrepancyModel",
    "MatchModel",
    "ReconciliationRunModel",
]
