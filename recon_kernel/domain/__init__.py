"""
Pure domain layer: value objects, enums and result types.  No I/O.
"""

from recon_kernel.domain.audit import AuditAction, AuditEntityType, AuditEntry
from recon_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from recon_kernel.domain.discrepancy import (
    Discrepancy,
    DiscrepancyCreated,
    DiscrepancyKind,
    DiscrepancySeverity,
    DiscrepancyStatus,
)
from recon_kernel.domain.match import (
    DEFAULT_PASS_CONFIDENCE,
    Match,
    MatchedBy,
    MatchPass,
    MatchStatus,
)
from recon_kernel.domain.results import (
    CascadeResult,
    LineOutcome,
    LineValidationError,
    MatchSummary,
    ReadinessResult,
    SignOffResult,
)
from recon_kernel.domain.run import (
    AcknowledgementType,
    ReconciliationRun,
    SignoffStatus,
    StatementPeriod,
)
from recon_kernel.domain.statement import (
    CandidateRecord,
    RecordKind,
    RecordStatus,
    StatementLine,
)
from recon_kernel.domain.values import ZERO, to_money

__all__ = [
    "AcknowledgementType",
    "AuditAction",
    "AuditEntityType",
    "AuditEntry",
    "CandidateRecord",
    "CascadeResult",
    "Clock",
    "DEFAULT_PASS_CONFIDENCE",
    "DeterministicClock",
    "Discrepancy",
    "DiscrepancyCreated",
    "DiscrepancyKind",
    "DiscrepancySeverity",
    "DiscrepancyStatus",
    "LineOutcome",
    "LineValidationError",
    "Match",
    "MatchPass",
    "MatchStatus",
    "MatchSummary",
    "MatchedBy",
    "ReadinessResult",
    "ReconciliationRun",
    "RecordKind",
    "RecordStatus",
    "SignOffResult",
    "SignoffStatus",
    "StatementLine",
    "StatementPeriod",
    "SystemClock",
    "ZERO",
    "to_money",
]
