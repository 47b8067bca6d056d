"""
Typed Exception Hierarchy for the Reconciliation Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Callers of the matching engine (case workflow, API adapters, batch jobs)
must distinguish a programmer defect from a retryable condition without
parsing message strings. Every exception therefore carries:

  1. A TYPED class (catch by type, not message)
  2. A CODE class attribute (machine-readable, API-safe)
  3. Structured DATA attributes (ids, amounts, statuses)

Expected business outcomes are NOT exceptions. A malformed statement line,
an ambiguous match, or a run that is not ready for sign-off are returned as
result values (see recon_kernel.domain.results) so callers must handle both
paths explicitly. Exceptions are reserved for invariant violations,
illegal transitions, unknown identifiers and concurrency conflicts.

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    ReconKernelError (base)
    |
    +-- MatchError
    |   +-- DuplicateActiveMatchError
    |   +-- MatchNotFoundError
    |   +-- InvalidMatchTransitionError
    |   +-- CandidateUnavailableError
    |   +-- RejectionReasonRequiredError
    |   +-- RecordNotFoundError
    |
    +-- DiscrepancyError
    |   +-- DiscrepancyNotFoundError
    |   +-- ResolutionReasonRequiredError
    |   +-- DiscrepancyNotOpenError
    |
    +-- RunError
    |   +-- RunNotFoundError
    |   +-- LineNotFoundError
    |   +-- RunAlreadySignedOffError
    |
    +-- ConcurrencyError
    |   +-- ConcurrentRunError
    |
    +-- ImmutabilityError
    |   +-- ImmutabilityViolationError
    |
    +-- AuditChainBrokenError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category      | Code                        | When Raised
--------------|-----------------------------|---------------------------------------
Match         | DUPLICATE_ACTIVE_MATCH      | Line already has a confirmed match
              | MATCH_NOT_FOUND             | Match ID doesn't exist in the run
              | INVALID_MATCH_TRANSITION    | e.g. confirming a rejected match
              | CANDIDATE_UNAVAILABLE       | Record consumed by another match
              | REJECTION_REASON_REQUIRED   | Empty reason on reject
              | RECORD_NOT_FOUND            | Manual match names an unknown record
--------------|-----------------------------|---------------------------------------
Discrepancy   | DISCREPANCY_NOT_FOUND       | Discrepancy ID doesn't exist
              | RESOLUTION_REASON_REQUIRED  | Empty reason on resolve/waive
              | DISCREPANCY_NOT_OPEN        | Resolving an already closed item
--------------|-----------------------------|---------------------------------------
Run           | RUN_NOT_FOUND               | Run ID not registered
              | LINE_NOT_FOUND              | Line ID not part of the run
              | RUN_ALREADY_SIGNED_OFF      | Mutating a signed-off run
--------------|-----------------------------|---------------------------------------
Concurrency   | CONCURRENT_RUN              | Cascade already in flight (retryable)
--------------|-----------------------------|---------------------------------------
Immutability  | IMMUTABILITY_VIOLATION      | Modifying an immutable persisted row
--------------|-----------------------------|---------------------------------------
Audit         | AUDIT_CHAIN_BROKEN          | Hash chain validation failed

===============================================================================
HANDLING PATTERNS
===============================================================================

1. RETRY CONCURRENT RUNS:

    try:
        result = service.rerun(run_id)
    except ConcurrentRunError as e:
        schedule_retry(e.run_id)

2. NEVER SWALLOW INVARIANT DEFECTS:

    DuplicateActiveMatchError means the ledger was used incorrectly. It is
    logged at CRITICAL and must propagate.
"""


class ReconKernelError(Exception):
    """
    Base exception for all reconciliation kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "RECON_KERNEL_ERROR"


# Match-related exceptions


class MatchError(ReconKernelError):
    """Base exception for match ledger errors."""

    code: str = "MATCH_ERROR"


class DuplicateActiveMatchError(MatchError):
    """
    Line already has a confirmed match.

    This is a logic invariant violation: callers must reject the confirmed
    match (or use the ledger's atomic replace) before proposing another.
    """

    code: str = "DUPLICATE_ACTIVE_MATCH"

    def __init__(self, line_id: str, active_match_id: str):
        self.line_id = line_id
        self.active_match_id = active_match_id
        super().__init__(
            f"Line {line_id} already has confirmed match {active_match_id}"
        )


class MatchNotFoundError(MatchError):
    """Match with given ID was not found."""

    code: str = "MATCH_NOT_FOUND"

    def __init__(self, match_id: str):
        self.match_id = match_id
        super().__init__(f"Match not found: {match_id}")


class InvalidMatchTransitionError(MatchError):
    """Requested status transition is not allowed from the current status."""

    code: str = "INVALID_MATCH_TRANSITION"

    def __init__(self, match_id: str, current_status: str, target_status: str):
        self.match_id = match_id
        self.current_status = current_status
        self.target_status = target_status
        super().__init__(
            f"Match {match_id} cannot move from {current_status} to {target_status}"
        )


class CandidateUnavailableError(MatchError):
    """One or more candidate records were already consumed by another match."""

    code: str = "CANDIDATE_UNAVAILABLE"

    def __init__(self, match_id: str, record_ids: tuple[str, ...]):
        self.match_id = match_id
        self.record_ids = record_ids
        super().__init__(
            f"Match {match_id} references unavailable records: {', '.join(record_ids)}"
        )


class RejectionReasonRequiredError(MatchError):
    """Rejecting a match requires a non-empty reason."""

    code: str = "REJECTION_REASON_REQUIRED"

    def __init__(self, match_id: str):
        self.match_id = match_id
        super().__init__(f"A non-empty reason is required to reject match {match_id}")


class RecordNotFoundError(MatchError):
    """Candidate record is not part of the run's snapshot."""

    code: str = "RECORD_NOT_FOUND"

    def __init__(self, record_id: str):
        self.record_id = record_id
        super().__init__(f"Candidate record not found: {record_id}")


# Discrepancy-related exceptions


class DiscrepancyError(ReconKernelError):
    """Base exception for discrepancy tracker errors."""

    code: str = "DISCREPANCY_ERROR"


class DiscrepancyNotFoundError(DiscrepancyError):
    """Discrepancy with given ID was not found."""

    code: str = "DISCREPANCY_NOT_FOUND"

    def __init__(self, discrepancy_id: str):
        self.discrepancy_id = discrepancy_id
        super().__init__(f"Discrepancy not found: {discrepancy_id}")


class ResolutionReasonRequiredError(DiscrepancyError):
    """Resolving or waiving requires a non-empty reason."""

    code: str = "RESOLUTION_REASON_REQUIRED"

    def __init__(self, discrepancy_id: str):
        self.discrepancy_id = discrepancy_id
        super().__init__(
            f"A non-empty resolution reason is required for discrepancy {discrepancy_id}"
        )


class DiscrepancyNotOpenError(DiscrepancyError):
    """Only open discrepancies can be resolved or waived."""

    code: str = "DISCREPANCY_NOT_OPEN"

    def __init__(self, discrepancy_id: str, status: str):
        self.discrepancy_id = discrepancy_id
        self.status = status
        super().__init__(f"Discrepancy {discrepancy_id} is already {status}")


# Run-related exceptions


class RunError(ReconKernelError):
    """Base exception for reconciliation run errors."""

    code: str = "RUN_ERROR"


class RunNotFoundError(RunError):
    """Reconciliation run with given ID is not registered."""

    code: str = "RUN_NOT_FOUND"

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Reconciliation run not found: {run_id}")


class LineNotFoundError(RunError):
    """Statement line is not part of the run."""

    code: str = "LINE_NOT_FOUND"

    def __init__(self, run_id: str, line_id: str):
        self.run_id = run_id
        self.line_id = line_id
        super().__init__(f"Line {line_id} is not part of run {run_id}")


class RunAlreadySignedOffError(RunError):
    """Signed-off runs are immutable; corrections require a new run."""

    code: str = "RUN_ALREADY_SIGNED_OFF"

    def __init__(self, run_id: str, operation: str):
        self.run_id = run_id
        self.operation = operation
        super().__init__(
            f"Run {run_id} is signed off; '{operation}' is not allowed"
        )


# Concurrency exceptions


class ConcurrencyError(ReconKernelError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"


class ConcurrentRunError(ConcurrencyError):
    """
    A cascade is already in flight for this run.

    Retryable: the caller may try again once the in-flight run completes.
    """

    code: str = "CONCURRENT_RUN"

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Run {run_id} already has a cascade in progress")


# Immutability exceptions


class ImmutabilityError(ReconKernelError):
    """Base exception for immutability violations."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """Attempted modification of an immutable persisted record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Cannot modify immutable {entity_type} {entity_id}: {reason}"
        )


# Audit exceptions


class AuditChainBrokenError(ReconKernelError):
    """Audit hash chain validation failed."""

    code: str = "AUDIT_CHAIN_BROKEN"

    def __init__(self, seq: int, expected_hash: str, actual_hash: str):
        self.seq = seq
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash
        super().__init__(
            f"Audit chain broken at seq {seq}: expected {expected_hash}, got {actual_hash}"
        )
