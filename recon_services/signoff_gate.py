"""
recon_services.signoff_gate -- variance gate for closing a reconciliation run.

Responsibility:
    Decide whether a run's residual variance allows sign-off and perform the
    one-way SIGNED_OFF transition.  The gate composes the tracker's
    aggregate with the configured tolerance; it holds no state of its own.

Architecture position:
    Services -- stateless orchestration over a RunContext.

Invariants enforced:
    - Ready only when the aggregate open variance is within the Pass 4
      tolerance (percentage base = total claimed), no single open
      discrepancy is out of tolerance, no invalid-input discrepancy is open,
      and the cascade has run at least once.
    - SIGNED_OFF is terminal.  There is no un-sign-off; a second attempt is
      refused with ALREADY_SIGNED_OFF.

Failure modes:
    None raised.  Refusals are SignOffResult values with code NOT_READY or
    ALREADY_SIGNED_OFF and a human-readable blocking_reason that includes
    the blocking amount and the tolerance limits used.

Audit relevance:
    Both successful sign-offs (RUN_SIGNED_OFF) and refusals
    (SIGNOFF_REFUSED) are recorded in the run's audit chain.
"""

from __future__ import annotations

from dataclasses import replace

from recon_config.schema import ToleranceConfig
from recon_engines.normalizer import amounts_within_tolerance
from recon_kernel.domain.audit import AuditAction, AuditEntityType
from recon_kernel.domain.clock import Clock, SystemClock
from recon_kernel.domain.discrepancy import DiscrepancySeverity
from recon_kernel.domain.results import ReadinessResult, SignOffResult
from recon_kernel.domain.run import AcknowledgementType, SignoffStatus
from recon_kernel.domain.values import format_money
from recon_kernel.logging_config import get_logger
from recon_services.run_context import RunContext

logger = get_logger("services.signoff_gate")

NOT_READY = "NOT_READY"
ALREADY_SIGNED_OFF = "ALREADY_SIGNED_OFF"


class SignoffGate:
    """
    Readiness evaluation and sign-off for reconciliation runs.

    Contract:
        ``evaluate_readiness`` never mutates.  ``sign_off`` mutates the
        context's run only on success.
    """

    def __init__(self, tolerance: ToleranceConfig | None = None, clock: Clock | None = None):
        self._tolerance = tolerance or ToleranceConfig()
        self._clock = clock or SystemClock()

    @property
    def tolerance(self) -> ToleranceConfig:
        return self._tolerance

    def _limits(self) -> str:
        return (
            f"tolerance absolute {format_money(self._tolerance.absolute)}, "
            f"percent {self._tolerance.percent * 100:.2f}%"
        )

    def evaluate_readiness(self, context: RunContext) -> ReadinessResult:
        """Whether the run may be signed off right now."""
        with context.state_lock:
            run = context.run
            tracker = context.tracker
            aggregate = tracker.aggregate_variance(run.run_id)
            open_items = tracker.open_discrepancies()

            def _result(reason: str | None = None, amount=None) -> ReadinessResult:
                return ReadinessResult(
                    run_id=run.run_id,
                    ready=reason is None,
                    aggregate_variance=aggregate,
                    absolute_limit=self._tolerance.absolute,
                    percent_limit=self._tolerance.percent,
                    blocking_reason=reason,
                    blocking_amount=amount,
                    open_discrepancies=len(open_items),
                )

            if run.is_signed_off:
                return _result("run is already signed off")

            if context.cascade_runs == 0:
                return _result("matching cascade has not run")

            if not amounts_within_tolerance(
                run.total_claimed,
                run.total_claimed - aggregate,
                self._tolerance.absolute,
                self._tolerance.percent,
            ):
                return _result(
                    f"aggregate variance {format_money(aggregate)} exceeds {self._limits()} "
                    f"of total claimed {format_money(run.total_claimed)}",
                    aggregate,
                )

            for discrepancy in open_items:
                if discrepancy.severity == DiscrepancySeverity.CRITICAL:
                    return _result(
                        f"line {discrepancy.line_id} has invalid input: {discrepancy.description}",
                        discrepancy.amount,
                    )
                if not tracker.is_within_tolerance(discrepancy.amount, discrepancy.reference_amount):
                    return _result(
                        f"line {discrepancy.line_id} {discrepancy.kind.value} "
                        f"{format_money(discrepancy.amount)} exceeds {self._limits()}",
                        discrepancy.amount,
                    )

            return _result()

    def sign_off(self, context: RunContext, actor: str) -> SignOffResult:
        """Close the run if it is ready; otherwise return a refusal."""
        with context.state_lock:
            run = context.run
            if run.is_signed_off:
                logger.warning(
                    "signoff_already_signed_off",
                    extra={"run_id": str(run.run_id), "actor": actor},
                )
                return SignOffResult.refused(
                    run.run_id,
                    ALREADY_SIGNED_OFF,
                    f"run {run.run_id} was signed off by {run.signed_off_by}",
                )

            readiness = self.evaluate_readiness(context)
            if not readiness.ready:
                context.audit.record(
                    AuditEntityType.RUN,
                    run.run_id,
                    AuditAction.SIGNOFF_REFUSED,
                    actor,
                    new_state=run.to_state(),
                    reason=readiness.blocking_reason,
                )
                logger.info(
                    "signoff_refused",
                    extra={
                        "run_id": str(run.run_id),
                        "actor": actor,
                        "blocking_reason": readiness.blocking_reason,
                        "blocking_amount": (
                            str(readiness.blocking_amount)
                            if readiness.blocking_amount is not None else None
                        ),
                    },
                )
                return SignOffResult.refused(
                    run.run_id,
                    NOT_READY,
                    readiness.blocking_reason or "run is not ready",
                    blocking_amount=readiness.blocking_amount,
                    readiness=readiness,
                )

            acknowledgement = (
                AcknowledgementType.FULL
                if readiness.open_discrepancies == 0
                else AcknowledgementType.WITH_EXCEPTIONS
            )
            now = self._clock.now()
            signed = replace(
                run,
                signoff_status=SignoffStatus.SIGNED_OFF,
                signed_off_by=actor,
                signed_off_at=now,
                acknowledgement_type=acknowledgement,
            )
            context.run = signed
            context.audit.record(
                AuditEntityType.RUN,
                run.run_id,
                AuditAction.RUN_SIGNED_OFF,
                actor,
                previous_state=run.to_state(),
                new_state=signed.to_state(),
            )

        logger.info(
            "run_signed_off",
            extra={
                "run_id": str(run.run_id),
                "actor": actor,
                "acknowledgement_type": acknowledgement.value,
                "aggregate_variance": str(readiness.aggregate_variance),
            },
        )
        return SignOffResult.signed(
            run.run_id, actor, now, acknowledgement, readiness=readiness,
        )
