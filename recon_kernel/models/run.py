"""
Module: recon_kernel.models.run
Responsibility: ORM persistence for ReconciliationRun aggregates.
Architecture position: Kernel > Models.  May import from db/base.py and domain/.

Invariants enforced:
    - A signed-off run row is frozen: every later UPDATE is blocked by
      db/immutability.py.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import Date, DateTime, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from recon_kernel.db.base import Base, as_utc
from recon_kernel.domain.run import (
    AcknowledgementType,
    ReconciliationRun,
    SignoffStatus,
    StatementPeriod,
)
from recon_kernel.domain.values import to_money


class ReconciliationRunModel(Base):
    """One statement reconciliation run."""

    __tablename__ = "reconciliation_runs"

    __table_args__ = (
        Index("idx_run_counterparty", "counterparty_id"),
        Index("idx_run_signoff_status", "signoff_status"),
    )

    counterparty_id: Mapped[str] = mapped_column(String(100), nullable=False)
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)
    total_claimed: Mapped[Decimal] = mapped_column(nullable=False)
    total_matched: Mapped[Decimal] = mapped_column(nullable=False)
    net_variance: Mapped[Decimal] = mapped_column(nullable=False)
    signoff_status: Mapped[str] = mapped_column(String(20), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    signed_off_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    signed_off_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    acknowledgement_type: Mapped[str | None] = mapped_column(String(20), nullable=True)

    def __repr__(self) -> str:
        return f"<ReconciliationRun {self.id} {self.signoff_status}>"

    @classmethod
    def from_domain(cls, run: ReconciliationRun) -> ReconciliationRunModel:
        model = cls(id=run.run_id, created_at=run.created_at)
        model.apply(run)
        return model

    def apply(self, run: ReconciliationRun) -> None:
        """Copy mutable aggregate state from the domain object."""
        self.counterparty_id = run.counterparty_id
        self.period_start = run.statement_period.start
        self.period_end = run.statement_period.end
        self.total_claimed = run.total_claimed
        self.total_matched = run.total_matched
        self.net_variance = run.net_variance
        self.signoff_status = run.signoff_status.value
        self.signed_off_by = run.signed_off_by
        self.signed_off_at = run.signed_off_at
        self.acknowledgement_type = (
            run.acknowledgement_type.value if run.acknowledgement_type else None
        )

    def to_domain(self) -> ReconciliationRun:
        return ReconciliationRun(
            run_id=self.id,
            counterparty_id=self.counterparty_id,
            statement_period=StatementPeriod(self.period_start, self.period_end),
            created_at=as_utc(self.created_at),
            total_claimed=to_money(self.total_claimed),
            total_matched=to_money(self.total_matched),
            net_variance=to_money(self.net_variance),
            signoff_status=SignoffStatus(self.signoff_status),
            signed_off_by=self.signed_off_by,
            signed_off_at=as_utc(self.signed_off_at),
            acknowledgement_type=(
                AcknowledgementType(self.acknowledgement_type)
                if self.acknowledgement_type else None
            ),
        )
