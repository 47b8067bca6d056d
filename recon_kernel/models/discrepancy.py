"""
Module: recon_kernel.models.discrepancy
Responsibility: ORM persistence for Discrepancy records.
Architecture position: Kernel > Models.  May import from db/base.py and domain/.

Invariants enforced:
    - Discrepancy rows are never deleted; closing one is a status change
      that must carry a resolution reason.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import DateTime, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from recon_kernel.db.base import Base, UUIDString, as_utc
from recon_kernel.domain.discrepancy import (
    Discrepancy,
    DiscrepancyKind,
    DiscrepancySeverity,
    DiscrepancyStatus,
)
from recon_kernel.domain.values import to_money


class DiscrepancyModel(Base):
    """Persisted state of one discrepancy."""

    __tablename__ = "discrepancies"

    __table_args__ = (
        Index("idx_discrepancy_run_line", "run_id", "line_id"),
        Index("idx_discrepancy_status", "status"),
    )

    run_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("reconciliation_runs.id"), nullable=False,
    )
    line_id: Mapped[str] = mapped_column(String(100), nullable=False)
    match_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    kind: Mapped[str] = mapped_column(String(30), nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    reference_amount: Mapped[Decimal] = mapped_column(nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    detected_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    detected_by: Mapped[str] = mapped_column(String(100), nullable=False)
    resolution_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<Discrepancy {self.id} {self.kind} {self.status}>"

    @classmethod
    def from_domain(cls, discrepancy: Discrepancy) -> DiscrepancyModel:
        model = cls(
            id=discrepancy.discrepancy_id,
            run_id=discrepancy.run_id,
            line_id=discrepancy.line_id,
            match_id=discrepancy.match_id,
            kind=discrepancy.kind.value,
            amount=discrepancy.amount,
            reference_amount=discrepancy.reference_amount,
            severity=discrepancy.severity.value,
            description=discrepancy.description,
            detected_at=discrepancy.detected_at,
            detected_by=discrepancy.detected_by,
        )
        model.apply(discrepancy)
        return model

    def apply(self, discrepancy: Discrepancy) -> None:
        self.status = discrepancy.status.value
        self.resolution_reason = discrepancy.resolution_reason
        self.resolved_by = discrepancy.resolved_by
        self.resolved_at = discrepancy.resolved_at

    def to_domain(self) -> Discrepancy:
        return Discrepancy(
            discrepancy_id=self.id,
            run_id=self.run_id,
            line_id=self.line_id,
            kind=DiscrepancyKind(self.kind),
            amount=to_money(self.amount),
            status=DiscrepancyStatus(self.status),
            severity=DiscrepancySeverity(self.severity),
            detected_at=as_utc(self.detected_at),
            description=self.description,
            reference_amount=to_money(self.reference_amount),
            match_id=self.match_id,
            detected_by=self.detected_by,
            resolution_reason=self.resolution_reason,
            resolved_by=self.resolved_by,
            resolved_at=as_utc(self.resolved_at),
        )
