"""
Module: recon_kernel.models.match
Responsibility: ORM persistence for Match records (latest version of each).
Architecture position: Kernel > Models.  May import from db/base.py and domain/.

Invariants enforced:
    - Match rows are never deleted; rejection is a status change.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from recon_kernel.db.base import Base, UUIDString, as_utc
from recon_kernel.domain.match import Match, MatchedBy, MatchPass, MatchStatus
from recon_kernel.domain.values import to_money


class MatchModel(Base):
    """Persisted state of one match."""

    __tablename__ = "matches"

    __table_args__ = (
        Index("idx_match_run_line", "run_id", "line_id"),
        Index("idx_match_status", "status"),
    )

    run_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("reconciliation_runs.id"), nullable=False,
    )
    line_id: Mapped[str] = mapped_column(String(100), nullable=False)
    record_ids: Mapped[list] = mapped_column(JSON, nullable=False)
    alternative_record_ids: Mapped[list] = mapped_column(JSON, nullable=False)
    criteria: Mapped[dict] = mapped_column(JSON, nullable=False)
    pass_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    confidence_score: Mapped[int] = mapped_column(Integer, nullable=False)
    is_exact: Mapped[bool] = mapped_column(Boolean, nullable=False)
    is_ambiguous: Mapped[bool] = mapped_column(Boolean, nullable=False)
    claimed_amount: Mapped[Decimal] = mapped_column(nullable=False)
    matched_amount: Mapped[Decimal] = mapped_column(nullable=False)
    variance_amount: Mapped[Decimal] = mapped_column(nullable=False)
    date_difference_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    matched_by: Mapped[str] = mapped_column(String(20), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    confirmed_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rejected_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    rejected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)

    def __repr__(self) -> str:
        return f"<Match {self.id} line={self.line_id} {self.status}>"

    @classmethod
    def from_domain(cls, match: Match) -> MatchModel:
        model = cls(
            id=match.match_id,
            run_id=match.run_id,
            line_id=match.line_id,
            record_ids=list(match.record_ids),
            alternative_record_ids=list(match.alternative_record_ids),
            criteria={k: str(v) for k, v in match.criteria},
            pass_number=int(match.pass_number) if match.pass_number is not None else None,
            confidence_score=match.confidence_score,
            is_exact=match.is_exact,
            is_ambiguous=match.is_ambiguous,
            claimed_amount=match.claimed_amount,
            matched_amount=match.matched_amount,
            variance_amount=match.variance_amount,
            date_difference_days=match.date_difference_days,
            matched_by=match.matched_by.value,
            created_at=match.created_at,
        )
        model.apply(match)
        return model

    def apply(self, match: Match) -> None:
        """Copy lifecycle state from the domain object."""
        self.status = match.status.value
        self.confirmed_by = match.confirmed_by
        self.confirmed_at = match.confirmed_at
        self.rejected_by = match.rejected_by
        self.rejected_at = match.rejected_at
        self.rejection_reason = match.rejection_reason

    def to_domain(self) -> Match:
        return Match(
            match_id=self.id,
            run_id=self.run_id,
            line_id=self.line_id,
            record_ids=tuple(self.record_ids),
            pass_number=MatchPass(self.pass_number) if self.pass_number is not None else None,
            confidence_score=self.confidence_score,
            is_exact=self.is_exact,
            variance_amount=to_money(self.variance_amount),
            status=MatchStatus(self.status),
            created_at=as_utc(self.created_at),
            claimed_amount=to_money(self.claimed_amount),
            matched_amount=to_money(self.matched_amount),
            is_ambiguous=self.is_ambiguous,
            alternative_record_ids=tuple(self.alternative_record_ids),
            criteria=tuple(sorted(self.criteria.items())),
            matched_by=MatchedBy(self.matched_by),
            date_difference_days=self.date_difference_days,
            confirmed_by=self.confirmed_by,
            confirmed_at=as_utc(self.confirmed_at),
            rejected_by=self.rejected_by,
            rejected_at=as_utc(self.rejected_at),
            rejection_reason=self.rejection_reason,
        )
