"""
Module: recon_kernel.models.audit_event
Responsibility: ORM persistence for the per-run tamper-evident audit chain.
Architecture position: Kernel > Models.  May import from db/base.py and domain/.

Invariants enforced:
    - Audit records are append-only; no UPDATE or DELETE.
    - hash = H(entity_type | entity_id | action | payload_hash | prev_hash).
    - (run_id, seq) is unique and seq increases within a run.

Failure modes:
    - ImmutabilityViolationError on any UPDATE/DELETE attempt.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import JSON, BigInteger, DateTime, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from recon_kernel.db.base import Base, UUIDString, as_utc
from recon_kernel.domain.audit import AuditAction, AuditEntityType, AuditEntry


class AuditEventModel(Base):
    """
    Audit event with hash chain for tamper evidence.

    Contract:
        Rows are append-only, never updated or deleted.

    Non-goals:
        - This model does NOT check hash correctness at INSERT time;
          that is AuditTrail.verify_chain's job.
    """

    __tablename__ = "audit_events"

    __table_args__ = (
        UniqueConstraint("run_id", "seq", name="uq_audit_run_seq"),
        Index("idx_audit_entity", "entity_type", "entity_id"),
        Index("idx_audit_action", "action"),
    )

    run_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("reconciliation_runs.id"), nullable=False,
    )
    seq: Mapped[int] = mapped_column(BigInteger, nullable=False)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(100), nullable=False)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    actor: Mapped[str] = mapped_column(String(100), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    previous_state: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    new_state: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    prev_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    hash: Mapped[str] = mapped_column(String(64), nullable=False)

    def __repr__(self) -> str:
        return f"<AuditEvent {self.action} on {self.entity_type}:{self.entity_id}>"

    @property
    def is_genesis(self) -> bool:
        return self.prev_hash is None

    @classmethod
    def from_domain(cls, entry: AuditEntry) -> AuditEventModel:
        return cls(
            id=entry.entry_id,
            run_id=entry.run_id,
            seq=entry.seq,
            entity_type=entry.entity_type.value,
            entity_id=entry.entity_id,
            action=entry.action.value,
            actor=entry.actor,
            occurred_at=entry.occurred_at,
            reason=entry.reason,
            previous_state=entry.previous_state,
            new_state=entry.new_state,
            payload_hash=entry.payload_hash,
            prev_hash=entry.prev_hash,
            hash=entry.hash,
        )

    def to_domain(self) -> AuditEntry:
        return AuditEntry(
            entry_id=self.id,
            run_id=self.run_id,
            seq=self.seq,
            entity_type=AuditEntityType(self.entity_type),
            entity_id=self.entity_id,
            action=AuditAction(self.action),
            actor=self.actor,
            occurred_at=as_utc(self.occurred_at),
            previous_state=self.previous_state,
            new_state=self.new_state,
            payload_hash=self.payload_hash,
            prev_hash=self.prev_hash,
            hash=self.hash,
            reason=self.reason,
        )
