"""
AuditTrail -- per-run, hash-chained history of every state change.

Responsibility:
    Appends an immutable ``AuditEntry`` (actor, timestamp, previous state,
    new state, reason) for every mutation made by the ledger, the tracker,
    the gate and the service facade.  Provides chain validation for tamper
    detection and per-entity history queries.

Architecture position:
    Services -- in-memory, owned by one RunContext.  Persisted by RunStore.

Invariants enforced:
    - Append-only: entries are never modified or removed.
    - ``seq`` starts at 1 and increases by exactly 1 within a run.
    - ``hash = H(entity_type | entity_id | action | payload_hash | prev_hash)``
      and ``prev_hash`` is the previous entry's hash (None for the first).

Failure modes:
    - AuditChainBrokenError from ``verify_chain`` when a hash or link does
      not recompute.
"""

from __future__ import annotations

import threading
from collections.abc import Sequence
from typing import Any
from uuid import UUID

from recon_kernel.domain.audit import AuditAction, AuditEntityType, AuditEntry
from recon_kernel.domain.clock import Clock, SystemClock
from recon_kernel.exceptions import AuditChainBrokenError
from recon_kernel.logging_config import get_logger
from recon_kernel.utils.hashing import derive_id, hash_audit_entry, hash_payload

logger = get_logger("services.audit_trail")


def _payload(
    actor: str,
    occurred_at: Any,
    previous_state: dict[str, Any] | None,
    new_state: dict[str, Any] | None,
    reason: str | None,
) -> dict[str, Any]:
    return {
        "actor": actor,
        "occurred_at": occurred_at,
        "previous_state": previous_state,
        "new_state": new_state,
        "reason": reason,
    }


def verify_entries(entries: Sequence[AuditEntry]) -> bool:
    """
    Validate a chain of entries in seq order.

    Raises:
        AuditChainBrokenError: If any payload hash, entry hash or link fails.
    """
    prev_hash: str | None = None
    for expected_seq, entry in enumerate(entries, start=1):
        if entry.seq != expected_seq:
            raise AuditChainBrokenError(entry.seq, f"seq {expected_seq}", f"seq {entry.seq}")

        if entry.prev_hash != prev_hash:
            logger.critical("audit_chain_broken", extra={"seq": entry.seq, "check": "link"})
            raise AuditChainBrokenError(entry.seq, prev_hash or "None", entry.prev_hash or "None")

        payload_hash = hash_payload(
            _payload(
                entry.actor,
                entry.occurred_at,
                entry.previous_state,
                entry.new_state,
                entry.reason,
            )
        )
        if payload_hash != entry.payload_hash:
            logger.critical("audit_chain_broken", extra={"seq": entry.seq, "check": "payload"})
            raise AuditChainBrokenError(entry.seq, payload_hash, entry.payload_hash)

        expected_hash = hash_audit_entry(
            entity_type=entry.entity_type.value,
            entity_id=entry.entity_id,
            action=entry.action.value,
            payload_hash=entry.payload_hash,
            prev_hash=entry.prev_hash,
        )
        if entry.hash != expected_hash:
            logger.critical("audit_chain_broken", extra={"seq": entry.seq, "check": "hash"})
            raise AuditChainBrokenError(entry.seq, expected_hash, entry.hash)

        prev_hash = entry.hash

    return True


class AuditTrail:
    """
    Append-only audit chain for one reconciliation run.

    Contract:
        ``record`` is the only way to add history; callers pass previous
        and new state snapshots as plain dicts.

    Guarantees:
        - Thread-safe: concurrent ``record`` calls are serialized so the
          chain never forks.

    Non-goals:
        - Does NOT persist; RunStore copies entries to the database.
    """

    def __init__(self, run_id: UUID, clock: Clock | None = None):
        self._run_id = run_id
        self._clock = clock or SystemClock()
        self._entries: list[AuditEntry] = []
        self._lock = threading.Lock()

    @property
    def run_id(self) -> UUID:
        return self._run_id

    @property
    def last_hash(self) -> str | None:
        with self._lock:
            return self._entries[-1].hash if self._entries else None

    def record(
        self,
        entity_type: AuditEntityType,
        entity_id: Any,
        action: AuditAction,
        actor: str,
        *,
        previous_state: dict[str, Any] | None = None,
        new_state: dict[str, Any] | None = None,
        reason: str | None = None,
    ) -> AuditEntry:
        """Append one entry linked to the current chain head."""
        with self._lock:
            seq = len(self._entries) + 1
            prev_hash = self._entries[-1].hash if self._entries else None
            occurred_at = self._clock.now()
            payload_hash = hash_payload(
                _payload(actor, occurred_at, previous_state, new_state, reason)
            )
            entry_hash = hash_audit_entry(
                entity_type=entity_type.value,
                entity_id=str(entity_id),
                action=action.value,
                payload_hash=payload_hash,
                prev_hash=prev_hash,
            )
            entry = AuditEntry(
                entry_id=derive_id(self._run_id, "audit", seq),
                run_id=self._run_id,
                seq=seq,
                entity_type=entity_type,
                entity_id=str(entity_id),
                action=action,
                actor=actor,
                occurred_at=occurred_at,
                previous_state=previous_state,
                new_state=new_state,
                payload_hash=payload_hash,
                prev_hash=prev_hash,
                hash=entry_hash,
                reason=reason,
            )
            self._entries.append(entry)

        logger.debug(
            "audit_entry_recorded",
            extra={
                "seq": seq,
                "entity_type": entity_type.value,
                "entity_id": str(entity_id),
                "action": action.value,
                "actor": actor,
            },
        )
        return entry

    def entries(self) -> tuple[AuditEntry, ...]:
        with self._lock:
            return tuple(self._entries)

    def history(self, entity_type: AuditEntityType, entity_id: Any) -> tuple[AuditEntry, ...]:
        """Entries for one entity, oldest first."""
        key = str(entity_id)
        with self._lock:
            return tuple(
                e for e in self._entries
                if e.entity_type == entity_type and e.entity_id == key
            )

    def verify_chain(self) -> bool:
        """Validate the whole chain; raises AuditChainBrokenError on failure."""
        result = verify_entries(self.entries())
        logger.info("audit_chain_valid", extra={"entry_count": len(self)})
        return result

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
