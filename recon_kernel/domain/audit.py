"""
Audit entries -- one per state change, hash-chained per run.

Invariants enforced:
    - Every entry carries the hash of its predecessor (``prev_hash``), or
      None for the first entry of a run.
    - Entries are append-only; nothing in the engine updates or deletes one.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID


class AuditAction(str, Enum):
    """Auditable state changes."""

    RUN_OPENED = "run_opened"
    CASCADE_COMPLETED = "cascade_completed"
    LINE_INVALID = "line_invalid"
    MATCH_PROPOSED = "match_proposed"
    MATCH_CONFIRMED = "match_confirmed"
    MATCH_REJECTED = "match_rejected"
    DISCREPANCY_OPENED = "discrepancy_opened"
    DISCREPANCY_UPDATED = "discrepancy_updated"
    DISCREPANCY_RESOLVED = "discrepancy_resolved"
    DISCREPANCY_WAIVED = "discrepancy_waived"
    SIGNOFF_REFUSED = "signoff_refused"
    RUN_SIGNED_OFF = "run_signed_off"


class AuditEntityType(str, Enum):
    RUN = "run"
    LINE = "line"
    MATCH = "match"
    DISCREPANCY = "discrepancy"


@dataclass(frozen=True, slots=True)
class AuditEntry:
    """One immutable audit record."""

    entry_id: UUID
    run_id: UUID
    seq: int
    entity_type: AuditEntityType
    entity_id: str
    action: AuditAction
    actor: str
    occurred_at: datetime
    previous_state: dict[str, Any] | None
    new_state: dict[str, Any] | None
    payload_hash: str
    prev_hash: str | None
    hash: str
    reason: str | None = None
