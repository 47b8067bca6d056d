"""
Clock -- injectable time source for the reconciliation services.

Responsibility:
    The match ledger, discrepancy tracker, sign-off gate and audit trail
    stamp ``created_at``, ``detected_at`` and ``signed_off_at`` from a Clock
    handed to them, never from the system directly.

Architecture position:
    Kernel > Domain.  SystemClock is the only place that reads real time;
    engines take no clock at all.

Audit relevance:
    With a DeterministicClock two runs over the same inputs produce
    identical audit entries, hashes included.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone

EPOCH = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class Clock(ABC):
    """Source of timezone-aware UTC timestamps."""

    @abstractmethod
    def now(self) -> datetime:
        ...


class SystemClock(Clock):

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """
    Clock that only moves when told to.

    Guarantees:
        Repeated ``now()`` calls return the same instant until
        ``advance()`` is called.
    """

    def __init__(self, start: datetime | None = None):
        self._current = start or EPOCH

    def now(self) -> datetime:
        return self._current

    def advance(self, seconds: float = 1) -> datetime:
        """Move forward by *seconds* and return the new instant."""
        self._current += timedelta(seconds=seconds)
        return self._current
