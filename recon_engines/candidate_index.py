"""
recon_engines.candidate_index -- per-run lookup structure over CandidateRecords.

Responsibility:
    Answer the two lookups the cascade needs (raw reference + currency +
    amount, and normalized reference + currency) over the counterparty's
    open, unconsumed records, and serialize record consumption.

Architecture position:
    Engines -- in-memory, per-run state.  One index per ReconciliationRun;
    no sharing between runs.

Invariants enforced:
    - Lookups return only OPEN records that have not been claimed, sorted
      by record_id so iteration order never depends on input order.
    - ``claim`` is all-or-none under the index lock: two lines racing for
      the same record cannot both win.
    - ``rebuild`` is idempotent and keeps consumption state for record ids
      still present in the new snapshot.

Failure modes:
    - ValueError when the snapshot contains the same record_id twice.
"""

from __future__ import annotations

import threading
from collections import defaultdict
from collections.abc import Collection, Iterable
from decimal import Decimal

from recon_engines.normalizer import normalize_reference
from recon_kernel.domain.statement import CandidateRecord
from recon_kernel.logging_config import get_logger

logger = get_logger("engines.candidate_index")

_ExactKey = tuple[str, str, Decimal]
_NormalizedKey = tuple[str, str]


class CandidateIndex:
    """
    Lookup index over one counterparty's candidate records.

    Contract:
        Reads (lookups, ``get``) never observe a half-applied claim.
        Settled and voided records are kept for ``get`` but never returned
        by lookups.

    Non-goals:
        - Does NOT persist consumption; the ledger is the source of truth
          for which matches are confirmed.
    """

    def __init__(
        self,
        records: Iterable[CandidateRecord],
        counterparty_id: str | None = None,
    ):
        self._lock = threading.RLock()
        self._counterparty_id = counterparty_id
        self._consumed: set[str] = set()
        self._records: dict[str, CandidateRecord] = {}
        self._exact: dict[_ExactKey, list[str]] = {}
        self._normalized: dict[_NormalizedKey, list[str]] = {}
        self._build(records)

    @property
    def counterparty_id(self) -> str | None:
        return self._counterparty_id

    def _build(self, records: Iterable[CandidateRecord]) -> None:
        by_id: dict[str, CandidateRecord] = {}
        skipped = 0
        for record in records:
            if self._counterparty_id is not None and record.counterparty_id != self._counterparty_id:
                skipped += 1
                continue
            if record.record_id in by_id:
                raise ValueError(f"Duplicate candidate record id: {record.record_id}")
            by_id[record.record_id] = record

        exact: dict[_ExactKey, list[str]] = defaultdict(list)
        normalized: dict[_NormalizedKey, list[str]] = defaultdict(list)
        for record_id in sorted(by_id):
            record = by_id[record_id]
            exact[(record.document_reference, record.currency, record.amount)].append(record_id)
            normalized[(normalize_reference(record.document_reference), record.currency)].append(
                record_id
            )

        self._records = by_id
        self._exact = dict(exact)
        self._normalized = dict(normalized)
        self._consumed &= set(by_id)

        logger.debug(
            "candidate_index_built",
            extra={
                "record_count": len(by_id),
                "open_count": sum(1 for r in by_id.values() if r.is_open),
                "skipped_other_counterparty": skipped,
                "consumed_count": len(self._consumed),
            },
        )

    def rebuild(self, records: Iterable[CandidateRecord]) -> None:
        """Replace the snapshot, keeping consumption for surviving record ids."""
        with self._lock:
            self._build(records)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def _eligible(self, record_ids: list[str], exclude: Collection[str]) -> list[CandidateRecord]:
        return [
            self._records[record_id]
            for record_id in record_ids
            if record_id not in self._consumed
            and record_id not in exclude
            and self._records[record_id].is_open
        ]

    def lookup_exact(
        self,
        document_reference: str,
        currency: str,
        amount: Decimal,
        exclude: Collection[str] = (),
    ) -> list[CandidateRecord]:
        """Open, unconsumed records with this raw reference, currency and amount."""
        with self._lock:
            ids = self._exact.get((document_reference, currency, amount), [])
            return self._eligible(ids, exclude)

    def lookup_by_normalized_reference(
        self,
        normalized_ref: str,
        currency: str,
        exclude: Collection[str] = (),
    ) -> list[CandidateRecord]:
        """Open, unconsumed records whose normalized reference and currency match."""
        with self._lock:
            ids = self._normalized.get((normalized_ref, currency), [])
            return self._eligible(ids, exclude)

    def get(self, record_id: str) -> CandidateRecord | None:
        """Any record in the snapshot, including settled, voided or consumed."""
        with self._lock:
            return self._records.get(record_id)

    def is_available(self, record_id: str) -> bool:
        with self._lock:
            record = self._records.get(record_id)
            return record is not None and record.is_open and record_id not in self._consumed

    def consumed_ids(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._consumed)

    def __len__(self) -> int:
        return len(self._records)

    # ------------------------------------------------------------------
    # Consumption
    # ------------------------------------------------------------------

    def claim(self, record_ids: Collection[str]) -> bool:
        """
        Atomically consume all of ``record_ids``.

        Returns False, consuming nothing, if any record is unknown, not open,
        or already consumed.
        """
        with self._lock:
            unavailable = [rid for rid in record_ids if not self.is_available(rid)]
            if unavailable:
                logger.info(
                    "candidate_claim_refused",
                    extra={"record_ids": sorted(record_ids), "unavailable": sorted(unavailable)},
                )
                return False
            self._consumed.update(record_ids)
            return True

    def release(self, record_ids: Collection[str]) -> None:
        """Return previously claimed records to the pool."""
        with self._lock:
            self._consumed.difference_update(record_ids)
