"""
Position ledger.

Folds classified transactions into per-position open/close counters. The
fold is commutative: any ordering of the same transactions gives the same
counters. Pool ids are hints and keep whichever was seen last. A reopen
of a closed id simply bumps the open counter again; callers interpret the
resulting multiplicity.
"""
from __future__ import annotations
from typing import Dict, Iterable, List

from dlmm_tracker.models.schemas import (
    ClassifiedTransaction,
    EventKind,
    LedgerEntry,
    LedgerSnapshot,
)


class PositionLedger:
    """Accumulating open/close counters. Counters only ever increase."""

    def __init__(self):
        self._entries: Dict[str, LedgerEntry] = {}
        self._unidentified_opens = 0
        self._pool_ids: List[str] = []

    def add(self, tx: ClassifiedTransaction) -> None:
        if tx.pool_id and tx.pool_id not in self._pool_ids:
            self._pool_ids.append(tx.pool_id)

        if tx.kind not in (EventKind.POSITION_OPEN, EventKind.POSITION_CLOSE):
            if tx.position_id and tx.pool_id and tx.position_id in self._entries:
                self._entries[tx.position_id].pool_id = tx.pool_id
            return

        if tx.position_id is None:
            if tx.kind == EventKind.POSITION_OPEN:
                self._unidentified_opens += 1
            return

        entry = self._entries.get(tx.position_id)
        if entry is None:
            entry = LedgerEntry(position_id=tx.position_id)
            self._entries[tx.position_id] = entry

        if tx.kind == EventKind.POSITION_OPEN:
            entry.open_count += 1
        else:
            entry.close_count += 1

        if tx.pool_id:
            entry.pool_id = tx.pool_id

    def extend(self, transactions: Iterable[ClassifiedTransaction]) -> None:
        for tx in transactions:
            self.add(tx)

    def snapshot(self) -> LedgerSnapshot:
        return LedgerSnapshot(
            entries={
                pid: LedgerEntry(e.position_id, e.open_count, e.close_count, e.pool_id)
                for pid, e in self._entries.items()
            },
            unidentified_opens=self._unidentified_opens,
            pool_ids=list(self._pool_ids),
        )


def build_ledger(transactions: Iterable[ClassifiedTransaction]) -> LedgerSnapshot:
    """Rebuild a wallet's ledger from scratch."""
    ledger = PositionLedger()
    ledger.extend(transactions)
    return ledger.snapshot()
