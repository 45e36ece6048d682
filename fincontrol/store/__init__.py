"""Ledger store and snapshot-scoped memoization."""

from fincontrol.store.cache import SnapshotCache
from fincontrol.store.ledger_store import LedgerStore, TransactionFilter

__all__ = ["LedgerStore", "SnapshotCache", "TransactionFilter"]
