"""
Record Store (SQLite-based).

Lightweight persistent DB for:
- Transactions, keyed by id and queryable by owner and time range
- The correlation ledger (append-only merge audit trail)

The single conditional update is the only atomic primitive; correlation
code is written to be safe without multi-record transactions.
"""

from .errors import (
    ConcurrentModificationError,
    RecordNotFound,
    StoreError,
    StoreUnavailable,
    StoreWriteError,
)
from .sqlite_store import TransactionStore

__all__ = [
    "TransactionStore",
    "StoreError",
    "StoreUnavailable",
    "StoreWriteError",
    "RecordNotFound",
    "ConcurrentModificationError",
]
