"""
SSOT schemas for the correlation engine.

These canonical schemas are the ONLY models used across all modules.
"""

from .ledger import (
    CORRELATION_ID_PREFIX,
    LedgerAction,
    LedgerEntry,
    absorbed_key,
    compute_correlation_id,
    new_arrival_key,
)
from .transaction import (
    InputKind,
    LineItem,
    SourceEntry,
    Transaction,
    TransactionStatus,
    has_precise_time,
    parse_amount,
    parse_timestamp,
    utc_now,
)
from .verdict import Classification, RecommendedAction, Verdict

__all__ = [
    # Transactions
    "InputKind",
    "LineItem",
    "SourceEntry",
    "Transaction",
    "TransactionStatus",
    "has_precise_time",
    "parse_amount",
    "parse_timestamp",
    "utc_now",
    # Verdicts
    "Classification",
    "RecommendedAction",
    "Verdict",
    # Ledger
    "CORRELATION_ID_PREFIX",
    "LedgerAction",
    "LedgerEntry",
    "absorbed_key",
    "compute_correlation_id",
    "new_arrival_key",
]
