"""
Correlation ledger entries and correlation id generation.

The correlation id is deterministic: the same (winner, absorbed) pair always
yields the same id, so a retried merge writes the same back-reference on the
winner and the ledger insert for it is a no-op.

Format: corr_{sha256(winner_id|absorbed_key)[:16]}
"""

from __future__ import annotations

import hashlib
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from .transaction import Transaction, utc_now
from .verdict import Classification

CORRELATION_ID_PREFIX = "corr_"

HASH_PREFIX_LENGTH = 16


class LedgerAction(str, Enum):
    """What the engine did with a correlated pair."""

    MERGED = "merged"
    FLAGGED_FOR_REVIEW = "flagged_for_review"


def absorbed_key(incoming: Transaction, arrival_key: str | None = None) -> str:
    """
    Stable identity of the record being folded into a winner.

    Persisted records are identified by id; in-flight records by their
    provenance keys, which do not change across retries. An in-flight record
    without sources falls back to `arrival_key`, which the caller picks once
    per arrival so every merge attempt for it agrees.

    Raises:
        ValueError: An in-flight record without sources and no arrival_key
    """
    if incoming.id:
        return incoming.id
    if incoming.source_keys:
        return "|".join(f"{kind}:{ref}" for kind, ref in sorted(incoming.source_keys))
    if arrival_key:
        return arrival_key
    raise ValueError("An in-flight transaction without sources needs an arrival key")


def new_arrival_key() -> str:
    """Fresh identity for one arrival of an in-flight transaction."""
    return f"arrival:{uuid.uuid4().hex}"


def compute_correlation_id(winner_id: str, absorbed: str) -> str:
    """
    Compute the deterministic correlation id for a merge.

    Args:
        winner_id: Id of the surviving record
        absorbed: Identity of the absorbed record (see absorbed_key)

    Returns:
        Correlation id such as "corr_1a2b3c4d5e6f7a8b"
    """
    digest = hashlib.sha256(f"{winner_id}|{absorbed}".encode()).hexdigest()
    return f"{CORRELATION_ID_PREFIX}{digest[:HASH_PREFIX_LENGTH]}"


@dataclass(frozen=True)
class LedgerEntry:
    """Append-only audit record of a correlation the engine acted on."""

    correlation_id: str
    owner: str
    merged_into: str
    absorbed: str
    confidence: int
    classification: Classification
    action: LedgerAction = LedgerAction.MERGED
    reason: str = ""
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict:
        return {
            "correlation_id": self.correlation_id,
            "owner": self.owner,
            "merged_into": self.merged_into,
            "absorbed": self.absorbed,
            "confidence": self.confidence,
            "classification": self.classification.value,
            "action": self.action.value,
            "reason": self.reason,
            "timestamp": self.timestamp.isoformat(),
        }
