"""
Correlation ledger: append-only audit trail of what the engine acted on.

The ledger is a diagnostic side channel. A failed ledger write is logged and
dropped; it never blocks or undoes a merge that already committed.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from ..state_store import StoreError

if TYPE_CHECKING:
    from ..schemas import LedgerAction, LedgerEntry
    from ..state_store import TransactionStore

logger = logging.getLogger(__name__)


class CorrelationLedger:
    """Writes and reads correlation ledger entries through the record store."""

    def __init__(self, store: TransactionStore) -> None:
        self.store = store

    def record(self, entry: LedgerEntry) -> bool:
        """
        Append an entry (best effort).

        Returns:
            True if a new entry was written, False if it already existed or
            the write failed
        """
        try:
            inserted = self.store.append_ledger_entry(entry)
        except StoreError as e:
            logger.warning(
                "Could not record %s ledger entry %s: %s",
                entry.action.value,
                entry.correlation_id,
                e,
            )
            return False

        if inserted:
            logger.debug(
                "Ledger: %s %s -> %s (confidence %d)",
                entry.action.value,
                entry.absorbed,
                entry.merged_into,
                entry.confidence,
            )
        else:
            logger.debug("Ledger entry %s already recorded", entry.correlation_id)
        return inserted

    def entries_for_owner(
        self,
        owner: str,
        action: LedgerAction | None = None,
        limit: int | None = None,
    ) -> list[LedgerEntry]:
        """An owner's correlations, newest first, for manual reconciliation."""
        return self.store.get_ledger_entries(owner, action=action, limit=limit)

    def find_absorber(self, absorbed_id: str) -> LedgerEntry | None:
        """The merge entry that absorbed `absorbed_id`, if one was recorded."""
        return self.store.find_ledger_entry_for_absorbed(absorbed_id)
