"""Candidate search for correlating a new transaction with stored ones.

A candidate is an active record of the same owner whose amount is within a
relative tolerance and whose timestamp is within a time window of the
incoming transaction:

- Amount: |a1 - a2| <= max(a1, a2) * amount_tolerance
- Time: +/- time_window_hours when both timestamps carry time-of-day,
  +/- time_window_days otherwise (elapsed time, not calendar arithmetic)

Search is read-only and safe to run concurrently for unrelated arrivals.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING

from ..errors import OwnerMismatchError
from ..schemas import Transaction, has_precise_time

if TYPE_CHECKING:
    from ..config import Config, CorrelationConfig
    from ..state_store import TransactionStore

logger = logging.getLogger(__name__)


class CandidateFinder:
    """Finds stored transactions that may describe the same purchase.

    Only the cheap, deterministic signals (owner, amount, time) are checked
    here; the semantic judgment is left to the correlation oracle.
    """

    def __init__(
        self,
        store: TransactionStore,
        config: Config,
    ) -> None:
        """Initialize the candidate finder.

        Args:
            store: Record store to search.
            config: Application configuration.
        """
        self.store = store
        self.config = config
        self.corr_config: CorrelationConfig = config.correlation
        self.amount_tolerance = Decimal(str(self.corr_config.amount_tolerance))
        self.hour_window = timedelta(hours=self.corr_config.time_window_hours)
        self.day_window = timedelta(days=self.corr_config.time_window_days)

    def find_candidates(self, tx: Transaction) -> list[Transaction]:
        """Find active records that could be the same purchase as `tx`.

        The store query uses the widest (day) window because the per-pair
        window depends on the stored record's precision too; each row is then
        checked pairwise. The record itself is never its own candidate.

        Args:
            tx: Incoming (possibly not yet persisted) transaction.

        Returns:
            Matching transactions. Callers must treat the order as arbitrary.

        Raises:
            StoreUnavailable: If the store query fails.
            OwnerMismatchError: If the store returns another owner's record.
        """
        if tx.amount is None or tx.occurred_at is None:
            logger.debug("Transaction lacks amount or timestamp, no candidate search")
            return []

        start, end = self.search_window(tx.occurred_at)
        stored = self.store.query(
            tx.owner,
            start=start,
            end=end,
            limit=self.corr_config.candidate_limit,
        )

        if not stored:
            logger.debug("No stored transactions in window for owner %s", tx.owner)
            return []

        candidates: list[Transaction] = []
        for record in stored:
            if record.owner != tx.owner:
                raise OwnerMismatchError(tx.owner, record.owner, record.id)
            if tx.id is not None and record.id == tx.id:
                continue
            if not record.is_active:
                continue
            if not self.is_amount_match(tx.amount, record.amount):
                continue
            if not self.is_time_match(tx.occurred_at, record.occurred_at):
                continue
            candidates.append(record)

        logger.debug(
            "Found %d candidates among %d stored transactions for owner %s",
            len(candidates),
            len(stored),
            tx.owner,
        )
        return candidates

    def search_window(self, occurred_at: datetime) -> tuple[datetime, datetime]:
        """Store query range around a timestamp (the widest pairwise window)."""
        window = max(self.hour_window, self.day_window)
        return occurred_at - window, occurred_at + window

    def is_amount_match(self, amount1: Decimal | None, amount2: Decimal | None) -> bool:
        """Check if two amounts are within the relative tolerance.

        The tolerance scales with the larger amount, which absorbs rounding
        and tax differences between channels reporting one purchase.
        """
        if amount1 is None or amount2 is None:
            return False
        tolerance = max(abs(amount1), abs(amount2)) * self.amount_tolerance
        return abs(amount1 - amount2) <= tolerance

    def is_time_match(self, time1: datetime | None, time2: datetime | None) -> bool:
        """Check if two timestamps are within the applicable window."""
        if time1 is None or time2 is None:
            return False
        elapsed = abs(time1 - time2)
        if has_precise_time(time1) and has_precise_time(time2):
            return elapsed <= self.hour_window
        return elapsed <= self.day_window
