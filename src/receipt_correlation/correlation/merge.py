"""
Merge resolver: fold an incoming transaction into its winner.

Commit protocol (two steps, not atomic across the store):
1. Conditional update of the winner with the resolved fields
2. Hard delete of the incoming record, if it was persisted

A failure in step 1 means nothing happened (WinnerUpdateFailed). A failure
in step 2 means the merge happened and only the delete is outstanding
(DuplicateDeleteFailed). Re-running a merge whose data is already on the
winner writes nothing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from ..errors import (
    DuplicateDeleteFailed,
    OwnerMismatchError,
    StaleWinnerError,
    WinnerUpdateFailed,
)
from ..schemas import (
    LineItem,
    SourceEntry,
    Transaction,
    absorbed_key,
    compute_correlation_id,
    new_arrival_key,
)
from ..state_store import ConcurrentModificationError, RecordNotFound, StoreError

if TYPE_CHECKING:
    from ..config import Config
    from ..schemas import Verdict
    from ..state_store import TransactionStore
    from .locks import KeyedLockRegistry

logger = logging.getLogger(__name__)

# Scalar fields where the winner's value is kept unless it is empty
WINNER_FIRST_FIELDS = ("merchant", "amount", "currency", "category")


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _union_items(winner_items: list[LineItem], incoming_items: list[LineItem]) -> list[LineItem]:
    seen = {item.key for item in winner_items}
    merged = list(winner_items)
    for item in incoming_items:
        if item.key not in seen:
            seen.add(item.key)
            merged.append(item)
    return merged


def _union_sources(
    winner_sources: list[SourceEntry], incoming_sources: list[SourceEntry]
) -> list[SourceEntry]:
    seen = {source.key for source in winner_sources}
    merged = list(winner_sources)
    for source in incoming_sources:
        if source.key not in seen:
            seen.add(source.key)
            merged.append(source)
    return merged


def resolve_fields(winner: Transaction, incoming: Transaction) -> dict[str, Any]:
    """
    Resolve the winner's post-merge fields.

    Rules:
    - merchant, amount, currency, category: winner's value unless empty
    - items: union by case-insensitive name, winner's copy kept
    - occurred_at: the time-bearing value over a date-only one, else winner's
    - sources: incoming entries appended unless already present

    Returns:
        Only the fields whose value changes; empty when the merge adds nothing
    """
    changes: dict[str, Any] = {}

    for name in WINNER_FIRST_FIELDS:
        current = getattr(winner, name)
        offered = getattr(incoming, name)
        if _is_empty(current) and not _is_empty(offered):
            changes[name] = offered

    if winner.occurred_at is None:
        if incoming.occurred_at is not None:
            changes["occurred_at"] = incoming.occurred_at
    elif incoming.has_precise_time and not winner.has_precise_time:
        changes["occurred_at"] = incoming.occurred_at

    items = _union_items(winner.items, incoming.items)
    if len(items) != len(winner.items):
        changes["items"] = items

    sources = _union_sources(winner.sources, incoming.sources)
    if len(sources) != len(winner.sources):
        changes["sources"] = sources

    return changes


@dataclass
class MergeResult:
    """Outcome of a committed merge."""

    winner_id: str
    correlation_id: str
    changed: list[str] = field(default_factory=list)
    winner: Transaction | None = None

    @property
    def was_noop(self) -> bool:
        return not self.changed


class MergeResolver:
    """Commits merges under a per-winner critical section."""

    def __init__(
        self,
        store: TransactionStore,
        locks: KeyedLockRegistry,
        config: Config,
    ) -> None:
        self.store = store
        self.locks = locks
        self.merge_retries = max(1, config.correlation.merge_retries)
        self.lock_timeout = config.correlation.lock_timeout_seconds

    @staticmethod
    def winner_lock_key(winner_id: str) -> str:
        return f"winner:{winner_id}"

    def merge(
        self,
        winner: Transaction,
        incoming: Transaction,
        verdict: Verdict,
        absorbed: str | None = None,
    ) -> MergeResult:
        """
        Fold `incoming` into `winner`.

        The winner is re-read under its lock and fields are resolved against
        that fresh state, so a winner that changed since judgment is merged
        into rather than overwritten.

        Args:
            winner: Winner as seen at judgment time
            incoming: Record being absorbed (persisted or not)
            verdict: The verdict that chose the winner
            absorbed: Identity of `incoming` (see absorbed_key). Pass it to
                keep a source-less in-flight record's correlation id stable
                across retries; otherwise a fresh arrival key is used.

        Returns:
            MergeResult carrying the surviving id

        Raises:
            StaleWinnerError: The winner is gone or no longer active
            OwnerMismatchError: Winner and incoming belong to different owners
            WinnerUpdateFailed: The winner write did not happen
            DuplicateDeleteFailed: The winner was written, the delete was not
        """
        if winner.id is None:
            raise ValueError("Cannot merge into a transaction that was never stored")
        if incoming.id is not None and incoming.id == winner.id:
            raise ValueError(f"Transaction {winner.id} cannot absorb itself")

        if absorbed is None:
            absorbed = absorbed_key(incoming, new_arrival_key())
        correlation_id = compute_correlation_id(winner.id, absorbed)

        with self.locks.hold(self.winner_lock_key(winner.id), timeout=self.lock_timeout):
            changed, fresh = self._update_winner(winner.id, incoming, correlation_id)
            if incoming.id is not None:
                self._delete_absorbed(winner.id, incoming.id)

        logger.info(
            "Merged %s into %s (%s, confidence %d, %d fields changed)",
            incoming.id or "incoming transaction",
            winner.id,
            verdict.classification.value,
            verdict.confidence,
            len(changed),
        )
        return MergeResult(
            winner_id=winner.id,
            correlation_id=correlation_id,
            changed=changed,
            winner=fresh,
        )

    def _update_winner(
        self,
        winner_id: str,
        incoming: Transaction,
        correlation_id: str,
    ) -> tuple[list[str], Transaction]:
        for attempt in range(1, self.merge_retries + 1):
            try:
                fresh = self.store.get(winner_id)
            except StoreError as e:
                raise WinnerUpdateFailed(winner_id, str(e)) from e

            if fresh is None or not fresh.is_active:
                raise StaleWinnerError(winner_id)
            if fresh.owner != incoming.owner:
                raise OwnerMismatchError(incoming.owner, fresh.owner, fresh.id)

            changes = resolve_fields(fresh, incoming)
            # Points at the last merge that changed the winner; a replay stays a no-op
            if changes or fresh.correlation_id is None:
                changes["correlation_id"] = correlation_id

            if not changes:
                logger.debug("Merge into %s adds nothing, skipping winner update", winner_id)
                return [], fresh

            try:
                updated = self.store.update(winner_id, changes, expected_version=fresh.version)
            except ConcurrentModificationError:
                logger.info(
                    "Winner %s changed during merge (attempt %d/%d), re-resolving",
                    winner_id,
                    attempt,
                    self.merge_retries,
                )
                continue
            except RecordNotFound as e:
                raise StaleWinnerError(winner_id) from e
            except StoreError as e:
                raise WinnerUpdateFailed(winner_id, str(e)) from e
            return sorted(changes), updated

        raise WinnerUpdateFailed(
            winner_id, f"still modified concurrently after {self.merge_retries} attempts"
        )

    def _delete_absorbed(self, winner_id: str, absorbed_id: str) -> None:
        try:
            self.store.delete(absorbed_id)
        except StoreError as e:
            logger.warning(
                "Merged into %s but could not delete absorbed %s: %s", winner_id, absorbed_id, e
            )
            raise DuplicateDeleteFailed(winner_id, absorbed_id, str(e)) from e

    def complete_absorption(self, absorbed_id: str) -> bool:
        """
        Retry only the delete of an already-merged record.

        Returns:
            True if the record was removed now, False if it was already gone

        Raises:
            StoreError: The delete failed again
        """
        removed = self.store.delete(absorbed_id)
        if removed:
            logger.info("Completed absorption of %s", absorbed_id)
        return removed
