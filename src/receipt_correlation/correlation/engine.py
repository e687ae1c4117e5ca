"""
Correlation service: decides whether an arriving transaction is new or a
second sighting of a purchase the owner already has on record.

Per attempt ("round"):
1. Find candidates (read-only, no lock)
2. Ask the oracle for verdicts (may block for seconds, no lock)
3. Apply the decision policy
4. Commit under the per-owner lock: merge into the winner, or persist
   standalone after re-checking that no new candidate appeared meanwhile

The re-check in step 4 is what makes near-simultaneous arrivals of one
purchase converge to a single surviving record: whoever commits second sees
the first one's record and goes for another round instead of persisting a
parallel survivor.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from ..errors import CorrelationCancelled, DuplicateDeleteFailed, StaleWinnerError
from ..matching import CandidateFinder
from ..oracle.parsing import default_verdicts
from ..schemas import (
    Classification,
    LedgerAction,
    LedgerEntry,
    RecommendedAction,
    absorbed_key,
    compute_correlation_id,
    new_arrival_key,
)
from ..state_store import RecordNotFound, StoreError
from .ledger import CorrelationLedger
from .locks import KeyedLockRegistry
from .merge import MergeResolver
from .policy import Decision, DecisionPolicy

if TYPE_CHECKING:
    from ..config import Config
    from ..oracle import CorrelationOracle
    from ..schemas import Transaction, Verdict
    from ..state_store import TransactionStore

logger = logging.getLogger(__name__)


class OutcomeAction(str, Enum):
    """What happened to a processed transaction."""

    CREATED = "created"
    MERGED = "merged"


@dataclass
class CorrelationOutcome:
    """Result reported to the caller (and onwards to notifiers)."""

    action: OutcomeAction
    transaction_id: str
    confidence: int | None = None
    classification: Classification | None = None
    correlation_id: str | None = None

    @property
    def was_merged(self) -> bool:
        return self.action == OutcomeAction.MERGED

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        result: dict = {
            "action": self.action.value,
            "transaction_id": self.transaction_id,
        }
        if self.was_merged:
            result["confidence"] = self.confidence
            result["classification"] = (
                self.classification.value if self.classification else None
            )
            result["correlation_id"] = self.correlation_id
        return result


class CorrelationService:
    """
    Correlation engine entry point.

    Collaborators are passed in explicitly. The lock registry must be shared
    by every service instance that writes to the same store in one process.
    """

    def __init__(
        self,
        store: TransactionStore,
        oracle: CorrelationOracle,
        config: Config,
        locks: KeyedLockRegistry | None = None,
        ledger: CorrelationLedger | None = None,
    ) -> None:
        """
        Initialize the correlation service.

        Args:
            store: Record store
            oracle: Correlation oracle (LLM-backed or any other judge)
            config: Application configuration
            locks: Commit lock registry (a private one is created if omitted)
            ledger: Correlation ledger (defaults to one on `store`)
        """
        self.store = store
        self.oracle = oracle
        self.config = config
        self.max_rounds = max(1, config.correlation.max_correlation_rounds)
        self.merge_retries = max(1, config.correlation.merge_retries)
        self.lock_timeout = config.correlation.lock_timeout_seconds

        self.locks = locks or KeyedLockRegistry(default_timeout=self.lock_timeout)
        self.ledger = ledger or CorrelationLedger(store)
        self.finder = CandidateFinder(store, config)
        self.policy = DecisionPolicy(config)
        self.merger = MergeResolver(store, self.locks, config)

    @staticmethod
    def owner_lock_key(owner: str) -> str:
        return f"owner:{owner}"

    def process(
        self,
        tx: Transaction,
        cancel_event: threading.Event | None = None,
    ) -> CorrelationOutcome:
        """
        Correlate an arriving transaction and commit the result.

        `tx` may be in flight (no id) or already persisted; a persisted record
        that gets merged is hard-deleted.

        Args:
            tx: The arriving transaction
            cancel_event: Set by the caller to abandon the attempt. Honored
                up to the commit step, ignored afterwards.

        Returns:
            CorrelationOutcome: `created` with the stored id, or `merged`
            with the winner's id

        Raises:
            StoreUnavailable: Candidate search could not read the store
            CorrelationCancelled: `cancel_event` was set before commit
            WinnerUpdateFailed: The winner write failed; safe to retry
            DuplicateDeleteFailed: Merged, but the absorbed record is still stored
            OwnerMismatchError: The store mixed owners (contract violation)
            LockTimeout: The owner's commit lock stayed busy too long
        """
        incoming = tx
        judged: set[str] = set()
        arrival = new_arrival_key()

        for round_number in range(1, self.max_rounds + 1):
            candidates = self.finder.find_candidates(incoming)

            self._check_cancelled(cancel_event, incoming, "before judgment")
            verdicts = self._judge(incoming, candidates)
            judged.update(candidate.id for candidate in candidates)
            decision = self.policy.decide(verdicts, candidates)

            with self.locks.hold(self.owner_lock_key(incoming.owner), timeout=self.lock_timeout):
                self._check_cancelled(cancel_event, incoming, "before commit")

                if incoming.is_persisted:
                    current = self.store.get(incoming.id)
                    if current is None or not current.is_active:
                        return self._absorbed_outcome(incoming.id)
                    incoming = current

                if decision is not None and decision.action == RecommendedAction.MERGE:
                    try:
                        return self._commit_merge(incoming, decision, arrival)
                    except StaleWinnerError as e:
                        logger.info(
                            "Winner %s went stale before commit (round %d/%d)",
                            e.winner_id,
                            round_number,
                            self.max_rounds,
                        )
                        continue

                current_candidates = self.finder.find_candidates(incoming)
                unseen = [c for c in current_candidates if c.id not in judged]
                if unseen and round_number < self.max_rounds:
                    logger.info(
                        "%d candidates appeared during judgment for owner %s, re-judging",
                        len(unseen),
                        incoming.owner,
                    )
                    continue

                return self._commit_standalone(incoming, decision)

        logger.warning(
            "Correlation rounds exhausted for owner %s, persisting standalone", incoming.owner
        )
        with self.locks.hold(self.owner_lock_key(incoming.owner), timeout=self.lock_timeout):
            if incoming.is_persisted:
                current = self.store.get(incoming.id)
                if current is None or not current.is_active:
                    return self._absorbed_outcome(incoming.id)
            return self._commit_standalone(incoming, None)

    def correlate_existing(self, transaction_id: str) -> CorrelationOutcome:
        """
        Retroactively correlate a stored record against the owner's others.

        Raises:
            RecordNotFound: No such record and no ledger trace of it
        """
        tx = self.store.get(transaction_id)
        if tx is None or not tx.is_active:
            return self._absorbed_outcome(transaction_id)
        return self.process(tx)

    def _judge(self, incoming: Transaction, candidates: list[Transaction]) -> list[Verdict]:
        if not candidates:
            return []
        try:
            verdicts = self.oracle.judge(incoming, candidates)
        except Exception as e:
            logger.exception("Correlation oracle raised, assuming no correlation: %s", e)
            return default_verdicts(candidates, "Correlation oracle error")
        if len(verdicts) != len(candidates):
            logger.warning(
                "Oracle returned %d verdicts for %d candidates, assuming no correlation",
                len(verdicts),
                len(candidates),
            )
            return default_verdicts(candidates, "Verdict count mismatch")
        return verdicts

    def _check_cancelled(
        self,
        cancel_event: threading.Event | None,
        incoming: Transaction,
        stage: str,
    ) -> None:
        if cancel_event is not None and cancel_event.is_set():
            logger.info(
                "Correlation for owner %s cancelled %s", incoming.owner, stage
            )
            raise CorrelationCancelled(f"Correlation cancelled {stage}")

    def _commit_merge(
        self,
        incoming: Transaction,
        decision: Decision,
        arrival: str,
    ) -> CorrelationOutcome:
        winner = decision.winner
        verdict = decision.verdict
        absorbed = absorbed_key(incoming, arrival)
        correlation_id = compute_correlation_id(winner.id, absorbed)

        pending_delete: DuplicateDeleteFailed | None = None
        try:
            self.merger.merge(winner, incoming, verdict, absorbed=absorbed)
        except DuplicateDeleteFailed as e:
            pending_delete = e

        self.ledger.record(
            LedgerEntry(
                correlation_id=correlation_id,
                owner=incoming.owner,
                merged_into=winner.id,
                absorbed=absorbed,
                confidence=verdict.confidence,
                classification=verdict.classification,
                action=LedgerAction.MERGED,
                reason=verdict.reason,
            )
        )

        if pending_delete is not None:
            self._finish_absorption(pending_delete)

        return CorrelationOutcome(
            action=OutcomeAction.MERGED,
            transaction_id=winner.id,
            confidence=verdict.confidence,
            classification=verdict.classification,
            correlation_id=correlation_id,
        )

    def _finish_absorption(self, failure: DuplicateDeleteFailed) -> None:
        for attempt in range(1, self.merge_retries + 1):
            try:
                self.merger.complete_absorption(failure.absorbed_id)
                return
            except StoreError as e:
                logger.warning(
                    "Retry %d/%d deleting absorbed %s failed: %s",
                    attempt,
                    self.merge_retries,
                    failure.absorbed_id,
                    e,
                )
        raise failure

    def _commit_standalone(
        self,
        incoming: Transaction,
        decision: Decision | None,
    ) -> CorrelationOutcome:
        if incoming.is_persisted:
            transaction_id = incoming.id
        else:
            transaction_id = self.store.put(incoming)
            logger.info("Created transaction %s for owner %s", transaction_id, incoming.owner)

        if decision is not None and decision.action == RecommendedAction.FLAG_FOR_REVIEW:
            self._record_review_flag(transaction_id, incoming.owner, decision)

        return CorrelationOutcome(action=OutcomeAction.CREATED, transaction_id=transaction_id)

    def _record_review_flag(self, transaction_id: str, owner: str, decision: Decision) -> None:
        verdict = decision.verdict
        self.ledger.record(
            LedgerEntry(
                correlation_id=compute_correlation_id(
                    decision.winner.id,
                    f"{transaction_id}:{LedgerAction.FLAGGED_FOR_REVIEW.value}",
                ),
                owner=owner,
                merged_into=decision.winner.id,
                absorbed=transaction_id,
                confidence=verdict.confidence,
                classification=verdict.classification,
                action=LedgerAction.FLAGGED_FOR_REVIEW,
                reason=verdict.reason,
            )
        )
        logger.info(
            "Flagged %s for review against %s (confidence %d)",
            transaction_id,
            decision.winner.id,
            verdict.confidence,
        )

    def _absorbed_outcome(self, transaction_id: str) -> CorrelationOutcome:
        entry = self.ledger.find_absorber(transaction_id)
        if entry is None:
            raise RecordNotFound(transaction_id)
        # Follow the chain when the absorber was itself merged later on
        seen = {transaction_id}
        while entry.merged_into not in seen:
            seen.add(entry.merged_into)
            survivor = self.store.get(entry.merged_into)
            if survivor is not None and survivor.is_active:
                break
            later = self.ledger.find_absorber(entry.merged_into)
            if later is None:
                break
            entry = later
        logger.info("Transaction %s was already absorbed into %s", transaction_id, entry.merged_into)
        return CorrelationOutcome(
            action=OutcomeAction.MERGED,
            transaction_id=entry.merged_into,
            confidence=entry.confidence,
            classification=entry.classification,
            correlation_id=entry.correlation_id,
        )
