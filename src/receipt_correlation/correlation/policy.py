"""Decision policy: pick the candidate to act on from a batch of verdicts."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from ..schemas import RecommendedAction, Transaction, Verdict

if TYPE_CHECKING:
    from ..config import Config

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE_THRESHOLD = 70

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class Decision:
    """The candidate chosen as winner and the verdict that chose it."""

    winner: Transaction
    verdict: Verdict

    @property
    def action(self) -> RecommendedAction:
        return self.verdict.recommended_action

    @property
    def confidence(self) -> int:
        return self.verdict.confidence


def decide(
    verdicts: list[Verdict],
    candidates: list[Transaction],
    threshold: int = DEFAULT_CONFIDENCE_THRESHOLD,
) -> Decision | None:
    """
    Select the actionable verdict, if any.

    Only correlated verdicts whose candidate is known are considered. The
    highest confidence wins; ties go to the stronger classification, then to
    the most recently updated candidate.

    Args:
        verdicts: Oracle verdicts, one per candidate
        candidates: The candidates the verdicts refer to
        threshold: Minimum confidence (inclusive) to act on

    Returns:
        Decision, or None when nothing reaches the threshold
    """
    by_id = {candidate.id: candidate for candidate in candidates}
    eligible = [
        (verdict, by_id[verdict.candidate_id])
        for verdict in verdicts
        if verdict.is_correlated and verdict.candidate_id in by_id
    ]
    if not eligible:
        return None

    verdict, winner = max(
        eligible,
        key=lambda pair: (
            pair[0].confidence,
            pair[0].classification.rank,
            pair[1].updated_at or _EPOCH,
        ),
    )
    if verdict.confidence < threshold:
        logger.debug(
            "Best verdict confidence %d below threshold %d", verdict.confidence, threshold
        )
        return None
    return Decision(winner=winner, verdict=verdict)


class DecisionPolicy:
    """Decision policy bound to the configured confidence threshold."""

    def __init__(self, config: Config) -> None:
        self.threshold = config.correlation.confidence_threshold

    def decide(self, verdicts: list[Verdict], candidates: list[Transaction]) -> Decision | None:
        return decide(verdicts, candidates, threshold=self.threshold)
