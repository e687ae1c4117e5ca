"""
Oracle verdict schema.

A verdict is the oracle's judgment for one (incoming, candidate) pair.
Verdicts are produced per correlation attempt, consumed by the decision
policy and never mutated. Anything the oracle returns is coerced into this
shape; unknown values fall back to the "no correlation" defaults.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


def _normalize_label(value: Any) -> str:
    return str(value).strip().lower().replace("-", "_").replace(" ", "_")


class Classification(str, Enum):
    """How two records relate to each other."""

    DUPLICATE = "duplicate"
    SAME_PURCHASE = "same_purchase"
    RELATED = "related"
    UNRELATED = "unrelated"

    @property
    def rank(self) -> int:
        """Tie-break strength: duplicate > same_purchase > related > unrelated."""
        return {
            Classification.DUPLICATE: 3,
            Classification.SAME_PURCHASE: 2,
            Classification.RELATED: 1,
            Classification.UNRELATED: 0,
        }[self]

    @classmethod
    def parse(cls, value: Any) -> "Classification":
        if value is None:
            return cls.UNRELATED
        try:
            return cls(_normalize_label(value))
        except ValueError:
            return cls.UNRELATED


class RecommendedAction(str, Enum):
    """What the oracle suggests doing with a correlated pair."""

    MERGE = "merge"
    FLAG_FOR_REVIEW = "flag_for_review"
    KEEP_SEPARATE = "keep_separate"

    @classmethod
    def parse(cls, value: Any) -> "RecommendedAction":
        if value is None:
            return cls.KEEP_SEPARATE
        try:
            return cls(_normalize_label(value))
        except ValueError:
            return cls.KEEP_SEPARATE


@dataclass(frozen=True)
class Verdict:
    """Judgment for one candidate."""

    candidate_id: str | None
    is_correlated: bool
    confidence: int
    classification: Classification
    recommended_action: RecommendedAction
    reason: str = ""

    @classmethod
    def no_correlation(cls, candidate_id: str | None, reason: str = "") -> "Verdict":
        """Default verdict used whenever the oracle gives nothing usable."""
        return cls(
            candidate_id=candidate_id,
            is_correlated=False,
            confidence=0,
            classification=Classification.UNRELATED,
            recommended_action=RecommendedAction.KEEP_SEPARATE,
            reason=reason,
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "candidate_id": self.candidate_id,
            "is_correlated": self.is_correlated,
            "confidence": self.confidence,
            "classification": self.classification.value,
            "recommended_action": self.recommended_action.value,
            "reason": self.reason,
        }
