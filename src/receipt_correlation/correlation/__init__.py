"""Correlation engine: decide, merge, and record."""

from receipt_correlation.correlation.engine import (
    CorrelationOutcome,
    CorrelationService,
    OutcomeAction,
)
from receipt_correlation.correlation.ledger import CorrelationLedger
from receipt_correlation.correlation.locks import KeyedLockRegistry
from receipt_correlation.correlation.merge import MergeResolver, MergeResult, resolve_fields
from receipt_correlation.correlation.policy import Decision, DecisionPolicy, decide

__all__ = [
    "CorrelationLedger",
    "CorrelationOutcome",
    "CorrelationService",
    "Decision",
    "DecisionPolicy",
    "KeyedLockRegistry",
    "MergeResolver",
    "MergeResult",
    "OutcomeAction",
    "decide",
    "resolve_fields",
]
