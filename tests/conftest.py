"""Test fixtures and utilities."""

from __future__ import annotations

import threading
from collections.abc import Callable
from decimal import Decimal
from pathlib import Path

import pytest

from receipt_correlation.config import Config
from receipt_correlation.schemas import (
    Classification,
    InputKind,
    LineItem,
    RecommendedAction,
    SourceEntry,
    Transaction,
    Verdict,
    parse_timestamp,
)
from receipt_correlation.state_store import TransactionStore

OWNER = "user-1"


class ScriptedOracle:
    """Correlation oracle double.

    `rule(incoming, candidate)` returns a Verdict (candidate_id is filled in)
    or None for "no correlation". Every call is recorded.
    """

    def __init__(self, rule: Callable[[Transaction, Transaction], Verdict | None] | None = None):
        self.rule = rule
        self.calls: list[tuple[Transaction, list[Transaction]]] = []
        self._lock = threading.Lock()

    def judge(self, incoming: Transaction, candidates: list[Transaction]) -> list[Verdict]:
        with self._lock:
            self.calls.append((incoming, list(candidates)))
        verdicts = []
        for candidate in candidates:
            verdict = self.rule(incoming, candidate) if self.rule else None
            if verdict is None:
                verdicts.append(Verdict.no_correlation(candidate.id))
            else:
                verdicts.append(
                    Verdict(
                        candidate_id=candidate.id,
                        is_correlated=verdict.is_correlated,
                        confidence=verdict.confidence,
                        classification=verdict.classification,
                        recommended_action=verdict.recommended_action,
                        reason=verdict.reason,
                    )
                )
        return verdicts


def make_verdict(
    confidence: int = 90,
    classification: Classification = Classification.SAME_PURCHASE,
    action: RecommendedAction = RecommendedAction.MERGE,
    candidate_id: str | None = None,
    is_correlated: bool = True,
) -> Verdict:
    return Verdict(
        candidate_id=candidate_id,
        is_correlated=is_correlated,
        confidence=confidence,
        classification=classification,
        recommended_action=action,
        reason="test verdict",
    )


def make_tx(
    merchant: str | None = "Cafe X",
    amount: str | None = "250",
    occurred_at: str | None = "2025-01-24T14:30:00Z",
    kind: InputKind = InputKind.SMS,
    ref: str | None = None,
    owner: str = OWNER,
    items: list[tuple[str, str]] | None = None,
    currency: str | None = "INR",
    category: str | None = None,
) -> Transaction:
    return Transaction(
        owner=owner,
        merchant=merchant,
        amount=None if amount is None else Decimal(amount),
        currency=currency,
        occurred_at=parse_timestamp(occurred_at),
        items=[LineItem(name=name, price=Decimal(price)) for name, price in items or []],
        sources=[SourceEntry(input_kind=kind, external_ref=ref or f"{kind.value}-{merchant}")],
        category=category,
    )


@pytest.fixture
def temp_db(tmp_path) -> Path:
    """Temporary database path for testing."""
    return tmp_path / "test_correlation.db"


@pytest.fixture
def store(temp_db) -> TransactionStore:
    """Fresh record store with migrations applied."""
    return TransactionStore(temp_db)


@pytest.fixture
def config(temp_db) -> Config:
    """Default configuration pointing at the temporary database."""
    config = Config()
    config.store.db_path = temp_db
    return config


@pytest.fixture
def tx_factory() -> Callable[..., Transaction]:
    """Build in-flight transactions (see make_tx for the defaults)."""
    return make_tx


@pytest.fixture
def verdict_factory() -> Callable[..., Verdict]:
    return make_verdict


@pytest.fixture
def oracle_factory() -> Callable[..., ScriptedOracle]:
    return ScriptedOracle


@pytest.fixture
def owner() -> str:
    """Owner of every transaction built by tx_factory."""
    return OWNER
