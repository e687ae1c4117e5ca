"""Tests for the candidate finder."""

from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from receipt_correlation.config import Config
from receipt_correlation.errors import OwnerMismatchError
from receipt_correlation.matching import CandidateFinder
from receipt_correlation.schemas import InputKind, TransactionStatus, parse_timestamp
from receipt_correlation.state_store import StoreUnavailable



@pytest.fixture
def finder(store) -> CandidateFinder:
    return CandidateFinder(store, Config())


class TestAmountMatch:
    """Relative amount tolerance (5% of the larger amount)."""

    def test_within_tolerance(self, finder):
        """1000 vs 1049 differs by 4.7% of 1049."""
        assert finder.is_amount_match(Decimal("1000"), Decimal("1049"))
        assert finder.is_amount_match(Decimal("1049"), Decimal("1000"))

    def test_outside_tolerance(self, finder):
        """1000 vs 1060 differs by 5.7% of 1060."""
        assert not finder.is_amount_match(Decimal("1000"), Decimal("1060"))

    def test_exact_boundary(self, finder):
        """A difference of exactly 5% of the larger amount is still in."""
        assert finder.is_amount_match(Decimal("950"), Decimal("1000"))
        assert not finder.is_amount_match(Decimal("949"), Decimal("1000"))

    def test_missing_amount(self, finder):
        assert not finder.is_amount_match(None, Decimal("10"))

    def test_tolerance_is_configurable(self, store):
        config = Config()
        config.correlation.amount_tolerance = 0.10
        finder = CandidateFinder(store, config)
        assert finder.is_amount_match(Decimal("1000"), Decimal("1100"))


class TestTimeMatch:
    """Time window switches on timestamp precision."""

    def test_date_only_one_day_apart(self, finder):
        assert finder.is_time_match(parse_timestamp("2025-01-24"), parse_timestamp("2025-01-25"))

    def test_date_only_two_days_apart(self, finder):
        assert not finder.is_time_match(
            parse_timestamp("2025-01-24"), parse_timestamp("2025-01-26")
        )

    def test_date_only_across_month_boundary(self, finder):
        """Elapsed time, not day-of-month arithmetic."""
        assert finder.is_time_match(parse_timestamp("2025-01-31"), parse_timestamp("2025-02-01"))
        assert not finder.is_time_match(
            parse_timestamp("2025-01-01"), parse_timestamp("2025-02-01")
        )

    def test_precise_45_minutes(self, finder):
        assert finder.is_time_match(
            parse_timestamp("2025-01-24T14:00:00Z"), parse_timestamp("2025-01-24T14:45:00Z")
        )

    def test_precise_90_minutes(self, finder):
        assert not finder.is_time_match(
            parse_timestamp("2025-01-24T14:00:00Z"), parse_timestamp("2025-01-24T15:30:00Z")
        )

    def test_mixed_precision_uses_day_window(self, finder):
        """One date-only side widens the window to a day."""
        assert finder.is_time_match(
            parse_timestamp("2025-01-24"), parse_timestamp("2025-01-24T18:00:00Z")
        )


class TestFindCandidates:
    """Tests for find_candidates against a real store."""

    def test_no_history(self, finder, tx_factory):
        """An owner without history simply has no candidates."""
        assert finder.find_candidates(tx_factory()) == []

    def test_finds_matching_record(self, finder, store, tx_factory):
        stored_id = store.put(tx_factory(amount="250", occurred_at="2025-01-24T14:30:00Z"))
        incoming = tx_factory(
            amount="252", occurred_at="2025-01-24T14:35:00Z", kind=InputKind.EMAIL
        )

        candidates = finder.find_candidates(incoming)

        assert [c.id for c in candidates] == [stored_id]

    def test_excludes_other_owner_amount_and_time(self, finder, store, tx_factory):
        store.put(tx_factory(owner="someone-else"))
        store.put(tx_factory(amount="400"))
        store.put(tx_factory(occurred_at="2025-01-24T17:30:00Z"))

        assert finder.find_candidates(tx_factory()) == []

    def test_date_only_stored_record_found_from_precise_incoming(self, finder, store, tx_factory):
        """The store query uses the widest window, the pair test decides."""
        stored_id = store.put(tx_factory(occurred_at="2025-01-24"))
        incoming = tx_factory(occurred_at="2025-01-24T20:00:00Z", kind=InputKind.EMAIL)

        assert [c.id for c in finder.find_candidates(incoming)] == [stored_id]

    def test_excludes_self_and_inactive(self, finder, store, tx_factory):
        own_id = store.put(tx_factory())
        absorbed_id = store.put(tx_factory(kind=InputKind.EMAIL))
        store.update(absorbed_id, {"status": TransactionStatus.ABSORBED})

        persisted = store.get(own_id)
        assert finder.find_candidates(persisted) == []

    def test_previously_merged_winner_still_eligible(self, finder, store, tx_factory):
        winner_id = store.put(tx_factory())
        store.update(winner_id, {"correlation_id": "corr_0000000000000000"})

        candidates = finder.find_candidates(tx_factory(kind=InputKind.VOICE))
        assert [c.id for c in candidates] == [winner_id]

    def test_incomplete_incoming_has_no_candidates(self, finder, store, tx_factory):
        store.put(tx_factory())
        assert finder.find_candidates(tx_factory(amount=None)) == []
        assert finder.find_candidates(tx_factory(occurred_at=None)) == []

    def test_owner_mismatch_is_fatal(self, tx_factory):
        """A store returning another owner's record is a contract violation."""
        store = MagicMock()
        store.query.return_value = [tx_factory(owner="intruder")]
        finder = CandidateFinder(store, Config())

        with pytest.raises(OwnerMismatchError):
            finder.find_candidates(tx_factory())

    def test_store_unavailable_propagates(self, tx_factory):
        store = MagicMock()
        store.query.side_effect = StoreUnavailable("down")
        finder = CandidateFinder(store, Config())

        with pytest.raises(StoreUnavailable):
            finder.find_candidates(tx_factory())

    def test_query_capped_by_candidate_limit(self, tx_factory):
        store = MagicMock()
        store.query.return_value = []
        config = Config()
        config.correlation.candidate_limit = 7

        CandidateFinder(store, config).find_candidates(tx_factory())

        assert store.query.call_args.kwargs["limit"] == 7
