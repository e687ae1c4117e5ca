"""Tests for field resolution and the merge commit protocol."""

from decimal import Decimal
from unittest.mock import patch

import pytest

from receipt_correlation.config import Config
from receipt_correlation.correlation import KeyedLockRegistry, MergeResolver, resolve_fields
from receipt_correlation.errors import (
    DuplicateDeleteFailed,
    OwnerMismatchError,
    StaleWinnerError,
    WinnerUpdateFailed,
)
from receipt_correlation.schemas import (
    InputKind,
    TransactionStatus,
    absorbed_key,
    compute_correlation_id,
    new_arrival_key,
)
from receipt_correlation.state_store import ConcurrentModificationError, StoreWriteError


@pytest.fixture
def resolver(store) -> MergeResolver:
    return MergeResolver(store, KeyedLockRegistry(default_timeout=5), Config())


class TestResolveFields:
    """Tests for the pure field resolution rules."""

    def test_winner_values_kept(self, tx_factory):
        winner = tx_factory(merchant="Cafe X", amount="250")
        incoming = tx_factory(merchant="CAFE X LTD", amount="252", kind=InputKind.EMAIL)

        changes = resolve_fields(winner, incoming)

        assert "merchant" not in changes
        assert "amount" not in changes

    def test_empty_winner_fields_filled(self, tx_factory):
        winner = tx_factory(merchant=None, currency=None, category=None)
        incoming = tx_factory(currency="INR", category="food", kind=InputKind.EMAIL)

        changes = resolve_fields(winner, incoming)

        assert changes["merchant"] == "Cafe X"
        assert changes["currency"] == "INR"
        assert changes["category"] == "food"

    def test_blank_string_counts_as_empty(self, tx_factory):
        winner = tx_factory(merchant="  ")
        assert resolve_fields(winner, tx_factory(kind=InputKind.EMAIL))["merchant"] == "Cafe X"

    def test_items_union_case_insensitive(self, tx_factory):
        """Shared items keep the winner's copy, new ones are appended."""
        winner = tx_factory(items=[("Latte", "150")])
        incoming = tx_factory(items=[("LATTE", "155"), ("Croissant", "100")], kind=InputKind.EMAIL)

        items = resolve_fields(winner, incoming)["items"]

        assert [(i.name, i.price) for i in items] == [
            ("Latte", Decimal("150")),
            ("Croissant", Decimal("100")),
        ]

    def test_precise_timestamp_preferred(self, tx_factory):
        winner = tx_factory(occurred_at="2025-01-24")
        incoming = tx_factory(occurred_at="2025-01-24T14:30:00Z", kind=InputKind.EMAIL)

        changes = resolve_fields(winner, incoming)

        assert changes["occurred_at"] == incoming.occurred_at

    def test_winner_timestamp_kept_when_both_precise(self, tx_factory):
        winner = tx_factory(occurred_at="2025-01-24T14:30:00Z")
        incoming = tx_factory(occurred_at="2025-01-24T14:35:00Z", kind=InputKind.EMAIL)

        assert "occurred_at" not in resolve_fields(winner, incoming)

    def test_winner_precise_timestamp_not_downgraded(self, tx_factory):
        winner = tx_factory(occurred_at="2025-01-24T14:30:00Z")
        incoming = tx_factory(occurred_at="2025-01-24", kind=InputKind.EMAIL)

        assert "occurred_at" not in resolve_fields(winner, incoming)

    def test_sources_appended_without_duplicates(self, tx_factory):
        winner = tx_factory(kind=InputKind.SMS, ref="sms-1")
        incoming = tx_factory(kind=InputKind.EMAIL, ref="mail-1")

        sources = resolve_fields(winner, incoming)["sources"]
        assert [s.key for s in sources] == [("sms", "sms-1"), ("email", "mail-1")]

    def test_nothing_new_is_empty(self, tx_factory):
        """Merging a record that adds nothing resolves to no changes."""
        winner = tx_factory(items=[("Latte", "250")])
        assert resolve_fields(winner, winner) == {}
class TestMergeResolver:
    """Tests for the merge commit protocol against a real store."""

    def test_merge_persisted_incoming(self, resolver, store, tx_factory, verdict_factory):
        winner_id = store.put(tx_factory(kind=InputKind.SMS, ref="sms-1"))
        incoming_id = store.put(
            tx_factory(amount="252", kind=InputKind.EMAIL, ref="mail-1", items=[("Latte", "252")])
        )

        result = resolver.merge(store.get(winner_id), store.get(incoming_id), verdict_factory(88))

        winner = store.get(winner_id)
        assert result.winner_id == winner_id
        assert result.correlation_id == compute_correlation_id(winner_id, incoming_id)
        assert winner.correlation_id == result.correlation_id
        assert winner.amount == Decimal("250")
        assert [s.input_kind for s in winner.sources] == [InputKind.SMS, InputKind.EMAIL]
        assert [i.name for i in winner.items] == ["Latte"]
        assert store.get(incoming_id) is None

    def test_merge_is_idempotent(self, resolver, store, tx_factory, verdict_factory):
        """A second identical merge changes nothing and does not fail."""
        winner_id = store.put(tx_factory(kind=InputKind.SMS, ref="sms-1"))
        incoming = tx_factory(kind=InputKind.EMAIL, ref="mail-1", items=[("Latte", "252")])

        first = resolver.merge(store.get(winner_id), incoming, verdict_factory())
        after_first = store.get(winner_id)
        second = resolver.merge(store.get(winner_id), incoming, verdict_factory())
        after_second = store.get(winner_id)

        assert first.changed
        assert second.was_noop
        assert second.correlation_id == first.correlation_id
        assert after_second.version == after_first.version
        assert len(after_second.sources) == 2
        assert len(after_second.items) == 1

    def test_merge_resolves_against_fresh_winner(
        self, resolver, store, tx_factory, verdict_factory
    ):
        """A winner changed since judgment is merged into, not overwritten."""
        winner_id = store.put(tx_factory(kind=InputKind.SMS, ref="sms-1"))
        stale_view = store.get(winner_id)
        voice = tx_factory(kind=InputKind.VOICE, ref="v-1")
        store.update(winner_id, {"sources": stale_view.sources + voice.sources})

        email = tx_factory(kind=InputKind.EMAIL, ref="mail-1")
        resolver.merge(stale_view, email, verdict_factory())

        kinds = [s.input_kind for s in store.get(winner_id).sources]
        assert kinds == [InputKind.SMS, InputKind.VOICE, InputKind.EMAIL]

    def test_correlation_id_tracks_last_merge(self, resolver, store, tx_factory, verdict_factory):
        """The winner points at the ledger entry of its most recent merge."""
        winner_id = store.put(tx_factory(kind=InputKind.SMS, ref="sms-1"))
        first = resolver.merge(
            store.get(winner_id), tx_factory(kind=InputKind.EMAIL, ref="m"), verdict_factory()
        )
        assert store.get(winner_id).correlation_id == first.correlation_id

        second = resolver.merge(
            store.get(winner_id), tx_factory(kind=InputKind.VOICE, ref="v"), verdict_factory()
        )

        assert first.correlation_id != second.correlation_id
        assert store.get(winner_id).correlation_id == second.correlation_id

    def test_replaying_older_merge_keeps_latest_correlation_id(
        self, resolver, store, tx_factory, verdict_factory
    ):
        winner_id = store.put(tx_factory(kind=InputKind.SMS, ref="sms-1"))
        email = tx_factory(kind=InputKind.EMAIL, ref="m")
        resolver.merge(store.get(winner_id), email, verdict_factory())
        second = resolver.merge(
            store.get(winner_id), tx_factory(kind=InputKind.VOICE, ref="v"), verdict_factory()
        )

        replay = resolver.merge(store.get(winner_id), email, verdict_factory())

        assert replay.was_noop
        assert store.get(winner_id).correlation_id == second.correlation_id

    def test_stale_winner_absorbed(self, resolver, store, tx_factory, verdict_factory):
        winner_id = store.put(tx_factory())
        winner = store.get(winner_id)
        store.update(winner_id, {"status": TransactionStatus.ABSORBED})

        with pytest.raises(StaleWinnerError):
            resolver.merge(winner, tx_factory(kind=InputKind.EMAIL), verdict_factory())

    def test_stale_winner_deleted(self, resolver, store, tx_factory, verdict_factory):
        winner_id = store.put(tx_factory())
        winner = store.get(winner_id)
        store.delete(winner_id)

        with pytest.raises(StaleWinnerError):
            resolver.merge(winner, tx_factory(kind=InputKind.EMAIL), verdict_factory())

    def test_owner_mismatch(self, resolver, store, tx_factory, verdict_factory):
        winner = store.get(store.put(tx_factory(owner="someone-else")))

        with pytest.raises(OwnerMismatchError):
            resolver.merge(winner, tx_factory(kind=InputKind.EMAIL), verdict_factory())

    def test_cannot_absorb_itself(self, resolver, store, tx_factory, verdict_factory):
        winner = store.get(store.put(tx_factory()))
        with pytest.raises(ValueError):
            resolver.merge(winner, winner, verdict_factory())

    def test_winner_update_failure(self, resolver, store, tx_factory, verdict_factory):
        """A failed winner write is WinnerUpdateFailed; the incoming survives."""
        winner_id = store.put(tx_factory(kind=InputKind.SMS, ref="sms-1"))
        incoming_id = store.put(tx_factory(kind=InputKind.EMAIL, ref="mail-1"))

        with patch.object(store, "update", side_effect=StoreWriteError("disk full")):
            with pytest.raises(WinnerUpdateFailed):
                resolver.merge(store.get(winner_id), store.get(incoming_id), verdict_factory())

        assert store.get(incoming_id) is not None
        assert len(store.get(winner_id).sources) == 1

    def test_persistent_version_conflict(self, resolver, store, tx_factory, verdict_factory):
        winner_id = store.put(tx_factory(kind=InputKind.SMS, ref="sms-1"))
        conflict = ConcurrentModificationError(winner_id, 1)
        incoming = tx_factory(kind=InputKind.EMAIL)

        with patch.object(store, "update", side_effect=conflict) as update:
            with pytest.raises(WinnerUpdateFailed):
                resolver.merge(store.get(winner_id), incoming, verdict_factory())

        assert update.call_count == Config().correlation.merge_retries

    def test_delete_failure_then_complete_absorption(
        self, resolver, store, tx_factory, verdict_factory
    ):
        """Winner written, delete failed: retry only the delete."""
        winner_id = store.put(tx_factory(kind=InputKind.SMS, ref="sms-1"))
        incoming_id = store.put(tx_factory(kind=InputKind.EMAIL, ref="mail-1"))
        incoming = store.get(incoming_id)

        with patch.object(store, "delete", side_effect=StoreWriteError("locked")):
            with pytest.raises(DuplicateDeleteFailed) as exc_info:
                resolver.merge(store.get(winner_id), incoming, verdict_factory())

        assert exc_info.value.winner_id == winner_id
        assert exc_info.value.absorbed_id == incoming_id
        assert len(store.get(winner_id).sources) == 2

        # Re-running the whole merge is a no-op on the winner
        version = store.get(winner_id).version
        resolver.merge(store.get(winner_id), incoming, verdict_factory())
        assert store.get(winner_id).version == version
        assert store.get(incoming_id) is None
        assert resolver.complete_absorption(incoming_id) is False

    def test_complete_absorption(self, resolver, store, tx_factory):
        incoming_id = store.put(tx_factory())
        assert resolver.complete_absorption(incoming_id) is True
        assert store.get(incoming_id) is None

    def test_in_flight_incoming_uses_source_identity(
        self, resolver, store, tx_factory, verdict_factory
    ):
        winner_id = store.put(tx_factory(kind=InputKind.SMS, ref="sms-1"))
        incoming = tx_factory(kind=InputKind.EMAIL, ref="mail-1")

        result = resolver.merge(store.get(winner_id), incoming, verdict_factory())

        assert result.correlation_id == compute_correlation_id(winner_id, absorbed_key(incoming))

    def test_sourceless_in_flight_uses_given_arrival_key(
        self, resolver, store, tx_factory, verdict_factory
    ):
        """The caller's arrival key keeps one arrival's id stable across retries."""
        winner_id = store.put(tx_factory(kind=InputKind.SMS, ref="sms-1"))
        incoming = tx_factory()
        incoming.sources = []
        arrival = new_arrival_key()

        first = resolver.merge(store.get(winner_id), incoming, verdict_factory(), absorbed=arrival)
        retry = resolver.merge(store.get(winner_id), incoming, verdict_factory(), absorbed=arrival)

        assert first.correlation_id == retry.correlation_id
        assert first.correlation_id == compute_correlation_id(winner_id, arrival)

    def test_sourceless_in_flight_arrivals_get_distinct_ids(
        self, resolver, store, tx_factory, verdict_factory
    ):
        winner_id = store.put(tx_factory(kind=InputKind.SMS, ref="sms-1"))
        arrivals = [tx_factory(amount="250"), tx_factory(amount="251")]
        for tx in arrivals:
            tx.sources = []

        ids = {
            resolver.merge(store.get(winner_id), tx, verdict_factory()).correlation_id
            for tx in arrivals
        }

        assert len(ids) == 2
