"""
Correlation error taxonomy.

Oracle failures never appear here: they degrade to "no correlation" inside
the oracle gateway. Store read failures surface as
state_store.StoreUnavailable.
"""


class CorrelationError(Exception):
    """Base class for correlation engine errors."""

    pass


class OwnerMismatchError(CorrelationError):
    """Two records from different owners were about to be correlated.

    This is a contract violation, never a runtime condition to recover from.
    """

    def __init__(self, expected_owner: str, actual_owner: str, transaction_id: str | None):
        super().__init__(
            f"Transaction {transaction_id} belongs to {actual_owner!r}, expected {expected_owner!r}"
        )
        self.expected_owner = expected_owner
        self.actual_owner = actual_owner
        self.transaction_id = transaction_id


class StaleWinnerError(CorrelationError):
    """The chosen winner was absorbed or deleted between judgment and commit."""

    def __init__(self, winner_id: str):
        super().__init__(f"Winner {winner_id} is no longer an active transaction")
        self.winner_id = winner_id


class WinnerUpdateFailed(CorrelationError):
    """The winner write did not happen. The merge can be retried from scratch."""

    def __init__(self, winner_id: str, message: str):
        super().__init__(f"Winner {winner_id} update failed: {message}")
        self.winner_id = winner_id


class DuplicateDeleteFailed(CorrelationError):
    """The winner was updated but the absorbed record is still stored.

    The merge logically happened; only the delete needs retrying.
    """

    def __init__(self, winner_id: str, absorbed_id: str, message: str):
        super().__init__(f"Merged into {winner_id} but deleting {absorbed_id} failed: {message}")
        self.winner_id = winner_id
        self.absorbed_id = absorbed_id


class LockTimeout(CorrelationError):
    """A commit lock could not be acquired in time."""

    def __init__(self, key: str, timeout: float | None):
        super().__init__(f"Timed out after {timeout}s waiting for lock {key!r}")
        self.key = key
        self.timeout = timeout


class CorrelationCancelled(CorrelationError):
    """The caller cancelled the attempt before its commit step."""

    pass
