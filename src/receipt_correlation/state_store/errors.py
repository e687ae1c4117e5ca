"""Record store error taxonomy."""


class StoreError(Exception):
    """Base class for record store failures."""

    pass


class StoreUnavailable(StoreError):
    """The store could not be read. Fatal to the current correlation attempt only."""

    pass


class StoreWriteError(StoreError):
    """A write (put/update/delete/append) did not go through."""

    pass


class RecordNotFound(StoreError):
    """The addressed record does not exist (deleted or never created)."""

    def __init__(self, record_id: str):
        super().__init__(f"Transaction not found: {record_id}")
        self.record_id = record_id


class ConcurrentModificationError(StoreError):
    """A conditional update lost against a concurrent writer."""

    def __init__(self, record_id: str, expected_version: int):
        super().__init__(
            f"Transaction {record_id} changed concurrently (expected version {expected_version})"
        )
        self.record_id = record_id
        self.expected_version = expected_version
