"""Per-key commit locks.

The registry is an explicit object built once at startup and handed to the
engine and merge resolver; there is no module-level lock table.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field

from ..errors import LockTimeout

logger = logging.getLogger(__name__)


@dataclass
class _KeyedLock:
    lock: threading.Lock = field(default_factory=threading.Lock)
    # Threads holding or waiting for the lock
    users: int = 0


class KeyedLockRegistry:
    """Registry of named locks, one per key (owner id, winner id, ...).

    A key's lock exists only while some thread holds or waits for it, so the
    table stays as small as the set of keys currently in contention.
    Thread-safe for synchronous usage.
    """

    def __init__(self, default_timeout: float | None = 30.0) -> None:
        self.default_timeout = default_timeout
        self._locks: dict[str, _KeyedLock] = {}
        self._guard = threading.Lock()

    def _checkout(self, key: str) -> _KeyedLock:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = _KeyedLock()
                self._locks[key] = entry
            entry.users += 1
            return entry

    def _checkin(self, key: str, entry: _KeyedLock) -> None:
        with self._guard:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[key]

    @contextmanager
    def hold(self, key: str, timeout: float | None = None) -> Iterator[None]:
        """Hold the lock for `key` for the duration of the block.

        Args:
            key: Lock name
            timeout: Seconds to wait (None uses the registry default)

        Raises:
            LockTimeout: If the lock was not acquired in time
        """
        wait = self.default_timeout if timeout is None else timeout
        entry = self._checkout(key)
        try:
            acquired = entry.lock.acquire(timeout=-1 if wait is None else wait)
            if not acquired:
                logger.warning("Timed out waiting for lock %s", key)
                raise LockTimeout(key, wait)
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            self._checkin(key, entry)

    def is_locked(self, key: str) -> bool:
        """Check whether `key` is currently held."""
        with self._guard:
            entry = self._locks.get(key)
        return entry is not None and entry.lock.locked()

    def __len__(self) -> int:
        """Number of keys currently held or waited on."""
        with self._guard:
            return len(self._locks)
