"""Domain Utilities - Clock and per-key locking helpers.

Security Impact:
    - No security impact - pure utility functions
"""

import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Hashable, Iterator


def utcnow() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


class _LockEntry:
    __slots__ = ("lock", "holders")

    def __init__(self):
        self.lock = threading.RLock()
        self.holders = 0


class KeyedLock:
    """A family of reentrant locks, one per key.

    Threads acquiring the same key serialize; threads acquiring different
    keys never contend beyond the short registry lookup. Entries are
    reference-counted and dropped once no thread holds or waits on them,
    so the registry only ever contains keys that are currently in use.

    Example:
        ```python
        locks = KeyedLock()
        with locks.hold("patient-1"):
            ...  # critical section for patient-1 only
        ```
    """

    def __init__(self):
        self._registry_lock = threading.Lock()
        self._entries: dict[Hashable, _LockEntry] = {}

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        """Hold the lock for ``key`` for the duration of the block."""
        with self._registry_lock:
            entry = self._entries.get(key)
            if entry is None:
                entry = _LockEntry()
                self._entries[key] = entry
            entry.holders += 1

        entry.lock.acquire()
        try:
            yield
        finally:
            entry.lock.release()
            with self._registry_lock:
                entry.holders -= 1
                if entry.holders == 0:
                    del self._entries[key]

    def active_keys(self) -> int:
        """Number of keys currently held or awaited."""
        with self._registry_lock:
            return len(self._entries)
