"""Per-key mutual exclusion for sync operations."""

import threading
from contextlib import contextmanager
from typing import Dict, Hashable


class KeyedLock:
    """Serializes work on the same key while letting unrelated keys run.

    Entries are reference counted and dropped once no thread holds or waits
    on them, so the table does not grow with every bug ever synced.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[Hashable, threading.Lock] = {}
        self._refs: Dict[Hashable, int] = {}

    @contextmanager
    def hold(self, key: Hashable):
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._refs[key] = self._refs.get(key, 0) + 1
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                self._refs[key] -= 1
                if self._refs[key] == 0:
                    del self._refs[key]
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


# Process-wide: all coordinators in this process must share one table.
sync_locks = KeyedLock()
