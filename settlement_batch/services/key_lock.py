"""
KeyedLock -- one mutual-exclusion lock per idempotency key.

Contract:
    ``with locks.hold(key):`` serializes every block that names the same key
    within this process.  Different keys never contend.  Lock objects are
    reference-counted and dropped when no holder or waiter remains, so the
    registry does not grow with the number of keys ever seen.
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager


class KeyedLock:
    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}
        self._users: dict[str, int] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._users[key] = self._users.get(key, 0) + 1
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                self._users[key] -= 1
                if self._users[key] == 0:
                    del self._users[key]
                    del self._locks[key]

    def active_keys(self) -> int:
        """Keys currently held or awaited (diagnostics and tests)."""
        with self._guard:
            return len(self._locks)
