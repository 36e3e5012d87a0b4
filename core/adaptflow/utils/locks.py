"""
Keyed locks - per-key serialization for the monitoring services.

Updates to different keys never contend; updates to the same key are
serialized. The registry lock only guards the lock table and its holder
counts.
"""

import threading
from collections.abc import Iterator
from contextlib import contextmanager


class KeyedLock:
    """
    A lazily-populated map of ``key -> threading.Lock``.

    A lock is only forgotten (``discard``/``clear``) while nobody holds or
    waits for it, so every caller of ``hold(key)`` shares the same lock.

    Example:
        locks = KeyedLock()
        with locks.hold("metric-42"):
            ...  # single writer for metric-42
    """

    def __init__(self) -> None:
        self._locks: dict[str, threading.Lock] = {}
        self._holders: dict[str, int] = {}
        self._registry_lock = threading.Lock()

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._registry_lock:
            lock = self._locks.setdefault(key, threading.Lock())
            self._holders[key] = self._holders.get(key, 0) + 1
        try:
            with lock:
                yield
        finally:
            with self._registry_lock:
                self._holders[key] -= 1
                if not self._holders[key]:
                    del self._holders[key]

    def in_use(self, key: str) -> bool:
        """True while some caller holds or waits for ``key``."""
        with self._registry_lock:
            return key in self._holders

    def discard(self, key: str) -> bool:
        """Forget the lock for a deleted key. Returns False while it is in use."""
        with self._registry_lock:
            if key in self._holders:
                return False
            self._locks.pop(key, None)
            return True

    def clear(self) -> None:
        """Forget every lock that is not in use."""
        with self._registry_lock:
            for key in [k for k in self._locks if k not in self._holders]:
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)
