"""
Keyed observer lists.

Each key (metric id, task id, plan id) has its own list of callbacks.
Delivery is isolated per callback: a raising callback is logged and the
remaining callbacks still run.
"""

import logging
import threading
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

Listener = Callable[[Any], None]


class ListenerRegistry:
    def __init__(self, label: str = "listener"):
        self._label = label
        self._listeners: dict[str, list[Listener]] = {}
        self._lock = threading.Lock()

    def subscribe(self, key: str, callback: Listener) -> Callable[[], None]:
        """Register ``callback`` for ``key``. Returns an unsubscribe function."""
        with self._lock:
            self._listeners.setdefault(key, []).append(callback)

        def unsubscribe() -> None:
            with self._lock:
                listeners = self._listeners.get(key)
                if listeners and callback in listeners:
                    listeners.remove(callback)

        return unsubscribe

    def notify(self, key: str, payload: Any) -> None:
        with self._lock:
            listeners = list(self._listeners.get(key, ()))
        for listener in listeners:
            try:
                listener(payload)
            except Exception:
                logger.exception(f"Error in {self._label} for {key}")

    def discard(self, key: str) -> None:
        with self._lock:
            self._listeners.pop(key, None)

    def count(self, key: str) -> int:
        with self._lock:
            return len(self._listeners.get(key, ()))
