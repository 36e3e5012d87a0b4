"""Shared helpers: atomic file writes, keyed locks and observer lists."""

from adaptflow.utils.io import atomic_write
from adaptflow.utils.listeners import ListenerRegistry
from adaptflow.utils.locks import KeyedLock

__all__ = ["atomic_write", "KeyedLock", "ListenerRegistry"]
