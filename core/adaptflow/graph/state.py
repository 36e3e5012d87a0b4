"""
Execution State - the open record threaded through every step.

State is a plain ``dict[str, Any]``. Steps never mutate the dict they are
given in place; the executor merges whatever they return over the previous
state to produce the next one.

Steps that declare the keys they read and write receive a ``StateView``
instead of the raw dict, which enforces those declarations at the boundary.
"""

from collections.abc import Iterator, Mapping
from datetime import datetime
from typing import Any

from adaptflow.exceptions import StateAccessError

ExecutionState = dict[str, Any]

ERRORS_KEY = "errors"


def merge_state(previous: Mapping[str, Any], update: Mapping[str, Any] | None) -> ExecutionState:
    """Shallow-merge ``update`` over ``previous``; returned keys win."""
    merged = dict(previous)
    if update:
        merged.update(update)
    return merged


def record_error(state: Mapping[str, Any], step: str, error: BaseException) -> ExecutionState:
    """
    Return a copy of ``state`` with one more ``errors`` entry.

    The existing errors list is copied, never appended to in place, so a
    snapshot taken before the failure stays unchanged.
    """
    entry = {
        "step": step,
        "error": str(error),
        "error_type": type(error).__name__,
        "timestamp": datetime.now().isoformat(),
    }
    errors = list(state.get(ERRORS_KEY) or [])
    errors.append(entry)
    return merge_state(state, {ERRORS_KEY: errors})


def get_errors(state: Mapping[str, Any]) -> list[dict[str, Any]]:
    return list(state.get(ERRORS_KEY) or [])


class StateView(Mapping[str, Any]):
    """
    Permission-scoped view over execution state for a single step.

    Reads outside ``reads`` and writes outside ``writes`` raise
    ``StateAccessError``. An empty declaration leaves that direction
    unrestricted. Writes are buffered in ``updates`` and merged by the
    executor after the step returns.

    Example:
        def summarize(view: StateView) -> None:
            view["summary"] = view["transcript"][:200]
    """

    def __init__(
        self,
        state: Mapping[str, Any],
        node_id: str,
        reads: list[str] | None = None,
        writes: list[str] | None = None,
    ):
        self._state = state
        self._node_id = node_id
        self._reads = frozenset(reads or ())
        self._writes = frozenset(writes or ())
        self._updates: dict[str, Any] = {}

    @property
    def node_id(self) -> str:
        return self._node_id

    @property
    def updates(self) -> dict[str, Any]:
        return dict(self._updates)

    def can_read(self, key: str) -> bool:
        # A step may always read back what it wrote
        return not self._reads or key in self._reads or key in self._updates

    def can_write(self, key: str) -> bool:
        return not self._writes or key in self._writes

    def __getitem__(self, key: str) -> Any:
        if not self.can_read(key):
            raise StateAccessError(self._node_id, key, "read")
        if key in self._updates:
            return self._updates[key]
        return self._state[key]

    def __iter__(self) -> Iterator[str]:
        keys = dict.fromkeys(self._state)
        keys.update(dict.fromkeys(self._updates))
        return iter(k for k in keys if self.can_read(k))

    def __len__(self) -> int:
        return sum(1 for _ in self)

    def __contains__(self, key: object) -> bool:
        if not isinstance(key, str) or not self.can_read(key):
            return False
        return key in self._updates or key in self._state

    def __setitem__(self, key: str, value: Any) -> None:
        if not self.can_write(key):
            raise StateAccessError(self._node_id, key, "write")
        self._updates[key] = value

    def set(self, key: str, value: Any) -> None:
        self[key] = value

    def check_writes(self, update: Mapping[str, Any]) -> None:
        """Validate that a returned mapping only touches declared keys."""
        for key in update:
            if not self.can_write(key):
                raise StateAccessError(self._node_id, key, "write")
