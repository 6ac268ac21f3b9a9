"""
Reducer Registry - How concurrent writes to one state field are merged.

A reducer is a binary function ``(existing, incoming) -> merged``. Within a
superstep every write to a field is folded into the existing value in
ascending branch order (the node's declaration index in the compiled plan),
so the result never depends on which task finished first.

Reducers must be pure and associative. The engine does not check this; it
is a precondition callers own.

Fields without an explicit reducer use ``replace``. When several branches
write such a field in the same superstep, the ConflictPolicy decides:
- first_wins: the lowest-indexed branch's write is kept
- last_wins: the highest-indexed branch's write is kept
- error: the run fails with StateConflictError
"""

import logging
from collections.abc import Callable, Iterable, Mapping
from enum import StrEnum
from typing import Any

from actorgraph.errors import InvalidGraphDefinition, StateConflictError

logger = logging.getLogger(__name__)

Reducer = Callable[[Any, Any], Any]


class ConflictPolicy(StrEnum):
    """Tie-break for concurrent writes to a field with no reducer."""

    FIRST_WINS = "first_wins"
    LAST_WINS = "last_wins"
    ERROR = "error"


# === BUILT-IN REDUCERS ===


def replace(existing: Any, incoming: Any) -> Any:
    """Last write wins."""
    return incoming


def append(existing: Any, incoming: Any) -> list:
    """Concatenate sequences. A non-list incoming value is appended as one item."""
    base = list(existing) if existing is not None else []
    if isinstance(incoming, (list, tuple)):
        return base + list(incoming)
    return base + [incoming]


def union(existing: Any, incoming: Any) -> set:
    base = set(existing) if existing is not None else set()
    if isinstance(incoming, (set, frozenset, list, tuple)):
        return base | set(incoming)
    return base | {incoming}


def add(existing: Any, incoming: Any) -> Any:
    """Numeric sum (counters). ``None`` on either side is the identity."""
    if existing is None:
        return incoming
    if incoming is None:
        return existing
    return existing + incoming


def merge(existing: Any, incoming: Any) -> dict:
    """Shallow dict merge, incoming keys win."""
    base = dict(existing) if existing is not None else {}
    base.update(incoming or {})
    return base


BUILTIN_REDUCERS: dict[str, Reducer] = {
    "replace": replace,
    "append": append,
    "union": union,
    "add": add,
    "sum": add,
    "merge": merge,
}


def resolve_reducer(reducer: Reducer | str | None) -> Reducer | None:
    """Turn a reducer name into its function. ``None`` stays ``None``."""
    if reducer is None or callable(reducer):
        return reducer
    try:
        return BUILTIN_REDUCERS[reducer]
    except KeyError:
        raise InvalidGraphDefinition(
            f"Unknown reducer '{reducer}'. Built-in reducers: {sorted(BUILTIN_REDUCERS)}",
            component="reducer",
        ) from None


class ReducerRegistry:
    """
    Maps state field names to merge functions.

    The registry is frozen into the execution plan at compile time; the
    scheduler only reads it.

    Example:
        registry = ReducerRegistry({"messages": "append", "count": operator.add})
        merged = registry.merge_writes(
            "count", existing=1, writes=[("a", 2), ("b", 3)]
        )  # 6
    """

    def __init__(
        self,
        reducers: Mapping[str, Reducer | str] | None = None,
        conflict_policy: ConflictPolicy | str = ConflictPolicy.FIRST_WINS,
    ):
        self._reducers: dict[str, Reducer] = {}
        self.conflict_policy = ConflictPolicy(conflict_policy)
        for field_name, reducer in (reducers or {}).items():
            self.register(field_name, reducer)

    def register(self, field_name: str, reducer: Reducer | str) -> None:
        resolved = resolve_reducer(reducer)
        if resolved is None:
            raise InvalidGraphDefinition(
                f"Reducer for field '{field_name}' must be callable or a built-in name",
                component="reducer",
            )
        self._reducers[field_name] = resolved

    def get(self, field_name: str) -> Reducer | None:
        """Return the explicit reducer for a field, or None for the default."""
        return self._reducers.get(field_name)

    def has_reducer(self, field_name: str) -> bool:
        return field_name in self._reducers

    def with_policy(self, conflict_policy: ConflictPolicy | str) -> "ReducerRegistry":
        """Copy of this registry using a different conflict policy."""
        clone = ReducerRegistry(conflict_policy=conflict_policy)
        clone._reducers = dict(self._reducers)
        return clone

    def merge_writes(
        self,
        field_name: str,
        existing: Any,
        writes: Iterable[tuple[str, Any]],
    ) -> Any:
        """
        Fold one superstep's writes to a field into its existing value.

        Args:
            field_name: The state field
            existing: Value before the superstep
            writes: ``(node_name, value)`` pairs already sorted by branch index

        Returns:
            The merged value
        """
        writes = list(writes)
        if not writes:
            return existing

        reducer = self._reducers.get(field_name)
        if reducer is not None:
            value = existing
            for _, incoming in writes:
                value = reducer(value, incoming)
            return value

        if len(writes) == 1:
            return writes[0][1]

        writers = [node for node, _ in writes]
        if self.conflict_policy == ConflictPolicy.ERROR:
            raise StateConflictError(field_name, writers)

        if self.conflict_policy == ConflictPolicy.LAST_WINS:
            winner, value = writes[-1]
        else:
            winner, value = writes[0]
        logger.debug(
            f"Concurrent writes to '{field_name}' from {writers}; "
            f"keeping '{winner}' ({self.conflict_policy})"
        )
        return value

    def __contains__(self, field_name: object) -> bool:
        return field_name in self._reducers

    def __repr__(self) -> str:
        names = {k: getattr(v, "__name__", repr(v)) for k, v in self._reducers.items()}
        return f"ReducerRegistry({names}, conflict_policy={self.conflict_policy.value!r})"
