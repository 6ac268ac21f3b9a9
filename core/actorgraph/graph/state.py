"""
State Model - The versioned, mergeable container carried through a graph.

The schema (fields and their reducers) is fixed when the graph is compiled.
Every field is always present in the state; the runtime never adds or
removes fields. The version starts at 0 for the input state and increases
by exactly one per committed superstep.

Nodes never see the live state. They get a StateSnapshot, a read-only
mapping over a private deep copy, and return partial updates that the
scheduler merges after the superstep barrier.
"""

import copy
import logging
import typing
from collections.abc import Callable, Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Annotated, Any, get_args, get_origin

from pydantic import TypeAdapter, ValidationError

from actorgraph.errors import InvalidGraphDefinition, InvalidUpdate
from actorgraph.graph.reducers import (
    BUILTIN_REDUCERS,
    ConflictPolicy,
    Reducer,
    ReducerRegistry,
    resolve_reducer,
)

logger = logging.getLogger(__name__)

INPUT_WRITER = "__input__"


@dataclass(frozen=True)
class StateField:
    """One typed field of the state schema."""

    name: str
    type: Any = Any
    reducer: Reducer | str | None = None
    default: Any = None
    default_factory: Callable[[], Any] | None = None

    def initial_value(self) -> Any:
        if self.default_factory is not None:
            return self.default_factory()
        return copy.deepcopy(self.default)


class StateSchema:
    """
    Ordered, immutable set of state fields.

    Example:
        schema = StateSchema([
            StateField("messages", list[str], reducer="append"),
            StateField("count", int, reducer="add", default=0),
            StateField("flag", bool),
        ])

    Or from annotations:
        class MyState(TypedDict):
            messages: Annotated[list[str], "append"]
            count: Annotated[int, operator.add]
            flag: bool

        schema = StateSchema.from_annotations(MyState)
    """

    def __init__(self, fields: Iterable[StateField], validate: bool = False):
        self._fields: dict[str, StateField] = {}
        for f in fields:
            if f.name in self._fields:
                raise InvalidGraphDefinition(
                    f"State field '{f.name}' declared more than once", component="state"
                )
            resolve_reducer(f.reducer)  # fail early on unknown reducer names
            self._fields[f.name] = f
        self.validate = validate
        self._adapters: dict[str, TypeAdapter] = {}

    @classmethod
    def from_annotations(cls, state_type: type, validate: bool = False) -> "StateSchema":
        """
        Derive a schema from a TypedDict or annotated class.

        ``Annotated[T, reducer]`` metadata names the reducer, either as a
        callable or as a built-in reducer name. Class attributes are used as
        defaults.
        """
        hints = typing.get_type_hints(state_type, include_extras=True)
        fields = []
        for name, hint in hints.items():
            field_type = hint
            reducer: Reducer | str | None = None
            if get_origin(hint) is Annotated:
                field_type, *metadata = get_args(hint)
                for meta in metadata:
                    if callable(meta) or (isinstance(meta, str) and meta in BUILTIN_REDUCERS):
                        reducer = meta
                        break
            default = getattr(state_type, name, None)
            fields.append(StateField(name, field_type, reducer=reducer, default=default))
        return cls(fields, validate=validate)

    @property
    def field_names(self) -> list[str]:
        return list(self._fields)

    def get(self, name: str) -> StateField | None:
        return self._fields.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._fields

    def __iter__(self) -> Iterator[StateField]:
        return iter(self._fields.values())

    def __len__(self) -> int:
        return len(self._fields)

    def reducer_registry(
        self, conflict_policy: ConflictPolicy | str = ConflictPolicy.FIRST_WINS
    ) -> ReducerRegistry:
        """Build the registry holding every explicitly declared reducer."""
        return ReducerRegistry(
            {f.name: f.reducer for f in self if f.reducer is not None},
            conflict_policy=conflict_policy,
        )

    # --- validation ---------------------------------------------------------

    def _adapter(self, name: str) -> TypeAdapter | None:
        state_field = self._fields[name]
        if state_field.type is Any:
            return None
        if name not in self._adapters:
            self._adapters[name] = TypeAdapter(state_field.type)
        return self._adapters[name]

    def check_value(self, writer: str, name: str, value: Any) -> Any:
        """Validate a merged value against the field type (when enabled)."""
        if not self.validate or value is None:
            return value
        adapter = self._adapter(name)
        if adapter is None:
            return value
        try:
            return adapter.validate_python(value)
        except ValidationError as e:
            raise InvalidUpdate(
                writer,
                f"Value for field '{name}' does not match {self._fields[name].type!r}: {e}",
                fields=[name],
            ) from e

    def check_keys(self, writer: str, update: Mapping[str, Any]) -> None:
        unknown = [k for k in update if k not in self._fields]
        if unknown:
            raise InvalidUpdate(
                writer,
                f"'{writer}' wrote unknown state field(s) {unknown}; "
                f"schema fields: {self.field_names}",
                fields=unknown,
            )

    # --- construction ---------------------------------------------------------

    def create_state(self, values: Mapping[str, Any] | None = None) -> "State":
        """
        Build the version-0 input state.

        Missing fields get their default. Input values are taken as-is,
        they are not folded through reducers.
        """
        values = dict(values or {})
        self.check_keys(INPUT_WRITER, values)
        data: dict[str, Any] = {}
        for f in self:
            if f.name in values:
                data[f.name] = self.check_value(INPUT_WRITER, f.name, copy.deepcopy(values[f.name]))
            else:
                data[f.name] = f.initial_value()
        return State(values=data, version=0)

    def restore_state(self, values: Mapping[str, Any], version: int) -> "State":
        """Rebuild a State from checkpointed values without re-validating."""
        self.check_keys(INPUT_WRITER, values)
        data = {f.name: copy.deepcopy(values.get(f.name, f.initial_value())) for f in self}
        return State(values=data, version=version)

    def __repr__(self) -> str:
        return f"StateSchema({self.field_names})"


class StateSnapshot(Mapping[str, Any]):
    """
    Read-only view of the state handed to a node.

    Supports mapping access (``snapshot["flag"]``) and attribute access
    (``snapshot.flag``). Values are a private deep copy, so mutating a
    nested list inside a node changes nothing outside it.
    """

    __slots__ = ("_data", "_version")

    def __init__(self, values: Mapping[str, Any], version: int = 0):
        object.__setattr__(self, "_data", MappingProxyType(copy.deepcopy(dict(values))))
        object.__setattr__(self, "_version", version)

    @property
    def version(self) -> int:
        return self._version

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __getattr__(self, name: str) -> Any:
        try:
            return self._data[name]
        except KeyError:
            raise AttributeError(f"State has no field '{name}'") from None

    def __setattr__(self, name: str, value: Any) -> None:
        raise AttributeError("StateSnapshot is read-only; return an update instead")

    def to_dict(self) -> dict[str, Any]:
        return copy.deepcopy(dict(self._data))

    def __repr__(self) -> str:
        return f"StateSnapshot(version={self._version}, {dict(self._data)!r})"


@dataclass
class State:
    """Live state owned by the scheduler for the duration of a run."""

    values: dict[str, Any] = field(default_factory=dict)
    version: int = 0

    def snapshot(self) -> StateSnapshot:
        return StateSnapshot(self.values, self.version)

    def to_dict(self) -> dict[str, Any]:
        return copy.deepcopy(self.values)


def apply_writes(
    schema: StateSchema,
    reducers: ReducerRegistry,
    state: State,
    writes: list[tuple[str, Mapping[str, Any]]],
) -> tuple[State, dict[str, Any]]:
    """
    Merge one superstep's updates into a new State as a single batch.

    ``writes`` is a list of ``(node_name, update)`` pairs in branch order.
    Every update is folded against the pre-superstep value, so no write can
    see another write from the same batch except through the reducer.

    Returns:
        Tuple of (new State with version + 1, delta of written fields)
    """
    per_field: dict[str, list[tuple[str, Any]]] = {}
    for node_name, update in writes:
        schema.check_keys(node_name, update)
        for key, value in update.items():
            per_field.setdefault(key, []).append((node_name, copy.deepcopy(value)))

    new_values = dict(state.values)
    delta: dict[str, Any] = {}
    for key in schema.field_names:
        field_writes = per_field.get(key)
        if not field_writes:
            continue
        existing = copy.deepcopy(state.values.get(key))
        merged = reducers.merge_writes(key, existing, field_writes)
        merged = schema.check_value(field_writes[-1][0], key, merged)
        new_values[key] = merged
        delta[key] = copy.deepcopy(merged)

    return State(values=new_values, version=state.version + 1), delta
