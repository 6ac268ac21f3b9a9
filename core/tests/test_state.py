"""Tests for the state model: schema, snapshots and batch merging."""

import operator
from typing import Annotated, TypedDict

import pytest

from actorgraph.errors import InvalidGraphDefinition, InvalidUpdate
from actorgraph.graph.reducers import ConflictPolicy
from actorgraph.graph.state import State, StateField, StateSchema, StateSnapshot, apply_writes


def make_schema(validate: bool = False) -> StateSchema:
    return StateSchema(
        [
            StateField("messages", list[str], reducer="append", default_factory=list),
            StateField("count", int, reducer="add", default=0),
            StateField("flag", bool),
        ],
        validate=validate,
    )


class TestStateSchema:
    def test_create_state_fills_defaults(self):
        state = make_schema().create_state({"flag": True})

        assert state.version == 0
        assert state.values == {"messages": [], "count": 0, "flag": True}

    def test_every_field_always_present(self):
        state = make_schema().create_state()
        assert set(state.values) == {"messages", "count", "flag"}
        assert state.values["flag"] is None

    def test_unknown_input_field_rejected(self):
        with pytest.raises(InvalidUpdate) as exc_info:
            make_schema().create_state({"nope": 1})
        assert exc_info.value.fields == ["nope"]

    def test_duplicate_field_rejected(self):
        with pytest.raises(InvalidGraphDefinition):
            StateSchema([StateField("x"), StateField("x")])

    def test_unknown_reducer_name_rejected(self):
        with pytest.raises(InvalidGraphDefinition):
            StateSchema([StateField("x", reducer="concatenate")])

    def test_default_factory_not_shared(self):
        schema = make_schema()
        first = schema.create_state()
        second = schema.create_state()
        first.values["messages"].append("hi")
        assert second.values["messages"] == []

    def test_from_annotations(self):
        class ChatState(TypedDict):
            messages: Annotated[list[str], "append"]
            count: Annotated[int, operator.add]
            flag: bool

        schema = StateSchema.from_annotations(ChatState)

        assert schema.field_names == ["messages", "count", "flag"]
        registry = schema.reducer_registry()
        assert registry.has_reducer("messages")
        assert registry.get("count") is operator.add
        assert not registry.has_reducer("flag")

    def test_reducer_registry_policy(self):
        registry = make_schema().reducer_registry(ConflictPolicy.LAST_WINS)
        assert registry.conflict_policy == ConflictPolicy.LAST_WINS


class TestStateSnapshot:
    def test_mapping_and_attribute_access(self):
        snapshot = StateSnapshot({"flag": True, "count": 2}, version=3)

        assert snapshot["flag"] is True
        assert snapshot.count == 2
        assert snapshot.version == 3
        assert dict(snapshot) == {"flag": True, "count": 2}

    def test_read_only(self):
        snapshot = StateSnapshot({"flag": True})

        with pytest.raises(AttributeError):
            snapshot.flag = False
        with pytest.raises(TypeError):
            snapshot["flag"] = False

    def test_missing_attribute(self):
        with pytest.raises(AttributeError):
            StateSnapshot({}).missing

    def test_nested_values_are_private_copies(self):
        state = make_schema().create_state({"messages": ["a"]})
        snapshot = state.snapshot()

        snapshot["messages"].append("mutated")

        assert state.values["messages"] == ["a"]
        assert state.snapshot()["messages"] == ["a"]


class TestApplyWrites:
    def test_version_increments_once_per_batch(self):
        schema = make_schema()
        state = schema.create_state()
        registry = schema.reducer_registry()

        new_state, _ = apply_writes(
            schema, registry, state, [("a", {"count": 1}), ("b", {"count": 2})]
        )

        assert new_state.version == 1
        assert new_state.values["count"] == 3
        assert state.version == 0
        assert state.values["count"] == 0

    def test_delta_holds_only_written_fields(self):
        schema = make_schema()
        state = schema.create_state({"flag": False})

        _, delta = apply_writes(
            schema, schema.reducer_registry(), state, [("a", {"messages": ["hi"]})]
        )

        assert delta == {"messages": ["hi"]}

    def test_append_folds_in_branch_order(self):
        schema = make_schema()
        state = schema.create_state({"messages": ["start"]})

        new_state, _ = apply_writes(
            schema,
            schema.reducer_registry(),
            state,
            [("a", {"messages": ["from a"]}), ("b", {"messages": ["from b"]})],
        )

        assert new_state.values["messages"] == ["start", "from a", "from b"]

    def test_unknown_field_in_update(self):
        schema = make_schema()
        with pytest.raises(InvalidUpdate) as exc_info:
            apply_writes(schema, schema.reducer_registry(), schema.create_state(), [("a", {"x": 1})])
        assert exc_info.value.node == "a"

    def test_update_values_are_copied(self):
        schema = make_schema()
        payload = ["x"]
        new_state, _ = apply_writes(
            schema, schema.reducer_registry(), schema.create_state(), [("a", {"messages": payload})]
        )
        payload.append("later")
        assert new_state.values["messages"] == ["x"]

    def test_type_validation_when_enabled(self):
        schema = make_schema(validate=True)
        with pytest.raises(InvalidUpdate) as exc_info:
            apply_writes(
                schema, schema.reducer_registry(), schema.create_state(), [("a", {"flag": "maybe"})]
            )
        assert exc_info.value.fields == ["flag"]

    def test_type_validation_off_by_default(self):
        schema = make_schema()
        new_state, _ = apply_writes(
            schema, schema.reducer_registry(), schema.create_state(), [("a", {"flag": "maybe"})]
        )
        assert new_state.values["flag"] == "maybe"

    def test_restore_state_keeps_version(self):
        schema = make_schema()
        state = schema.restore_state({"count": 7}, version=4)
        assert isinstance(state, State)
        assert state.version == 4
        assert state.values["count"] == 7
        assert state.values["messages"] == []
