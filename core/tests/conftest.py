"""Shared fixtures: small plans used across the scheduler and runtime tests."""

from unittest.mock import AsyncMock

import pytest

from actorgraph.config import EngineConfig
from actorgraph.graph.builder import GraphBuilder
from actorgraph.graph.compiler import ExecutionPlan
from actorgraph.graph.edge import END, START
from actorgraph.graph.node import NO_RETRY
from actorgraph.graph.state import StateField, StateSchema
from actorgraph.observability import clear_trace_context


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch, tmp_path):
    """Keep the user's ~/.actorgraph and ACTORGRAPH_* variables out of tests."""
    monkeypatch.setattr("actorgraph.config.ACTORGRAPH_CONFIG_FILE", tmp_path / "missing.json")
    for name in (
        "ACTORGRAPH_RECURSION_LIMIT",
        "ACTORGRAPH_STORAGE_PATH",
        "ACTORGRAPH_LOG_LEVEL",
        "LOG_FORMAT",
    ):
        monkeypatch.delenv(name, raising=False)
    yield
    clear_trace_context()


@pytest.fixture
def fast_sleep(monkeypatch):
    """Mock asyncio.sleep to avoid real delays from exponential backoff."""
    mock = AsyncMock()
    monkeypatch.setattr("asyncio.sleep", mock)
    return mock


@pytest.fixture
def engine_config() -> EngineConfig:
    return EngineConfig(
        recursion_limit=25,
        default_timeout=5.0,
        default_retry=NO_RETRY,
        storage_path=None,
    )


def build_counter_plan() -> ExecutionPlan:
    """START -> a -> b -> END; a adds 1, b adds 2 to ``count`` (sum reducer)."""
    schema = StateSchema([StateField("count", int, reducer="add", default=0)])
    builder = GraphBuilder("counter", schema)
    builder.add_node("a", lambda state: {"count": 1})
    builder.add_node("b", lambda state: {"count": 2})
    builder.add_edge(START, "a")
    builder.add_edge("a", "b")
    builder.add_edge("b", END)
    return builder.compile()


def build_flag_plan() -> ExecutionPlan:
    """a routes to b and c when ``flag`` is set, else to END."""
    schema = StateSchema(
        [
            StateField("flag", bool, default=False),
            StateField("visited", list, reducer="append", default_factory=list),
        ]
    )

    def route(state):
        return ["b", "c"] if state.flag else END

    builder = GraphBuilder("flag", schema)
    builder.add_node("a", lambda state: {"visited": ["a"]})
    builder.add_node("b", lambda state: {"visited": ["b"]})
    builder.add_node("c", lambda state: {"visited": ["c"]})
    builder.add_edge(START, "a")
    builder.add_conditional_edges("a", route, ["b", "c", END])
    builder.add_edge("b", END)
    builder.add_edge("c", END)
    return builder.compile()


def build_loop_plan(stop_at: int | None = None) -> ExecutionPlan:
    """``tick`` loops on itself, leaving only once ``count`` reaches ``stop_at``."""
    schema = StateSchema([StateField("count", int, reducer="add", default=0)])

    def again(state):
        if stop_at is not None and state.count >= stop_at:
            return END
        return "tick"

    builder = GraphBuilder("loop", schema)
    builder.add_node("tick", lambda state: {"count": 1})
    builder.add_edge(START, "tick")
    builder.add_conditional_edges("tick", again, ["tick", END])
    return builder.compile()


def build_chain_plan(calls: dict[str, int] | None = None) -> ExecutionPlan:
    """START -> a -> b -> c -> d -> END, each appending its name to ``trail``."""
    schema = StateSchema(
        [
            StateField("trail", list, reducer="append", default_factory=list),
            StateField("count", int, reducer="add", default=0),
        ]
    )

    def make(name):
        def node(state):
            if calls is not None:
                calls[name] = calls.get(name, 0) + 1
            return {"trail": [name], "count": len(state.trail) + 1}

        node.__name__ = name
        return node

    builder = GraphBuilder("chain", schema)
    for name in ("a", "b", "c", "d"):
        builder.add_node(make(name))
    builder.add_edge(START, "a")
    builder.add_edge("a", "b")
    builder.add_edge("b", "c")
    builder.add_edge("c", "d")
    builder.add_edge("d", END)
    return builder.compile()


@pytest.fixture
def counter_plan() -> ExecutionPlan:
    return build_counter_plan()


@pytest.fixture
def flag_plan() -> ExecutionPlan:
    return build_flag_plan()
