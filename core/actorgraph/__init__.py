"""
actorgraph - Superstep execution engine for stateful node graphs.

Build a graph, compile it, run it:

    from actorgraph import END, START, GraphBuilder, RunManager, StateField, StateSchema

    schema = StateSchema([StateField("count", int, reducer="add", default=0)])
    builder = GraphBuilder("counter", schema)
    builder.add_node("a", lambda s: {"count": 1})
    builder.add_node("b", lambda s: {"count": 2})
    builder.add_edge(START, "a").add_edge("a", "b").add_edge("b", END)
    plan = builder.compile()

    manager = RunManager()
    handle = await manager.start(plan)
    result = await handle.wait()  # result.state["count"] == 3
"""

from actorgraph.config import EngineConfig, get_engine_config
from actorgraph.errors import (
    ActorGraphError,
    CompileError,
    DuplicateNodeName,
    InvalidGraphDefinition,
    InvalidRoute,
    InvalidUpdate,
    NodeError,
    NodeExecutionFailed,
    NodeTimeout,
    NoPathToEnd,
    NotFound,
    RecursionLimitExceeded,
    RunNotFound,
    StaleStateError,
    StateConflictError,
    StorageError,
    UnknownNodeReference,
    UnreachableNode,
)
from actorgraph.graph import (
    END,
    START,
    Command,
    ConflictPolicy,
    ErrorPolicy,
    ExecutionPlan,
    GraphBuilder,
    ModelCall,
    PureFunction,
    RetryPolicy,
    StateField,
    StateSchema,
    StateSnapshot,
    StepScheduler,
    SubgraphCall,
    ToolCall,
)
from actorgraph.runtime import EventBus, EventType, RunHandle, RunManager
from actorgraph.schemas import Checkpoint, RunResult, RunStatus, StepEvent
from actorgraph.storage import Checkpointer, FileCheckpointStore, InMemoryCheckpointer

__version__ = "0.1.0"

__all__ = [
    # Graph
    "START",
    "END",
    "GraphBuilder",
    "ExecutionPlan",
    "StateField",
    "StateSchema",
    "StateSnapshot",
    "ConflictPolicy",
    "Command",
    "ErrorPolicy",
    "RetryPolicy",
    "PureFunction",
    "ToolCall",
    "ModelCall",
    "SubgraphCall",
    "StepScheduler",
    # Runtime
    "RunManager",
    "RunHandle",
    "EventBus",
    "EventType",
    "EngineConfig",
    "get_engine_config",
    # Records
    "Checkpoint",
    "RunResult",
    "RunStatus",
    "StepEvent",
    # Storage
    "Checkpointer",
    "InMemoryCheckpointer",
    "FileCheckpointStore",
    # Errors
    "ActorGraphError",
    "CompileError",
    "DuplicateNodeName",
    "InvalidGraphDefinition",
    "InvalidRoute",
    "InvalidUpdate",
    "NodeError",
    "NodeExecutionFailed",
    "NodeTimeout",
    "NoPathToEnd",
    "NotFound",
    "RecursionLimitExceeded",
    "RunNotFound",
    "StaleStateError",
    "StateConflictError",
    "StorageError",
    "UnknownNodeReference",
    "UnreachableNode",
]
