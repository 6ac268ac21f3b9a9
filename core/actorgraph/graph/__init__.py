"""Graph definition, compilation and superstep execution."""

from actorgraph.graph.builder import GraphBuilder, GraphDefinition
from actorgraph.graph.checkpoint_config import CheckpointConfig
from actorgraph.graph.compiler import ExecutionPlan, compile_graph
from actorgraph.graph.edge import END, START, ConditionalEdgeSpec, EdgeSpec, Router
from actorgraph.graph.executor import NodeExecutor
from actorgraph.graph.node import (
    Capability,
    Command,
    ErrorPolicy,
    ModelCall,
    NodeContext,
    NodeResult,
    NodeSpec,
    PureFunction,
    RetryPolicy,
    SubgraphCall,
    ToolCall,
)
from actorgraph.graph.reducers import ConflictPolicy, ReducerRegistry
from actorgraph.graph.scheduler import Run, StepScheduler
from actorgraph.graph.state import State, StateField, StateSchema, StateSnapshot

__all__ = [
    # Definition
    "GraphBuilder",
    "GraphDefinition",
    "START",
    "END",
    "EdgeSpec",
    "ConditionalEdgeSpec",
    "Router",
    # Nodes
    "Capability",
    "PureFunction",
    "ToolCall",
    "ModelCall",
    "SubgraphCall",
    "Command",
    "NodeSpec",
    "NodeContext",
    "NodeResult",
    "ErrorPolicy",
    "RetryPolicy",
    # State
    "StateField",
    "StateSchema",
    "State",
    "StateSnapshot",
    "ReducerRegistry",
    "ConflictPolicy",
    # Execution
    "ExecutionPlan",
    "compile_graph",
    "NodeExecutor",
    "StepScheduler",
    "Run",
    "CheckpointConfig",
]
