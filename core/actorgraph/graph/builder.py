"""
Graph definition surface.

GraphBuilder collects nodes, edges, conditional edges and the state schema,
then hands an immutable GraphDefinition to the compiler. Nothing is
validated here beyond argument types: every structural check happens in
``compile`` so all errors surface together, before execution.

Example:
    builder = GraphBuilder("counter", StateSchema([StateField("count", int, reducer="add")]))
    builder.add_node("a", lambda s: {"count": 1})
    builder.add_node("b", lambda s: {"count": 2})
    builder.add_edge(START, "a")
    builder.add_edge("a", "b")
    builder.add_edge("b", END)
    plan = builder.compile()
"""

from collections.abc import Callable, Hashable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from actorgraph.graph.edge import END, START, ConditionalEdgeSpec, EdgeSpec, Router, RouterFunc
from actorgraph.graph.node import Capability, ErrorPolicy, NodeSpec, RetryPolicy, as_capability
from actorgraph.graph.reducers import Reducer
from actorgraph.graph.state import StateField, StateSchema

if TYPE_CHECKING:
    from actorgraph.graph.compiler import ExecutionPlan


@dataclass(frozen=True)
class GraphDefinition:
    """Declarative, not yet validated graph."""

    name: str
    schema: StateSchema
    nodes: tuple[NodeSpec, ...] = ()
    edges: tuple[EdgeSpec, ...] = ()
    conditional_edges: tuple[ConditionalEdgeSpec, ...] = ()
    description: str = ""


@dataclass
class GraphBuilder:
    """Mutable builder for a GraphDefinition."""

    name: str
    schema: StateSchema | type | None = None
    description: str = ""
    _fields: list[StateField] = field(default_factory=list, repr=False)
    _nodes: list[NodeSpec] = field(default_factory=list, repr=False)
    _edges: list[EdgeSpec] = field(default_factory=list, repr=False)
    _conditional: list[ConditionalEdgeSpec] = field(default_factory=list, repr=False)

    def __post_init__(self) -> None:
        if self.schema is not None and not isinstance(self.schema, StateSchema):
            self.schema = StateSchema.from_annotations(self.schema)

    # --- state ---------------------------------------------------------------

    def add_field(
        self,
        name: str,
        type: Any = Any,
        reducer: Reducer | str | None = None,
        default: Any = None,
        default_factory: Callable[[], Any] | None = None,
    ) -> "GraphBuilder":
        """Declare a state field (only when no schema object was given)."""
        if isinstance(self.schema, StateSchema):
            raise ValueError("Schema was given up front; add fields to it instead")
        self._fields.append(StateField(name, type, reducer, default, default_factory))
        return self

    # --- nodes ---------------------------------------------------------------

    def add_node(
        self,
        name: str | Callable[..., Any] | Capability,
        capability: Capability | Callable[..., Any] | None = None,
        *,
        timeout: float | None = None,
        retry: RetryPolicy | None = None,
        error_policy: ErrorPolicy | str = ErrorPolicy.FATAL,
        destinations: Sequence[str] = (),
        description: str = "",
    ) -> "GraphBuilder":
        """
        Register a node.

        ``add_node(func)`` uses the function's ``__name__`` as the node name.
        """
        if capability is None:
            if isinstance(name, str):
                raise TypeError(f"Node '{name}' needs a capability")
            capability = name
            name = getattr(name, "__name__", None)
            if not name:
                raise TypeError("Cannot infer a node name; pass it explicitly")
        self._nodes.append(
            NodeSpec(
                name=name,
                capability=as_capability(capability),
                timeout=timeout,
                retry=retry,
                error_policy=ErrorPolicy(error_policy),
                destinations=tuple(destinations),
                description=description,
            )
        )
        return self

    # --- edges ---------------------------------------------------------------

    def add_edge(self, source: str, target: str) -> "GraphBuilder":
        self._edges.append(EdgeSpec(source=source, target=target))
        return self

    def add_conditional_edges(
        self,
        source: str,
        router: RouterFunc,
        targets: Sequence[str] | Mapping[Hashable, str] | None = None,
        description: str = "",
    ) -> "GraphBuilder":
        """
        Route from ``source`` with a function of the merged state.

        Args:
            source: Node name or START
            router: ``state -> target | [targets] | None``
            targets: Declared possible targets, or a path map from router
                return values to node names. Inferred from a ``Literal``
                return annotation when omitted.
        """
        self._conditional.append(
            ConditionalEdgeSpec(
                source=source,
                router=Router.create(router, targets),
                description=description,
            )
        )
        return self

    def set_entry_point(self, name: str) -> "GraphBuilder":
        return self.add_edge(START, name)

    def set_finish_point(self, name: str) -> "GraphBuilder":
        return self.add_edge(name, END)

    # --- output --------------------------------------------------------------

    def definition(self) -> GraphDefinition:
        schema = self.schema if isinstance(self.schema, StateSchema) else StateSchema(self._fields)
        return GraphDefinition(
            name=self.name,
            schema=schema,
            nodes=tuple(self._nodes),
            edges=tuple(self._edges),
            conditional_edges=tuple(self._conditional),
            description=self.description,
        )

    def compile(self) -> "ExecutionPlan":
        from actorgraph.graph.compiler import compile_graph

        return compile_graph(self.definition())
