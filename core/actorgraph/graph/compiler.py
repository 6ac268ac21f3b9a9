"""
Graph Compiler - Validates a definition and freezes it into an ExecutionPlan.

Checks, all before any node runs:
1. Node names are unique and not reserved (START / END)
2. Every edge, router target and re-route destination names a declared
   node or END
3. START has at least one outgoing edge
4. Every node is reachable from START
5. START reaches END through some path (a node with no outgoing edges
   finishes its branch, so it counts as reaching END)

Cycles are allowed. They are recorded on the plan so the scheduler's
recursion limit can be reported against them, never rejected.
"""

import logging
from collections import deque
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

from actorgraph.errors import (
    DuplicateNodeName,
    InvalidGraphDefinition,
    NoPathToEnd,
    UnknownNodeReference,
    UnreachableNode,
)
from actorgraph.graph.builder import GraphDefinition
from actorgraph.graph.edge import END, RESERVED_NAMES, START, ConditionalEdgeSpec, EdgeSpec
from actorgraph.graph.node import NodeSpec
from actorgraph.graph.reducers import ReducerRegistry
from actorgraph.graph.state import StateSchema, StateSnapshot

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExecutionPlan:
    """
    Compiled, immutable graph.

    Nodes are addressed by name; ``node_index`` gives each node a stable
    branch index (declaration order) used to order merges and events.
    """

    name: str
    schema: StateSchema
    reducers: ReducerRegistry
    nodes: Mapping[str, NodeSpec]
    node_index: Mapping[str, int]
    edges: Mapping[str, tuple[EdgeSpec, ...]]
    routers: Mapping[str, tuple[ConditionalEdgeSpec, ...]]
    successors: Mapping[str, frozenset[str]]
    predecessors: Mapping[str, frozenset[str]]
    cycles: tuple[tuple[str, ...], ...] = ()
    description: str = field(default="", compare=False)

    # --- structure -----------------------------------------------------------

    def get_node(self, name: str) -> NodeSpec | None:
        return self.nodes.get(name)

    def possible_targets(self, source: str) -> frozenset[str]:
        """Everything ``source`` could ever activate (edges, routers, re-routes)."""
        return self.successors.get(source, frozenset())

    def fan_in(self, name: str) -> frozenset[str]:
        """Sources that can activate ``name``."""
        return self.predecessors.get(name, frozenset())

    def is_fan_in(self, name: str) -> bool:
        return len(self.fan_in(name)) > 1

    def in_cycle(self, name: str) -> bool:
        return any(name in cycle for cycle in self.cycles)

    @property
    def has_cycles(self) -> bool:
        return bool(self.cycles)

    def order(self, names: Iterable[str]) -> list[str]:
        """Sort node names by branch index, END last, duplicates removed."""
        unique = set(names)
        return sorted(unique, key=lambda n: self.node_index.get(n, len(self.node_index)))

    # --- routing -------------------------------------------------------------

    async def resolve_targets(self, source: str, state: StateSnapshot) -> list[str]:
        """
        Targets activated by ``source`` against the merged state.

        Unconditional edges first, then each router in declaration order.
        """
        targets = [edge.target for edge in self.edges.get(source, ())]
        for conditional in self.routers.get(source, ()):
            targets.extend(await conditional.router.resolve(source, state))
        return list(dict.fromkeys(targets))

    def allowed_goto(self, source: str) -> frozenset[str]:
        node = self.nodes.get(source)
        return frozenset(node.destinations) | {END} if node else frozenset({END})

    # --- visualisation -------------------------------------------------------

    def draw_mermaid(self) -> str:
        """Mermaid flowchart of the plan. Conditional edges are dotted."""

        def label(name: str) -> str:
            return {START: "START", END: "END"}.get(name, name)

        lines = ["flowchart TD"]
        for source, edges in self.edges.items():
            for edge in edges:
                lines.append(f"    {label(source)} --> {label(edge.target)}")
        for source, conditionals in self.routers.items():
            for conditional in conditionals:
                for target in conditional.targets:
                    lines.append(
                        f"    {label(source)} -.->|{conditional.router.name}| {label(target)}"
                    )
        for name, node in self.nodes.items():
            for target in node.destinations:
                lines.append(f"    {label(name)} -.->|goto| {label(target)}")
        return "\n".join(lines)

    def __repr__(self) -> str:
        return f"ExecutionPlan(name={self.name!r}, nodes={list(self.nodes)})"


def _strongly_connected(graph: Mapping[str, Iterable[str]]) -> list[list[str]]:
    """Tarjan's algorithm, iterative."""
    index_of: dict[str, int] = {}
    lowlink: dict[str, int] = {}
    on_stack: set[str] = set()
    stack: list[str] = []
    components: list[list[str]] = []
    counter = 0

    for root in graph:
        if root in index_of:
            continue
        work = [(root, iter(graph.get(root, ())))]
        index_of[root] = lowlink[root] = counter
        counter += 1
        stack.append(root)
        on_stack.add(root)
        while work:
            node, children = work[-1]
            advanced = False
            for child in children:
                if child not in graph:
                    continue
                if child not in index_of:
                    index_of[child] = lowlink[child] = counter
                    counter += 1
                    stack.append(child)
                    on_stack.add(child)
                    work.append((child, iter(graph.get(child, ()))))
                    advanced = True
                    break
                if child in on_stack:
                    lowlink[node] = min(lowlink[node], index_of[child])
            if advanced:
                continue
            work.pop()
            if work:
                parent = work[-1][0]
                lowlink[parent] = min(lowlink[parent], lowlink[node])
            if lowlink[node] == index_of[node]:
                component = []
                while True:
                    member = stack.pop()
                    on_stack.discard(member)
                    component.append(member)
                    if member == node:
                        break
                components.append(component)
    return components


def _reach(start: str, graph: Mapping[str, Iterable[str]]) -> set[str]:
    seen = {start}
    queue = deque([start])
    while queue:
        current = queue.popleft()
        for nxt in graph.get(current, ()):
            if nxt not in seen:
                seen.add(nxt)
                queue.append(nxt)
    return seen


def compile_graph(definition: GraphDefinition) -> ExecutionPlan:
    """
    Validate a GraphDefinition and build its ExecutionPlan.

    Raises:
        DuplicateNodeName, UnknownNodeReference, UnreachableNode,
        NoPathToEnd, InvalidGraphDefinition
    """
    nodes: dict[str, NodeSpec] = {}
    for node in definition.nodes:
        if node.name in RESERVED_NAMES:
            raise InvalidGraphDefinition(
                f"'{node.name}' is reserved and cannot be used as a node name", component="node"
            )
        if not node.name:
            raise InvalidGraphDefinition("Node names must be non-empty", component="node")
        if node.name in nodes:
            raise DuplicateNodeName(node.name)
        nodes[node.name] = node

    def check_source(source: str, target: str) -> None:
        if source == END:
            raise InvalidGraphDefinition("END cannot have outgoing edges", component="edge")
        if source != START and source not in nodes:
            raise UnknownNodeReference(source, target, missing=source)

    def check_target(source: str, target: str) -> None:
        if target == START:
            raise InvalidGraphDefinition(
                f"Edge from '{source}' targets START, which cannot be entered", component="edge"
            )
        if target != END and target not in nodes:
            raise UnknownNodeReference(source, target)

    edges: dict[str, list[EdgeSpec]] = {}
    for edge in definition.edges:
        check_source(edge.source, edge.target)
        check_target(edge.source, edge.target)
        bucket = edges.setdefault(edge.source, [])
        if edge not in bucket:
            bucket.append(edge)

    routers: dict[str, list[ConditionalEdgeSpec]] = {}
    for conditional in definition.conditional_edges:
        for target in conditional.targets:
            check_source(conditional.source, target)
            check_target(conditional.source, target)
        routers.setdefault(conditional.source, []).append(conditional)

    for node in nodes.values():
        for target in node.destinations:
            check_target(node.name, target)

    successors: dict[str, set[str]] = {START: set(), **{name: set() for name in nodes}}
    for source, bucket in edges.items():
        successors[source].update(e.target for e in bucket)
    for source, bucket in routers.items():
        for conditional in bucket:
            successors[source].update(conditional.targets)
    for node in nodes.values():
        successors[node.name].update(node.destinations)

    if not successors[START]:
        raise InvalidGraphDefinition(
            "Graph has no entry point: add an edge from START", component="entry"
        )

    reachable = _reach(START, successors)
    unreachable = [name for name in nodes if name not in reachable]
    if unreachable:
        raise UnreachableNode(unreachable)

    # Leaves finish their branch, which counts as reaching END.
    to_end: dict[str, set[str]] = {}
    for source, targets in successors.items():
        for target in targets or {END}:
            to_end.setdefault(target, set()).add(source)
    can_finish = _reach(END, to_end)
    if START not in can_finish:
        raise NoPathToEnd([name for name in nodes if name not in can_finish])

    predecessors: dict[str, set[str]] = {}
    for source, targets in successors.items():
        for target in targets:
            predecessors.setdefault(target, set()).add(source)

    node_graph = {name: [t for t in successors[name] if t in nodes] for name in nodes}
    cycles = tuple(
        tuple(sorted(component, key=list(nodes).index))
        for component in _strongly_connected(node_graph)
        if len(component) > 1 or component[0] in node_graph[component[0]]
    )
    if cycles:
        logger.debug(f"Graph '{definition.name}' contains cycles: {cycles}")

    plan = ExecutionPlan(
        name=definition.name,
        schema=definition.schema,
        reducers=definition.schema.reducer_registry(),
        nodes=MappingProxyType(nodes),
        node_index=MappingProxyType({name: i for i, name in enumerate(nodes)}),
        edges=MappingProxyType({k: tuple(v) for k, v in edges.items()}),
        routers=MappingProxyType({k: tuple(v) for k, v in routers.items()}),
        successors=MappingProxyType({k: frozenset(v) for k, v in successors.items()}),
        predecessors=MappingProxyType({k: frozenset(v) for k, v in predecessors.items()}),
        cycles=cycles,
        description=definition.description,
    )
    logger.info(
        f"Compiled graph '{plan.name}': {len(nodes)} nodes, "
        f"{sum(len(v) for v in edges.values())} edges, "
        f"{sum(len(v) for v in routers.values())} conditional edges"
    )
    return plan
