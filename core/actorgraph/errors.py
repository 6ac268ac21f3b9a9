"""
Exception hierarchy for graph compilation and execution.

Compile-time errors are raised by the compiler before any node runs.
Node errors are raised by the node executor and then either isolated or
escalated by the scheduler according to the node's error policy. The rest
are fatal to a run.
"""

from typing import Any


class ActorGraphError(Exception):
    """Base class for every error raised by the engine."""


# === COMPILE-TIME ===


class CompileError(ActorGraphError):
    """Structural problem in a graph definition. Never retried."""


class UnknownNodeReference(CompileError):
    """An edge or router references a node that was never declared."""

    def __init__(self, source: str, target: str, missing: str | None = None):
        self.source = source
        self.target = target
        self.missing = missing or target
        super().__init__(
            f"Edge '{source}' -> '{target}' references unknown node '{self.missing}'"
        )


class UnreachableNode(CompileError):
    """One or more nodes cannot be reached from START."""

    def __init__(self, nodes: list[str]):
        self.nodes = sorted(nodes)
        super().__init__(f"Nodes unreachable from START: {self.nodes}")


class NoPathToEnd(CompileError):
    """No path leads from START to END."""

    def __init__(self, nodes: list[str] | None = None):
        self.nodes = sorted(nodes or [])
        detail = f" (nodes that cannot reach END: {self.nodes})" if self.nodes else ""
        super().__init__(f"No path from START reaches END{detail}")


class DuplicateNodeName(CompileError):
    """Two nodes were declared with the same name."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Node '{name}' is declared more than once")


class InvalidGraphDefinition(CompileError):
    """Any other malformed definition (reserved names, missing router targets, ...)."""

    def __init__(self, message: str, component: str | None = None):
        self.component = component
        super().__init__(message)


# === NODE EXECUTION ===


class NodeError(ActorGraphError):
    """A single node execution failed."""

    def __init__(self, node: str, message: str):
        self.node = node
        super().__init__(message)


class NodeTimeout(NodeError):
    def __init__(self, node: str, timeout: float, attempts: int = 1):
        self.timeout = timeout
        self.attempts = attempts
        super().__init__(
            node, f"Node '{node}' timed out after {timeout}s ({attempts} attempt(s))"
        )


class NodeExecutionFailed(NodeError):
    """Retries were exhausted. ``cause`` is the last underlying error."""

    def __init__(self, node: str, attempts: int, cause: BaseException | None = None):
        self.attempts = attempts
        self.cause = cause
        super().__init__(node, f"Node '{node}' failed after {attempts} attempt(s): {cause!r}")


class InvalidUpdate(NodeError):
    """A node returned something that cannot be merged into the state."""

    def __init__(self, node: str, message: str, fields: list[str] | None = None):
        self.fields = fields or []
        super().__init__(node, message)


# === RUN-LEVEL ===


class InvalidRoute(ActorGraphError):
    """A router or re-route signal produced a target outside its declared set."""

    def __init__(self, source: str, targets: list[str], allowed: list[str]):
        self.source = source
        self.targets = targets
        self.allowed = sorted(allowed)
        super().__init__(
            f"'{source}' routed to undeclared target(s) {targets}; declared: {self.allowed}"
        )


class StateConflictError(ActorGraphError):
    """Concurrent writes to a field with no reducer under the ``error`` policy."""

    def __init__(self, field: str, nodes: list[str]):
        self.field = field
        self.nodes = nodes
        super().__init__(
            f"Field '{field}' written concurrently by {nodes} and has no reducer"
        )


class RecursionLimitExceeded(ActorGraphError):
    """The run needed more supersteps than the configured limit."""

    def __init__(self, limit: int, step: int, cycles: tuple[tuple[str, ...], ...] = ()):
        self.limit = limit
        self.step = step
        self.cycles = cycles
        message = (
            f"Recursion limit of {limit} supersteps reached at step {step} "
            "without hitting a stop condition"
        )
        if cycles:
            loops = ", ".join("[" + ", ".join(cycle) + "]" for cycle in cycles)
            message += f"; cycles in the graph: {loops}"
        super().__init__(message)


class StorageError(ActorGraphError):
    """Checkpoint persistence failed."""

    def __init__(self, message: str, run_id: str | None = None, operation: str | None = None):
        self.run_id = run_id
        self.operation = operation
        super().__init__(message)


class NotFound(ActorGraphError):
    """No checkpoint exists for the requested run (and step)."""

    def __init__(self, run_id: str, step: int | None = None):
        self.run_id = run_id
        self.step = step
        where = f"run '{run_id}'" if step is None else f"run '{run_id}' at step {step}"
        super().__init__(f"No checkpoint found for {where}")


class RunNotFound(NotFound):
    """The run manager has no record of the run."""

    def __init__(self, run_id: str):
        self.run_id = run_id
        self.step = None
        ActorGraphError.__init__(self, f"Run '{run_id}' not found")


class StaleStateError(ActorGraphError):
    """A version-guarded state update raced with a newer commit."""

    def __init__(self, run_id: str, expected: int, actual: Any):
        self.run_id = run_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Run '{run_id}' is at version {actual}, update expected version {expected}"
        )
