"""
Node Protocol - The unit of work in a graph.

A node pairs a unique name with a capability and its execution policy.
Capabilities form a closed set dispatched through one method,
``execute(snapshot, ctx)``, so the scheduler never inspects node kinds:

- PureFunction: a plain sync or async callable
- ToolCall: invoke a Tool with arguments built from the state
- ModelCall: ask an LLMProvider, prompt built from the state
- SubgraphCall: run a compiled graph to completion as a single step

A capability returns a partial update (a dict of field -> value), None for
no update, or a Command carrying a control signal (halt or re-route).
"""

import asyncio
import inspect
import logging
import uuid
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from actorgraph.errors import InvalidUpdate
from actorgraph.llm.provider import LLMProvider, LLMResponse, Tool

if TYPE_CHECKING:
    from actorgraph.config import EngineConfig
    from actorgraph.graph.compiler import ExecutionPlan
    from actorgraph.graph.state import StateSnapshot

logger = logging.getLogger(__name__)


class ErrorPolicy(StrEnum):
    """What a node failure does to the run."""

    FATAL = "fatal"  # Run fails, the unfinished superstep is not checkpointed
    ISOLATE = "isolate"  # Drop this node's update, record the error, keep going


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded exponential backoff.

    The delay before attempt ``k + 1`` is
    ``min(base_delay * 2 ** (k - 1), max_delay)``, so the defaults wait
    0.5s then 1s between three attempts.
    """

    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 8.0
    retry_on: tuple[type[BaseException], ...] = (Exception,)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("retry delays must be non-negative")

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after failed ``attempt`` (1-based)."""
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

    def should_retry(self, error: BaseException) -> bool:
        if isinstance(error, InvalidUpdate):
            return False
        return isinstance(error, self.retry_on)


NO_RETRY = RetryPolicy(max_attempts=1, base_delay=0.0, max_delay=0.0)


@dataclass(frozen=True)
class NodeContext:
    """Per-execution metadata handed to capabilities that ask for it."""

    run_id: str
    node: str
    step: int
    attempt: int = 1
    trace_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    parent_trace_id: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)
    # Engine settings of the run this node belongs to
    config: "EngineConfig | None" = None

    def for_attempt(self, attempt: int) -> "NodeContext":
        """Fresh trace for a retry, chained to the first attempt's trace."""
        return replace(
            self,
            attempt=attempt,
            trace_id=uuid.uuid4().hex,
            parent_trace_id=self.parent_trace_id or self.trace_id,
        )

    def child(self, run_id: str) -> "NodeContext":
        """Context for a nested run (subgraph), parented to this one."""
        return NodeContext(
            run_id=run_id,
            node=self.node,
            step=0,
            parent_trace_id=self.trace_id,
            metadata=dict(self.metadata),
            config=self.config,
        )


@dataclass
class Command:
    """
    Control signal returned by a node.

    Attributes:
        update: Partial state update merged like any other
        goto: Re-route: these targets replace the node's outgoing edges
            for this superstep. Must be declared in the node's
            ``destinations`` (or END).
        halt: Complete the run once this superstep commits
    """

    update: dict[str, Any] | None = None
    goto: str | Sequence[str] | None = None
    halt: bool = False

    def targets(self) -> list[str] | None:
        if self.goto is None:
            return None
        if isinstance(self.goto, str):
            return [self.goto]
        return list(self.goto)


@dataclass
class NodeResult:
    """Normalised outcome of one node execution."""

    node: str
    update: dict[str, Any] = field(default_factory=dict)
    goto: list[str] | None = None
    halt: bool = False
    attempts: int = 1
    latency_ms: int = 0

    @classmethod
    def from_output(cls, node: str, output: Any) -> "NodeResult":
        if output is None:
            return cls(node=node)
        if isinstance(output, Command):
            update = output.update or {}
            if not isinstance(update, Mapping):
                raise InvalidUpdate(node, f"Command.update from '{node}' must be a mapping")
            return cls(node=node, update=dict(update), goto=output.targets(), halt=output.halt)
        if isinstance(output, Mapping):
            return cls(node=node, update=dict(output))
        raise InvalidUpdate(
            node,
            f"Node '{node}' returned {type(output).__name__}; "
            "expected a dict update, None, or a Command",
        )


# === CAPABILITIES ===


class Capability(ABC):
    """What a node does. The single entry point is ``execute``."""

    kind: str = "capability"

    @abstractmethod
    async def execute(self, state: "StateSnapshot", ctx: NodeContext) -> Any:
        """Return a partial update, None, or a Command."""

    def describe(self) -> str:
        return self.kind


def _accepts_context(func: Callable) -> bool:
    try:
        params = inspect.signature(func).parameters.values()
    except (TypeError, ValueError):
        return False
    positional = [
        p
        for p in params
        if p.kind in (p.POSITIONAL_ONLY, p.POSITIONAL_OR_KEYWORD, p.VAR_POSITIONAL)
    ]
    return len(positional) >= 2 or any(p.kind == p.VAR_POSITIONAL for p in positional)


async def _call(func: Callable, *args: Any) -> Any:
    """Await async callables; run sync ones in the default thread pool."""
    if inspect.iscoroutinefunction(func) or inspect.iscoroutinefunction(
        getattr(func, "__call__", None)
    ):
        return await func(*args)
    result = await asyncio.to_thread(func, *args)
    if inspect.isawaitable(result):
        return await result
    return result


class PureFunction(Capability):
    """
    Wrap a callable ``(state) -> update`` or ``(state, ctx) -> update``.

    Async callables are awaited; sync callables run in a worker thread so a
    slow function never blocks the other nodes of the superstep.
    """

    kind = "function"

    def __init__(self, func: Callable[..., Any | Awaitable[Any]]):
        self.func = func
        self._pass_ctx = _accepts_context(func)

    async def execute(self, state: "StateSnapshot", ctx: NodeContext) -> Any:
        if self._pass_ctx:
            return await _call(self.func, state, ctx)
        return await _call(self.func, state)

    def describe(self) -> str:
        return f"function:{getattr(self.func, '__name__', type(self.func).__name__)}"


class ToolCall(Capability):
    """
    Invoke a tool with arguments built from the state.

    The tool result is written to ``output_field``. If ``tool_executor`` is
    given it is called as ``tool_executor(tool_name, arguments)``; otherwise
    ``tool.func(**arguments)`` is used.
    """

    kind = "tool"

    def __init__(
        self,
        tool: Tool,
        arguments: Callable[["StateSnapshot"], dict[str, Any]],
        output_field: str,
        tool_executor: Callable[[str, dict[str, Any]], Any] | None = None,
    ):
        if tool_executor is None and tool.func is None:
            raise ValueError(f"Tool '{tool.name}' has no func and no tool_executor was given")
        self.tool = tool
        self.arguments = arguments
        self.output_field = output_field
        self.tool_executor = tool_executor

    async def execute(self, state: "StateSnapshot", ctx: NodeContext) -> Any:
        args = self.arguments(state)
        logger.debug(f"Calling tool '{self.tool.name}' with {sorted(args)}")
        if self.tool_executor is not None:
            result = await _call(self.tool_executor, self.tool.name, args)
        else:
            func = self.tool.func
            if inspect.iscoroutinefunction(func):
                result = await func(**args)
            else:
                result = await asyncio.to_thread(lambda: func(**args))
        return {self.output_field: result}

    def describe(self) -> str:
        return f"tool:{self.tool.name}"


class ModelCall(Capability):
    """
    Call an LLM provider with messages built from the state.

    ``prompt`` returns either a user message string or a full message list.
    The response content (or ``parse(response)``) is written to
    ``output_field``.
    """

    kind = "model"

    def __init__(
        self,
        llm: LLMProvider,
        prompt: Callable[["StateSnapshot"], str | list[dict[str, Any]]],
        output_field: str,
        system: str = "",
        tools: list[Tool] | None = None,
        max_tokens: int = 1024,
        json_mode: bool = False,
        parse: Callable[[LLMResponse], Any] | None = None,
    ):
        self.llm = llm
        self.prompt = prompt
        self.output_field = output_field
        self.system = system
        self.tools = tools
        self.max_tokens = max_tokens
        self.json_mode = json_mode
        self.parse = parse

    async def execute(self, state: "StateSnapshot", ctx: NodeContext) -> Any:
        prompt = self.prompt(state)
        messages = [{"role": "user", "content": prompt}] if isinstance(prompt, str) else prompt
        response = await self.llm.acomplete(
            messages,
            system=self.system,
            tools=self.tools,
            max_tokens=self.max_tokens,
            json_mode=self.json_mode,
        )
        logger.debug(
            f"Model {response.model} answered "
            f"({response.input_tokens} in / {response.output_tokens} out tokens)"
        )
        value = self.parse(response) if self.parse else response.content
        return {self.output_field: value}

    def describe(self) -> str:
        return "model"


class SubgraphCall(Capability):
    """
    Run another compiled graph to completion as one node.

    The subgraph receives the parent fields it declares (or the result of
    ``input_mapper``) and its final values for ``output_fields`` (all of
    its fields by default) become this node's update. The subgraph is not
    checkpointed on its own: the parent's checkpoint covers it.

    The subgraph runs under the parent engine's settings (conflict policy,
    retry, timeout and recursion limit) minus its breakpoints, since a
    paused subgraph has no checkpoint to resume from.
    """

    kind = "subgraph"

    def __init__(
        self,
        plan: "ExecutionPlan",
        output_fields: Sequence[str] | None = None,
        input_mapper: Callable[["StateSnapshot"], dict[str, Any]] | None = None,
        recursion_limit: int | None = None,
    ):
        self.plan = plan
        self.output_fields = list(output_fields) if output_fields is not None else None
        self.input_mapper = input_mapper
        self.recursion_limit = recursion_limit

    async def execute(self, state: "StateSnapshot", ctx: NodeContext) -> Any:
        from actorgraph.graph.scheduler import StepScheduler

        if self.input_mapper is not None:
            sub_input = self.input_mapper(state)
        else:
            sub_input = {k: v for k, v in state.items() if k in self.plan.schema}

        config = ctx.config
        if config is not None:
            config = replace(config, interrupt_before=frozenset(), interrupt_after=frozenset())
        scheduler = StepScheduler(config=config)
        result = await scheduler.invoke(
            self.plan,
            sub_input,
            run_id=f"{ctx.run_id}:{ctx.node}:{ctx.step}",
            recursion_limit=self.recursion_limit,
            parent=ctx,
        )
        if not result.success:
            raise result.error or RuntimeError(f"Subgraph '{self.plan.name}' failed")

        fields = self.output_fields if self.output_fields is not None else list(result.state)
        return {k: result.state[k] for k in fields}

    def describe(self) -> str:
        return f"subgraph:{self.plan.name}"


def as_capability(obj: Capability | Callable[..., Any]) -> Capability:
    """Wrap bare callables as PureFunction."""
    if isinstance(obj, Capability):
        return obj
    if callable(obj):
        return PureFunction(obj)
    raise TypeError(f"Cannot use {type(obj).__name__} as a node capability")


@dataclass(frozen=True)
class NodeSpec:
    """
    Immutable node declaration.

    Attributes:
        name: Unique node name
        capability: What the node does
        timeout: Seconds per attempt; None uses the engine default, 0 disables
        retry: Retry policy; None uses the engine default
        error_policy: fatal (default) or isolate
        destinations: Targets a Command.goto from this node may name
    """

    name: str
    capability: Capability
    timeout: float | None = None
    retry: RetryPolicy | None = None
    error_policy: ErrorPolicy = ErrorPolicy.FATAL
    destinations: tuple[str, ...] = ()
    description: str = ""

    def effective_timeout(self, default: float | None) -> float | None:
        timeout = self.timeout if self.timeout is not None else default
        if timeout is None or timeout <= 0:
            return None
        return timeout

    def effective_retry(self, default: RetryPolicy) -> RetryPolicy:
        return self.retry if self.retry is not None else default
