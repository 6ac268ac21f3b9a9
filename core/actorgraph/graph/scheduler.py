"""
Step Scheduler - Drives a compiled plan superstep by superstep.

Each superstep:
1. Honours a pending interrupt (explicit request or breakpoint)
2. Dispatches every node of the active set concurrently and waits for all
   of them (the superstep barrier)
3. Applies the failing nodes' error policies (fatal / isolate)
4. Merges all surviving updates as one batch through the reducers
5. Routes every surviving node against the merged state
6. Commits: checkpoint, then StepEvent, then the next superstep

The run completes when the next active set is empty (or only END) or a
node signals halt. Cycles run until the recursion limit.
"""

import asyncio
import copy
import logging
import uuid
from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from actorgraph.errors import (
    InvalidGraphDefinition,
    InvalidRoute,
    InvalidUpdate,
    NodeError,
    RecursionLimitExceeded,
    StorageError,
)
from actorgraph.graph.compiler import ExecutionPlan
from actorgraph.graph.edge import END, START
from actorgraph.graph.executor import NodeExecutor
from actorgraph.graph.node import ErrorPolicy, NodeContext, NodeResult
from actorgraph.graph.reducers import ReducerRegistry
from actorgraph.graph.state import State, apply_writes
from actorgraph.observability import set_trace_context
from actorgraph.schemas.checkpoint import Checkpoint, CheckpointSource
from actorgraph.schemas.run import RunResult, RunStatus, StepEvent
from actorgraph.storage.checkpointer import Checkpointer

if TYPE_CHECKING:
    from actorgraph.config import EngineConfig
    from actorgraph.runtime.event_bus import EventBus

logger = logging.getLogger(__name__)

UPDATE_WRITER = "__update__"


@dataclass
class Run:
    """
    One execution instance, owned by the scheduler while it runs.

    ``active`` is the set the next superstep will dispatch, ordered by
    branch index. ``step`` counts committed supersteps.
    """

    run_id: str
    graph: str
    state: State
    active: list[str] = field(default_factory=list)
    step: int = 0
    status: RunStatus = RunStatus.RUNNING
    error: BaseException | None = None
    path: list[list[str]] = field(default_factory=list)
    resumed: bool = False
    interrupt_reason: str | None = None
    _interrupt: asyncio.Event = field(default_factory=asyncio.Event, init=False, repr=False)

    def request_interrupt(self, reason: str = "requested") -> None:
        """Pause before the next superstep is dispatched."""
        if self.interrupt_reason is None:
            self.interrupt_reason = reason
        self._interrupt.set()

    @property
    def interrupt_requested(self) -> bool:
        return self._interrupt.is_set()

    def result(self) -> RunResult:
        return RunResult(
            run_id=self.run_id,
            status=self.status,
            state=self.state.to_dict(),
            version=self.state.version,
            steps_executed=len(self.path),
            path=[list(active) for active in self.path],
            error=self.error,
            pending=list(self.active) if self.status != RunStatus.COMPLETED else [],
        )


class StepScheduler:
    """
    Bulk-synchronous executor for an ExecutionPlan.

    Example:
        scheduler = StepScheduler(checkpointer=InMemoryCheckpointer())
        run = await scheduler.prepare(plan, {"count": 0})
        async for event in scheduler.stream(plan, run):
            print(event.step, event.state_delta)
    """

    def __init__(
        self,
        checkpointer: Checkpointer | None = None,
        event_bus: "EventBus | None" = None,
        config: "EngineConfig | None" = None,
    ):
        if config is None:
            from actorgraph.config import EngineConfig

            config = EngineConfig()
        self.checkpointer = checkpointer
        self.event_bus = event_bus
        self.config = config

    # === RUN CREATION ===

    async def prepare(
        self,
        plan: ExecutionPlan,
        input_data: Mapping[str, Any] | None = None,
        run_id: str | None = None,
    ) -> Run:
        """
        Build a fresh Run: version-0 state and the resolved targets of START.

        Raises:
            InvalidUpdate: ``input_data`` names fields outside the schema
            InvalidRoute: a START router picks an undeclared target
        """
        state = plan.schema.create_state(input_data)
        targets = await plan.resolve_targets(START, state.snapshot())
        return Run(
            run_id=run_id or f"run_{uuid.uuid4().hex[:12]}",
            graph=plan.name,
            state=state,
            active=plan.order(t for t in targets if t != END),
        )

    def restore(self, plan: ExecutionPlan, checkpoint: Checkpoint) -> Run:
        """Rebuild a Run from a checkpoint. Nothing before it is re-executed."""
        if checkpoint.graph and checkpoint.graph != plan.name:
            logger.warning(
                f"Resuming run {checkpoint.run_id} of graph '{checkpoint.graph}' "
                f"with plan '{plan.name}'"
            )
        unknown = [name for name in checkpoint.active if name not in plan.nodes]
        if unknown:
            raise InvalidGraphDefinition(
                f"Checkpoint of run '{checkpoint.run_id}' activates {unknown}, "
                f"which plan '{plan.name}' does not declare",
                component="checkpoint",
            )
        return Run(
            run_id=checkpoint.run_id,
            graph=plan.name,
            state=plan.schema.restore_state(checkpoint.state, checkpoint.version),
            active=plan.order(checkpoint.active),
            step=checkpoint.step,
            resumed=True,
        )

    async def update_state(
        self,
        plan: ExecutionPlan,
        checkpoint: Checkpoint,
        values: Mapping[str, Any],
    ) -> Checkpoint:
        """
        Apply an out-of-band correction on top of ``checkpoint``.

        The values are folded through the field reducers like a node
        update and saved as a new checkpoint (next step, next version,
        same active set, source ``update``).
        """
        run = self.restore(plan, checkpoint)
        reducers = plan.reducers.with_policy(self.config.conflict_policy)
        new_state, delta = apply_writes(plan.schema, reducers, run.state, [(UPDATE_WRITER, values)])
        updated = Checkpoint.create(
            run_id=checkpoint.run_id,
            step=checkpoint.step + 1,
            version=new_state.version,
            state=new_state.to_dict(),
            active=list(run.active),
            status=checkpoint.status,
            source="update",
            graph=plan.name,
        )
        await self._save_checkpoint(updated, required=True)
        if self.event_bus:
            await self.event_bus.emit_state_updated(
                checkpoint.run_id, updated.step, updated.version, sorted(delta)
            )
        logger.info(
            f"Updated state of run {checkpoint.run_id}: {sorted(delta)} "
            f"(now step {updated.step}, version {updated.version})"
        )
        return updated

    # === EXECUTION ===

    async def invoke(
        self,
        plan: ExecutionPlan,
        input_data: Mapping[str, Any] | None = None,
        run_id: str | None = None,
        recursion_limit: int | None = None,
        parent: NodeContext | None = None,
    ) -> RunResult:
        """Run ``plan`` to completion (or interruption) and return the result."""
        self._resolve_limit(recursion_limit)
        run = await self.prepare(plan, input_data, run_id)
        return await self.drive(plan, run, recursion_limit=recursion_limit, parent=parent)

    async def drive(
        self,
        plan: ExecutionPlan,
        run: Run,
        recursion_limit: int | None = None,
        parent: NodeContext | None = None,
    ) -> RunResult:
        """Consume ``stream`` and turn terminal errors into a failed RunResult."""
        self._resolve_limit(recursion_limit)
        try:
            async for _ in self.stream(plan, run, recursion_limit=recursion_limit, parent=parent):
                pass
        except Exception as e:
            logger.debug(f"Run {run.run_id} ended with {type(e).__name__}")
        return run.result()

    async def stream(
        self,
        plan: ExecutionPlan,
        run: Run,
        recursion_limit: int | None = None,
        parent: NodeContext | None = None,
    ) -> AsyncIterator[StepEvent]:
        """
        Execute supersteps, yielding one StepEvent per committed superstep.

        The generator ends when the run completes or is interrupted.
        Terminal errors (fatal node errors, invalid routes, merge
        conflicts, storage failures, recursion limit) mark the run failed
        and are raised.
        """
        limit = self._resolve_limit(recursion_limit)
        reducers = plan.reducers.with_policy(self.config.conflict_policy)
        set_trace_context(run_id=run.run_id, graph=plan.name)

        run.status = RunStatus.RUNNING
        run.error = None
        skip_breakpoints = run.resumed

        try:
            if run.resumed:
                logger.info(f"▶ Resuming run {run.run_id} at step {run.step}: {run.active}")
                if self.event_bus:
                    await self.event_bus.emit_run_resumed(run.run_id, run.step, list(run.active))
            else:
                logger.info(f"▶ Starting run {run.run_id} of graph '{plan.name}'")
                if self.event_bus:
                    await self.event_bus.emit_run_started(
                        run.run_id, plan.name, run.state.to_dict()
                    )
                await self._commit_checkpoint(run, source="input")

            while True:
                if not run.active:
                    await self._complete(run)
                    return

                if self._should_pause(run, skip_breakpoints):
                    await self._pause(run)
                    return
                skip_breakpoints = False

                event, done = await self._superstep(plan, run, reducers, parent)

                if not done and run.step >= limit:
                    run.status = RunStatus.FAILED
                    run.error = RecursionLimitExceeded(limit, run.step, plan.cycles)
                    event.status = RunStatus.FAILED

                await self._commit_checkpoint(run, source="loop")
                if self.event_bus:
                    await self.event_bus.emit_step_completed(event)
                yield event

                if run.error is not None:
                    raise run.error
                if done:
                    await self._complete(run)
                    return
                ran = set(event.nodes)
                hits = sorted(ran & self.config.interrupt_after)
                if hits:
                    run.request_interrupt(f"interrupt_after {hits}")

        except asyncio.CancelledError:
            run.status = RunStatus.INTERRUPTED
            logger.warning(f"Run {run.run_id} cancelled at step {run.step}")
            raise
        except Exception as e:
            run.status = RunStatus.FAILED
            run.error = e
            logger.error(f"✗ Run {run.run_id} failed at step {run.step}: {e}")
            if self.event_bus:
                await self.event_bus.emit_run_failed(
                    run.run_id, run.step, str(e), node=getattr(e, "node", None)
                )
            raise

    def _resolve_limit(self, recursion_limit: int | None) -> int:
        limit = self.config.recursion_limit if recursion_limit is None else recursion_limit
        if limit < 1:
            raise ValueError(f"recursion_limit must be >= 1, got {limit}")
        return limit

    # === SUPERSTEP ===

    async def _superstep(
        self,
        plan: ExecutionPlan,
        run: Run,
        reducers: ReducerRegistry,
        parent: NodeContext | None,
    ) -> tuple[StepEvent, bool]:
        step = run.step + 1
        active = list(run.active)
        logger.info(f"Step {step}: dispatching {active}")

        async def on_retry(node: str, attempt: int, error: BaseException, delay: float) -> None:
            if self.event_bus:
                spec = plan.nodes[node]
                await self.event_bus.emit_node_retry(
                    run.run_id,
                    node,
                    step,
                    retry_count=attempt,
                    max_retries=spec.effective_retry(self.config.default_retry).max_attempts,
                    error=str(error),
                    delay=delay,
                )

        executor = NodeExecutor(
            default_timeout=self.config.default_timeout,
            default_retry=self.config.default_retry,
            on_retry=on_retry,
        )

        def context_for(name: str) -> NodeContext:
            return NodeContext(
                run_id=run.run_id,
                node=name,
                step=step,
                parent_trace_id=parent.trace_id if parent else None,
                metadata={"graph": plan.name},
                config=self.config,
            )

        # Every node gets its own snapshot: nested values are private copies.
        outcomes = await asyncio.gather(
            *[
                executor.invoke(plan.nodes[name], run.state.snapshot(), context_for(name))
                for name in active
            ],
            return_exceptions=True,
        )

        succeeded: list[NodeResult] = []
        errors: dict[str, str] = {}
        for name, outcome in zip(active, outcomes, strict=True):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, BaseException):
                self._handle_node_error(plan, name, outcome, errors)
                continue
            try:
                plan.schema.check_keys(name, outcome.update)
            except InvalidUpdate as e:
                self._handle_node_error(plan, name, e, errors)
                continue
            succeeded.append(outcome)

        new_state, delta = apply_writes(
            plan.schema, reducers, run.state, [(r.node, r.update) for r in succeeded]
        )
        merged = new_state.snapshot()

        targets: list[str] = []
        halted = False
        for result in succeeded:
            if result.goto is not None:
                allowed = plan.allowed_goto(result.node)
                undeclared = [t for t in result.goto if t not in allowed]
                if undeclared:
                    raise InvalidRoute(result.node, undeclared, list(allowed))
                targets.extend(result.goto)
            else:
                targets.extend(await plan.resolve_targets(result.node, merged))
            halted = halted or result.halt

        next_active = [] if halted else plan.order(t for t in targets if t != END)
        done = not next_active
        if halted:
            logger.info(f"Step {step}: halt requested by a node")

        run.state = new_state
        run.step = step
        run.path.append(active)
        run.active = next_active
        if done:
            run.status = RunStatus.COMPLETED

        event = StepEvent(
            run_id=run.run_id,
            step=step,
            version=new_state.version,
            node_outputs={r.node: copy.deepcopy(r.update) for r in succeeded},
            state_delta=delta,
            errors=errors,
            active=list(next_active),
            status=run.status,
        )
        logger.info(
            f"Step {step} committed: wrote {sorted(delta)}, next {next_active or '[END]'}",
            extra={"event": "step_committed", "step": step},
        )
        return event, done

    def _handle_node_error(
        self,
        plan: ExecutionPlan,
        name: str,
        error: BaseException,
        errors: dict[str, str],
    ) -> None:
        """Isolate the failure or re-raise it, per the node's error policy."""
        node = plan.nodes[name]
        if node.error_policy == ErrorPolicy.ISOLATE:
            errors[name] = str(error)
            logger.warning(f"⚠ Node '{name}' failed and was isolated: {error}")
            return
        if isinstance(error, NodeError):
            raise error
        raise NodeError(name, f"Node '{name}' failed: {error!r}") from error

    # === BOUNDARIES ===

    def _should_pause(self, run: Run, skip_breakpoints: bool) -> bool:
        if run.interrupt_requested:
            return True
        if skip_breakpoints:
            return False
        hits = sorted(set(run.active) & self.config.interrupt_before)
        if hits:
            run.request_interrupt(f"interrupt_before {hits}")
            return True
        return False

    async def _pause(self, run: Run) -> None:
        run.status = RunStatus.INTERRUPTED
        reason = run.interrupt_reason or "requested"
        logger.info(f"⏸ Run {run.run_id} interrupted at step {run.step} ({reason})")
        await self._commit_checkpoint(run, source="loop")
        if self.event_bus:
            await self.event_bus.emit_run_interrupted(
                run.run_id, run.step, list(run.active), reason=reason
            )

    async def _complete(self, run: Run) -> None:
        run.status = RunStatus.COMPLETED
        logger.info(f"✓ Run {run.run_id} completed after {len(run.path)} superstep(s)")
        if self.event_bus:
            await self.event_bus.emit_run_completed(run.run_id, run.step, run.state.to_dict())

    # === CHECKPOINTING ===

    async def _commit_checkpoint(self, run: Run, source: CheckpointSource) -> None:
        checkpoint = Checkpoint.create(
            run_id=run.run_id,
            step=run.step,
            version=run.state.version,
            state=run.state.to_dict(),
            active=list(run.active),
            status=run.status.value,
            source=source,
            graph=run.graph,
            error=str(run.error) if run.error else None,
        )
        await self._save_checkpoint(checkpoint)

    async def _save_checkpoint(self, checkpoint: Checkpoint, required: bool = False) -> None:
        """
        Save with bounded retries.

        Raises:
            StorageError: every attempt failed
        """
        cfg = self.config.checkpoint
        if self.checkpointer is None or not (cfg.should_checkpoint() or required):
            if required:
                raise StorageError(
                    "No checkpointer configured", run_id=checkpoint.run_id, operation="save"
                )
            return

        delay = cfg.save_retry_delay
        attempts = max(1, cfg.save_attempts)
        for attempt in range(1, attempts + 1):
            try:
                await self.checkpointer.save(checkpoint)
                break
            except Exception as e:
                if attempt == attempts:
                    raise StorageError(
                        f"Could not save checkpoint {checkpoint.checkpoint_id} "
                        f"after {attempts} attempt(s): {e}",
                        run_id=checkpoint.run_id,
                        operation="save",
                    ) from e
                logger.warning(
                    f"Checkpoint save failed (attempt {attempt}/{attempts}): {e}; "
                    f"retrying in {delay}s"
                )
                await asyncio.sleep(delay)
                delay *= 2

        if cfg.should_prune(checkpoint.step):
            await self.checkpointer.prune(checkpoint.run_id, cfg.keep_last)
