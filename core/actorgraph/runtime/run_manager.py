"""
Run Manager - Explicit registry of the runs driven by one engine.

Lifecycle:
- created by the application, owns one StepScheduler
- ``start`` / ``resume`` launch a run as an asyncio task and register it
- finished runs stay queryable (status, result, state) until ``cleanup``
- ``shutdown`` cancels whatever is still running

There is no process-wide registry: two managers never see each other's
runs, though they can share a checkpointer.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass, field
from typing import Any

from actorgraph.config import EngineConfig
from actorgraph.errors import NotFound, RunNotFound, StaleStateError
from actorgraph.graph.compiler import ExecutionPlan
from actorgraph.graph.scheduler import Run, StepScheduler
from actorgraph.graph.state import StateSnapshot
from actorgraph.runtime.event_bus import EventBus
from actorgraph.schemas.checkpoint import Checkpoint, CheckpointSummary
from actorgraph.schemas.run import RunResult, RunStatus, StepEvent
from actorgraph.storage.checkpoint_store import FileCheckpointStore
from actorgraph.storage.checkpointer import Checkpointer, InMemoryCheckpointer

logger = logging.getLogger(__name__)


@dataclass
class RunEntry:
    """Registry record for one run."""

    run: Run
    plan: ExecutionPlan
    task: asyncio.Task | None = None
    done: asyncio.Event = field(default_factory=asyncio.Event)
    result: RunResult | None = None

    @property
    def is_running(self) -> bool:
        return self.task is not None and not self.task.done()


class RunHandle:
    """Caller-side handle to a launched run."""

    def __init__(self, manager: "RunManager", run_id: str):
        self._manager = manager
        self.run_id = run_id

    @property
    def status(self) -> RunStatus:
        return self._manager.status(self.run_id)

    async def wait(self, timeout: float | None = None) -> RunResult | None:
        """Wait until the run stops. Returns None on timeout."""
        return await self._manager.wait(self.run_id, timeout=timeout)

    def interrupt(self) -> bool:
        return self._manager.interrupt(self.run_id)

    async def events(self, replay: bool = True) -> AsyncIterator[StepEvent]:
        """This run's StepEvents, replayed from the start and then live."""
        async for event in self._manager.event_bus.step_events(self.run_id, replay=replay):
            yield event

    def __repr__(self) -> str:
        return f"RunHandle(run_id={self.run_id!r}, status={self.status.value!r})"


class RunManager:
    """
    Starts, resumes, interrupts and tracks runs.

    Example:
        manager = RunManager(checkpointer=FileCheckpointStore("~/.actorgraph/storage"))
        handle = await manager.start(plan, {"count": 0})
        async for event in handle.events():
            print(event.step, event.state_delta)
        result = await handle.wait()
    """

    def __init__(
        self,
        checkpointer: Checkpointer | None = None,
        event_bus: EventBus | None = None,
        config: EngineConfig | None = None,
    ):
        self.config = config or EngineConfig()
        if checkpointer is None:
            if self.config.storage_path is not None:
                checkpointer = FileCheckpointStore(self.config.storage_path)
            else:
                checkpointer = InMemoryCheckpointer()
        self.checkpointer = checkpointer
        self.event_bus = event_bus or EventBus(stream_queue_size=self.config.stream_queue_size)
        self.scheduler = StepScheduler(
            checkpointer=self.checkpointer,
            event_bus=self.event_bus,
            config=self.config,
        )
        self._runs: dict[str, RunEntry] = {}
        self._lock = asyncio.Lock()

    # === LAUNCHING ===

    async def start(
        self,
        plan: ExecutionPlan,
        input_data: Mapping[str, Any] | None = None,
        run_id: str | None = None,
    ) -> RunHandle:
        """
        Start a new run in the background.

        Raises:
            ValueError: ``run_id`` is already running
            InvalidUpdate: ``input_data`` names fields outside the schema
        """
        self._ensure_not_running(run_id)
        run = await self.scheduler.prepare(plan, input_data, run_id)
        return await self._launch(plan, run)

    async def resume(
        self,
        plan: ExecutionPlan,
        run_id: str,
        step: int | None = None,
        update: Mapping[str, Any] | None = None,
    ) -> RunHandle:
        """
        Resume a run from its latest checkpoint (or from ``step``).

        ``update`` is applied through the reducers as a correction before
        resuming.

        Raises:
            RunNotFound: the run has no checkpoints
            NotFound: the run has no checkpoint at ``step``
            ValueError: the run is still running
        """
        self._ensure_not_running(run_id)
        checkpoint = await self._load(run_id, step)
        if update:
            checkpoint = await self.scheduler.update_state(plan, checkpoint, update)
        run = self.scheduler.restore(plan, checkpoint)
        return await self._launch(plan, run)

    async def _launch(self, plan: ExecutionPlan, run: Run) -> RunHandle:
        entry = RunEntry(run=run, plan=plan)
        async with self._lock:
            self._runs[run.run_id] = entry
        entry.task = asyncio.create_task(self._execute(entry), name=f"run:{run.run_id}")
        logger.debug(f"Launched run {run.run_id} (step {run.step}, active {run.active})")
        return RunHandle(self, run.run_id)

    async def _execute(self, entry: RunEntry) -> None:
        try:
            entry.result = await self.scheduler.drive(entry.plan, entry.run)
            logger.debug(f"Run {entry.run.run_id} stopped: {entry.result.status}")
        except asyncio.CancelledError:
            if not entry.run.status.is_terminal:
                entry.run.status = RunStatus.INTERRUPTED
            entry.result = entry.run.result()
            raise
        finally:
            entry.done.set()

    def _ensure_not_running(self, run_id: str | None) -> None:
        entry = self._runs.get(run_id) if run_id else None
        if entry is not None and entry.is_running:
            raise ValueError(f"Run '{run_id}' is already running")

    async def _load(self, run_id: str, step: int | None) -> Checkpoint:
        try:
            return await self.checkpointer.load(run_id, step)
        except NotFound as e:
            if step is None:
                raise RunNotFound(run_id) from e
            raise

    # === CONTROL ===

    def interrupt(self, run_id: str) -> bool:
        """
        Ask a run to pause before its next superstep.

        In-flight nodes of the current superstep still finish. Returns
        False if the run is not running.
        """
        entry = self._get(run_id)
        if not entry.is_running:
            return False
        entry.run.request_interrupt("requested")
        logger.info(f"Interrupt requested for run {run_id}")
        return True

    async def wait(self, run_id: str, timeout: float | None = None) -> RunResult | None:
        entry = self._get(run_id)
        try:
            if timeout:
                await asyncio.wait_for(entry.done.wait(), timeout=timeout)
            else:
                await entry.done.wait()
        except TimeoutError:
            return None
        return entry.result

    # === QUERIES ===

    def status(self, run_id: str) -> RunStatus:
        return self._get(run_id).run.status

    def get_result(self, run_id: str) -> RunResult | None:
        return self._get(run_id).result

    async def get_state(self, run_id: str) -> StateSnapshot:
        """Current state of a registered run, else its latest checkpoint."""
        entry = self._runs.get(run_id)
        if entry is not None:
            return entry.run.state.snapshot()
        checkpoint = await self._load(run_id, None)
        return StateSnapshot(checkpoint.state, checkpoint.version)

    async def update_state(
        self,
        plan: ExecutionPlan,
        run_id: str,
        values: Mapping[str, Any],
        expected_version: int | None = None,
    ) -> Checkpoint:
        """
        Correct a stopped run's state as a new checkpoint.

        Raises:
            ValueError: the run is still running
            StaleStateError: the latest checkpoint is not at ``expected_version``
        """
        self._ensure_not_running(run_id)
        checkpoint = await self._load(run_id, None)
        if expected_version is not None and checkpoint.version != expected_version:
            raise StaleStateError(run_id, expected_version, checkpoint.version)
        updated = await self.scheduler.update_state(plan, checkpoint, values)
        entry = self._runs.get(run_id)
        if entry is not None:
            entry.run = self.scheduler.restore(plan, updated)
            entry.run.status = RunStatus(updated.status)
        return updated

    async def history(self, run_id: str) -> list[CheckpointSummary]:
        return await self.checkpointer.list_checkpoints(run_id)

    def list_runs(self, status: RunStatus | None = None) -> list[str]:
        return [
            run_id
            for run_id, entry in self._runs.items()
            if status is None or entry.run.status == status
        ]

    def get_stats(self) -> dict:
        statuses: dict[str, int] = {}
        for entry in self._runs.values():
            statuses[entry.run.status.value] = statuses.get(entry.run.status.value, 0) + 1
        return {"total_runs": len(self._runs), "by_status": statuses}

    # === LIFECYCLE ===

    async def cleanup(self, run_id: str, delete_checkpoints: bool = False) -> bool:
        """
        Forget a stopped run.

        Returns:
            True if the run was registered and removed
        """
        self._ensure_not_running(run_id)
        async with self._lock:
            entry = self._runs.pop(run_id, None)
        self.event_bus.forget(run_id)
        if delete_checkpoints:
            await self.checkpointer.delete_run(run_id)
        return entry is not None

    async def shutdown(self) -> None:
        """Cancel every running run and wait for the tasks to finish."""
        tasks = [entry.task for entry in self._runs.values() if entry.is_running]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        if tasks:
            logger.info(f"RunManager stopped {len(tasks)} running run(s)")
        await self.event_bus.cancel_handlers()

    def _get(self, run_id: str) -> RunEntry:
        entry = self._runs.get(run_id)
        if entry is None:
            raise RunNotFound(run_id)
        return entry
