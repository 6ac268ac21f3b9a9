"""
Checkpointer interface and the in-process implementation.

The scheduler depends only on this interface. Implementations must:
- persist a copy, never the live state object
- return the exact most recently saved checkpoint when ``step`` is omitted
- raise NotFound for unknown runs or steps, StorageError for I/O failures
"""

import asyncio
import logging
from abc import ABC, abstractmethod

from actorgraph.errors import NotFound
from actorgraph.schemas.checkpoint import Checkpoint, CheckpointSummary

logger = logging.getLogger(__name__)


class Checkpointer(ABC):
    """Durable store of run checkpoints keyed by ``(run_id, step)``."""

    @abstractmethod
    async def save(self, checkpoint: Checkpoint) -> None:
        """Persist ``checkpoint``. Raises StorageError on failure."""

    @abstractmethod
    async def load(self, run_id: str, step: int | None = None) -> Checkpoint:
        """Load one checkpoint, or the latest saved one. Raises NotFound."""

    @abstractmethod
    async def list_checkpoints(self, run_id: str) -> list[CheckpointSummary]:
        """Summaries of a run's checkpoints, oldest step first."""

    @abstractmethod
    async def delete_run(self, run_id: str) -> bool:
        """Drop every checkpoint of a run. Returns False if there were none."""

    async def list_runs(self) -> list[str]:
        return []

    async def prune(self, run_id: str, keep_last: int) -> int:
        """Delete all but the newest ``keep_last`` checkpoints of a run."""
        return 0


class InMemoryCheckpointer(Checkpointer):
    """
    Checkpoints held in process memory.

    Stores deep copies, so nothing the caller does to a checkpoint (or the
    state it came from) after ``save`` changes what ``load`` returns.
    """

    def __init__(self) -> None:
        self._runs: dict[str, dict[int, Checkpoint]] = {}
        self._latest: dict[str, int] = {}
        self._lock = asyncio.Lock()

    async def save(self, checkpoint: Checkpoint) -> None:
        async with self._lock:
            self._runs.setdefault(checkpoint.run_id, {})[checkpoint.step] = (
                checkpoint.model_copy(deep=True)
            )
            self._latest[checkpoint.run_id] = checkpoint.step
        logger.debug(f"Saved checkpoint {checkpoint.checkpoint_id} (in memory)")

    async def load(self, run_id: str, step: int | None = None) -> Checkpoint:
        checkpoints = self._runs.get(run_id)
        if not checkpoints:
            raise NotFound(run_id, step)
        if step is None:
            step = self._latest[run_id]
        checkpoint = checkpoints.get(step)
        if checkpoint is None:
            raise NotFound(run_id, step)
        return checkpoint.model_copy(deep=True)

    async def list_checkpoints(self, run_id: str) -> list[CheckpointSummary]:
        checkpoints = self._runs.get(run_id, {})
        return [CheckpointSummary.from_checkpoint(checkpoints[s]) for s in sorted(checkpoints)]

    async def delete_run(self, run_id: str) -> bool:
        async with self._lock:
            self._latest.pop(run_id, None)
            return self._runs.pop(run_id, None) is not None

    async def list_runs(self) -> list[str]:
        return list(self._runs)

    async def prune(self, run_id: str, keep_last: int) -> int:
        async with self._lock:
            checkpoints = self._runs.get(run_id, {})
            keep = set(sorted(checkpoints)[-keep_last:]) if keep_last > 0 else set()
            keep.add(self._latest.get(run_id, -1))
            doomed = [s for s in checkpoints if s not in keep]
            for step in doomed:
                del checkpoints[step]
        return len(doomed)
