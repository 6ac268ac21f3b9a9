"""
Checkpoint Store - File-backed checkpoints with atomic writes.

Handles saving, loading, listing, and pruning of run checkpoints so a
failed or interrupted run can be resumed after a restart.
"""

import asyncio
import logging
import shutil
from pathlib import Path

from pydantic import ValidationError

from actorgraph.errors import NotFound, StorageError
from actorgraph.schemas.checkpoint import Checkpoint, CheckpointIndex, CheckpointSummary
from actorgraph.storage.checkpointer import Checkpointer
from actorgraph.utils.io import atomic_write

logger = logging.getLogger(__name__)


class FileCheckpointStore(Checkpointer):
    """
    Stores checkpoints as JSON files, one directory per run, with an index
    for fast listing.

    Directory structure:
        {base_path}/runs/{run_id}/checkpoints/
            index.json              # Checkpoint manifest
            step_{n}.json           # One file per committed superstep

    State values must be JSON-serialisable.
    """

    def __init__(self, base_path: Path | str):
        """
        Initialize checkpoint store.

        Args:
            base_path: Storage root (e.g., ~/.actorgraph/storage)
        """
        self.base_path = Path(base_path).expanduser()
        self.runs_dir = self.base_path / "runs"
        self._index_locks: dict[str, asyncio.Lock] = {}

    def _checkpoints_dir(self, run_id: str) -> Path:
        return self.runs_dir / run_id / "checkpoints"

    def _checkpoint_path(self, run_id: str, step: int) -> Path:
        return self._checkpoints_dir(run_id) / f"step_{step}.json"

    def _index_path(self, run_id: str) -> Path:
        return self._checkpoints_dir(run_id) / "index.json"

    def _lock(self, run_id: str) -> asyncio.Lock:
        if run_id not in self._index_locks:
            self._index_locks[run_id] = asyncio.Lock()
        return self._index_locks[run_id]

    async def save(self, checkpoint: Checkpoint) -> None:
        """
        Atomically save checkpoint and update index.

        The checkpoint file is persisted before the index points at it, so
        a crash in between leaves the previous latest checkpoint in place.

        Raises:
            StorageError: If the write fails or the state is not serialisable
        """
        path = self._checkpoint_path(checkpoint.run_id, checkpoint.step)

        def _write() -> None:
            with atomic_write(path) as f:
                f.write(checkpoint.model_dump_json(indent=2))

        try:
            await asyncio.to_thread(_write)
        except (OSError, TypeError, ValueError) as e:
            raise StorageError(
                f"Failed to write checkpoint {checkpoint.checkpoint_id}: {e}",
                run_id=checkpoint.run_id,
                operation="save",
            ) from e

        async with self._lock(checkpoint.run_id):
            index = await self._load_index(checkpoint.run_id) or CheckpointIndex(
                run_id=checkpoint.run_id
            )
            index.add_checkpoint(checkpoint)
            await self._write_index(index)

        logger.debug(f"Saved checkpoint {checkpoint.checkpoint_id}")

    async def load(self, run_id: str, step: int | None = None) -> Checkpoint:
        """
        Load a checkpoint by step, or the latest saved one.

        Raises:
            NotFound: No such run or step
            StorageError: The file exists but cannot be read or parsed
        """
        if step is None:
            index = await self._load_index(run_id)
            if index is None or index.latest_step is None:
                raise NotFound(run_id)
            step = index.latest_step

        path = self._checkpoint_path(run_id, step)

        def _read() -> Checkpoint | None:
            if not path.exists():
                return None
            return Checkpoint.model_validate_json(path.read_text(encoding="utf-8"))

        try:
            checkpoint = await asyncio.to_thread(_read)
        except (OSError, ValidationError) as e:
            raise StorageError(
                f"Failed to load checkpoint {path.name} of run '{run_id}': {e}",
                run_id=run_id,
                operation="load",
            ) from e
        if checkpoint is None:
            raise NotFound(run_id, step)
        return checkpoint

    async def list_checkpoints(self, run_id: str) -> list[CheckpointSummary]:
        index = await self._load_index(run_id)
        return list(index.checkpoints) if index else []

    async def list_runs(self) -> list[str]:
        def _scan() -> list[str]:
            if not self.runs_dir.exists():
                return []
            return sorted(p.name for p in self.runs_dir.iterdir() if p.is_dir())

        return await asyncio.to_thread(_scan)

    async def delete_run(self, run_id: str) -> bool:
        run_dir = self.runs_dir / run_id

        def _delete() -> bool:
            if not run_dir.exists():
                return False
            shutil.rmtree(run_dir)
            return True

        async with self._lock(run_id):
            try:
                deleted = await asyncio.to_thread(_delete)
            except OSError as e:
                raise StorageError(
                    f"Failed to delete run '{run_id}': {e}", run_id=run_id, operation="delete"
                ) from e
        self._index_locks.pop(run_id, None)
        if deleted:
            logger.info(f"Deleted checkpoints of run {run_id}")
        return deleted

    async def prune(self, run_id: str, keep_last: int) -> int:
        """
        Delete all but the newest ``keep_last`` checkpoints of a run.

        The latest saved checkpoint is always kept.
        """
        async with self._lock(run_id):
            index = await self._load_index(run_id)
            if not index or not index.checkpoints:
                return 0
            steps = [cp.step for cp in index.checkpoints]
            keep = set(steps[-keep_last:]) if keep_last > 0 else set()
            keep.add(index.latest_step)
            doomed = [s for s in steps if s not in keep]

            def _unlink(step: int) -> None:
                self._checkpoint_path(run_id, step).unlink(missing_ok=True)

            for step in doomed:
                await asyncio.to_thread(_unlink, step)
                index.remove_step(step)
            if doomed:
                await self._write_index(index)

        if doomed:
            logger.info(f"Pruned {len(doomed)} checkpoints of run {run_id}")
        return len(doomed)

    async def _load_index(self, run_id: str) -> CheckpointIndex | None:
        path = self._index_path(run_id)

        def _read() -> CheckpointIndex | None:
            if not path.exists():
                return None
            return CheckpointIndex.model_validate_json(path.read_text(encoding="utf-8"))

        try:
            return await asyncio.to_thread(_read)
        except (OSError, ValidationError) as e:
            raise StorageError(
                f"Failed to load checkpoint index of run '{run_id}': {e}",
                run_id=run_id,
                operation="index",
            ) from e

    async def _write_index(self, index: CheckpointIndex) -> None:
        """Should be called with the run's index lock held."""
        path = self._index_path(index.run_id)

        def _write() -> None:
            with atomic_write(path) as f:
                f.write(index.model_dump_json(indent=2))

        try:
            await asyncio.to_thread(_write)
        except OSError as e:
            raise StorageError(
                f"Failed to write checkpoint index of run '{index.run_id}': {e}",
                run_id=index.run_id,
                operation="index",
            ) from e
