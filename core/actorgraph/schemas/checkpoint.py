"""
Checkpoint Schema - Committed run snapshots for resumability.

A checkpoint is written after every committed superstep (plus one for the
input state at step 0). It holds the full state, never a diff, together
with the active set that the next superstep will dispatch.
"""

from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

CheckpointSource = Literal["input", "loop", "update"]


class Checkpoint(BaseModel):
    """
    Immutable snapshot of a run at a superstep boundary.

    Keyed by ``(run_id, step)``. ``active`` is ordered by branch index.
    """

    # Identity
    checkpoint_id: str  # Format: cp_{run_id}_{step:06d}
    run_id: str
    step: int
    graph: str | None = None

    # Timestamps
    created_at: str  # ISO 8601 format

    # Execution state
    version: int
    state: dict[str, Any] = Field(default_factory=dict)
    active: list[str] = Field(default_factory=list)
    status: str = "running"
    source: CheckpointSource = "loop"
    error: str | None = None

    model_config = {"extra": "allow", "frozen": True}

    @classmethod
    def create(
        cls,
        run_id: str,
        step: int,
        version: int,
        state: dict[str, Any],
        active: list[str],
        status: str = "running",
        source: CheckpointSource = "loop",
        graph: str | None = None,
        error: str | None = None,
    ) -> "Checkpoint":
        """Create a checkpoint with generated ID and timestamp."""
        return cls(
            checkpoint_id=f"cp_{run_id}_{step:06d}",
            run_id=run_id,
            step=step,
            graph=graph,
            created_at=datetime.now(UTC).isoformat(),
            version=version,
            state=state,
            active=active,
            status=status,
            source=source,
            error=error,
        )


class CheckpointSummary(BaseModel):
    """
    Lightweight checkpoint metadata for index listings.

    Lets ``history()`` scan a run without loading full state payloads.
    """

    checkpoint_id: str
    step: int
    version: int
    created_at: str
    active: list[str] = Field(default_factory=list)
    status: str = "running"
    source: CheckpointSource = "loop"

    model_config = {"extra": "allow"}

    @classmethod
    def from_checkpoint(cls, checkpoint: Checkpoint) -> "CheckpointSummary":
        return cls(
            checkpoint_id=checkpoint.checkpoint_id,
            step=checkpoint.step,
            version=checkpoint.version,
            created_at=checkpoint.created_at,
            active=list(checkpoint.active),
            status=checkpoint.status,
            source=checkpoint.source,
        )


class CheckpointIndex(BaseModel):
    """
    Manifest of all checkpoints for a run.

    ``latest_step`` always names the most recently *saved* checkpoint,
    which is what ``load(run_id)`` returns.
    """

    run_id: str
    checkpoints: list[CheckpointSummary] = Field(default_factory=list)
    latest_checkpoint_id: str | None = None
    latest_step: int | None = None
    total_checkpoints: int = 0

    model_config = {"extra": "allow"}

    def add_checkpoint(self, checkpoint: Checkpoint) -> None:
        """Add (or replace) a checkpoint in the index."""
        self.checkpoints = [cp for cp in self.checkpoints if cp.step != checkpoint.step]
        self.checkpoints.append(CheckpointSummary.from_checkpoint(checkpoint))
        self.checkpoints.sort(key=lambda cp: cp.step)
        self.latest_checkpoint_id = checkpoint.checkpoint_id
        self.latest_step = checkpoint.step
        self.total_checkpoints = len(self.checkpoints)

    def remove_step(self, step: int) -> None:
        self.checkpoints = [cp for cp in self.checkpoints if cp.step != step]
        self.total_checkpoints = len(self.checkpoints)
        if self.latest_step == step:
            last = self.checkpoints[-1] if self.checkpoints else None
            self.latest_step = last.step if last else None
            self.latest_checkpoint_id = last.checkpoint_id if last else None

    def get_summary(self, step: int) -> CheckpointSummary | None:
        for summary in self.checkpoints:
            if summary.step == step:
                return summary
        return None

    def filter_by_source(self, source: CheckpointSource) -> list[CheckpointSummary]:
        return [cp for cp in self.checkpoints if cp.source == source]
