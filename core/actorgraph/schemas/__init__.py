"""Serialisable records: checkpoints, step events and run results."""

from actorgraph.schemas.checkpoint import Checkpoint, CheckpointIndex, CheckpointSummary
from actorgraph.schemas.run import RunResult, RunStatus, StepEvent

__all__ = [
    "Checkpoint",
    "CheckpointIndex",
    "CheckpointSummary",
    "RunResult",
    "RunStatus",
    "StepEvent",
]
