"""
Run Schema - Status, per-superstep events and final results of a run.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class RunStatus(StrEnum):
    """Status of a run."""

    RUNNING = "running"
    INTERRUPTED = "interrupted"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED)


class StepEvent(BaseModel):
    """
    One committed superstep, as pushed to stream consumers.

    Exactly one StepEvent is emitted per superstep, in strictly increasing
    ``step`` order.
    """

    run_id: str
    step: int
    version: int
    node_outputs: dict[str, dict[str, Any]] = Field(default_factory=dict)
    state_delta: dict[str, Any] = Field(default_factory=dict)
    errors: dict[str, str] = Field(default_factory=dict)  # isolated failures, by node
    active: list[str] = Field(default_factory=list)  # next active set
    status: RunStatus = RunStatus.RUNNING
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))

    model_config = {"extra": "allow"}

    @property
    def nodes(self) -> list[str]:
        """Nodes that ran in this superstep (including isolated failures)."""
        return list(dict.fromkeys([*self.node_outputs, *self.errors]))


@dataclass
class RunResult:
    """Result of driving a run until it stops."""

    run_id: str
    status: RunStatus
    state: dict[str, Any] = field(default_factory=dict)
    version: int = 0
    steps_executed: int = 0
    path: list[list[str]] = field(default_factory=list)  # active set of each superstep
    error: BaseException | None = None
    pending: list[str] = field(default_factory=list)  # active set a resume would dispatch

    @property
    def success(self) -> bool:
        return self.status == RunStatus.COMPLETED

    @property
    def interrupted(self) -> bool:
        return self.status == RunStatus.INTERRUPTED
