"""
Checkpoint Configuration - Controls checkpoint behavior during execution.
"""

from dataclasses import dataclass


@dataclass
class CheckpointConfig:
    """
    Configuration for checkpointing between supersteps.

    A checkpoint is written after every committed superstep (and once for
    the input state) whenever checkpointing is enabled and a checkpointer
    is attached.
    """

    enabled: bool = True

    # Save is retried this many times in total before the run fails
    save_attempts: int = 3
    save_retry_delay: float = 0.1  # Doubled after each failed attempt

    # Keep only the newest N checkpoints per run (None = keep all)
    keep_last: int | None = None

    def should_checkpoint(self) -> bool:
        return self.enabled

    def should_prune(self, step: int) -> bool:
        """Prune once the run has produced more checkpoints than ``keep_last``."""
        return self.enabled and self.keep_last is not None and step + 1 > self.keep_last


DEFAULT_CHECKPOINT_CONFIG = CheckpointConfig()

DISABLED_CHECKPOINT_CONFIG = CheckpointConfig(enabled=False)
