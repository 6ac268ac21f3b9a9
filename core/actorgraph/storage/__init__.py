"""Checkpoint persistence backends."""

from actorgraph.storage.checkpoint_store import FileCheckpointStore
from actorgraph.storage.checkpointer import Checkpointer, InMemoryCheckpointer

__all__ = ["Checkpointer", "FileCheckpointStore", "InMemoryCheckpointer"]
