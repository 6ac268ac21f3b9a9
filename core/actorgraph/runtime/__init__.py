"""Run control surface: run registry and event streaming."""

from actorgraph.runtime.event_bus import EventBus, EventType, RunEvent
from actorgraph.runtime.run_manager import RunHandle, RunManager

__all__ = ["EventBus", "EventType", "RunEvent", "RunHandle", "RunManager"]
