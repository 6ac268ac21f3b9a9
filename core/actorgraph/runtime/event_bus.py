"""
Event Bus - Pub/sub feed of run lifecycle and superstep events.

Allows consumers to:
- Subscribe handlers to run events, optionally filtered by run or node
- Stream a run's events as an async iterator, live or replayed
- Wait for a specific event

Delivery is fire-and-forget from the engine's point of view: a failing
handler is logged, and a slow stream consumer loses events (logged)
instead of blocking the run.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from actorgraph.schemas.run import StepEvent

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    """Types of events that can be published."""

    # Run lifecycle
    RUN_STARTED = "run_started"
    RUN_COMPLETED = "run_completed"
    RUN_FAILED = "run_failed"
    RUN_INTERRUPTED = "run_interrupted"
    RUN_RESUMED = "run_resumed"

    # Supersteps
    STEP_COMPLETED = "step_completed"

    # Retry tracking
    NODE_RETRY = "node_retry"

    # Out-of-band state corrections
    STATE_UPDATED = "state_updated"

    # Custom events
    CUSTOM = "custom"


# A stream ends at the first of these not followed by a resume
STREAM_END_EVENTS = frozenset(
    {EventType.RUN_COMPLETED, EventType.RUN_FAILED, EventType.RUN_INTERRUPTED}
)
LIFECYCLE_EVENTS = STREAM_END_EVENTS | {EventType.RUN_STARTED, EventType.RUN_RESUMED}


@dataclass
class RunEvent:
    """An event about one run."""

    type: EventType
    run_id: str
    node: str | None = None
    step: int | None = None
    data: dict[str, Any] = field(default_factory=dict)
    step_event: StepEvent | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "type": self.type.value,
            "run_id": self.run_id,
            "node": self.node,
            "step": self.step,
            "data": self.data,
            "step_event": self.step_event.model_dump(mode="json") if self.step_event else None,
            "timestamp": self.timestamp.isoformat(),
        }


# Type for event handlers
EventHandler = Callable[[RunEvent], Awaitable[None]]


@dataclass
class Subscription:
    """A subscription to events."""

    id: str
    event_types: set[EventType]
    handler: EventHandler
    filter_run: str | None = None  # Only receive events from this run
    filter_node: str | None = None  # Only receive events about this node


@dataclass
class _StreamQueue:
    run_id: str
    queue: asyncio.Queue
    dropped: int = 0


class EventBus:
    """
    Fans run events out to handlers and stream consumers.

    Handlers are matched by event type and optionally by run or node.
    History is bounded and doubles as the replay source for late streams.

    Example:
        bus = EventBus()

        async def on_step(event: RunEvent):
            print(f"Run {event.run_id} committed step {event.step}")

        bus.subscribe(event_types=[EventType.STEP_COMPLETED], handler=on_step)

        async for step_event in bus.step_events("run_123"):
            print(step_event.state_delta)
    """

    def __init__(
        self,
        max_history: int = 1000,
        max_concurrent_handlers: int = 10,
        stream_queue_size: int = 1000,
    ):
        """
        Args:
            max_history: Events retained for replay and queries
            max_concurrent_handlers: Cap on handlers running at once
            stream_queue_size: Capacity of each ``stream()`` consumer queue
        """
        self._subscriptions: dict[str, Subscription] = {}
        self._event_history: list[RunEvent] = []
        self._max_history = max_history
        self._semaphore = asyncio.Semaphore(max_concurrent_handlers)
        self._subscription_counter = 0
        self._lock = asyncio.Lock()
        self._stream_queue_size = stream_queue_size
        self._streams: list[_StreamQueue] = []
        # Last lifecycle event type per run, kept past history trimming
        self._lifecycle: dict[str, EventType] = {}
        self._handler_tasks: set[asyncio.Task] = set()

    def subscribe(
        self,
        event_types: Iterable[EventType],
        handler: EventHandler,
        filter_run: str | None = None,
        filter_node: str | None = None,
    ) -> str:
        """
        Register ``handler`` for the given event types.

        Args:
            event_types: Event types to deliver
            handler: Coroutine function called with each matching event
            filter_run: Only receive events from this run
            filter_node: Only receive events about this node

        Returns:
            Subscription id for ``unsubscribe``
        """
        self._subscription_counter += 1
        sub_id = f"sub_{self._subscription_counter}"
        self._subscriptions[sub_id] = Subscription(
            id=sub_id,
            event_types=set(event_types),
            handler=handler,
            filter_run=filter_run,
            filter_node=filter_node,
        )
        logger.debug(f"Subscription {sub_id} registered for {sorted(self._subscriptions[sub_id].event_types)}")
        return sub_id

    def unsubscribe(self, subscription_id: str) -> bool:
        """
        Remove a subscription. Returns False for an unknown id.
        """
        if subscription_id in self._subscriptions:
            del self._subscriptions[subscription_id]
            logger.debug(f"Subscription {subscription_id} removed")
            return True
        return False

    async def publish(self, event: RunEvent) -> None:
        """
        Publish an event to history, stream consumers and matching subscribers.

        Handlers run in background tasks, so a slow or stuck handler never
        holds up the publisher. Use ``drain()`` to wait for them.
        """
        async with self._lock:
            self._event_history.append(event)
            if event.type in LIFECYCLE_EVENTS:
                self._lifecycle[event.run_id] = event.type
            if len(self._event_history) > self._max_history:
                self._event_history = self._event_history[-self._max_history :]
            for stream in self._streams:
                if stream.run_id == event.run_id:
                    self._offer(stream, event)

        matching_handlers = [
            sub.handler for sub in self._subscriptions.values() if self._matches(sub, event)
        ]
        if matching_handlers:
            task = asyncio.create_task(self._execute_handlers(event, matching_handlers))
            self._handler_tasks.add(task)
            task.add_done_callback(self._handler_tasks.discard)

    def _offer(self, stream: _StreamQueue, event: RunEvent) -> None:
        try:
            stream.queue.put_nowait(event)
        except asyncio.QueueFull:
            stream.dropped += 1
            if event.type in STREAM_END_EVENTS:
                # Make room so the consumer still sees the end of the run
                stream.queue.get_nowait()
                stream.queue.put_nowait(event)
            logger.warning(
                f"Stream consumer for run {event.run_id} is full; "
                f"dropped an event (total dropped: {stream.dropped})"
            )

    def _matches(self, subscription: Subscription, event: RunEvent) -> bool:
        """Check if a subscription matches an event."""
        if event.type not in subscription.event_types:
            return False
        if subscription.filter_run and subscription.filter_run != event.run_id:
            return False
        if subscription.filter_node and subscription.filter_node != event.node:
            return False
        return True

    async def _execute_handlers(
        self,
        event: RunEvent,
        handlers: list[EventHandler],
    ) -> None:
        """Execute handlers concurrently with rate limiting."""

        async def run_handler(handler: EventHandler) -> None:
            async with self._semaphore:
                try:
                    await handler(event)
                except Exception as e:
                    logger.error(f"Handler error for {event.type}: {e}")

        await asyncio.gather(*[run_handler(h) for h in handlers], return_exceptions=True)

    # === STREAMING ===

    async def stream(
        self,
        run_id: str,
        replay: bool = True,
        event_types: Iterable[EventType] | None = None,
    ) -> AsyncIterator[RunEvent]:
        """
        Iterate a run's events in publish order.

        With ``replay`` the run's retained history is yielded first, so a
        consumer that attaches late (even after completion) sees the whole
        run. The iterator ends at the run's terminal event (completed,
        failed or interrupted) unless a later resume follows it. Breaking
        out early detaches the consumer without affecting the run.
        """
        wanted = set(event_types) if event_types is not None else None
        stream = _StreamQueue(run_id=run_id, queue=asyncio.Queue(self._stream_queue_size))

        async with self._lock:
            backlog = [e for e in self._event_history if e.run_id == run_id] if replay else []
            last_lifecycle = self._lifecycle.get(run_id) if replay else None
            self._streams.append(stream)

        try:
            finished = False
            for event in backlog:
                if wanted is None or event.type in wanted:
                    yield event
            if last_lifecycle in STREAM_END_EVENTS:
                finished = True

            while not finished:
                event = await stream.queue.get()
                if wanted is None or event.type in wanted:
                    yield event
                finished = event.type in STREAM_END_EVENTS
        finally:
            if stream in self._streams:
                self._streams.remove(stream)

    async def step_events(self, run_id: str, replay: bool = True) -> AsyncIterator[StepEvent]:
        """The run's StepEvents only, in strictly increasing step order."""
        async for event in self.stream(run_id, replay=replay):
            if event.type == EventType.STEP_COMPLETED and event.step_event is not None:
                yield event.step_event

    # === CONVENIENCE PUBLISHERS ===

    async def emit_run_started(
        self,
        run_id: str,
        graph: str,
        input_data: dict[str, Any] | None = None,
    ) -> None:
        """Emit run started event."""
        await self.publish(
            RunEvent(
                type=EventType.RUN_STARTED,
                run_id=run_id,
                step=0,
                data={"graph": graph, "input": input_data or {}},
            )
        )

    async def emit_step_completed(self, step_event: StepEvent) -> None:
        """Emit one committed superstep."""
        await self.publish(
            RunEvent(
                type=EventType.STEP_COMPLETED,
                run_id=step_event.run_id,
                step=step_event.step,
                step_event=step_event,
            )
        )

    async def emit_run_completed(
        self,
        run_id: str,
        step: int,
        output: dict[str, Any] | None = None,
    ) -> None:
        """Emit run completed event."""
        await self.publish(
            RunEvent(
                type=EventType.RUN_COMPLETED,
                run_id=run_id,
                step=step,
                data={"output": output or {}},
            )
        )

    async def emit_run_failed(
        self,
        run_id: str,
        step: int,
        error: str,
        node: str | None = None,
    ) -> None:
        """Emit run failed event."""
        await self.publish(
            RunEvent(
                type=EventType.RUN_FAILED,
                run_id=run_id,
                node=node,
                step=step,
                data={"error": error},
            )
        )

    async def emit_run_interrupted(
        self,
        run_id: str,
        step: int,
        pending: list[str],
        reason: str = "",
    ) -> None:
        """Emit run interrupted event."""
        await self.publish(
            RunEvent(
                type=EventType.RUN_INTERRUPTED,
                run_id=run_id,
                step=step,
                data={"pending": pending, "reason": reason},
            )
        )

    async def emit_run_resumed(self, run_id: str, step: int, active: list[str]) -> None:
        """Emit run resumed event."""
        await self.publish(
            RunEvent(
                type=EventType.RUN_RESUMED,
                run_id=run_id,
                step=step,
                data={"active": active},
            )
        )

    async def emit_node_retry(
        self,
        run_id: str,
        node: str,
        step: int,
        retry_count: int,
        max_retries: int,
        error: str = "",
        delay: float = 0.0,
    ) -> None:
        """Emit node retry event."""
        await self.publish(
            RunEvent(
                type=EventType.NODE_RETRY,
                run_id=run_id,
                node=node,
                step=step,
                data={
                    "retry_count": retry_count,
                    "max_retries": max_retries,
                    "error": error,
                    "delay": delay,
                },
            )
        )

    async def emit_state_updated(
        self,
        run_id: str,
        step: int,
        version: int,
        fields: list[str],
    ) -> None:
        """Emit out-of-band state correction event."""
        await self.publish(
            RunEvent(
                type=EventType.STATE_UPDATED,
                run_id=run_id,
                step=step,
                data={"version": version, "fields": fields},
            )
        )

    # === QUERY OPERATIONS ===

    def get_history(
        self,
        event_type: EventType | None = None,
        run_id: str | None = None,
        limit: int = 100,
    ) -> list[RunEvent]:
        """
        Past events, newest first, optionally narrowed by type and run.
        """
        events = self._event_history[::-1]
        if event_type:
            events = [e for e in events if e.type == event_type]
        if run_id:
            events = [e for e in events if e.run_id == run_id]
        return events[:limit]

    def forget(self, run_id: str) -> int:
        """Drop a run's events from history. Returns how many were removed."""
        before = len(self._event_history)
        self._event_history = [e for e in self._event_history if e.run_id != run_id]
        self._lifecycle.pop(run_id, None)
        return before - len(self._event_history)

    def get_stats(self) -> dict:
        """Counters for history, subscriptions and open streams."""
        type_counts: dict[str, int] = {}
        for event in self._event_history:
            type_counts[event.type.value] = type_counts.get(event.type.value, 0) + 1

        return {
            "total_events": len(self._event_history),
            "subscriptions": len(self._subscriptions),
            "streams": len(self._streams),
            "pending_handlers": len(self._handler_tasks),
            "events_by_type": type_counts,
        }

    # === WAITING OPERATIONS ===

    async def drain(self, timeout: float | None = None) -> bool:
        """
        Wait for handler tasks still in flight.

        Returns False if ``timeout`` elapsed first. Handlers that are still
        running keep running.
        """
        while self._handler_tasks:
            _, pending = await asyncio.wait(list(self._handler_tasks), timeout=timeout)
            if pending:
                return False
        return True

    async def cancel_handlers(self) -> int:
        """Cancel handler tasks still in flight. Returns how many were cancelled."""
        tasks = list(self._handler_tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if tasks:
            logger.warning(f"Cancelled {len(tasks)} unfinished event handler(s)")
        return len(tasks)

    async def wait_for(
        self,
        event_type: EventType,
        run_id: str | None = None,
        node: str | None = None,
        timeout: float | None = None,
    ) -> RunEvent | None:
        """
        Block until a matching event is published.

        Returns None when ``timeout`` elapses first.
        """
        result: RunEvent | None = None
        event_received = asyncio.Event()

        async def handler(event: RunEvent) -> None:
            nonlocal result
            result = event
            event_received.set()

        sub_id = self.subscribe(
            event_types=[event_type],
            handler=handler,
            filter_run=run_id,
            filter_node=node,
        )

        try:
            if timeout:
                try:
                    await asyncio.wait_for(event_received.wait(), timeout=timeout)
                except TimeoutError:
                    return None
            else:
                await event_received.wait()

            return result
        finally:
            self.unsubscribe(sub_id)
