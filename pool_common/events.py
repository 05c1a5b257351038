"""
Typed in-process event bus.

Components publish events instead of calling into each other. Publishing is a
non-blocking enqueue; a dispatcher task delivers events to subscribers in
publish order. A failing handler is logged and never prevents delivery to the
remaining handlers.
"""

import asyncio
import inspect
import logging
import time
from collections import defaultdict, deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .models import format_timestamp

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    # Public stream
    POOL_STATUS_UPDATE = "pool_status_update"
    SCALING_EVENT = "scaling_event"
    OPTIMIZATION_COMPLETED = "optimization_completed"
    RESOURCE_ALERT = "resource_alert"
    CONTAINER_STATE_CHANGED = "container_state_changed"
    # Internal routing
    CONTAINER_CREATED = "container_created"
    CONTAINER_REMOVED = "container_removed"
    JOB_COMPLETED = "job_completed"
    ORPHANS_DETECTED = "orphans_detected"
    OPTIMIZATION_SUGGESTION = "optimization_suggestion"
    ANOMALY_DETECTED = "anomaly_detected"
    RECYCLE_RECOMMENDED = "recycle_recommended"
    UTILIZATION_FORECAST = "utilization_forecast"
    COMPONENT_HEARTBEAT = "component_heartbeat"


@dataclass
class Event:
    type: EventType
    payload: dict[str, Any] = field(default_factory=dict)
    source: str = ""
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "payload": self.payload,
            "source": self.source,
            "timestamp": format_timestamp(self.timestamp),
        }


EventHandler = Callable[[Event], Awaitable[None] | None]


class EventBus:
    """
    Publish/subscribe channel shared by the pool components.

    Handlers may be plain functions or coroutine functions. ``flush()`` must
    not be awaited from inside a handler.
    """

    def __init__(self, history_size: int = 200):
        self._subscribers: dict[EventType, list[EventHandler]] = defaultdict(list)
        self._wildcard: list[EventHandler] = []
        self._queue: asyncio.Queue[Event] = asyncio.Queue()
        self._task: asyncio.Task | None = None
        self.history: deque[Event] = deque(maxlen=history_size)
        self.published = 0
        self.handler_errors = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def subscribe(self, event_type: EventType, handler: EventHandler) -> None:
        self._subscribers[event_type].append(handler)

    def subscribe_all(self, handler: EventHandler) -> None:
        self._wildcard.append(handler)

    def unsubscribe(self, event_type: EventType, handler: EventHandler) -> None:
        handlers = self._subscribers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    def publish(
        self,
        event_type: EventType,
        payload: dict[str, Any] | None = None,
        source: str = "",
    ) -> Event:
        """Enqueue an event for delivery and return it."""
        event = Event(type=event_type, payload=payload or {}, source=source)
        self.history.append(event)
        self.published += 1
        self._queue.put_nowait(event)
        return event

    def recent(self, event_type: EventType | None = None, limit: int = 50) -> list[Event]:
        events = [e for e in self.history if event_type is None or e.type == event_type]
        return events[-limit:]

    async def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._dispatch_loop())
        logger.info("Event bus started")

    async def stop(self) -> None:
        """Deliver pending events, then stop the dispatcher."""
        if not self.running:
            return
        await self.flush()
        assert self._task is not None
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Event bus stopped")

    async def flush(self) -> None:
        """Wait until every queued event, including ones published by handlers, is delivered."""
        if self.running:
            await self._queue.join()
            return
        while not self._queue.empty():
            event = self._queue.get_nowait()
            try:
                await self._deliver(event)
            finally:
                self._queue.task_done()

    async def _dispatch_loop(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._deliver(event)
            finally:
                self._queue.task_done()

    async def _deliver(self, event: Event) -> None:
        handlers = [*self._subscribers.get(event.type, []), *self._wildcard]
        for handler in handlers:
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.handler_errors += 1
                logger.error(
                    f"Event handler {getattr(handler, '__qualname__', handler)} "
                    f"failed for {event.type.value}: {e}",
                    exc_info=True,
                )
