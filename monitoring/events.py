"""
monitoring/events.py - Outbound event bus.

The pipeline publishes; notification and analytics collaborators
subscribe. Publishers never depend on who is listening.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set

from core.constants import EventType
from core.logging import get_logger
from core.time import now_timestamp

logger = get_logger(__name__)

EVENT_HISTORY_MAX = 100


@dataclass
class Event:
    type: EventType
    source: str
    data: Dict[str, Any]
    timestamp: float = field(default_factory=now_timestamp)

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "source": self.source,
            "data": self.data,
            "timestamp": self.timestamp,
        }


class EventBus:
    """
    Publish/subscribe fan-out with a bounded history.

    Sync callbacks run inline; coroutine callbacks are scheduled as tasks
    on the running loop. A failing subscriber is logged and does not stop
    delivery to the others.
    """

    def __init__(self, max_history: int = EVENT_HISTORY_MAX):
        self._subscribers: Dict[EventType, List[Callable]] = {t: [] for t in EventType}
        self._history: List[Event] = []
        self._max_history = max_history
        self._tasks: Set[asyncio.Task] = set()

    def subscribe(self, event_type: EventType, callback: Callable[[Event], Any]) -> None:
        """Register a callback for a specific event type."""
        if callback not in self._subscribers[event_type]:
            self._subscribers[event_type].append(callback)

    def unsubscribe(self, event_type: EventType, callback: Callable[[Event], Any]) -> None:
        if callback in self._subscribers[event_type]:
            self._subscribers[event_type].remove(callback)

    def publish(self, event: Event) -> None:
        """Deliver an event to all subscribers of its type."""
        self._history.append(event)
        if len(self._history) > self._max_history:
            self._history.pop(0)

        for callback in list(self._subscribers.get(event.type, [])):
            if asyncio.iscoroutinefunction(callback):
                task = asyncio.get_running_loop().create_task(callback(event))
                self._tasks.add(task)
                task.add_done_callback(self._on_task_done)
            else:
                try:
                    callback(event)
                except Exception:
                    logger.exception(
                        f"Event subscriber failed: {event.type.value}",
                        extra={"context": {"event": event.type.value, "source": event.source}},
                    )

    def emit(self, event_type: EventType, source: str, **data: Any) -> Event:
        """Build and publish an event in one call."""
        event = Event(type=event_type, source=source, data=data)
        self.publish(event)
        return event

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                f"Async event subscriber failed: {exc}",
                extra={"context": {"error_type": type(exc).__name__}},
            )

    def history(self, event_type: Optional[EventType] = None) -> List[Event]:
        if event_type is None:
            return list(self._history)
        return [e for e in self._history if e.type == event_type]

    async def drain(self) -> None:
        """Wait for scheduled async subscribers to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
