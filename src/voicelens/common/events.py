"""In-process event bus for session observers."""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from voicelens.common.logging import get_logger


@dataclass
class Event:
    """Event message."""

    topic: str
    data: dict[str, Any]
    source: str
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: float = field(default_factory=time.time)


EventHandler = Callable[[Event], Awaitable[None]]


def topic_matches(topic: str, pattern: str) -> bool:
    """Check if a dotted topic matches a pattern.

    ``*`` matches exactly one segment, ``**`` matches any number of
    trailing segments (including none).
    """
    topic_parts = topic.split(".")
    pattern_parts = pattern.split(".")

    for index, part in enumerate(pattern_parts):
        if part == "**":
            return True
        if index >= len(topic_parts):
            return False
        if part != "*" and part != topic_parts[index]:
            return False

    return len(topic_parts) == len(pattern_parts)


class EventBus:
    """Async pub/sub with wildcard topics and a bounded history.

    Handlers never see each other's failures: a raising handler is logged
    and the remaining handlers still run.
    """

    def __init__(self, history_limit: int = 500) -> None:
        self._subscribers: list[tuple[str, EventHandler]] = []
        self._history: list[Event] = []
        self._history_limit = history_limit
        self._pending: set[asyncio.Task] = set()
        self.logger = get_logger("event_bus")

    async def publish(self, event: Event) -> None:
        """Publish an event to every matching subscriber.

        Args:
            event: Event to publish.
        """
        self._record(event)
        await self._dispatch(event)

    def emit(self, topic: str, source: str, **data: Any) -> None:
        """Publish from synchronous code.

        The event is recorded in history immediately; handlers run on the
        next loop iteration. Without a running loop only history is kept.
        """
        event = Event(topic=topic, data=data, source=source)
        self._record(event)

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return

        task = loop.create_task(self._dispatch(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def _record(self, event: Event) -> None:
        self.logger.debug("publishing_event", topic=event.topic, source=event.source)
        self._history.append(event)
        if len(self._history) > self._history_limit:
            del self._history[: len(self._history) - self._history_limit]

    async def _dispatch(self, event: Event) -> None:
        handlers = [h for pattern, h in self._subscribers if topic_matches(event.topic, pattern)]
        if handlers:
            await asyncio.gather(*(self._safe_dispatch(h, event) for h in handlers))

    async def drain(self) -> None:
        """Wait for events scheduled with :meth:`emit` to be dispatched."""
        while self._pending:
            await asyncio.gather(*list(self._pending))

    async def _safe_dispatch(self, handler: EventHandler, event: Event) -> None:
        try:
            await handler(event)
        except Exception as e:
            self.logger.exception("event_handler_error", topic=event.topic, error=str(e))

    def subscribe(self, pattern: str, handler: EventHandler) -> Callable[[], None]:
        """Subscribe to events on a topic pattern.

        Args:
            pattern: Topic or wildcard pattern (``*``, ``**``).
            handler: Async function to handle events.

        Returns:
            Function that removes the subscription.
        """
        entry = (pattern, handler)
        self._subscribers.append(entry)
        self.logger.debug("subscribed", pattern=pattern)

        def unsubscribe() -> None:
            if entry in self._subscribers:
                self._subscribers.remove(entry)

        return unsubscribe

    def get_history(self, topic: str | None = None, limit: int = 100) -> list[Event]:
        """Get recorded events, oldest first.

        Args:
            topic: Topic pattern filter (optional).
            limit: Maximum number of events to return.
        """
        events = self._history
        if topic:
            events = [e for e in events if topic_matches(e.topic, topic)]
        return list(events[-limit:])

    def clear_history(self) -> None:
        """Clear event history."""
        self._history.clear()
