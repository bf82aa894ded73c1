"""In-process event publisher.

Subscribers register an async handler per event name (or ``*`` for every
event). A failing handler is logged and does not affect the command that
published the event, nor the other handlers.
"""

import logging
from collections import defaultdict
from typing import Awaitable, Callable

from ..domain.entities import DomainEvent
from ..domain.ports import IEventPublisher

logger = logging.getLogger(__name__)

EventHandler = Callable[[DomainEvent], Awaitable[None]]

ALL_EVENTS = "*"


class InMemoryEventBus(IEventPublisher):
    """Fan-out publisher that also keeps a bounded history of events."""

    def __init__(self, history_size: int = 500):
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)
        self.history_size = history_size
        self.events: list[DomainEvent] = []

    def subscribe(self, event_name: str, handler: EventHandler) -> None:
        self._handlers[event_name].append(handler)

    def unsubscribe(self, event_name: str, handler: EventHandler) -> None:
        if handler in self._handlers.get(event_name, []):
            self._handlers[event_name].remove(handler)

    async def publish(self, event: DomainEvent) -> None:
        self.events.append(event)
        if len(self.events) > self.history_size:
            del self.events[: len(self.events) - self.history_size]

        handlers = self._handlers.get(event.name, []) + self._handlers.get(ALL_EVENTS, [])
        for handler in handlers:
            try:
                await handler(event)
            except Exception as e:
                logger.error(f"Event handler failed for {event.name}: {e}")

    def names(self) -> list[str]:
        """Names of the recorded events, oldest first."""
        return [event.name for event in self.events]
