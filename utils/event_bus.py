"""
Simple asynchronous event bus for repricing events.
"""

import asyncio
import logging
from collections.abc import Callable, Coroutine
from typing import Any

from models.events import RepricingEvent

logger_event_bus = logging.getLogger(__name__)

Subscriber = Callable[[RepricingEvent], Coroutine[Any, Any, None]]


class EventBus:
    """In-process pub/sub. Subscriber failures are logged and never reach the publisher."""

    def __init__(self):
        self.subscribers: dict[str, list[Subscriber]] = {}

    def subscribe(self, event_type: str, callback: Subscriber) -> None:
        """Subscribe to an event type."""
        if not callable(callback):
            raise TypeError("Callback must be a callable async function.")
        callbacks = self.subscribers.setdefault(event_type, [])
        if callback in callbacks:
            logger_event_bus.warning(
                f"Callback {getattr(callback, '__name__', callback)} already subscribed to {event_type}"
            )
            return
        callbacks.append(callback)

    def unsubscribe(self, event_type: str, callback: Subscriber) -> None:
        """Unsubscribe a specific callback from an event type."""
        callbacks = self.subscribers.get(event_type)
        if not callbacks or callback not in callbacks:
            logger_event_bus.warning(f"Callback not found for event type {event_type}")
            return
        callbacks.remove(callback)
        if not callbacks:
            del self.subscribers[event_type]

    async def publish(self, event: RepricingEvent) -> None:
        """Publish an event to subscribers."""
        if not isinstance(event, RepricingEvent):
            logger_event_bus.error(f"Attempted to publish invalid event type: {type(event)}")
            return

        logger_event_bus.debug(f"Event published: {event.event_type} from {event.source.value}")
        callbacks = list(self.subscribers.get(event.event_type, []))
        if not callbacks:
            return
        results = await asyncio.gather(
            *(callback(event) for callback in callbacks), return_exceptions=True
        )
        for callback, result in zip(callbacks, results):
            if isinstance(result, Exception):
                logger_event_bus.error(
                    f"Error in subscriber callback '{getattr(callback, '__name__', callback)}' "
                    f"for event {event.event_type}: {result}"
                )
