"""
Event relay - in-process fan-out of gateway events.

Subscribers register per instance name, or on the "*" channel to see
every instance. A failing subscriber is logged and never stops delivery
to the others.
"""
import logging
from typing import Awaitable, Callable

from sales_gateway.core.models import GatewayEvent

logger = logging.getLogger(__name__)

ALL_INSTANCES = "*"

EventHandler = Callable[[GatewayEvent], Awaitable[None]]
Unsubscribe = Callable[[], None]


class EventRelay:
    """Per-instance subscriber registry."""

    def __init__(self):
        self._subscribers: dict[str, list[EventHandler]] = {}

    def subscribe(self, channel: str, handler: EventHandler) -> Unsubscribe:
        """
        Register a handler for an instance name (or "*").

        Registering the same handler twice on a channel is a no-op.

        Returns:
            Callable that removes the registration.
        """
        handlers = self._subscribers.setdefault(channel, [])
        if handler in handlers:
            logger.warning(f"Handler {handler!r} already subscribed to '{channel}', ignoring")
        else:
            handlers.append(handler)
            logger.debug(f"Subscribed handler to '{channel}' ({len(handlers)} total)")

        def unsubscribe() -> None:
            current = self._subscribers.get(channel)
            if current and handler in current:
                current.remove(handler)
                if not current:
                    del self._subscribers[channel]

        return unsubscribe

    async def publish(self, event: GatewayEvent) -> None:
        """Deliver an event to its instance's subscribers, then to "*" subscribers."""
        handlers = list(self._subscribers.get(event.instance_name, []))
        handlers += self._subscribers.get(ALL_INSTANCES, [])

        for handler in handlers:
            try:
                await handler(event)
            except Exception as e:
                logger.error(
                    f"Subscriber failed on {event.event} for {event.instance_name}: {e}",
                    exc_info=True,
                )

    def remove_instance(self, instance_name: str) -> None:
        """Drop every subscriber registered for one instance."""
        removed = self._subscribers.pop(instance_name, [])
        if removed:
            logger.debug(f"Removed {len(removed)} subscriber(s) for {instance_name}")

    def subscriber_count(self, channel: str) -> int:
        return len(self._subscribers.get(channel, []))
