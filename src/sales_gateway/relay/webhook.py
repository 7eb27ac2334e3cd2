"""
Outbound webhook for external listeners.

Forwards `message.received` and `connection.open` events as
POST {event, data, timestamp}. Each call is a background task with a
bounded timeout; failures are logged and never retried.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

import httpx

from sales_gateway.core.models import GatewayEvent

logger = logging.getLogger(__name__)

FORWARDED_EVENTS = frozenset({"message.received", "connection.open"})


class WebhookRelay:
    """
    Best-effort webhook forwarder, subscribed to the EventRelay "*" channel.

    Attributes:
        url: Destination URL.
        timeout: Per-request timeout in seconds.
    """

    def __init__(self, url: str, timeout: float = 10.0, client: Optional[httpx.AsyncClient] = None):
        self.url = url
        self.timeout = timeout
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._tasks: set[asyncio.Task] = set()

    @staticmethod
    def build_payload(event: GatewayEvent) -> dict:
        # Media bytes never leave the process
        data = event.model_dump(mode="json", exclude={"event", "media_buffer", "timestamp"})
        return {
            "event": event.event,
            "data": data,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    async def handle(self, event: GatewayEvent) -> None:
        """Relay subscriber: schedule the POST and return immediately."""
        if event.event not in FORWARDED_EVENTS:
            return
        task = asyncio.create_task(self._post(self.build_payload(event)))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _post(self, payload: dict) -> None:
        try:
            response = await self._client.post(self.url, json=payload, timeout=self.timeout)
            response.raise_for_status()
            logger.debug(f"Webhook delivered: {payload['event']}")
        except httpx.HTTPError as e:
            logger.error(f"Webhook {payload['event']} to {self.url} failed: {e}")
        except Exception as e:
            logger.error(f"Webhook {payload['event']} to {self.url} errored: {e}", exc_info=True)

    async def close(self) -> None:
        """Wait for in-flight posts, then close the HTTP client."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await self._client.aclose()
