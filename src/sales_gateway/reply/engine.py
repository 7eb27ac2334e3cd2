"""
Reply engine client.

The reply engine turns one consolidated inbound turn into the assistant's
answer. The gateway only needs `generate`; failures come back as
ReplyEngineError so the caller can fall back to a canned reply.
"""
import logging
from abc import ABC, abstractmethod
from typing import Optional

import httpx

from sales_gateway.core.errors import ReplyEngineError
from sales_gateway.core.models import ReplyRequest

logger = logging.getLogger(__name__)


class ReplyEngine(ABC):
    """Produces reply text for a turn."""

    @abstractmethod
    async def generate(self, request: ReplyRequest) -> str:
        """
        Raises:
            ReplyEngineError: The engine failed or returned nothing usable.
        """

    async def close(self) -> None:
        """Release resources. No-op by default."""


class HttpReplyEngine(ReplyEngine):
    """
    Reply engine reached over HTTP.

    POSTs the ReplyRequest as JSON and expects {"reply": "..."} back.
    """

    def __init__(self, url: str, timeout: float = 30.0, client: Optional[httpx.AsyncClient] = None):
        self.url = url
        self.timeout = timeout
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def generate(self, request: ReplyRequest) -> str:
        try:
            response = await self._client.post(self.url, json=request.model_dump(mode="json"))
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            logger.error(f"Reply engine request failed: {e}")
            raise ReplyEngineError(f"Reply engine request failed: {e}") from e
        except ValueError as e:
            raise ReplyEngineError(f"Reply engine returned invalid JSON: {e}") from e

        reply = data.get("reply") if isinstance(data, dict) else None
        if not isinstance(reply, str) or not reply.strip():
            raise ReplyEngineError("Reply engine returned an empty reply")
        return reply.strip()

    async def close(self) -> None:
        await self._client.aclose()
