"""
Transport contract.

A Transport is one authenticated connection to the messaging network. It
knows nothing about tenants or conversations: it connects using the
material in its auth directory, sends text, downloads media, and reports
what happens as raw signals to its subscribers.
"""
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Annotated, Any, Awaitable, Callable, Literal, Optional, Union

from pydantic import BaseModel, Field

from sales_gateway.core.errors import TransportError
from sales_gateway.core.models import MessageKind, utcnow

logger = logging.getLogger(__name__)


class ConnectionUpdate(BaseModel):
    """Raw connection lifecycle signal."""
    signal: Literal["connection"] = "connection"
    status: Literal["connecting", "open", "closed", "error"]
    logged_out: bool = False  # Only meaningful for "closed"
    reason: Optional[str] = None


class PairingIssued(BaseModel):
    """A new pairing payload (QR/login URL) the account owner must scan."""
    signal: Literal["pairing"] = "pairing"
    payload: str


class RawMessage(BaseModel):
    """A message as seen by the transport, before normalization."""
    signal: Literal["message"] = "message"
    message_id: str
    remote_address: str
    kind: MessageKind = MessageKind.TEXT
    text: Optional[str] = None
    caption: Optional[str] = None
    media_ref: Optional[Any] = None  # Opaque handle for download_media
    mime_type: Optional[str] = None
    from_me: bool = False
    sender_name: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


TransportSignal = Annotated[
    Union[ConnectionUpdate, PairingIssued, RawMessage],
    Field(discriminator="signal"),
]

SignalHandler = Callable[[TransportSignal], Awaitable[None]]


class Transport(ABC):
    """Base class for messaging transports."""

    def __init__(self):
        self._handlers: list[SignalHandler] = []

    def subscribe(self, handler: SignalHandler) -> Callable[[], None]:
        """Register a signal handler. Returns an unsubscribe callable."""
        if handler not in self._handlers:
            self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    async def emit(self, signal: TransportSignal) -> None:
        """Deliver a signal to every subscriber, in registration order."""
        for handler in list(self._handlers):
            try:
                await handler(signal)
            except Exception as e:
                logger.error(f"Signal handler failed on {signal.signal}: {e}", exc_info=True)

    @abstractmethod
    async def connect(self, auth_dir: Path) -> None:
        """Connect using (and writing) auth material in auth_dir."""

    @abstractmethod
    async def send_text(self, address: str, text: str) -> str:
        """Send a text message. Returns the transport message id."""

    async def download_media(self, media_ref: Any) -> bytes:
        raise TransportError(f"{type(self).__name__} does not support media download")

    @abstractmethod
    async def logout(self) -> None:
        """Revoke the session on the network side."""

    @abstractmethod
    async def close(self) -> None:
        """Drop the connection without revoking the session."""

    async def persist_auth(self) -> None:
        """Flush auth material to disk. Must be idempotent."""

    async def set_typing(self, address: str, typing: bool = True) -> None:
        """Show or clear a typing indicator. Optional."""


# Builds a transport for an instance name
TransportFactory = Callable[[str], Transport]
