"""
Transport session - one instance's connection state machine.

Wraps a Transport, tracks its ConnectionState, persists auth material on
every transition, and turns raw transport messages into normalized
MessageReceived events (with placeholder bodies for media).

States:
    UNINITIALIZED -> CONNECTING -> CONNECTED -> (CLOSING) -> DISCONNECTED | ERROR
CONNECTING is re-entered each time a new pairing payload is issued.
"""
import logging
from pathlib import Path
from typing import Awaitable, Callable, Optional, Union

from sales_gateway.core.errors import InstanceNotConnectedError
from sales_gateway.core.models import (
    ConnectionOpened,
    ConnectionState,
    ConnectionStateChanged,
    MessageKind,
    MessageReceived,
    PairingPayloadIssued,
)
from sales_gateway.transport.base import (
    ConnectionUpdate,
    PairingIssued,
    RawMessage,
    Transport,
    TransportSignal,
)

logger = logging.getLogger(__name__)

# Bodies used when media has no caption or can't be fetched
PLACEHOLDERS = {
    "image": "[Imagen recibida - analizando contenido...]",
    "image_unavailable": "[Imagen no disponible]",
    "audio": "[Nota de voz recibida - transcribiendo...]",
    "audio_unavailable": "[Nota de voz no disponible]",
    "video": "[Video recibido]",
    "document": "[Documento recibido]",
    "unknown": "[Tipo de mensaje desconocido]",
}

DEFAULT_MIME_TYPES = {
    MessageKind.IMAGE: "image/jpeg",
    MessageKind.AUDIO: "audio/ogg",
}

SessionEvent = Union[ConnectionStateChanged, ConnectionOpened, PairingPayloadIssued, MessageReceived]
SessionEventHandler = Callable[["TransportSession", SessionEvent], Awaitable[None]]


class TransportSession:
    """
    Lifecycle wrapper around one Transport.

    Attributes:
        instance_name: Name of the instance this session serves.
        tenant_id: Owning tenant.
        auth_dir: Directory holding this instance's auth material.
        state: Current ConnectionState.
    """

    def __init__(
        self,
        instance_name: str,
        tenant_id: str,
        auth_dir: Path,
        transport: Transport,
        on_event: SessionEventHandler,
    ):
        self.instance_name = instance_name
        self.tenant_id = tenant_id
        self.auth_dir = auth_dir
        self.transport = transport
        self.state = ConnectionState.UNINITIALIZED
        self._on_event = on_event
        self._unsubscribe: Optional[Callable[[], None]] = None

    @property
    def connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    async def start(self) -> None:
        """Enter CONNECTING and connect the transport."""
        self._unsubscribe = self.transport.subscribe(self._on_signal)
        self.auth_dir.mkdir(parents=True, exist_ok=True)
        await self._transition(ConnectionState.CONNECTING)
        try:
            await self.transport.connect(self.auth_dir)
        except Exception as e:
            # A failed connect is a drop like any other
            logger.warning(f"[{self.instance_name}] Connect failed: {e}")
            if self._unsubscribe is not None:
                await self._handle_connection(ConnectionUpdate(status="closed", reason=str(e)))

    def detach(self) -> None:
        """Stop listening to the transport."""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    async def close(self) -> None:
        """Detach and drop the connection without logging out."""
        self.detach()
        try:
            await self.transport.close()
        except Exception as e:
            logger.warning(f"[{self.instance_name}] Error closing transport: {e}")

    async def logout(self) -> None:
        """Revoke the session remotely. Terminal."""
        self.state = ConnectionState.CLOSING
        await self.transport.logout()

    async def send(self, address: str, text: str) -> str:
        if not self.connected:
            raise InstanceNotConnectedError(self.instance_name, self.state.value)
        message_id = await self.transport.send_text(address, text)
        return self._qualify(message_id)

    async def set_typing(self, address: str, typing: bool = True) -> None:
        await self.transport.set_typing(address, typing)

    # Signal handling

    async def _on_signal(self, signal: TransportSignal) -> None:
        if isinstance(signal, ConnectionUpdate):
            await self._handle_connection(signal)
        elif isinstance(signal, PairingIssued):
            await self._persist_auth()
            self.state = ConnectionState.CONNECTING
            logger.info(f"[{self.instance_name}] Pairing payload issued")
            await self._on_event(self, PairingPayloadIssued(
                instance_name=self.instance_name, payload=signal.payload,
            ))
        elif isinstance(signal, RawMessage):
            await self._on_event(self, await self.normalize(signal))

    async def _handle_connection(self, update: ConnectionUpdate) -> None:
        if update.status == "open":
            await self._transition(ConnectionState.CONNECTED)
            await self._on_event(self, ConnectionOpened(instance_name=self.instance_name))
        elif update.status == "connecting":
            await self._transition(ConnectionState.CONNECTING, reason=update.reason)
        elif update.status == "closed":
            await self._transition(
                ConnectionState.DISCONNECTED, logged_out=update.logged_out, reason=update.reason,
            )
        elif update.status == "error":
            await self._transition(ConnectionState.ERROR, reason=update.reason)

    async def _transition(
        self,
        state: ConnectionState,
        logged_out: bool = False,
        reason: Optional[str] = None,
    ) -> None:
        previous = self.state
        self.state = state
        await self._persist_auth()
        logger.info(
            f"[{self.instance_name}] {previous.value} -> {state.value}"
            + (" (logged out)" if logged_out else "")
            + (f": {reason}" if reason else "")
        )
        await self._on_event(self, ConnectionStateChanged(
            instance_name=self.instance_name, state=state, logged_out=logged_out, reason=reason,
        ))

    async def _persist_auth(self) -> None:
        try:
            await self.transport.persist_auth()
        except Exception as e:
            logger.error(f"[{self.instance_name}] Failed to persist auth material: {e}")

    def _qualify(self, message_id: str) -> str:
        # Transport ids are only unique per chat/account
        return f"{self.instance_name}:{message_id}"

    async def normalize(self, raw: RawMessage) -> MessageReceived:
        """Build a MessageReceived with a usable body for every message kind."""
        media: Optional[bytes] = None
        mime_type = raw.mime_type
        kind = MessageKind(raw.kind)

        if kind == MessageKind.TEXT:
            body = raw.text or ""
        elif kind == MessageKind.IMAGE:
            body = raw.caption or PLACEHOLDERS["image"]
            if not raw.from_me:
                media = await self._download(raw)
                if media is None:
                    body = raw.caption or PLACEHOLDERS["image_unavailable"]
        elif kind == MessageKind.AUDIO:
            body = PLACEHOLDERS["audio"]
            if not raw.from_me:
                media = await self._download(raw)
                if media is None:
                    body = PLACEHOLDERS["audio_unavailable"]
        elif kind == MessageKind.VIDEO:
            body = raw.caption or PLACEHOLDERS["video"]
        elif kind == MessageKind.DOCUMENT:
            body = PLACEHOLDERS["document"]
        else:
            body = PLACEHOLDERS["unknown"]

        if media is not None and not mime_type:
            mime_type = DEFAULT_MIME_TYPES.get(kind)

        return MessageReceived(
            instance_name=self.instance_name,
            message_id=self._qualify(raw.message_id),
            counterparty_address=raw.remote_address,
            sender_name=raw.sender_name,
            body=body,
            kind=kind,
            timestamp=raw.timestamp,
            is_outbound_echo=raw.from_me,
            media_buffer=media,
            mime_type=mime_type,
        )

    async def _download(self, raw: RawMessage) -> Optional[bytes]:
        if raw.media_ref is None:
            return None
        try:
            return await self.transport.download_media(raw.media_ref)
        except Exception as e:
            logger.warning(f"[{self.instance_name}] Media download failed for {raw.message_id}: {e}")
            return None

    def __repr__(self) -> str:
        return f"TransportSession({self.instance_name!r}, tenant={self.tenant_id!r}, state={self.state.value})"
