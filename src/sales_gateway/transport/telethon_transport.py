"""
Telegram transport built on Telethon.

The instance's auth directory holds the Telethon session file. Unpaired
accounts log in by QR: each login URL is emitted as a pairing payload and
recreated when it expires.
"""
import asyncio
import logging
from pathlib import Path
from typing import Any, Callable, Optional, Union

from telethon import TelegramClient, events
from telethon.errors import (
    AuthKeyUnregisteredError,
    SessionPasswordNeededError,
    SessionRevokedError,
)
from telethon.tl.functions.messages import SetTypingRequest
from telethon.tl.types import SendMessageCancelAction, SendMessageTypingAction

from sales_gateway.core.errors import TransportError
from sales_gateway.core.models import MessageKind
from sales_gateway.transport.base import ConnectionUpdate, PairingIssued, RawMessage, Transport

logger = logging.getLogger(__name__)

SESSION_NAME = "telegram"
QR_WAIT_SECONDS = 30.0

LOGGED_OUT_ERRORS = (AuthKeyUnregisteredError, SessionRevokedError)

# (session_path, api_id, api_hash) -> client
ClientFactory = Callable[[str, int, str], TelegramClient]


def message_kind(message) -> MessageKind:
    """Classify a Telethon message."""
    if message.photo:
        return MessageKind.IMAGE
    if message.voice or message.audio:
        return MessageKind.AUDIO
    if message.video or message.video_note:
        return MessageKind.VIDEO
    if message.sticker:
        return MessageKind.UNKNOWN
    if message.document:
        return MessageKind.DOCUMENT
    if message.media:
        return MessageKind.UNKNOWN
    return MessageKind.TEXT


def _peer(address: str) -> Union[int, str]:
    return int(address) if address.lstrip("-").isdigit() else address


class TelethonTransport(Transport):
    """One Telegram user account."""

    def __init__(
        self,
        api_id: int,
        api_hash: str,
        qr_wait_seconds: float = QR_WAIT_SECONDS,
        client_factory: Optional[ClientFactory] = None,
    ):
        super().__init__()
        if not api_id or not api_hash:
            raise TransportError("TELEGRAM_API_ID and TELEGRAM_API_HASH are required")
        self.api_id = int(api_id)
        self.api_hash = api_hash
        self.qr_wait_seconds = qr_wait_seconds
        self._client_factory = client_factory or TelegramClient
        self.client: Optional[TelegramClient] = None
        self._watch_task: Optional[asyncio.Task] = None
        self._closing = False

    async def connect(self, auth_dir: Path) -> None:
        self._closing = False
        self.client = self._client_factory(str(auth_dir / SESSION_NAME), self.api_id, self.api_hash)
        await self.client.connect()

        if not await self.client.is_user_authorized():
            if not await self._qr_login():
                return

        self.client.add_event_handler(self._on_new_message, events.NewMessage())
        await self.emit(ConnectionUpdate(status="open"))
        self._watch_task = asyncio.create_task(self._watch_disconnect())

    async def _qr_login(self) -> bool:
        qr = await self.client.qr_login()
        while not self._closing:
            await self.emit(PairingIssued(payload=qr.url))
            try:
                await qr.wait(timeout=self.qr_wait_seconds)
                return True
            except asyncio.TimeoutError:
                await qr.recreate()
            except SessionPasswordNeededError:
                await self.emit(ConnectionUpdate(status="error", reason="Two-step verification password required"))
                return False
        return False

    async def _watch_disconnect(self) -> None:
        logged_out = False
        reason = None
        try:
            await self.client.disconnected
        except LOGGED_OUT_ERRORS as e:
            logged_out = True
            reason = type(e).__name__
        except asyncio.CancelledError:
            raise
        except Exception as e:
            reason = str(e)
        if not self._closing:
            await self.emit(ConnectionUpdate(status="closed", logged_out=logged_out, reason=reason))

    async def _on_new_message(self, event) -> None:
        if not event.is_private:
            return
        message = event.message
        sender_name = None
        if not event.out:
            sender = await event.get_sender()
            sender_name = getattr(sender, "first_name", None) if sender else None

        kind = message_kind(message)
        text = message.message or None
        await self.emit(RawMessage(
            message_id=f"{event.chat_id}:{message.id}",
            remote_address=str(event.chat_id),
            kind=kind,
            text=text if kind == MessageKind.TEXT else None,
            caption=text if kind != MessageKind.TEXT else None,
            media_ref=message if message.media else None,
            mime_type=message.file.mime_type if message.file else None,
            from_me=bool(event.out),
            sender_name=sender_name,
            timestamp=message.date,
        ))

    def _require_client(self) -> TelegramClient:
        if self.client is None or not self.client.is_connected():
            raise TransportError("Telegram client is not connected")
        return self.client

    async def send_text(self, address: str, text: str) -> str:
        client = self._require_client()
        peer = _peer(address)
        message = await client.send_message(peer, text)
        # Same id shape as the NewMessage echo of this message
        chat_id = message.chat_id if message.chat_id is not None else address
        return f"{chat_id}:{message.id}"

    async def download_media(self, media_ref: Any) -> bytes:
        client = self._require_client()
        data = await client.download_media(media_ref, file=bytes)
        if not data:
            raise TransportError("Media download returned no data")
        return data

    async def set_typing(self, address: str, typing: bool = True) -> None:
        client = self._require_client()
        action = SendMessageTypingAction() if typing else SendMessageCancelAction()
        entity = await client.get_input_entity(_peer(address))
        await client(SetTypingRequest(peer=entity, action=action))

    async def persist_auth(self) -> None:
        if self.client is not None and self.client.session is not None:
            self.client.session.save()

    async def logout(self) -> None:
        client = self._require_client()
        self._closing = True
        await client.log_out()
        await self.emit(ConnectionUpdate(status="closed", logged_out=True, reason="logout"))

    async def close(self) -> None:
        self._closing = True
        # close() can run inside the watcher itself, via the closed signal it emitted
        watch_task = self._watch_task
        if watch_task and not watch_task.done() and watch_task is not asyncio.current_task():
            watch_task.cancel()
        if self.client is not None and self.client.is_connected():
            await self.client.disconnect()
