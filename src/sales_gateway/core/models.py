"""
Pydantic models for the sales gateway.

Covers persisted records (instances, conversations, messages, tenant
settings), the events that flow between sessions and the daemon, and the
gateway configuration.
"""
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConnectionState(str, Enum):
    """Lifecycle state of a messaging instance."""
    UNINITIALIZED = "uninitialized"
    CONNECTING = "connecting"  # Also re-entered whenever a new pairing payload is issued
    CONNECTED = "connected"
    CLOSING = "closing"
    DISCONNECTED = "disconnected"  # Terminal after logout
    ERROR = "error"


class MessageKind(str, Enum):
    """Kind of inbound message content."""
    TEXT = "text"
    IMAGE = "image"
    AUDIO = "audio"
    VIDEO = "video"
    DOCUMENT = "document"
    UNKNOWN = "unknown"


class Instance(BaseModel):
    """A tenant-owned connection to the messaging transport."""
    name: str
    tenant_id: str
    state: ConnectionState = ConnectionState.UNINITIALIZED
    auth_directory: str
    last_pairing_payload: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not v or "/" in v or v in (".", ".."):
            raise ValueError(f"Invalid instance name: {v!r}")
        return v

    @property
    def connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED


class InstanceStatus(BaseModel):
    """Status answer for admin queries."""
    instance_name: str
    state: ConnectionState
    connected: bool


class Conversation(BaseModel):
    """A chat with one counterparty, pinned to the instance that serves it."""
    id: str
    tenant_id: str
    counterparty_address: str
    pinned_instance_name: str
    counterparty_name: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class StoredMessage(BaseModel):
    """A message in conversation history, keyed by its transport message id."""
    message_id: str
    conversation_id: str
    instance_name: str
    from_me: bool
    kind: MessageKind = MessageKind.TEXT
    content: str
    timestamp: datetime = Field(default_factory=utcnow)


class TenantSettings(BaseModel):
    """
    Per-tenant behaviour knobs.

    Controls inbound batching, reply splitting and pacing, and what the
    assistant says when the reply engine is unavailable.
    """
    tenant_id: str
    # Inbound batching
    buffer_enabled: bool = True
    debounce_seconds: float = 5.0

    # Outbound humanization
    humanized_enabled: bool = True
    max_chunk_chars: int = 160
    max_chunks: Optional[int] = 4
    pacing_interval_seconds: Optional[float] = None  # Fixed gap; None uses the typing profile

    # Reply engine context
    assistant_name: str = "Asistente"
    assistant_context: Optional[str] = None
    fallback_reply: str = (
        "Disculpa, estoy teniendo problemas técnicos. ¿Podrías repetir tu mensaje?"
    )

    @field_validator("debounce_seconds")
    @classmethod
    def validate_debounce(cls, v: float) -> float:
        if v < 0:
            raise ValueError("debounce_seconds must be non-negative")
        return v

    @field_validator("max_chunk_chars")
    @classmethod
    def validate_chunk_chars(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_chunk_chars must be positive")
        return v


class DeliveryJob(BaseModel):
    """An ordered sequence of chunks being paced out to one recipient."""
    recipient: str
    chunks: list[str]
    current_index: int = 0
    sent: int = 0
    failed: int = 0

    @property
    def done(self) -> bool:
        return self.current_index >= len(self.chunks)


class Resolution(BaseModel):
    """Result of resolving an inbound instance to its tenant."""
    tenant_id: str
    effective_instance_name: str
    was_promoted: bool = False
    previous_instance_name: Optional[str] = None


class ReplyRequest(BaseModel):
    """A consolidated turn handed to the reply engine."""
    tenant_id: str
    conversation_id: str
    counterparty_address: str
    text: str
    assistant_name: Optional[str] = None
    context: Optional[str] = None


# =============================================================================
# EVENTS
# =============================================================================

class ConnectionStateChanged(BaseModel):
    event: Literal["connection.update"] = "connection.update"
    instance_name: str
    state: ConnectionState
    logged_out: bool = False
    reason: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class ConnectionOpened(BaseModel):
    event: Literal["connection.open"] = "connection.open"
    instance_name: str
    timestamp: datetime = Field(default_factory=utcnow)


class PairingPayloadIssued(BaseModel):
    event: Literal["qr.updated"] = "qr.updated"
    instance_name: str
    payload: str
    timestamp: datetime = Field(default_factory=utcnow)


class MessageReceived(BaseModel):
    event: Literal["message.received"] = "message.received"
    instance_name: str
    message_id: str
    counterparty_address: str
    sender_name: Optional[str] = None
    body: str
    kind: MessageKind = MessageKind.TEXT
    timestamp: datetime = Field(default_factory=utcnow)
    is_outbound_echo: bool = False
    media_buffer: Optional[bytes] = None
    mime_type: Optional[str] = None


GatewayEvent = Annotated[
    Union[ConnectionStateChanged, ConnectionOpened, PairingPayloadIssued, MessageReceived],
    Field(discriminator="event"),
]


# =============================================================================
# CONFIGURATION
# =============================================================================

class ReconnectPolicy(BaseModel):
    """
    Delay schedule for re-creating a dropped session.

    Attempts are unbounded. The default is a fixed 2 second delay; set a
    multiplier above 1 for exponential backoff capped at max_delay_seconds.
    """
    base_delay_seconds: float = 2.0
    multiplier: float = 1.0
    max_delay_seconds: float = 60.0

    def delay_for(self, attempt: int) -> float:
        """Delay before reconnect attempt number `attempt` (1-based)."""
        attempt = max(1, attempt)
        delay = self.base_delay_seconds * (self.multiplier ** (attempt - 1))
        return min(self.max_delay_seconds, delay)


class GatewayConfig(BaseModel):
    """Configuration for the gateway daemon."""
    instances_root: str = "instances"
    pairing_ttl_seconds: float = 300.0
    reconnect: ReconnectPolicy = Field(default_factory=ReconnectPolicy)

    # Defaults applied to tenants with no stored settings
    default_debounce_seconds: float = 5.0
    default_max_chunk_chars: int = 160
    default_max_chunks: Optional[int] = 4

    # Outbound webhook (optional)
    webhook_url: Optional[str] = None
    webhook_timeout_seconds: float = 10.0

    # Reply engine
    reply_engine_url: Optional[str] = None
    reply_engine_timeout_seconds: float = 30.0

    # Storage
    database_url: Optional[str] = None

    # Telegram transport credentials
    telegram_api_id: Optional[int] = None
    telegram_api_hash: Optional[str] = None

    status_interval_seconds: int = 300

    @property
    def instances_path(self) -> Path:
        return Path(self.instances_root)

    def default_settings(self, tenant_id: str) -> TenantSettings:
        return TenantSettings(
            tenant_id=tenant_id,
            debounce_seconds=self.default_debounce_seconds,
            max_chunk_chars=self.default_max_chunk_chars,
            max_chunks=self.default_max_chunks,
        )
