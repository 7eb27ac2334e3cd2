"""
Persistence contract for the gateway.

Every write is keyed by a natural key (instance name, tenant id,
tenant + counterparty address, message id) and is safe to repeat.
"""
from abc import ABC, abstractmethod
from typing import Optional

from sales_gateway.core.models import (
    ConnectionState,
    Conversation,
    Instance,
    StoredMessage,
    TenantSettings,
)


class Store(ABC):
    """Storage used by the supervisor, resolver and daemon."""

    async def initialize(self) -> None:
        """Open connections / apply schema. No-op by default."""

    async def close(self) -> None:
        """Release connections. No-op by default."""

    # Instances

    @abstractmethod
    async def upsert_instance(self, instance: Instance) -> Instance: ...

    @abstractmethod
    async def get_instance(self, name: str) -> Optional[Instance]: ...

    @abstractmethod
    async def list_instances(self, tenant_id: Optional[str] = None) -> list[Instance]:
        """Instances ordered by creation time, optionally for one tenant."""

    @abstractmethod
    async def update_instance_state(
        self,
        name: str,
        state: ConnectionState,
        pairing_payload: Optional[str] = None,
    ) -> Optional[Instance]:
        """Set state and last pairing payload. Returns None for unknown names."""

    @abstractmethod
    async def delete_instance(self, name: str) -> bool: ...

    # Active instance pointer

    @abstractmethod
    async def get_active_instance(self, tenant_id: str) -> Optional[str]: ...

    @abstractmethod
    async def set_active_instance(self, tenant_id: str, instance_name: Optional[str]) -> None:
        """Point the tenant at an instance; None clears the pointer."""

    # Conversations

    @abstractmethod
    async def get_or_create_conversation(
        self,
        tenant_id: str,
        counterparty_address: str,
        instance_name: str,
        counterparty_name: Optional[str] = None,
    ) -> Conversation: ...

    @abstractmethod
    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]: ...

    @abstractmethod
    async def update_conversation_instance(self, conversation_id: str, instance_name: str) -> None: ...

    @abstractmethod
    async def migrate_conversations(self, tenant_id: str, from_instance: str, to_instance: str) -> int:
        """Re-pin every conversation of the tenant. Returns how many moved."""

    # Messages

    @abstractmethod
    async def append_message(self, message: StoredMessage) -> bool:
        """Store a message. Returns False if the message id was already stored."""

    @abstractmethod
    async def list_messages(self, conversation_id: str, limit: int = 50) -> list[StoredMessage]:
        """Most recent messages, oldest first."""

    # Settings

    @abstractmethod
    async def get_settings(self, tenant_id: str) -> Optional[TenantSettings]: ...

    @abstractmethod
    async def upsert_settings(self, settings: TenantSettings) -> None: ...
