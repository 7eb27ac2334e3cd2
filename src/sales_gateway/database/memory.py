"""In-process Store used for local runs and tests."""
import uuid
from typing import Optional

from sales_gateway.core.models import (
    ConnectionState,
    Conversation,
    Instance,
    StoredMessage,
    TenantSettings,
    utcnow,
)
from sales_gateway.database.store import Store


class MemoryStore(Store):
    """Dict-backed Store. Nothing survives a restart."""

    def __init__(self):
        self.instances: dict[str, Instance] = {}
        self.active: dict[str, str] = {}
        self.conversations: dict[str, Conversation] = {}
        self.messages: dict[str, StoredMessage] = {}
        self.settings: dict[str, TenantSettings] = {}

    async def upsert_instance(self, instance: Instance) -> Instance:
        existing = self.instances.get(instance.name)
        stored = instance.model_copy(update={"updated_at": utcnow()})
        if existing:
            stored.created_at = existing.created_at
        self.instances[instance.name] = stored
        return stored.model_copy()

    async def get_instance(self, name: str) -> Optional[Instance]:
        instance = self.instances.get(name)
        return instance.model_copy() if instance else None

    async def list_instances(self, tenant_id: Optional[str] = None) -> list[Instance]:
        instances = [
            i for i in self.instances.values()
            if tenant_id is None or i.tenant_id == tenant_id
        ]
        return [i.model_copy() for i in sorted(instances, key=lambda i: i.created_at)]

    async def update_instance_state(
        self,
        name: str,
        state: ConnectionState,
        pairing_payload: Optional[str] = None,
    ) -> Optional[Instance]:
        instance = self.instances.get(name)
        if instance is None:
            return None
        instance.state = state
        instance.last_pairing_payload = pairing_payload
        instance.updated_at = utcnow()
        return instance.model_copy()

    async def delete_instance(self, name: str) -> bool:
        return self.instances.pop(name, None) is not None

    async def get_active_instance(self, tenant_id: str) -> Optional[str]:
        return self.active.get(tenant_id)

    async def set_active_instance(self, tenant_id: str, instance_name: Optional[str]) -> None:
        if instance_name is None:
            self.active.pop(tenant_id, None)
        else:
            self.active[tenant_id] = instance_name

    async def get_or_create_conversation(
        self,
        tenant_id: str,
        counterparty_address: str,
        instance_name: str,
        counterparty_name: Optional[str] = None,
    ) -> Conversation:
        for conversation in self.conversations.values():
            if conversation.tenant_id == tenant_id and conversation.counterparty_address == counterparty_address:
                if counterparty_name and not conversation.counterparty_name:
                    conversation.counterparty_name = counterparty_name
                return conversation.model_copy()

        conversation = Conversation(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            counterparty_address=counterparty_address,
            pinned_instance_name=instance_name,
            counterparty_name=counterparty_name,
        )
        self.conversations[conversation.id] = conversation
        return conversation.model_copy()

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        conversation = self.conversations.get(conversation_id)
        return conversation.model_copy() if conversation else None

    async def update_conversation_instance(self, conversation_id: str, instance_name: str) -> None:
        conversation = self.conversations.get(conversation_id)
        if conversation:
            conversation.pinned_instance_name = instance_name

    async def migrate_conversations(self, tenant_id: str, from_instance: str, to_instance: str) -> int:
        moved = 0
        for conversation in self.conversations.values():
            if conversation.tenant_id == tenant_id and conversation.pinned_instance_name == from_instance:
                conversation.pinned_instance_name = to_instance
                moved += 1
        return moved

    async def append_message(self, message: StoredMessage) -> bool:
        if message.message_id in self.messages:
            return False
        self.messages[message.message_id] = message.model_copy()
        return True

    async def list_messages(self, conversation_id: str, limit: int = 50) -> list[StoredMessage]:
        messages = [m for m in self.messages.values() if m.conversation_id == conversation_id]
        messages.sort(key=lambda m: m.timestamp)
        return messages[-limit:]

    async def get_settings(self, tenant_id: str) -> Optional[TenantSettings]:
        settings = self.settings.get(tenant_id)
        return settings.model_copy() if settings else None

    async def upsert_settings(self, settings: TenantSettings) -> None:
        self.settings[settings.tenant_id] = settings.model_copy()
