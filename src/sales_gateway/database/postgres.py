"""
PostgreSQL Store backed by an asyncpg connection pool.

The pool is owned by the store instance and opened in initialize(),
which also applies pending migrations.
"""
from __future__ import annotations

import json
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Optional

import asyncpg

from sales_gateway.core.models import (
    ConnectionState,
    Conversation,
    Instance,
    MessageKind,
    StoredMessage,
    TenantSettings,
)
from sales_gateway.database.init import run_migrations
from sales_gateway.database.store import Store

logger = logging.getLogger(__name__)

INSTANCE_COLUMNS = "name, tenant_id, state, auth_directory, last_pairing_payload, created_at, updated_at"
CONVERSATION_COLUMNS = "id, tenant_id, counterparty_address, pinned_instance_name, counterparty_name, created_at"


# =============================================================================
# ROW CONVERSION
# =============================================================================

def _row_to_instance(row: asyncpg.Record) -> Instance:
    return Instance(
        name=row["name"],
        tenant_id=row["tenant_id"],
        state=ConnectionState(row["state"]),
        auth_directory=row["auth_directory"],
        last_pairing_payload=row["last_pairing_payload"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_conversation(row: asyncpg.Record) -> Conversation:
    return Conversation(
        id=str(row["id"]),
        tenant_id=row["tenant_id"],
        counterparty_address=row["counterparty_address"],
        pinned_instance_name=row["pinned_instance_name"],
        counterparty_name=row["counterparty_name"],
        created_at=row["created_at"],
    )


def _row_to_message(row: asyncpg.Record) -> StoredMessage:
    return StoredMessage(
        message_id=row["message_id"],
        conversation_id=str(row["conversation_id"]),
        instance_name=row["instance_name"],
        from_me=row["from_me"],
        kind=MessageKind(row["kind"]),
        content=row["content"],
        timestamp=row["timestamp"],
    )


class PostgresStore(Store):
    """
    asyncpg-backed Store.

    Example:
        store = PostgresStore(os.getenv("DATABASE_URL"))
        await store.initialize()
        instance = await store.get_instance("ventas-1")
        await store.close()
    """

    def __init__(self, database_url: str, min_size: int = 1, max_size: int = 5, migrate: bool = True):
        if not database_url:
            raise RuntimeError("DATABASE_URL is not set")
        self._database_url = database_url
        self._min_size = min_size
        self._max_size = max_size
        self._migrate = migrate
        self._pool: Optional[asyncpg.Pool] = None

    async def initialize(self) -> None:
        if self._pool is None:
            self._pool = await asyncpg.create_pool(
                self._database_url, min_size=self._min_size, max_size=self._max_size
            )
            logger.info("Database pool created")
        if self._migrate:
            await run_migrations(self._pool)

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
            logger.info("Database pool closed")

    @asynccontextmanager
    async def get_connection(self):
        if self._pool is None:
            raise RuntimeError("PostgresStore not initialized")
        async with self._pool.acquire() as conn:
            yield conn

    # Instances

    async def upsert_instance(self, instance: Instance) -> Instance:
        async with self.get_connection() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO gateway_instances
                    (name, tenant_id, state, auth_directory, last_pairing_payload, created_at, updated_at)
                VALUES ($1, $2, $3, $4, $5, $6, NOW())
                ON CONFLICT (name) DO UPDATE SET
                    tenant_id = EXCLUDED.tenant_id,
                    state = EXCLUDED.state,
                    auth_directory = EXCLUDED.auth_directory,
                    last_pairing_payload = EXCLUDED.last_pairing_payload,
                    updated_at = NOW()
                RETURNING {INSTANCE_COLUMNS}
                """,
                instance.name,
                instance.tenant_id,
                ConnectionState(instance.state).value,
                instance.auth_directory,
                instance.last_pairing_payload,
                instance.created_at,
            )
            return _row_to_instance(row)

    async def get_instance(self, name: str) -> Optional[Instance]:
        async with self.get_connection() as conn:
            row = await conn.fetchrow(
                f"SELECT {INSTANCE_COLUMNS} FROM gateway_instances WHERE name = $1", name
            )
            return _row_to_instance(row) if row else None

    async def list_instances(self, tenant_id: Optional[str] = None) -> list[Instance]:
        async with self.get_connection() as conn:
            if tenant_id is None:
                rows = await conn.fetch(
                    f"SELECT {INSTANCE_COLUMNS} FROM gateway_instances ORDER BY created_at, name"
                )
            else:
                rows = await conn.fetch(
                    f"""
                    SELECT {INSTANCE_COLUMNS} FROM gateway_instances
                    WHERE tenant_id = $1 ORDER BY created_at, name
                    """,
                    tenant_id,
                )
            return [_row_to_instance(row) for row in rows]

    async def update_instance_state(
        self,
        name: str,
        state: ConnectionState,
        pairing_payload: Optional[str] = None,
    ) -> Optional[Instance]:
        async with self.get_connection() as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE gateway_instances
                SET state = $2, last_pairing_payload = $3, updated_at = NOW()
                WHERE name = $1
                RETURNING {INSTANCE_COLUMNS}
                """,
                name,
                ConnectionState(state).value,
                pairing_payload,
            )
            return _row_to_instance(row) if row else None

    async def delete_instance(self, name: str) -> bool:
        async with self.get_connection() as conn:
            result = await conn.execute("DELETE FROM gateway_instances WHERE name = $1", name)
            # asyncpg returns a status string like "DELETE 1"
            return result.endswith(" 1")

    # Active instance pointer

    async def get_active_instance(self, tenant_id: str) -> Optional[str]:
        async with self.get_connection() as conn:
            return await conn.fetchval(
                "SELECT instance_name FROM gateway_active_instances WHERE tenant_id = $1", tenant_id
            )

    async def set_active_instance(self, tenant_id: str, instance_name: Optional[str]) -> None:
        async with self.get_connection() as conn:
            if instance_name is None:
                await conn.execute("DELETE FROM gateway_active_instances WHERE tenant_id = $1", tenant_id)
                return
            await conn.execute(
                """
                INSERT INTO gateway_active_instances (tenant_id, instance_name, updated_at)
                VALUES ($1, $2, NOW())
                ON CONFLICT (tenant_id) DO UPDATE SET
                    instance_name = EXCLUDED.instance_name,
                    updated_at = NOW()
                """,
                tenant_id,
                instance_name,
            )

    # Conversations

    async def get_or_create_conversation(
        self,
        tenant_id: str,
        counterparty_address: str,
        instance_name: str,
        counterparty_name: Optional[str] = None,
    ) -> Conversation:
        async with self.get_connection() as conn:
            # No-op update on conflict so RETURNING yields the existing row
            row = await conn.fetchrow(
                f"""
                INSERT INTO gateway_conversations
                    (id, tenant_id, counterparty_address, pinned_instance_name, counterparty_name)
                VALUES ($1, $2, $3, $4, $5)
                ON CONFLICT (tenant_id, counterparty_address) DO UPDATE SET
                    counterparty_name = COALESCE(gateway_conversations.counterparty_name, EXCLUDED.counterparty_name)
                RETURNING {CONVERSATION_COLUMNS}
                """,
                uuid.uuid4(),
                tenant_id,
                counterparty_address,
                instance_name,
                counterparty_name,
            )
            return _row_to_conversation(row)

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        async with self.get_connection() as conn:
            row = await conn.fetchrow(
                f"SELECT {CONVERSATION_COLUMNS} FROM gateway_conversations WHERE id = $1",
                uuid.UUID(conversation_id),
            )
            return _row_to_conversation(row) if row else None

    async def update_conversation_instance(self, conversation_id: str, instance_name: str) -> None:
        async with self.get_connection() as conn:
            await conn.execute(
                "UPDATE gateway_conversations SET pinned_instance_name = $2 WHERE id = $1",
                uuid.UUID(conversation_id),
                instance_name,
            )

    async def migrate_conversations(self, tenant_id: str, from_instance: str, to_instance: str) -> int:
        async with self.get_connection() as conn:
            result = await conn.execute(
                """
                UPDATE gateway_conversations SET pinned_instance_name = $3
                WHERE tenant_id = $1 AND pinned_instance_name = $2
                """,
                tenant_id,
                from_instance,
                to_instance,
            )
            return int(result.split()[-1])

    # Messages

    async def append_message(self, message: StoredMessage) -> bool:
        async with self.get_connection() as conn:
            result = await conn.execute(
                """
                INSERT INTO gateway_messages
                    (message_id, conversation_id, instance_name, from_me, kind, content, timestamp)
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                ON CONFLICT (message_id) DO NOTHING
                """,
                message.message_id,
                uuid.UUID(message.conversation_id),
                message.instance_name,
                message.from_me,
                MessageKind(message.kind).value,
                message.content,
                message.timestamp,
            )
            return result.endswith(" 1")

    async def list_messages(self, conversation_id: str, limit: int = 50) -> list[StoredMessage]:
        async with self.get_connection() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM (
                    SELECT message_id, conversation_id, instance_name, from_me, kind, content, timestamp
                    FROM gateway_messages WHERE conversation_id = $1
                    ORDER BY timestamp DESC LIMIT $2
                ) recent ORDER BY timestamp
                """,
                uuid.UUID(conversation_id),
                limit,
            )
            return [_row_to_message(row) for row in rows]

    # Settings

    async def get_settings(self, tenant_id: str) -> Optional[TenantSettings]:
        async with self.get_connection() as conn:
            raw = await conn.fetchval(
                "SELECT settings FROM gateway_tenant_settings WHERE tenant_id = $1", tenant_id
            )
            if raw is None:
                return None
            data = json.loads(raw) if isinstance(raw, str) else dict(raw)
            data["tenant_id"] = tenant_id
            return TenantSettings(**data)

    async def upsert_settings(self, settings: TenantSettings) -> None:
        async with self.get_connection() as conn:
            await conn.execute(
                """
                INSERT INTO gateway_tenant_settings (tenant_id, settings, updated_at)
                VALUES ($1, $2::jsonb, NOW())
                ON CONFLICT (tenant_id) DO UPDATE SET
                    settings = EXCLUDED.settings,
                    updated_at = NOW()
                """,
                settings.tenant_id,
                settings.model_dump_json(exclude={"tenant_id"}),
            )
