"""Tests for the in-memory store, reconnect policy, config loading and migration discovery."""
import json

from sales_gateway.core.config import load_config
from sales_gateway.core.models import (
    ConnectionState,
    Instance,
    ReconnectPolicy,
    StoredMessage,
    TenantSettings,
)
from sales_gateway.database.init import discover_migrations


class TestMemoryStore:

    async def test_conversation_lookup_is_keyed_by_tenant_and_address(self, store):
        first = await store.get_or_create_conversation("t1", "555", "A", counterparty_name="Ana")
        again = await store.get_or_create_conversation("t1", "555", "B")
        other = await store.get_or_create_conversation("t2", "555", "X")

        assert first.id == again.id
        assert again.pinned_instance_name == "A"
        assert other.id != first.id

    async def test_append_message_is_idempotent(self, store):
        conversation = await store.get_or_create_conversation("t1", "555", "A")
        msg = StoredMessage(message_id="A:1", conversation_id=conversation.id, instance_name="A", from_me=False, content="Hola")

        assert await store.append_message(msg) is True
        assert await store.append_message(msg) is False
        assert len(await store.list_messages(conversation.id)) == 1

    async def test_migrate_conversations(self, store):
        a = await store.get_or_create_conversation("t1", "1", "A")
        b = await store.get_or_create_conversation("t1", "2", "A")
        await store.get_or_create_conversation("t1", "3", "C")

        assert await store.migrate_conversations("t1", "A", "B") == 2
        assert (await store.get_conversation(a.id)).pinned_instance_name == "B"
        assert (await store.get_conversation(b.id)).pinned_instance_name == "B"

    async def test_instance_upsert_keeps_created_at(self, store):
        created = await store.upsert_instance(Instance(name="A", tenant_id="t1", auth_directory="instances/A"))
        updated = await store.upsert_instance(Instance(
            name="A", tenant_id="t1", state=ConnectionState.CONNECTED, auth_directory="instances/A",
        ))

        assert updated.created_at == created.created_at
        assert (await store.get_instance("A")).state == ConnectionState.CONNECTED

    async def test_settings_roundtrip(self, store):
        assert await store.get_settings("t1") is None
        await store.upsert_settings(TenantSettings(tenant_id="t1", debounce_seconds=8))
        assert (await store.get_settings("t1")).debounce_seconds == 8


class TestReconnectPolicy:

    def test_fixed_delay_by_default(self):
        policy = ReconnectPolicy()
        assert [policy.delay_for(n) for n in (1, 2, 10)] == [2.0, 2.0, 2.0]

    def test_exponential_backoff_is_capped(self):
        policy = ReconnectPolicy(base_delay_seconds=1.0, multiplier=2.0, max_delay_seconds=5.0)
        assert [policy.delay_for(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 5.0]


class TestLoadConfig:

    def test_writes_defaults_when_missing(self, tmp_path, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        monkeypatch.chdir(tmp_path)
        path = tmp_path / "config" / "gateway.json"

        config = load_config(path)

        assert path.exists()
        assert config.pairing_ttl_seconds == 300.0
        assert config.reconnect.base_delay_seconds == 2.0

    def test_environment_overrides_file(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        path = tmp_path / "gateway.json"
        path.write_text(json.dumps({"webhook_url": "https://file.example.com", "default_debounce_seconds": 3}))
        monkeypatch.setenv("GATEWAY_WEBHOOK_URL", "https://env.example.com")
        monkeypatch.setenv("TELEGRAM_API_ID", "12345")

        config = load_config(path)

        assert config.webhook_url == "https://env.example.com"
        assert config.telegram_api_id == 12345
        assert config.default_debounce_seconds == 3
        assert config.default_settings("t1").debounce_seconds == 3


class TestDiscoverMigrations:

    def test_bundled_schema_is_found(self):
        versions = [m.version for m in discover_migrations()]
        assert versions[0] == "001"

    def test_numeric_order_and_unversioned_files_skipped(self, tmp_path):
        for name in ("010_later.sql", "002_second.sql", "notes.sql", "001_first.sql"):
            (tmp_path / name).write_text("SELECT 1;")

        assert [m.path.name for m in discover_migrations(tmp_path)] == [
            "001_first.sql", "002_second.sql", "010_later.sql",
        ]
