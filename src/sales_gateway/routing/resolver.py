"""
Instance Resolver - picks which instance a tenant's traffic goes through.

Each tenant has at most one active instance. The pointer lives in the
Store and is cached in memory; it is only trusted while the instance it
names is CONNECTED, otherwise the resolver promotes a CONNECTED one.
Promotion is last-writer-wins.
"""
import logging
from typing import Optional

from sales_gateway.core.models import Resolution
from sales_gateway.database.store import Store
from sales_gateway.transport.supervisor import ConnectionSupervisor

logger = logging.getLogger(__name__)


class InstanceResolver:
    """
    Resolves tenants to a usable instance and keeps the active pointer.

    Example:
        resolver = InstanceResolver(store, supervisor)
        name = await resolver.resolve_for_outgoing("acme")
        if name is None:
            raise NoConnectedInstanceError("acme")
    """

    def __init__(self, store: Store, supervisor: ConnectionSupervisor):
        self.store = store
        self.supervisor = supervisor
        self._active_cache: dict[str, str] = {}  # tenant_id -> instance_name

    async def active_instance(self, tenant_id: str) -> Optional[str]:
        """Recorded active instance (cache first, then Store). Not revalidated."""
        cached = self._active_cache.get(tenant_id)
        if cached:
            return cached
        stored = await self.store.get_active_instance(tenant_id)
        if stored:
            self._active_cache[tenant_id] = stored
        return stored

    def cached_active(self, tenant_id: str) -> Optional[str]:
        return self._active_cache.get(tenant_id)

    async def promote(self, tenant_id: str, instance_name: str) -> None:
        """Make an instance the tenant's active one."""
        previous = self._active_cache.get(tenant_id)
        self._active_cache[tenant_id] = instance_name
        await self.store.set_active_instance(tenant_id, instance_name)
        if previous != instance_name:
            logger.info(f"Tenant {tenant_id}: active instance {previous} -> {instance_name}")

    async def resolve_for_outgoing(
        self,
        tenant_id: str,
        preferred_instance_name: Optional[str] = None,
    ) -> Optional[str]:
        """
        Choose the instance to send through.

        Order: recorded active instance if CONNECTED; the preferred instance
        if the tenant owns it and it is CONNECTED; the first CONNECTED
        instance of the tenant. The last two are promoted.

        Returns:
            Instance name, or None when the tenant has no CONNECTED instance.
        """
        active = await self.active_instance(tenant_id)
        if active and self.supervisor.is_connected(active):
            return active

        if preferred_instance_name and preferred_instance_name != active:
            preferred = await self.store.get_instance(preferred_instance_name)
            if (
                preferred is not None
                and preferred.tenant_id == tenant_id
                and self.supervisor.is_connected(preferred.name)
            ):
                await self.promote(tenant_id, preferred.name)
                return preferred.name

        for instance in await self.store.list_instances(tenant_id):
            if self.supervisor.is_connected(instance.name):
                await self.promote(tenant_id, instance.name)
                return instance.name

        logger.warning(f"No connected instance for tenant {tenant_id}")
        return None

    async def resolve_for_incoming(self, instance_name: str) -> Optional[Resolution]:
        """
        Map the instance a message arrived on to its tenant.

        If the tenant has no usable active instance and this one is
        CONNECTED, it is promoted; `previous_instance_name` then names the
        stale instance whose conversations should be migrated.

        Returns:
            Resolution, or None for an unknown instance.
        """
        instance = await self.store.get_instance(instance_name)
        if instance is None:
            return None

        tenant_id = instance.tenant_id
        active = await self.active_instance(tenant_id)

        if active == instance_name:
            return Resolution(tenant_id=tenant_id, effective_instance_name=instance_name)

        if active and self.supervisor.is_connected(active):
            # Tenant already routes through another live instance
            return Resolution(tenant_id=tenant_id, effective_instance_name=active)

        if self.supervisor.is_connected(instance_name):
            await self.promote(tenant_id, instance_name)
            return Resolution(
                tenant_id=tenant_id,
                effective_instance_name=instance_name,
                was_promoted=True,
                previous_instance_name=active,
            )

        return Resolution(tenant_id=tenant_id, effective_instance_name=instance_name)

    async def migrate_conversations(self, tenant_id: str, from_instance: str, to_instance: str) -> int:
        """Re-pin a tenant's conversations from one instance to another."""
        if from_instance == to_instance:
            return 0
        moved = await self.store.migrate_conversations(tenant_id, from_instance, to_instance)
        logger.info(f"Migrated {moved} conversation(s) for tenant {tenant_id}: {from_instance} -> {to_instance}")
        return moved

    def teardown(self, instance_name: str) -> None:
        """Forget an instance in the active-pointer cache."""
        for tenant_id, name in list(self._active_cache.items()):
            if name == instance_name:
                del self._active_cache[tenant_id]

    def clear_tenant_cache(self, tenant_id: str) -> None:
        self._active_cache.pop(tenant_id, None)

    async def handle_instance_deletion(self, instance_name: str) -> Optional[str]:
        """
        Move a tenant off an instance that is being logged out or deleted.

        Call before the instance record is removed. Conversations are migrated
        to the tenant's next CONNECTED instance, which becomes active.

        Returns:
            The replacement instance name, or None if there is none.
        """
        instance = await self.store.get_instance(instance_name)
        if instance is None:
            self.teardown(instance_name)
            return None

        tenant_id = instance.tenant_id
        replacement = None
        for candidate in await self.store.list_instances(tenant_id):
            if candidate.name != instance_name and self.supervisor.is_connected(candidate.name):
                replacement = candidate.name
                break

        if replacement:
            await self.migrate_conversations(tenant_id, instance_name, replacement)
            await self.promote(tenant_id, replacement)
        elif await self.active_instance(tenant_id) == instance_name:
            await self.store.set_active_instance(tenant_id, None)
            logger.warning(f"Tenant {tenant_id} has no remaining connected instance")

        self.teardown(instance_name)
        return replacement
