"""
Connection Supervisor - owns every live TransportSession.

Responsibilities:
- Provision sessions (create), refusing duplicates
- Re-create sessions that drop, after the ReconnectPolicy delay, forever
- Treat logout as terminal: no retry, auth material purged on explicit logout/delete
- Cache pairing payloads for a limited time while an instance is CONNECTING
- Persist every state change to the Store and publish it on the EventRelay
"""
import asyncio
import logging
import shutil
import time
from pathlib import Path
from typing import Optional

from sales_gateway.core.errors import (
    InstanceExistsError,
    InstanceNotConnectedError,
    InstanceNotFoundError,
)
from sales_gateway.core.models import (
    ConnectionOpened,
    ConnectionState,
    ConnectionStateChanged,
    Instance,
    InstanceStatus,
    MessageReceived,
    PairingPayloadIssued,
    ReconnectPolicy,
)
from sales_gateway.database.store import Store
from sales_gateway.relay.event_relay import EventRelay
from sales_gateway.transport.base import TransportFactory
from sales_gateway.transport.session import SessionEvent, TransportSession

logger = logging.getLogger(__name__)

__all__ = ["ConnectionSupervisor", "ReconnectPolicy"]


class ConnectionSupervisor:
    """
    Registry and lifecycle manager for messaging instances.

    Example:
        supervisor = ConnectionSupervisor(store, relay, make_transport, Path("instances"))
        await supervisor.create("ventas-1", tenant_id="acme")
        payload = supervisor.pairing_payload("ventas-1")
    """

    def __init__(
        self,
        store: Store,
        relay: EventRelay,
        transport_factory: TransportFactory,
        instances_root: Path,
        policy: Optional[ReconnectPolicy] = None,
        pairing_ttl_seconds: float = 300.0,
    ):
        self.store = store
        self.relay = relay
        self.policy = policy or ReconnectPolicy()
        self.instances_root = Path(instances_root)
        self._transport_factory = transport_factory
        self._pairing_ttl_seconds = pairing_ttl_seconds

        self._sessions: dict[str, TransportSession] = {}
        self._pairing_cache: dict[str, tuple[float, str]] = {}  # name -> (issued_at, payload)
        self._reconnect_tasks: dict[str, asyncio.Task] = {}
        self._attempts: dict[str, int] = {}
        self._explicit_shutdown: set[str] = set()  # Logout/delete in progress
        self._start_tasks: set[asyncio.Task] = set()
        self._closing = False

    # =========================================================================
    # PROVISIONING
    # =========================================================================

    def auth_dir_for(self, instance_name: str) -> Path:
        return self.instances_root / instance_name

    async def create(self, instance_name: str, tenant_id: str) -> InstanceStatus:
        """
        Start a session for an instance and return immediately (CONNECTING).

        Raises:
            InstanceExistsError: A live session with this name exists, or the
                name belongs to another tenant.
        """
        if instance_name in self._sessions:
            raise InstanceExistsError(instance_name)

        existing = await self.store.get_instance(instance_name)
        if existing and existing.tenant_id != tenant_id:
            raise InstanceExistsError(instance_name)

        # A manual create supersedes any pending automatic one
        self._cancel_reconnect(instance_name)

        auth_dir = self.auth_dir_for(instance_name)
        instance = Instance(
            name=instance_name,
            tenant_id=tenant_id,
            state=ConnectionState.CONNECTING,
            auth_directory=str(auth_dir),
        )
        if existing:
            instance.created_at = existing.created_at
        await self.store.upsert_instance(instance)

        session = TransportSession(
            instance_name=instance_name,
            tenant_id=tenant_id,
            auth_dir=auth_dir,
            transport=self._transport_factory(instance_name),
            on_event=self._on_session_event,
        )
        self._sessions[instance_name] = session

        task = asyncio.create_task(self._start_session(session))
        self._start_tasks.add(task)
        task.add_done_callback(self._start_tasks.discard)

        logger.info(f"Instance {instance_name} created for tenant {tenant_id}")
        return InstanceStatus(instance_name=instance_name, state=ConnectionState.CONNECTING, connected=False)

    async def _start_session(self, session: TransportSession) -> None:
        try:
            await session.start()
        except Exception as e:
            logger.error(f"Session start failed for {session.instance_name}: {e}", exc_info=True)

    async def restore(self) -> int:
        """
        Re-create sessions for stored instances that were not logged out.

        Returns:
            Number of sessions started.
        """
        started = 0
        for instance in await self.store.list_instances():
            if instance.state in (ConnectionState.DISCONNECTED, ConnectionState.ERROR):
                continue
            if instance.name in self._sessions:
                continue
            await self.create(instance.name, instance.tenant_id)
            started += 1
        return started

    # =========================================================================
    # SESSION EVENTS
    # =========================================================================

    async def _on_session_event(self, session: TransportSession, event: SessionEvent) -> None:
        name = session.instance_name
        if self._sessions.get(name) is not session:
            logger.debug(f"Ignoring {event.event} from discarded session {name}")
            return

        if isinstance(event, ConnectionStateChanged):
            await self._on_state_changed(session, event)
        elif isinstance(event, ConnectionOpened):
            await self.relay.publish(event)
        elif isinstance(event, PairingPayloadIssued):
            self._pairing_cache[name] = (time.time(), event.payload)
            await self.store.update_instance_state(name, ConnectionState.CONNECTING, pairing_payload=event.payload)
            await self.relay.publish(event)
        elif isinstance(event, MessageReceived):
            await self.relay.publish(event)

    async def _on_state_changed(self, session: TransportSession, event: ConnectionStateChanged) -> None:
        name = session.instance_name
        state = ConnectionState(event.state)

        if state == ConnectionState.CONNECTED:
            self._pairing_cache.pop(name, None)
            self._attempts.pop(name, None)
            await self.store.update_instance_state(name, ConnectionState.CONNECTED)
            await self.relay.publish(event)

        elif state == ConnectionState.CONNECTING:
            await self.store.update_instance_state(
                name, ConnectionState.CONNECTING, pairing_payload=self._cached_payload(name),
            )
            await self.relay.publish(event)

        elif state == ConnectionState.DISCONNECTED:
            if name in self._explicit_shutdown:
                # logout()/delete() finish the bookkeeping
                return
            if event.logged_out:
                logger.warning(f"Instance {name} was logged out remotely")
                await self._discard(name)
                await self.store.update_instance_state(name, ConnectionState.DISCONNECTED)
                await self.relay.publish(event)
                return

            await self._discard(name)
            if self._closing:
                return
            await self.store.update_instance_state(name, ConnectionState.CONNECTING)
            await self.relay.publish(ConnectionStateChanged(
                instance_name=name, state=ConnectionState.CONNECTING, reason=event.reason or "reconnecting",
            ))
            self._schedule_reconnect(name, session.tenant_id)

        elif state == ConnectionState.ERROR:
            # Needs operator action (e.g. second auth factor); no automatic retry
            await self._discard(name)
            await self.store.update_instance_state(name, ConnectionState.ERROR)
            await self.relay.publish(event)

    async def _discard(self, instance_name: str) -> Optional[TransportSession]:
        session = self._sessions.pop(instance_name, None)
        self._pairing_cache.pop(instance_name, None)
        if session:
            await session.close()
        return session

    # =========================================================================
    # RECONNECT
    # =========================================================================

    def _schedule_reconnect(self, instance_name: str, tenant_id: str) -> None:
        attempt = self._attempts.get(instance_name, 0) + 1
        self._attempts[instance_name] = attempt
        delay = self.policy.delay_for(attempt)
        logger.info(f"Reconnecting {instance_name} in {delay:.1f}s (attempt {attempt})")

        async def reconnect():
            try:
                await asyncio.sleep(delay)
                if self._reconnect_tasks.get(instance_name) is asyncio.current_task():
                    del self._reconnect_tasks[instance_name]
                if self._closing or instance_name in self._sessions:
                    return
                if await self.store.get_instance(instance_name) is None:
                    logger.info(f"Instance {instance_name} was deleted, not reconnecting")
                    return
                await self.create(instance_name, tenant_id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Reconnect attempt {attempt} for {instance_name} failed: {e}")
                if not self._closing:
                    self._schedule_reconnect(instance_name, tenant_id)

        self._cancel_reconnect(instance_name)
        self._reconnect_tasks[instance_name] = asyncio.create_task(reconnect())

    def _cancel_reconnect(self, instance_name: str) -> None:
        task = self._reconnect_tasks.pop(instance_name, None)
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def reconnect_pending(self, instance_name: str) -> bool:
        return instance_name in self._reconnect_tasks

    def reconnect_attempts(self, instance_name: str) -> int:
        return self._attempts.get(instance_name, 0)

    # =========================================================================
    # ADMIN OPERATIONS
    # =========================================================================

    async def logout(self, instance_name: str) -> None:
        """
        Log the instance out remotely and purge its auth material. Terminal.

        Raises:
            InstanceNotFoundError: Unknown instance.
        """
        session = self._sessions.get(instance_name)
        instance = await self.store.get_instance(instance_name)
        if session is None and instance is None:
            raise InstanceNotFoundError(instance_name)

        self._explicit_shutdown.add(instance_name)
        try:
            self._cancel_reconnect(instance_name)
            if session:
                try:
                    await session.logout()
                except Exception as e:
                    logger.warning(f"Remote logout failed for {instance_name}: {e}")
            await self._discard(instance_name)
            self._attempts.pop(instance_name, None)
            await self.store.update_instance_state(instance_name, ConnectionState.DISCONNECTED)
            await self._purge_auth(instance_name)
            await self.relay.publish(ConnectionStateChanged(
                instance_name=instance_name, state=ConnectionState.DISCONNECTED, logged_out=True, reason="logout",
            ))
        finally:
            self._explicit_shutdown.discard(instance_name)
        logger.info(f"Instance {instance_name} logged out")

    async def delete(self, instance_name: str) -> None:
        """
        Close the instance without logging out, purge its auth material and
        remove its record.

        Raises:
            InstanceNotFoundError: Unknown instance.
        """
        session = self._sessions.get(instance_name)
        instance = await self.store.get_instance(instance_name)
        if session is None and instance is None:
            raise InstanceNotFoundError(instance_name)

        self._explicit_shutdown.add(instance_name)
        try:
            self._cancel_reconnect(instance_name)
            await self._discard(instance_name)
            self._attempts.pop(instance_name, None)
            await self.relay.publish(ConnectionStateChanged(
                instance_name=instance_name, state=ConnectionState.DISCONNECTED, reason="deleted",
            ))
            await self.store.delete_instance(instance_name)
            await self._purge_auth(instance_name)
            self.relay.remove_instance(instance_name)
        finally:
            self._explicit_shutdown.discard(instance_name)
        logger.info(f"Instance {instance_name} deleted")

    async def _purge_auth(self, instance_name: str) -> None:
        auth_dir = self.auth_dir_for(instance_name)
        if auth_dir.exists():
            await asyncio.to_thread(shutil.rmtree, auth_dir, True)
            logger.info(f"Removed auth directory {auth_dir}")

    # =========================================================================
    # QUERIES
    # =========================================================================

    def state_of(self, instance_name: str) -> Optional[ConnectionState]:
        """Live session state, or None if no session is registered."""
        session = self._sessions.get(instance_name)
        return session.state if session else None

    def is_connected(self, instance_name: str) -> bool:
        return self.state_of(instance_name) == ConnectionState.CONNECTED

    async def status(self, instance_name: str) -> InstanceStatus:
        """
        Raises:
            InstanceNotFoundError: No live session and no stored record.
        """
        state = self.state_of(instance_name)
        if state is None:
            instance = await self.store.get_instance(instance_name)
            if instance is None:
                raise InstanceNotFoundError(instance_name)
            state = ConnectionState(instance.state)
        return InstanceStatus(
            instance_name=instance_name, state=state, connected=state == ConnectionState.CONNECTED,
        )

    async def list_statuses(self, tenant_id: Optional[str] = None) -> list[InstanceStatus]:
        statuses = []
        for instance in await self.store.list_instances(tenant_id):
            state = self.state_of(instance.name) or ConnectionState(instance.state)
            statuses.append(InstanceStatus(
                instance_name=instance.name, state=state, connected=state == ConnectionState.CONNECTED,
            ))
        return statuses

    def _cached_payload(self, instance_name: str) -> Optional[str]:
        entry = self._pairing_cache.get(instance_name)
        if entry is None:
            return None
        issued_at, payload = entry
        if time.time() - issued_at > self._pairing_ttl_seconds:
            del self._pairing_cache[instance_name]
            return None
        return payload

    def pairing_payload(self, instance_name: str) -> Optional[str]:
        """Cached pairing payload while the instance is CONNECTING, else None."""
        if self.state_of(instance_name) != ConnectionState.CONNECTING:
            return None
        return self._cached_payload(instance_name)

    @property
    def session_names(self) -> list[str]:
        return list(self._sessions)

    # =========================================================================
    # SENDING
    # =========================================================================

    async def send(self, instance_name: str, address: str, text: str) -> str:
        """
        Send text through an instance.

        Raises:
            InstanceNotConnectedError: The instance has no CONNECTED session.
        """
        session = self._sessions.get(instance_name)
        if session is None or not session.connected:
            state = session.state.value if session else None
            raise InstanceNotConnectedError(instance_name, state)
        return await session.send(address, text)

    async def set_typing(self, instance_name: str, address: str, typing: bool = True) -> None:
        """Best-effort typing indicator."""
        session = self._sessions.get(instance_name)
        if session is None or not session.connected:
            return
        try:
            await session.set_typing(address, typing)
        except Exception as e:
            # Typing indicator is not critical
            logger.debug(f"Typing indicator failed on {instance_name}: {e}")

    # =========================================================================
    # SHUTDOWN
    # =========================================================================

    async def shutdown(self) -> None:
        """Close every session without logging out; auth material is kept."""
        self._closing = True
        for name in list(self._reconnect_tasks):
            self._cancel_reconnect(name)
        for task in list(self._start_tasks):
            task.cancel()
        names = list(self._sessions)
        for name in names:
            await self._discard(name)
        logger.info(f"Supervisor shut down ({len(names)} session(s) closed)")

    def __repr__(self) -> str:
        return (
            f"ConnectionSupervisor(sessions={len(self._sessions)}, "
            f"reconnecting={len(self._reconnect_tasks)})"
        )
