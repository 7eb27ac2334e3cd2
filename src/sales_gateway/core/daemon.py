#!/usr/bin/env python3
"""
Sales Gateway Daemon.
Long-running service that keeps tenant messaging instances connected,
batches inbound messages into turns, and delivers paced replies.
"""
import argparse
import asyncio
import logging
import signal
from datetime import datetime
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from sales_gateway.core.config import load_config
from sales_gateway.core.errors import NoConnectedInstanceError, ReplyEngineError
from sales_gateway.core.models import (
    ConnectionOpened,
    ConnectionState,
    ConnectionStateChanged,
    Conversation,
    DeliveryJob,
    GatewayConfig,
    GatewayEvent,
    InstanceStatus,
    MessageReceived,
    PairingPayloadIssued,
    ReplyRequest,
    StoredMessage,
    TenantSettings,
)
from sales_gateway.database.memory import MemoryStore
from sales_gateway.database.store import Store
from sales_gateway.humanizer.chunking import split_reply
from sales_gateway.humanizer.pacer import OutboundDeliveryPacer, PacingProfile
from sales_gateway.relay.event_relay import ALL_INSTANCES, EventRelay
from sales_gateway.relay.webhook import WebhookRelay
from sales_gateway.reply.engine import HttpReplyEngine, ReplyEngine
from sales_gateway.routing.resolver import InstanceResolver
from sales_gateway.temporal.message_buffer import InboundDebounceBuffer
from sales_gateway.transport.base import TransportFactory
from sales_gateway.transport.supervisor import ConnectionSupervisor

console = Console()
logger = logging.getLogger(__name__)


class GatewayDaemon:
    """Wires sessions, routing, batching, the reply engine and paced delivery together."""

    def __init__(
        self,
        config: GatewayConfig,
        store: Optional[Store] = None,
        transport_factory: Optional[TransportFactory] = None,
        reply_engine: Optional[ReplyEngine] = None,
        pacer: Optional[OutboundDeliveryPacer] = None,
    ):
        self.config = config
        self.store = store
        self.transport_factory = transport_factory
        self.reply_engine = reply_engine
        self.pacer = pacer

        self.relay: Optional[EventRelay] = None
        self.supervisor: Optional[ConnectionSupervisor] = None
        self.resolver: Optional[InstanceResolver] = None
        self.buffer: Optional[InboundDebounceBuffer] = None
        self.webhook: Optional[WebhookRelay] = None
        self._unsubscribe = None
        self.running = False

        self.stats = {
            "started_at": None,
            "messages_received": 0,
            "messages_buffered": 0,
            "turns_processed": 0,
            "messages_sent": 0,
            "send_failures": 0,
            "fallback_replies": 0,
            "undeliverable_turns": 0,
            "connections_opened": 0,
        }

    async def initialize(self, restore: bool = True) -> None:
        """Initialize all components."""
        console.print("[bold blue]Initializing Sales Gateway...[/bold blue]")

        if self.store is None:
            if self.config.database_url:
                from sales_gateway.database.postgres import PostgresStore
                self.store = PostgresStore(self.config.database_url)
            else:
                console.print("  [yellow]⚠[/yellow] DATABASE_URL not set, using in-memory store")
                self.store = MemoryStore()
        await self.store.initialize()
        console.print(f"  [green]✓[/green] Store ready ({type(self.store).__name__})")

        self.relay = EventRelay()

        if self.transport_factory is None:
            self.transport_factory = self._telethon_factory()
        self.supervisor = ConnectionSupervisor(
            store=self.store,
            relay=self.relay,
            transport_factory=self.transport_factory,
            instances_root=self.config.instances_path,
            policy=self.config.reconnect,
            pairing_ttl_seconds=self.config.pairing_ttl_seconds,
        )
        self.resolver = InstanceResolver(self.store, self.supervisor)
        console.print(f"  [green]✓[/green] Supervisor ready (instances in {self.config.instances_path})")

        self.buffer = InboundDebounceBuffer(
            self.process_turn, default_window=self.config.default_debounce_seconds,
        )
        if self.pacer is None:
            self.pacer = OutboundDeliveryPacer()
        console.print(f"  [green]✓[/green] Message buffer initialized (window {self.config.default_debounce_seconds}s)")

        if self.reply_engine is None and self.config.reply_engine_url:
            self.reply_engine = HttpReplyEngine(
                self.config.reply_engine_url, timeout=self.config.reply_engine_timeout_seconds,
            )
        if self.reply_engine:
            console.print(f"  [green]✓[/green] Reply engine ready ({type(self.reply_engine).__name__})")
        else:
            console.print("  [yellow]⚠[/yellow] No reply engine configured, fallback replies only")

        if self.config.webhook_url:
            self.webhook = WebhookRelay(self.config.webhook_url, timeout=self.config.webhook_timeout_seconds)
            self.relay.subscribe(ALL_INSTANCES, self.webhook.handle)
            console.print(f"  [green]✓[/green] Webhook enabled: {self.config.webhook_url}")

        self._unsubscribe = self.relay.subscribe(ALL_INSTANCES, self.on_event)
        console.print("  [green]✓[/green] Event handlers registered")

        if restore:
            restored = await self.supervisor.restore()
            console.print(f"  [green]✓[/green] Sessions restored: {restored}")

    def _telethon_factory(self) -> TransportFactory:
        from sales_gateway.transport.telethon_transport import TelethonTransport

        api_id = self.config.telegram_api_id
        api_hash = self.config.telegram_api_hash

        def make_transport(instance_name: str) -> TelethonTransport:
            return TelethonTransport(api_id, api_hash)

        return make_transport

    async def settings_for(self, tenant_id: str) -> TenantSettings:
        settings = await self.store.get_settings(tenant_id)
        return settings or self.config.default_settings(tenant_id)

    # =========================================================================
    # EVENTS
    # =========================================================================

    async def on_event(self, event: GatewayEvent) -> None:
        """Relay subscriber for every instance."""
        if isinstance(event, MessageReceived):
            await self.handle_message(event)
        elif isinstance(event, ConnectionOpened):
            self.stats["connections_opened"] += 1
            console.print(f"[green]Instance {event.instance_name} connected[/green]")
            await self._adopt_instance(event.instance_name)
        elif isinstance(event, PairingPayloadIssued):
            console.print(Panel.fit(
                f"[bold]Pairing required for {event.instance_name}[/bold]\n{event.payload}",
                title="Pairing",
            ))
        elif isinstance(event, ConnectionStateChanged):
            if event.state == ConnectionState.DISCONNECTED and event.logged_out:
                self.resolver.teardown(event.instance_name)
                console.print(f"[yellow]Instance {event.instance_name} logged out[/yellow]")

    async def _adopt_instance(self, instance_name: str) -> None:
        """Promote a freshly connected instance if its tenant has no live one."""
        resolution = await self.resolver.resolve_for_incoming(instance_name)
        if resolution and resolution.was_promoted and resolution.previous_instance_name:
            await self.resolver.migrate_conversations(
                resolution.tenant_id, resolution.previous_instance_name, resolution.effective_instance_name,
            )

    async def handle_message(self, event: MessageReceived) -> None:
        """Record an inbound (or echoed) message and feed it to the buffer."""
        resolution = await self.resolver.resolve_for_incoming(event.instance_name)
        if resolution is None:
            logger.warning(f"Message on unknown instance {event.instance_name}, dropping")
            return

        if resolution.was_promoted and resolution.previous_instance_name:
            await self.resolver.migrate_conversations(
                resolution.tenant_id, resolution.previous_instance_name, resolution.effective_instance_name,
            )

        conversation = await self.store.get_or_create_conversation(
            resolution.tenant_id,
            event.counterparty_address,
            resolution.effective_instance_name,
            counterparty_name=event.sender_name,
        )
        if conversation.pinned_instance_name != resolution.effective_instance_name:
            await self.store.update_conversation_instance(conversation.id, resolution.effective_instance_name)

        is_new = await self.store.append_message(StoredMessage(
            message_id=event.message_id,
            conversation_id=conversation.id,
            instance_name=event.instance_name,
            from_me=event.is_outbound_echo,
            kind=event.kind,
            content=event.body,
            timestamp=event.timestamp,
        ))
        if not is_new or event.is_outbound_echo:
            return

        self.stats["messages_received"] += 1
        display_text = event.body[:100]
        console.print(f"\n[cyan]<- {event.counterparty_address} via {event.instance_name}:[/cyan] {display_text}")

        if not event.body.strip():
            return

        settings = await self.settings_for(resolution.tenant_id)
        if settings.buffer_enabled:
            self.buffer.add_fragment(conversation.id, event.body, window_seconds=settings.debounce_seconds)
            self.stats["messages_buffered"] += 1
            console.print("[dim]Buffered, waiting for more...[/dim]")
        else:
            await self.process_turn(conversation.id, event.body)

    # =========================================================================
    # TURNS AND DELIVERY
    # =========================================================================

    async def process_turn(self, conversation_id: str, text: str) -> None:
        """Flush handler: get a reply for a consolidated turn and deliver it."""
        conversation = await self.store.get_conversation(conversation_id)
        if conversation is None:
            logger.warning(f"Turn for unknown conversation {conversation_id}, dropping")
            return

        settings = await self.settings_for(conversation.tenant_id)
        self.stats["turns_processed"] += 1
        console.print(f"\n[cyan]Processing turn for {conversation.counterparty_address}[/cyan]")

        request = ReplyRequest(
            tenant_id=conversation.tenant_id,
            conversation_id=conversation.id,
            counterparty_address=conversation.counterparty_address,
            text=text,
            assistant_name=settings.assistant_name,
            context=settings.assistant_context,
        )
        try:
            if self.reply_engine is None:
                raise ReplyEngineError("No reply engine configured")
            reply = await self.reply_engine.generate(request)
        except ReplyEngineError as e:
            logger.error(f"Reply engine failed for {conversation.id}: {e}")
            reply = settings.fallback_reply
            self.stats["fallback_replies"] += 1

        try:
            await self.send_reply(conversation, reply, settings)
        except NoConnectedInstanceError as e:
            self.stats["undeliverable_turns"] += 1
            console.print(f"[red]Cannot deliver reply: {e}[/red]")
            raise

    def _plan_chunks(self, reply: str, settings: TenantSettings) -> list[str]:
        if not settings.humanized_enabled:
            return [reply]
        return split_reply(reply, settings.max_chunk_chars, settings.max_chunks)

    def _pacing_for(self, settings: TenantSettings) -> Optional[PacingProfile]:
        if settings.pacing_interval_seconds is None:
            return None
        return PacingProfile(fixed_interval_seconds=settings.pacing_interval_seconds)

    async def _route(self, conversation: Conversation) -> str:
        instance_name = await self.resolver.resolve_for_outgoing(
            conversation.tenant_id, preferred_instance_name=conversation.pinned_instance_name,
        )
        if instance_name is None:
            raise NoConnectedInstanceError(conversation.tenant_id)
        if instance_name != conversation.pinned_instance_name:
            await self.store.update_conversation_instance(conversation.id, instance_name)
            conversation.pinned_instance_name = instance_name
        return instance_name

    def _chunk_sender(self, instance_name: str, conversation: Conversation):
        address = conversation.counterparty_address

        async def send_chunk(chunk: str) -> None:
            try:
                message_id = await self.supervisor.send(instance_name, address, chunk)
            except Exception:
                self.stats["send_failures"] += 1
                raise
            self.stats["messages_sent"] += 1
            await self.store.append_message(StoredMessage(
                message_id=message_id,
                conversation_id=conversation.id,
                instance_name=instance_name,
                from_me=True,
                content=chunk,
            ))

        async def show_typing(chunk: str) -> None:
            await self.supervisor.set_typing(instance_name, address, True)

        return send_chunk, show_typing

    async def send_reply(
        self,
        conversation: Conversation,
        reply: str,
        settings: Optional[TenantSettings] = None,
    ) -> DeliveryJob:
        """
        Split and pace a reply out through the tenant's resolved instance.

        Raises:
            NoConnectedInstanceError: The tenant has no CONNECTED instance.
        """
        settings = settings or await self.settings_for(conversation.tenant_id)
        instance_name = await self._route(conversation)
        chunks = self._plan_chunks(reply, settings)
        send_chunk, show_typing = self._chunk_sender(instance_name, conversation)

        job = await self.pacer.deliver(
            chunks,
            send_chunk,
            recipient=conversation.counterparty_address,
            profile=self._pacing_for(settings),
            before_chunk=show_typing,
        )
        console.print(
            f"[green]-> Sent {job.sent}/{len(job.chunks)} chunk(s) to "
            f"{conversation.counterparty_address} via {instance_name}[/green]"
        )
        return job

    async def send_text(self, tenant_id: str, address: str, text: str) -> asyncio.Task:
        """
        Operator-initiated paced send, run as an independent delivery job.

        Raises:
            NoConnectedInstanceError: The tenant has no CONNECTED instance.
        """
        instance_name = await self.resolver.resolve_for_outgoing(tenant_id)
        if instance_name is None:
            raise NoConnectedInstanceError(tenant_id)
        conversation = await self.store.get_or_create_conversation(tenant_id, address, instance_name)
        if conversation.pinned_instance_name != instance_name:
            await self.store.update_conversation_instance(conversation.id, instance_name)
            conversation.pinned_instance_name = instance_name

        settings = await self.settings_for(tenant_id)
        send_chunk, show_typing = self._chunk_sender(instance_name, conversation)
        return self.pacer.dispatch(
            address,
            self._plan_chunks(text, settings),
            send_chunk,
            profile=self._pacing_for(settings),
            before_chunk=show_typing,
        )

    # =========================================================================
    # ADMIN
    # =========================================================================

    async def create_instance(self, instance_name: str, tenant_id: str) -> InstanceStatus:
        return await self.supervisor.create(instance_name, tenant_id)

    async def logout_instance(self, instance_name: str) -> None:
        await self.resolver.handle_instance_deletion(instance_name)
        await self.supervisor.logout(instance_name)

    async def delete_instance(self, instance_name: str) -> None:
        await self.resolver.handle_instance_deletion(instance_name)
        await self.supervisor.delete(instance_name)

    async def instance_status(self, instance_name: str) -> InstanceStatus:
        return await self.supervisor.status(instance_name)

    def pairing_payload(self, instance_name: str) -> Optional[str]:
        return self.supervisor.pairing_payload(instance_name)

    async def list_instances(self, tenant_id: Optional[str] = None) -> list[InstanceStatus]:
        return await self.supervisor.list_statuses(tenant_id)

    # =========================================================================
    # RUN LOOP
    # =========================================================================

    async def _create_status_table(self) -> Table:
        """Create a status table for display."""
        table = Table(title="Sales Gateway Status")
        table.add_column("Metric", style="cyan")
        table.add_column("Value", style="green")

        if self.stats["started_at"]:
            uptime = datetime.now() - self.stats["started_at"]
            table.add_row("Uptime", str(uptime).split('.')[0])

        table.add_row("Messages Received", str(self.stats["messages_received"]))
        table.add_row("Messages Buffered", str(self.stats["messages_buffered"]))
        table.add_row("Turns Processed", str(self.stats["turns_processed"]))
        table.add_row("Messages Sent", str(self.stats["messages_sent"]))
        table.add_row("Send Failures", str(self.stats["send_failures"]))
        table.add_row("Fallback Replies", str(self.stats["fallback_replies"]))
        table.add_row("Undeliverable Turns", str(self.stats["undeliverable_turns"]))

        if self.supervisor:
            for status in await self.supervisor.list_statuses():
                table.add_row(f"Instance {status.instance_name}", ConnectionState(status.state).value)

        return table

    async def run(self) -> None:
        """Run the daemon."""
        self.running = True
        self.stats["started_at"] = datetime.now()

        console.print(Panel.fit(
            "[bold green]Sales Gateway Started[/bold green]\n"
            "Press Ctrl+C to stop",
            title="Status"
        ))

        last_check = datetime.now()
        try:
            while self.running:
                if (datetime.now() - last_check).total_seconds() >= self.config.status_interval_seconds:
                    console.print(await self._create_status_table())
                    last_check = datetime.now()
                await asyncio.sleep(1)
        except asyncio.CancelledError:
            console.print("\n[yellow]Shutdown requested...[/yellow]")
        finally:
            await self.shutdown()

    async def shutdown(self) -> None:
        """Gracefully shutdown the daemon."""
        self.running = False
        console.print("[yellow]Shutting down...[/yellow]")

        if self.buffer:
            pending = self.buffer.pending_keys()
            if pending:
                console.print(f"[cyan]Flushing {len(pending)} pending buffer(s)...[/cyan]")
                await self.buffer.flush_all()
                console.print("[green]Message buffers flushed[/green]")

        if self.pacer:
            await self.pacer.drain()

        if self.supervisor:
            await self.supervisor.shutdown()
            console.print("[green]Sessions closed[/green]")

        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None

        if self.webhook:
            await self.webhook.close()

        if self.reply_engine:
            await self.reply_engine.close()

        if self.store:
            try:
                await self.store.close()
                console.print("[green]Store closed[/green]")
            except Exception as e:
                console.print(f"[yellow]Warning: Error closing store: {e}[/yellow]")

        console.print(Panel.fit(
            f"[bold]Final Stats[/bold]\n"
            f"Messages Received: {self.stats['messages_received']}\n"
            f"Turns Processed: {self.stats['turns_processed']}\n"
            f"Messages Sent: {self.stats['messages_sent']}\n"
            f"Send Failures: {self.stats['send_failures']}\n"
            f"Fallback Replies: {self.stats['fallback_replies']}",
            title="Session Summary"
        ))


async def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Sales Gateway Daemon")
    parser.add_argument('--config', default=None, help='Path to gateway config JSON')
    parser.add_argument('--memory-store', action='store_true', help='Use the in-memory store')
    parser.add_argument('--create', metavar='NAME', default=None, help='Create an instance on startup')
    parser.add_argument('--tenant', default=None, help='Tenant owning the instance given to --create')
    parser.add_argument('--verbose', '-v', action='store_true', help='Debug logging')
    args = parser.parse_args()

    if args.create and not args.tenant:
        parser.error("--create requires --tenant")

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(message)s",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )

    config = load_config(args.config)
    daemon = GatewayDaemon(config, store=MemoryStore() if args.memory_store else None)

    loop = asyncio.get_running_loop()

    def signal_handler():
        daemon.running = False

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await daemon.initialize()
        if args.create and args.create not in daemon.supervisor.session_names:
            await daemon.create_instance(args.create, args.tenant)
        await daemon.run()
    except KeyboardInterrupt:
        pass
    except Exception as e:
        console.print(f"[red bold]Fatal error: {e}[/red bold]")
        raise


def cli() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    cli()
