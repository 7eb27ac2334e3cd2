"""Shared fixtures: a scriptable fake transport, in-memory store, relay and supervisor."""
import asyncio
import itertools
from pathlib import Path
from typing import Any, Callable, Optional

import pytest
import pytest_asyncio

from sales_gateway.core.errors import TransportError
from sales_gateway.core.models import MessageKind, ReconnectPolicy
from sales_gateway.database.memory import MemoryStore
from sales_gateway.relay.event_relay import EventRelay
from sales_gateway.transport.base import ConnectionUpdate, PairingIssued, RawMessage, Transport
from sales_gateway.transport.supervisor import ConnectionSupervisor


class FakeTransport(Transport):
    """In-memory Transport driven from tests."""

    def __init__(
        self,
        auto_open: bool = True,
        pairing: Optional[str] = None,
        fail_connect: bool = False,
        media: Optional[bytes] = None,
    ):
        super().__init__()
        self.auto_open = auto_open
        self.pairing = pairing
        self.fail_connect = fail_connect
        self.media = media
        self.auth_dir: Optional[Path] = None
        self.sent: list[tuple[str, str]] = []
        self.typing: list[str] = []
        self.fail_texts: set[str] = set()
        self.persist_calls = 0
        self.logged_out = False
        self.closed = False
        self._ids = itertools.count(1)

    async def connect(self, auth_dir: Path) -> None:
        self.auth_dir = auth_dir
        if self.fail_connect:
            raise TransportError("network unreachable")
        if self.pairing:
            await self.emit(PairingIssued(payload=self.pairing))
        if self.auto_open:
            await self.emit(ConnectionUpdate(status="open"))

    async def send_text(self, address: str, text: str) -> str:
        if text in self.fail_texts:
            raise TransportError(f"send failed: {text}")
        self.sent.append((address, text))
        return f"out-{next(self._ids)}"

    async def download_media(self, media_ref: Any) -> bytes:
        if self.media is None:
            raise TransportError("media expired")
        return self.media

    async def set_typing(self, address: str, typing: bool = True) -> None:
        self.typing.append(address)

    async def persist_auth(self) -> None:
        self.persist_calls += 1

    async def logout(self) -> None:
        self.logged_out = True
        await self.emit(ConnectionUpdate(status="closed", logged_out=True, reason="logout"))

    async def close(self) -> None:
        self.closed = True

    # Test drivers

    async def open(self) -> None:
        await self.emit(ConnectionUpdate(status="open"))

    async def drop(self, logged_out: bool = False, reason: str = "stream closed") -> None:
        await self.emit(ConnectionUpdate(status="closed", logged_out=logged_out, reason=reason))

    async def fail(self, reason: str = "password required") -> None:
        await self.emit(ConnectionUpdate(status="error", reason=reason))

    async def incoming(
        self,
        text: Optional[str],
        address: str = "5215550001",
        message_id: Optional[str] = None,
        kind: MessageKind = MessageKind.TEXT,
        caption: Optional[str] = None,
        from_me: bool = False,
        media_ref: Any = None,
    ) -> None:
        await self.emit(RawMessage(
            message_id=message_id or f"in-{next(self._ids)}",
            remote_address=address,
            kind=kind,
            text=text,
            caption=caption,
            media_ref=media_ref,
            from_me=from_me,
            sender_name="Cliente",
        ))


class FakeTransportFactory:
    """TransportFactory that records every transport it builds."""

    def __init__(self, **defaults):
        self.defaults = defaults
        self.overrides: dict[str, list[dict]] = {}
        self.built: dict[str, list[FakeTransport]] = {}

    def queue(self, instance_name: str, **options) -> None:
        """Options for the next transport built for instance_name."""
        self.overrides.setdefault(instance_name, []).append(options)

    def __call__(self, instance_name: str) -> FakeTransport:
        options = dict(self.defaults)
        queued = self.overrides.get(instance_name)
        if queued:
            options.update(queued.pop(0))
        transport = FakeTransport(**options)
        self.built.setdefault(instance_name, []).append(transport)
        return transport

    def latest(self, instance_name: str) -> FakeTransport:
        return self.built[instance_name][-1]

    def count(self, instance_name: str) -> int:
        return len(self.built.get(instance_name, []))


async def wait_for(predicate: Callable[[], bool], timeout: float = 2.0, interval: float = 0.01) -> None:
    """Poll until predicate() is true or fail after timeout."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


class SleepRecorder:
    """Stand-in for asyncio.sleep that records delays and yields once."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def relay() -> EventRelay:
    return EventRelay()


@pytest.fixture
def transports() -> FakeTransportFactory:
    return FakeTransportFactory()


@pytest.fixture
def fast_policy() -> ReconnectPolicy:
    return ReconnectPolicy(base_delay_seconds=0.02)


@pytest_asyncio.fixture
async def supervisor(store, relay, transports, fast_policy, tmp_path):
    sup = ConnectionSupervisor(
        store=store,
        relay=relay,
        transport_factory=transports,
        instances_root=tmp_path / "instances",
        policy=fast_policy,
    )
    yield sup
    await sup.shutdown()
