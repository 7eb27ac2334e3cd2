"""Tests for the Telethon transport, driven through a fake TelegramClient."""
import asyncio
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
from telethon.errors import AuthKeyUnregisteredError, SessionPasswordNeededError

from sales_gateway.core.models import ConnectionState, MessageKind
from sales_gateway.database.memory import MemoryStore
from sales_gateway.transport.base import ConnectionUpdate, PairingIssued, RawMessage
from sales_gateway.transport.supervisor import ConnectionSupervisor
from sales_gateway.transport.telethon_transport import TelethonTransport, _peer, message_kind
from tests.conftest import wait_for


class FakeQRLogin:
    """QR login whose wait() outcomes are scripted (None means scanned)."""

    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.recreated = 0
        self.url = "tg://login?token=0"

    async def wait(self, timeout=None):
        outcome = self.outcomes.pop(0)
        if outcome is not None:
            raise outcome

    async def recreate(self):
        self.recreated += 1
        self.url = f"tg://login?token={self.recreated}"


class FakeSession:

    def __init__(self):
        self.saves = 0

    def save(self):
        self.saves += 1


class FakeTelegramClient:
    """The slice of TelegramClient the transport uses."""

    def __init__(self, session_path, authorized=True, qr=None, resolved_ids=None):
        self.session_path = session_path
        self.authorized = authorized
        self.qr = qr
        self.resolved_ids = resolved_ids or {}
        self.session = FakeSession()
        self.handlers = []
        self.sent = []
        self.disconnected = None
        self.logged_out = False
        self._connected = False

    async def connect(self):
        self._connected = True
        self.disconnected = asyncio.get_running_loop().create_future()

    def is_connected(self):
        return self._connected

    async def is_user_authorized(self):
        return self.authorized

    async def qr_login(self):
        return self.qr

    def add_event_handler(self, callback, event):
        self.handlers.append(callback)

    async def send_message(self, peer, text):
        self.sent.append((peer, text))
        return SimpleNamespace(id=len(self.sent), chat_id=self.resolved_ids.get(peer, peer))

    async def log_out(self):
        self.logged_out = True
        self._connected = False

    async def disconnect(self):
        self._connected = False

    def drop(self, error=None):
        """Simulate the connection going away."""
        self._connected = False
        if self.disconnected.done():
            return
        if error is None:
            self.disconnected.set_result(None)
        else:
            self.disconnected.set_exception(error)


class FakeClientFactory:

    def __init__(self, **options):
        self.options = options
        self.clients: list[FakeTelegramClient] = []

    def __call__(self, session_path, api_id, api_hash):
        client = FakeTelegramClient(session_path, **self.options)
        self.clients.append(client)
        return client


class SlowStore(MemoryStore):
    """MemoryStore whose state writes suspend, like a database round trip."""

    async def update_instance_state(self, name, state, pairing_payload=None):
        await asyncio.sleep(0)
        return await super().update_instance_state(name, state, pairing_payload)


def make_transport(factory, **kwargs) -> TelethonTransport:
    return TelethonTransport(12345, "hash", client_factory=factory, **kwargs)


def incoming_event(chat_id: int, message_id: int, text: str = "Hola", out: bool = False):
    message = SimpleNamespace(
        id=message_id, message=text, photo=None, voice=None, audio=None, video=None,
        video_note=None, sticker=None, document=None, media=None, file=None,
        date=datetime.now(timezone.utc),
    )

    async def get_sender():
        return SimpleNamespace(first_name="Ana")

    return SimpleNamespace(is_private=True, out=out, chat_id=chat_id, message=message, get_sender=get_sender)


@pytest.fixture
def signals():
    return []


@pytest.fixture
def factory():
    return FakeClientFactory()


async def connected_transport(factory, signals, tmp_path) -> TelethonTransport:
    transport = make_transport(factory)

    async def collect(signal):
        signals.append(signal)

    transport.subscribe(collect)
    await transport.connect(tmp_path)
    return transport


class TestLogin:

    async def test_authorized_session_opens(self, factory, signals, tmp_path):
        transport = await connected_transport(factory, signals, tmp_path)

        assert signals == [ConnectionUpdate(status="open")]
        assert factory.clients[0].session_path == str(tmp_path / "telegram")
        await transport.persist_auth()
        assert factory.clients[0].session.saves == 1
        await transport.close()

    async def test_qr_recreated_until_scanned(self, signals, tmp_path):
        qr = FakeQRLogin([asyncio.TimeoutError(), None])
        factory = FakeClientFactory(authorized=False, qr=qr)

        transport = await connected_transport(factory, signals, tmp_path)

        assert [s.payload for s in signals if isinstance(s, PairingIssued)] == [
            "tg://login?token=0", "tg://login?token=1",
        ]
        assert signals[-1] == ConnectionUpdate(status="open")
        await transport.close()

    async def test_two_step_password_is_an_error(self, signals, tmp_path):
        qr = FakeQRLogin([SessionPasswordNeededError(None)])
        factory = FakeClientFactory(authorized=False, qr=qr)

        transport = await connected_transport(factory, signals, tmp_path)

        assert signals[-1].status == "error"
        assert not any(isinstance(s, ConnectionUpdate) and s.status == "open" for s in signals)
        assert factory.clients[0].handlers == []
        await transport.close()


class TestDisconnect:

    async def test_transient_drop_is_not_a_logout(self, factory, signals, tmp_path):
        await connected_transport(factory, signals, tmp_path)

        factory.clients[0].drop(ConnectionResetError("reset by peer"))
        await wait_for(lambda: len(signals) == 2)

        assert signals[-1] == ConnectionUpdate(status="closed", logged_out=False, reason="reset by peer")

    async def test_revoked_key_is_a_logout(self, factory, signals, tmp_path):
        await connected_transport(factory, signals, tmp_path)

        factory.clients[0].drop(AuthKeyUnregisteredError(None))
        await wait_for(lambda: len(signals) == 2)

        assert signals[-1].status == "closed"
        assert signals[-1].logged_out
        assert signals[-1].reason == "AuthKeyUnregisteredError"

    async def test_no_signal_after_close(self, factory, signals, tmp_path):
        transport = await connected_transport(factory, signals, tmp_path)

        await transport.close()
        factory.clients[0].drop()
        await asyncio.sleep(0.05)

        assert signals == [ConnectionUpdate(status="open")]

    async def test_logout_reports_logged_out(self, factory, signals, tmp_path):
        transport = await connected_transport(factory, signals, tmp_path)

        await transport.logout()

        assert factory.clients[0].logged_out
        assert signals[-1] == ConnectionUpdate(status="closed", logged_out=True, reason="logout")
        await transport.close()


class TestSupervisedReconnect:

    @pytest.fixture
    def slow_store(self):
        return SlowStore()

    async def test_drop_is_reconnected(self, slow_store, relay, fast_policy, factory, tmp_path):
        supervisor = ConnectionSupervisor(
            slow_store, relay, lambda name: make_transport(factory), tmp_path, policy=fast_policy,
        )
        await supervisor.create("ventas-1", "t1")
        await wait_for(lambda: supervisor.is_connected("ventas-1"))

        factory.clients[0].drop()
        await wait_for(lambda: len(factory.clients) == 2 and supervisor.is_connected("ventas-1"))

        assert slow_store.instances["ventas-1"].state == ConnectionState.CONNECTED
        assert not factory.clients[0].is_connected()
        await supervisor.shutdown()

    async def test_remote_logout_is_stored(self, slow_store, relay, fast_policy, factory, tmp_path):
        supervisor = ConnectionSupervisor(
            slow_store, relay, lambda name: make_transport(factory), tmp_path, policy=fast_policy,
        )
        await supervisor.create("ventas-1", "t1")
        await wait_for(lambda: supervisor.is_connected("ventas-1"))

        factory.clients[0].drop(AuthKeyUnregisteredError(None))
        await wait_for(lambda: slow_store.instances["ventas-1"].state == ConnectionState.DISCONNECTED)
        await asyncio.sleep(0.05)

        assert len(factory.clients) == 1
        assert not supervisor.reconnect_pending("ventas-1")
        await supervisor.shutdown()


class TestMessages:

    async def test_sent_id_matches_echo_for_username_address(self, signals, tmp_path):
        factory = FakeClientFactory(resolved_ids={"@ana": 4242})
        transport = await connected_transport(factory, signals, tmp_path)

        sent_id = await transport.send_text("@ana", "Hola.")
        await factory.clients[0].handlers[0](incoming_event(4242, 1, text="Hola.", out=True))

        echo = signals[-1]
        assert isinstance(echo, RawMessage)
        assert echo.from_me
        assert echo.message_id == sent_id == "4242:1"
        await transport.close()

    async def test_incoming_private_text(self, factory, signals, tmp_path):
        transport = await connected_transport(factory, signals, tmp_path)

        await factory.clients[0].handlers[0](incoming_event(5550001, 9, text="Busco casa"))

        message = signals[-1]
        assert message.message_id == "5550001:9"
        assert message.remote_address == "5550001"
        assert message.text == "Busco casa"
        assert message.sender_name == "Ana"
        assert not message.from_me
        await transport.close()

    def test_message_kind(self):
        blank = dict(photo=None, voice=None, audio=None, video=None, video_note=None,
                     sticker=None, document=None, media=None)

        assert message_kind(SimpleNamespace(**blank)) == MessageKind.TEXT
        assert message_kind(SimpleNamespace(**{**blank, "photo": object(), "media": object()})) == MessageKind.IMAGE
        assert message_kind(SimpleNamespace(**{**blank, "voice": object(), "document": object()})) == MessageKind.AUDIO
        assert message_kind(SimpleNamespace(**{**blank, "sticker": object(), "document": object()})) == MessageKind.UNKNOWN
        assert message_kind(SimpleNamespace(**{**blank, "document": object()})) == MessageKind.DOCUMENT

    @pytest.mark.parametrize("address,expected", [
        ("5215550001", 5215550001),
        ("-100123", -100123),
        ("@ana", "@ana"),
    ])
    def test_peer(self, address, expected):
        assert _peer(address) == expected
