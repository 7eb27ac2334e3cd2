"""Tests for TransportSession state handling and message normalization."""
import pytest

from sales_gateway.core.errors import InstanceNotConnectedError
from sales_gateway.core.models import (
    ConnectionOpened,
    ConnectionState,
    ConnectionStateChanged,
    MessageKind,
    MessageReceived,
)
from sales_gateway.transport.session import PLACEHOLDERS, TransportSession
from tests.conftest import FakeTransport


@pytest.fixture
def captured():
    return []


def make_session(transport, captured, tmp_path):
    async def on_event(session, event):
        captured.append(event)

    return TransportSession("ventas-1", "t1", tmp_path / "ventas-1", transport, on_event)


class TestLifecycle:

    async def test_start_walks_connecting_to_connected(self, captured, tmp_path):
        session = make_session(FakeTransport(), captured, tmp_path)
        await session.start()

        states = [e.state for e in captured if isinstance(e, ConnectionStateChanged)]
        assert states == [ConnectionState.CONNECTING, ConnectionState.CONNECTED]
        assert isinstance(captured[-1], ConnectionOpened)
        assert session.connected

    async def test_failed_connect_reports_a_drop(self, captured, tmp_path):
        session = make_session(FakeTransport(fail_connect=True), captured, tmp_path)
        await session.start()

        last = captured[-1]
        assert isinstance(last, ConnectionStateChanged)
        assert last.state == ConnectionState.DISCONNECTED
        assert not last.logged_out

    async def test_auth_persisted_on_every_transition(self, captured, tmp_path):
        transport = FakeTransport(fail_connect=True)
        session = make_session(transport, captured, tmp_path)
        await session.start()

        # CONNECTING, then the DISCONNECTED reported for the failed connect
        assert transport.persist_calls == 2

    async def test_detached_session_ignores_signals(self, captured, tmp_path):
        transport = FakeTransport()
        session = make_session(transport, captured, tmp_path)
        await session.start()
        session.detach()
        captured.clear()

        await transport.incoming("Hola")

        assert captured == []

    async def test_send_requires_connected(self, captured, tmp_path):
        session = make_session(FakeTransport(auto_open=False), captured, tmp_path)
        await session.start()

        with pytest.raises(InstanceNotConnectedError):
            await session.send("555", "Hola.")


class TestNormalization:

    async def _receive(self, transport, captured, tmp_path, **kwargs) -> MessageReceived:
        session = make_session(transport, captured, tmp_path)
        await session.start()
        await transport.incoming(**kwargs)
        return captured[-1]

    async def test_text(self, captured, tmp_path):
        event = await self._receive(FakeTransport(), captured, tmp_path, text="Hola", message_id="9")
        assert event.body == "Hola"
        assert event.message_id == "ventas-1:9"
        assert event.kind == MessageKind.TEXT
        assert not event.is_outbound_echo

    async def test_image_with_media(self, captured, tmp_path):
        transport = FakeTransport(media=b"\xff\xd8")
        event = await self._receive(transport, captured, tmp_path, text=None, kind=MessageKind.IMAGE, media_ref="ref")
        assert event.body == PLACEHOLDERS["image"]
        assert event.media_buffer == b"\xff\xd8"
        assert event.mime_type == "image/jpeg"

    async def test_image_caption_kept(self, captured, tmp_path):
        transport = FakeTransport(media=b"img")
        event = await self._receive(
            transport, captured, tmp_path, text=None, kind=MessageKind.IMAGE, caption="Esta casa", media_ref="ref",
        )
        assert event.body == "Esta casa"

    async def test_image_download_failure_uses_placeholder(self, captured, tmp_path):
        event = await self._receive(FakeTransport(), captured, tmp_path, text=None, kind=MessageKind.IMAGE, media_ref="ref")
        assert event.body == PLACEHOLDERS["image_unavailable"]
        assert event.media_buffer is None

    async def test_voice_note(self, captured, tmp_path):
        transport = FakeTransport(media=b"ogg")
        event = await self._receive(transport, captured, tmp_path, text=None, kind=MessageKind.AUDIO, media_ref="ref")
        assert event.body == PLACEHOLDERS["audio"]
        assert event.mime_type == "audio/ogg"

    async def test_voice_note_unavailable(self, captured, tmp_path):
        event = await self._receive(FakeTransport(), captured, tmp_path, text=None, kind=MessageKind.AUDIO, media_ref="ref")
        assert event.body == PLACEHOLDERS["audio_unavailable"]

    @pytest.mark.parametrize("kind,caption,expected", [
        (MessageKind.VIDEO, None, PLACEHOLDERS["video"]),
        (MessageKind.VIDEO, "Recorrido", "Recorrido"),
        (MessageKind.DOCUMENT, "contrato.pdf", PLACEHOLDERS["document"]),
        (MessageKind.UNKNOWN, None, PLACEHOLDERS["unknown"]),
    ])
    async def test_fixed_placeholders(self, captured, tmp_path, kind, caption, expected):
        event = await self._receive(FakeTransport(), captured, tmp_path, text=None, kind=kind, caption=caption)
        assert event.body == expected

    async def test_outbound_echo_flagged_and_not_downloaded(self, captured, tmp_path):
        transport = FakeTransport(media=b"img")
        event = await self._receive(
            transport, captured, tmp_path, text=None, kind=MessageKind.IMAGE, from_me=True, media_ref="ref",
        )
        assert event.is_outbound_echo
        assert event.media_buffer is None
