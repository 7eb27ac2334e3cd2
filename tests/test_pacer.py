"""Tests for paced outbound delivery."""
import asyncio

import pytest

from sales_gateway.humanizer.pacer import OutboundDeliveryPacer, PacingProfile
from tests.conftest import SleepRecorder


class TestPacingProfile:

    def test_delay_grows_with_chunk_length(self):
        profile = PacingProfile()
        assert profile.delay_before("Tenemos tres opciones.") == pytest.approx(1.0 + 0.03 * 22)

    def test_delay_is_capped(self):
        assert PacingProfile().delay_before("x" * 500) == 5.0

    def test_fixed_interval_overrides_model(self):
        profile = PacingProfile(fixed_interval_seconds=3.0)
        assert profile.delay_before("x" * 500) == 3.0
        assert profile.delay_before("") == 3.0


class TestDeliver:

    async def test_sends_in_order_with_pauses_between_chunks(self):
        sleep = SleepRecorder()
        pacer = OutboundDeliveryPacer(sleep=sleep)
        sent: list[str] = []

        async def send(chunk: str) -> None:
            sent.append(chunk)

        chunks = ["Hola.", "Tenemos tres opciones.", "¿Cuál prefieres?"]
        job = await pacer.deliver(chunks, send, recipient="555")

        assert sent == chunks
        assert job.sent == 3 and job.failed == 0 and job.done
        # No pause before the first chunk; each pause sized on the chunk it precedes
        assert sleep.delays == [
            pytest.approx(1.0 + 0.03 * len(chunks[1])),
            pytest.approx(1.0 + 0.03 * len(chunks[2])),
        ]

    async def test_failed_chunk_does_not_abort_the_rest(self):
        pacer = OutboundDeliveryPacer(sleep=SleepRecorder())
        attempted: list[str] = []

        async def send(chunk: str) -> None:
            attempted.append(chunk)
            if chunk == "dos":
                raise ConnectionError("socket closed")

        job = await pacer.deliver(["uno", "dos", "tres"], send)

        assert attempted == ["uno", "dos", "tres"]
        assert job.sent == 2
        assert job.failed == 1

    async def test_before_chunk_hook_runs_and_failures_are_ignored(self):
        pacer = OutboundDeliveryPacer(sleep=SleepRecorder())
        hooked: list[str] = []
        sent: list[str] = []

        async def hook(chunk: str) -> None:
            hooked.append(chunk)
            raise RuntimeError("typing unsupported")

        async def send(chunk: str) -> None:
            sent.append(chunk)

        await pacer.deliver(["a", "b"], send, before_chunk=hook)

        assert hooked == ["a", "b"]
        assert sent == ["a", "b"]

    async def test_profile_override_per_delivery(self):
        sleep = SleepRecorder()
        pacer = OutboundDeliveryPacer(sleep=sleep)

        async def send(chunk: str) -> None:
            pass

        await pacer.deliver(["a", "b", "c"], send, profile=PacingProfile(fixed_interval_seconds=2.0))

        assert sleep.delays == [2.0, 2.0]


class TestDispatch:

    async def test_recipients_do_not_block_each_other(self):
        pacer = OutboundDeliveryPacer(profile=PacingProfile(fixed_interval_seconds=0.05))
        log: list[str] = []

        def sender(recipient: str):
            async def send(chunk: str) -> None:
                log.append(f"{recipient}:{chunk}")
            return send

        pacer.dispatch("ana", ["1", "2", "3"], sender("ana"))
        pacer.dispatch("beto", ["1"], sender("beto"))
        assert pacer.active_jobs == 2

        await pacer.drain()

        assert log.index("beto:1") < log.index("ana:3")
        assert [entry for entry in log if entry.startswith("ana")] == ["ana:1", "ana:2", "ana:3"]
        await asyncio.sleep(0)
        assert pacer.active_jobs == 0
