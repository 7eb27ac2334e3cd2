"""
Outbound delivery pacing.

Sends reply chunks one by one with a typing-speed pause between them.
Each recipient's delivery runs as its own task so a long reply to one
person never holds up another conversation.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Optional

from pydantic import BaseModel

from sales_gateway.core.models import DeliveryJob

logger = logging.getLogger(__name__)

SendFn = Callable[[str], Awaitable[object]]
SleepFn = Callable[[float], Awaitable[None]]


class PacingProfile(BaseModel):
    """
    Delay model between consecutive chunks.

    The pause before a chunk grows with its length (simulated typing) and
    is clamped to max_delay_seconds. A fixed interval replaces the model
    entirely when set.
    """
    base_delay_seconds: float = 1.0
    per_char_seconds: float = 0.03
    max_delay_seconds: float = 5.0
    fixed_interval_seconds: Optional[float] = None

    def delay_before(self, chunk: str) -> float:
        """Pause to take before sending `chunk`."""
        if self.fixed_interval_seconds is not None:
            return max(0.0, self.fixed_interval_seconds)
        delay = self.base_delay_seconds + self.per_char_seconds * len(chunk)
        return min(self.max_delay_seconds, delay)


class OutboundDeliveryPacer:
    """
    Paces chunked replies out to recipients.

    Attributes:
        profile: Default pacing profile, overridable per delivery.
    """

    def __init__(self, profile: Optional[PacingProfile] = None, sleep: Optional[SleepFn] = None):
        self.profile = profile or PacingProfile()
        self._sleep = sleep or asyncio.sleep
        self._jobs: set[asyncio.Task] = set()

    async def deliver(
        self,
        chunks: list[str],
        send_fn: SendFn,
        recipient: str = "",
        profile: Optional[PacingProfile] = None,
        before_chunk: Optional[SendFn] = None,
    ) -> DeliveryJob:
        """
        Send chunks strictly in order, pausing between them.

        A failed send is logged and counted; the remaining chunks are still
        attempted. Nothing is retried. `before_chunk` runs ahead of each
        pause (e.g. a typing indicator) and its failures are ignored.

        Returns:
            The finished DeliveryJob with sent/failed counters.
        """
        pacing = profile or self.profile
        job = DeliveryJob(recipient=recipient, chunks=list(chunks))

        for index, chunk in enumerate(job.chunks):
            if before_chunk is not None:
                try:
                    await before_chunk(chunk)
                except Exception as e:
                    logger.debug(f"before_chunk hook failed: {e}")
            if index > 0:
                await self._sleep(pacing.delay_before(chunk))
            try:
                await send_fn(chunk)
                job.sent += 1
            except Exception as e:
                job.failed += 1
                logger.error(
                    f"Failed to send chunk {index + 1}/{len(job.chunks)} to {recipient or 'recipient'}: {e}"
                )
            job.current_index = index + 1

        logger.debug(f"Delivery to {recipient or 'recipient'} finished: {job.sent} sent, {job.failed} failed")
        return job

    def dispatch(
        self,
        recipient: str,
        chunks: list[str],
        send_fn: SendFn,
        profile: Optional[PacingProfile] = None,
        before_chunk: Optional[SendFn] = None,
    ) -> asyncio.Task:
        """Run a delivery as an independent background task."""
        task = asyncio.create_task(self.deliver(
            chunks, send_fn, recipient=recipient, profile=profile, before_chunk=before_chunk,
        ))
        self._jobs.add(task)
        task.add_done_callback(self._jobs.discard)
        return task

    @property
    def active_jobs(self) -> int:
        return len(self._jobs)

    async def drain(self) -> None:
        """Wait for all in-flight deliveries to finish."""
        if not self._jobs:
            return
        logger.info(f"Draining {len(self._jobs)} delivery job(s)")
        results = await asyncio.gather(*list(self._jobs), return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.error(f"Delivery job failed: {result}")
