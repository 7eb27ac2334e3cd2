"""
Inbound Debounce Buffer - consolidates bursts of fragments into one turn.

People rarely type a whole thought into one message. This module collects
the fragments a counterparty sends in quick succession and hands them
downstream as a single newline-joined turn once they go quiet.

The debounce pattern works as follows:
1. When a fragment arrives, it's appended to the conversation's buffer
2. Any pending timer is cancelled and a new quiet-window timer is started
3. When the timer expires, the fragments are joined and flushed to the handler
4. At most one flush runs per key; a timer that fires mid-flush is deferred
   and re-armed once the running flush completes
5. Optional safety limits (max fragments, max wait) force an early flush
"""

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class BufferedFragment(BaseModel):
    """Single buffered inbound fragment."""
    text: str
    received_at: datetime = Field(default_factory=datetime.now)


# async def handler(conversation_key: str, text: str) -> None
FlushHandler = Callable[[str, str], Awaitable[None]]


class InboundDebounceBuffer:
    """
    Per-conversation debounce buffer.

    Fragments accumulate in memory keyed by conversation. `add_fragment` never
    blocks: it only records the fragment and (re)schedules the flush timer.

    Example:
        async def handle_turn(key: str, text: str) -> None:
            print(f"{key}: {text!r}")

        buffer = InboundDebounceBuffer(handle_turn, default_window=5.0)
        buffer.add_fragment("conv-1", "Hola")
        buffer.add_fragment("conv-1", "como estas")
        # ~5s later: handle_turn("conv-1", "Hola\\ncomo estas")
    """

    def __init__(
        self,
        flush_handler: FlushHandler,
        default_window: float = 5.0,
        max_fragments: Optional[int] = None,
        max_wait_seconds: Optional[float] = None,
    ):
        """
        Args:
            flush_handler: Async callable receiving (conversation_key, joined_text).
            default_window: Quiet window in seconds when add_fragment gets no override.
            max_fragments: Force a flush once a buffer holds this many fragments.
            max_wait_seconds: Force a flush once the first fragment is this old.
        """
        if default_window < 0:
            raise ValueError("Window must be non-negative")
        self._flush_handler = flush_handler
        self._default_window = default_window
        self._max_fragments = max_fragments
        self._max_wait_seconds = max_wait_seconds

        self._buffers: dict[str, list[BufferedFragment]] = {}
        self._timers: dict[str, asyncio.Task] = {}
        self._first_fragment_time: dict[str, datetime] = {}
        self._generations: dict[str, int] = {}  # Invalidates timers superseded by a newer fragment
        self._flushing: set[str] = set()
        self._deferred: set[str] = set()  # Timer fired while a flush for the key was running

        logger.debug(
            f"InboundDebounceBuffer initialized: window={default_window}s, "
            f"max_fragments={max_fragments}, max_wait_seconds={max_wait_seconds}"
        )

    def add_fragment(self, key: str, text: str, window_seconds: Optional[float] = None) -> None:
        """
        Append a fragment and restart the key's quiet-window timer.

        Must be called from within the running event loop. Returns immediately.

        Args:
            key: Conversation key.
            text: Fragment text.
            window_seconds: Per-call quiet window override (tenant setting).
        """
        if key not in self._buffers:
            self._buffers[key] = []
            self._first_fragment_time[key] = datetime.now()
            logger.debug(f"Created new buffer for {key}")

        self._buffers[key].append(BufferedFragment(text=text))
        self._generations[key] = self._generations.get(key, 0) + 1

        logger.debug(f"Buffered fragment for {key}, buffer size: {len(self._buffers[key])}")

        self._cancel_timer(key)

        window = self._default_window if window_seconds is None else window_seconds
        if self._limit_reached(key):
            window = 0.0
        self._start_timer(key, window)

    def _limit_reached(self, key: str) -> bool:
        size = len(self._buffers.get(key, []))
        if self._max_fragments is not None and size >= self._max_fragments:
            logger.info(f"Buffer for {key} reached max size ({size}), forcing flush")
            return True

        first = self._first_fragment_time.get(key)
        if self._max_wait_seconds is not None and first:
            elapsed = (datetime.now() - first).total_seconds()
            if elapsed >= self._max_wait_seconds:
                logger.info(
                    f"Buffer for {key} exceeded max wait time "
                    f"({elapsed:.1f}s >= {self._max_wait_seconds}s), forcing flush"
                )
                return True
        return False

    def _start_timer(self, key: str, delay: float) -> None:
        current_gen = self._generations.get(key, 0)

        async def timer_task():
            try:
                await asyncio.sleep(delay)
                if self._generations.get(key, 0) != current_gen:
                    logger.debug(f"Timer for {key} is stale (gen {current_gen}), skipping flush")
                    return
                # Detach before flushing so a fragment arriving mid-flush
                # cannot cancel the flush itself
                if self._timers.get(key) is asyncio.current_task():
                    del self._timers[key]
                if key in self._flushing:
                    logger.debug(f"Flush already running for {key}, deferring")
                    self._deferred.add(key)
                    return
                await self._flush(key)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in flush timer for {key}: {e}", exc_info=True)

        self._timers[key] = asyncio.create_task(timer_task())

    def _cancel_timer(self, key: str) -> None:
        timer = self._timers.pop(key, None)
        if timer and not timer.done():
            timer.cancel()

    async def _flush(self, key: str) -> None:
        """Join the buffered fragments in arrival order and call the handler."""
        fragments = self._buffers.pop(key, [])
        self._first_fragment_time.pop(key, None)
        if not fragments:
            logger.debug(f"No fragments to flush for {key}")
            return

        self._flushing.add(key)
        text = "\n".join(f.text for f in fragments)
        logger.info(f"Flushing buffer for {key}: {len(fragments)} fragment(s)")
        try:
            await self._flush_handler(key, text)
        finally:
            self._flushing.discard(key)
            if key in self._deferred:
                self._deferred.discard(key)
                if self._buffers.get(key) and key not in self._timers:
                    self._start_timer(key, 0.0)

    def has_pending(self, key: str) -> bool:
        """True if the key has fragments waiting for a flush."""
        return bool(self._buffers.get(key))

    def is_flushing(self, key: str) -> bool:
        return key in self._flushing

    def pending_keys(self) -> list[str]:
        """All keys with non-empty buffers (used on shutdown)."""
        return [key for key, fragments in self._buffers.items() if fragments]

    def buffered_fragments(self, key: str) -> list[str]:
        """Copy of the buffered fragment texts, without flushing."""
        return [f.text for f in self._buffers.get(key, [])]

    def clear(self, key: str) -> list[str]:
        """
        Drop a key's buffer and timer without calling the handler.

        Returns:
            The texts that were buffered.
        """
        fragments = self._buffers.pop(key, [])
        self._first_fragment_time.pop(key, None)
        self._generations.pop(key, None)
        self._deferred.discard(key)
        self._cancel_timer(key)
        logger.debug(f"Buffer cleared for {key}: {len(fragments)} fragment(s)")
        return [f.text for f in fragments]

    async def flush_all(self) -> None:
        """Flush every pending buffer now. Used for graceful shutdown."""
        keys = self.pending_keys()
        logger.info(f"Flushing all buffers: {len(keys)} conversation(s)")

        for key in keys:
            self._cancel_timer(key)
            if key in self._flushing:
                self._deferred.add(key)
                continue
            try:
                await self._flush(key)
            except Exception as e:
                logger.error(f"Error flushing buffer for {key} during flush_all: {e}")

    async def cancel_all(self) -> None:
        """Cancel all pending timers without flushing."""
        timers = list(self._timers.values())
        logger.info(f"Cancelling all timers: {len(timers)} timer(s)")
        self._timers.clear()
        for timer in timers:
            timer.cancel()
        await asyncio.gather(*timers, return_exceptions=True)

    @property
    def default_window(self) -> float:
        return self._default_window

    def __repr__(self) -> str:
        return (
            f"InboundDebounceBuffer(window={self._default_window}, "
            f"active_buffers={len(self.pending_keys())}, "
            f"active_timers={len(self._timers)}, "
            f"flushing={len(self._flushing)})"
        )
