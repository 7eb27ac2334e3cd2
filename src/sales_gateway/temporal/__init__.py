"""Inbound message batching."""

from sales_gateway.temporal.message_buffer import (
    BufferedFragment,
    FlushHandler,
    InboundDebounceBuffer,
)

__all__ = ["BufferedFragment", "FlushHandler", "InboundDebounceBuffer"]
