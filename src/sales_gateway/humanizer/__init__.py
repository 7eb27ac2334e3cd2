"""Human-like outbound delivery: reply splitting and pacing."""

from sales_gateway.humanizer.chunking import split_reply, split_sentences
from sales_gateway.humanizer.pacer import OutboundDeliveryPacer, PacingProfile

__all__ = ["OutboundDeliveryPacer", "PacingProfile", "split_reply", "split_sentences"]
