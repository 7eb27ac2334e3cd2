"""Reply engine contract and HTTP client."""

from sales_gateway.reply.engine import HttpReplyEngine, ReplyEngine

__all__ = ["HttpReplyEngine", "ReplyEngine"]
