"""Event fan-out and webhook forwarding."""

from sales_gateway.relay.event_relay import ALL_INSTANCES, EventRelay
from sales_gateway.relay.webhook import WebhookRelay

__all__ = ["ALL_INSTANCES", "EventRelay", "WebhookRelay"]
