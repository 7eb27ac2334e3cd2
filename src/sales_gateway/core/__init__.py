"""Core models, errors, configuration and the gateway daemon."""

from sales_gateway.core.errors import (
    GatewayError,
    InstanceExistsError,
    InstanceNotConnectedError,
    InstanceNotFoundError,
    NoConnectedInstanceError,
    ReplyEngineError,
    TransportError,
)
from sales_gateway.core.models import (
    ConnectionState,
    Conversation,
    GatewayConfig,
    Instance,
    InstanceStatus,
    MessageKind,
    StoredMessage,
    TenantSettings,
)

__all__ = [
    "ConnectionState",
    "Conversation",
    "GatewayConfig",
    "GatewayError",
    "Instance",
    "InstanceExistsError",
    "InstanceNotConnectedError",
    "InstanceNotFoundError",
    "InstanceStatus",
    "MessageKind",
    "NoConnectedInstanceError",
    "ReplyEngineError",
    "StoredMessage",
    "TenantSettings",
    "TransportError",
]
