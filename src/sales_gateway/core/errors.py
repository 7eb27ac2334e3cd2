"""
Exception types raised by the gateway.

Transient transport failures never show up here - they are absorbed by the
reconnect loop. These are the failures a caller has to decide about.
"""
from typing import Optional


class GatewayError(Exception):
    """Base class for all gateway errors."""


class InstanceExistsError(GatewayError):
    """A live session with this instance name is already registered."""

    def __init__(self, instance_name: str):
        self.instance_name = instance_name
        super().__init__(f"Instance '{instance_name}' already exists")


class InstanceNotFoundError(GatewayError):
    """No session or stored record for this instance name."""

    def __init__(self, instance_name: str):
        self.instance_name = instance_name
        super().__init__(f"Instance '{instance_name}' not found")


class InstanceNotConnectedError(GatewayError):
    """The instance exists but is not CONNECTED, so it cannot send."""

    def __init__(self, instance_name: str, state: Optional[str] = None):
        self.instance_name = instance_name
        self.state = state
        detail = f" (state: {state})" if state else ""
        super().__init__(f"Instance '{instance_name}' is not connected{detail}")


class NoConnectedInstanceError(GatewayError):
    """The tenant has no CONNECTED instance to route through."""

    def __init__(self, tenant_id: str):
        self.tenant_id = tenant_id
        super().__init__(f"No connected instance available for tenant '{tenant_id}'")


class ReplyEngineError(GatewayError):
    """The reply engine failed or returned an unusable response."""


class TransportError(GatewayError):
    """A transport operation failed (send, download, logout)."""
