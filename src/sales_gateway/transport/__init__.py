"""Messaging transport: contract, session state machine, supervision."""

from sales_gateway.transport.base import (
    ConnectionUpdate,
    PairingIssued,
    RawMessage,
    Transport,
    TransportFactory,
)
from sales_gateway.transport.session import TransportSession
from sales_gateway.transport.supervisor import ConnectionSupervisor, ReconnectPolicy

__all__ = [
    "ConnectionSupervisor",
    "ConnectionUpdate",
    "PairingIssued",
    "RawMessage",
    "ReconnectPolicy",
    "Transport",
    "TransportFactory",
    "TransportSession",
]
