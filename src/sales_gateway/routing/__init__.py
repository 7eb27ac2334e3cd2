"""Tenant to instance routing."""

from sales_gateway.routing.resolver import InstanceResolver

__all__ = ["InstanceResolver"]
