"""Persistence: store contract, asyncpg and in-memory stores, migrations."""

from sales_gateway.database.memory import MemoryStore
from sales_gateway.database.store import Store

__all__ = ["MemoryStore", "Store"]
