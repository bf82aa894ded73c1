"""Adapters implementing the rental ports.

In-memory adapters back development and tests; PostgreSQL adapters back
deployments. One set is chosen at startup (see api.dependencies).
"""

from .event_bus import InMemoryEventBus
from .memory_device_registry import InMemoryDeviceRegistry
from .memory_order_repo import InMemoryOrderRepository
from .memory_satdesk_registry import InMemorySatDeskRegistry
from .postgres_device_registry import PostgresDeviceRegistry
from .postgres_order_repo import PostgresOrderRepository
from .postgres_satdesk_registry import PostgresSatDeskRegistry
from .postgres_schema import SCHEMA_SQL, ensure_schema

__all__ = [
    "InMemoryEventBus",
    "InMemoryDeviceRegistry",
    "InMemoryOrderRepository",
    "InMemorySatDeskRegistry",
    "PostgresDeviceRegistry",
    "PostgresOrderRepository",
    "PostgresSatDeskRegistry",
    "SCHEMA_SQL",
    "ensure_schema",
]
