"""FastAPI dependency injection for the rentals API.

This module builds the adapters and use cases once at startup and hands
the shared instances to endpoints.

Lifecycle Management:
- Backend: chosen once from RENTALS_BACKEND (memory or postgres)
- Database pool: created at startup for the postgres backend, closed at shutdown
- Use cases: one OrderLifecycle, DeviceAllocator and AlertEngine per process,
  so per-order locks and alert dismissals are shared across requests
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

import asyncpg

from ...core.config import RentalsSettings, load_settings
from ...core.database import close_pool, create_pool
from ..adapters import (
    InMemoryDeviceRegistry,
    InMemoryEventBus,
    InMemoryOrderRepository,
    InMemorySatDeskRegistry,
    PostgresDeviceRegistry,
    PostgresOrderRepository,
    PostgresSatDeskRegistry,
    ensure_schema,
)
from ..domain.ports import IDeviceRegistry, IOrderRepository, ISatDeskRegistry
from ..domain.validation import OrderValidator
from ..use_cases import AlertEngine, DeviceAllocator, OrderLifecycle

logger = logging.getLogger(__name__)


@dataclass
class RentalServices:
    """Everything the endpoints need, wired against one backend."""

    settings: RentalsSettings
    device_registry: IDeviceRegistry
    sat_desk_registry: ISatDeskRegistry
    order_repository: IOrderRepository
    events: InMemoryEventBus
    allocator: DeviceAllocator
    lifecycle: OrderLifecycle
    alert_engine: AlertEngine


# ========== Global State ==========

_db_pool: Optional[asyncpg.Pool] = None
_services: Optional[RentalServices] = None


def build_services(
    settings: RentalsSettings,
    device_registry: IDeviceRegistry,
    sat_desk_registry: ISatDeskRegistry,
    order_repository: IOrderRepository,
) -> RentalServices:
    """Wire the use cases on top of a set of adapters."""
    events = InMemoryEventBus()
    allocator = DeviceAllocator(
        device_registry,
        events=events,
        recommended_limit=settings.recommended_device_limit,
        release_max_attempts=settings.release_max_attempts,
        release_initial_delay=settings.release_initial_delay,
    )
    lifecycle = OrderLifecycle(
        order_repository,
        allocator,
        validator=OrderValidator(),
        events=events,
        order_number_prefix=settings.order_number_prefix,
        orphan_grace=timedelta(seconds=settings.orphan_claim_grace_seconds),
    )
    alert_engine = AlertEngine(
        device_registry,
        sat_desk_registry,
        order_repository,
        events=events,
        low_inventory_threshold=settings.low_inventory_threshold,
        pending_orders_warning_count=settings.pending_orders_warning_count,
        expiring_window_days=settings.expiring_window_days,
    )
    return RentalServices(
        settings=settings,
        device_registry=device_registry,
        sat_desk_registry=sat_desk_registry,
        order_repository=order_repository,
        events=events,
        allocator=allocator,
        lifecycle=lifecycle,
        alert_engine=alert_engine,
    )


async def init_services(settings: Optional[RentalsSettings] = None) -> RentalServices:
    """Create adapters for the configured backend and wire the use cases.

    Should be called on application startup.
    """
    global _db_pool, _services

    settings = settings or load_settings()

    if settings.backend == "postgres":
        _db_pool = await create_pool(settings.database_url)
        await ensure_schema(_db_pool)
        device_registry = PostgresDeviceRegistry(_db_pool)
        sat_desk_registry = PostgresSatDeskRegistry(_db_pool)
        order_repository = PostgresOrderRepository(_db_pool)
    else:
        device_registry = InMemoryDeviceRegistry()
        sat_desk_registry = InMemorySatDeskRegistry(device_registry)
        order_repository = InMemoryOrderRepository()

    _services = build_services(settings, device_registry, sat_desk_registry, order_repository)
    logger.info(f"Rental services initialized ({settings.backend} backend)")
    return _services


async def close_services():
    """Drop the shared services and close the database pool.

    Should be called on application shutdown.
    """
    global _db_pool, _services

    _services = None
    if _db_pool is not None:
        await close_pool(_db_pool)
        _db_pool = None


def set_services(services: Optional[RentalServices]) -> None:
    """Install pre-built services (tests, embedding in another app)."""
    global _services
    _services = services


def get_services() -> RentalServices:
    if _services is None:
        raise RuntimeError("Rental services not initialized. Call init_services() first.")
    return _services


# ========== Dependency Functions ==========


def get_lifecycle() -> OrderLifecycle:
    return get_services().lifecycle


def get_allocator() -> DeviceAllocator:
    return get_services().allocator


def get_alert_engine() -> AlertEngine:
    return get_services().alert_engine


def get_device_registry() -> IDeviceRegistry:
    return get_services().device_registry


def get_sat_desk_registry() -> ISatDeskRegistry:
    return get_services().sat_desk_registry
