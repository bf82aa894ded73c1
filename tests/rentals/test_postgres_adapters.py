#!/usr/bin/env python3
"""Integration tests for the PostgreSQL adapters.

Tests cover:
    - Device round trips through columns and JSONB fields
    - Row-locked claims under concurrency
    - Version-checked order saves
    - An order lifecycle end to end against the database

All test rows use a 'TEST-' prefix and are deleted after each test.

NOTE: Requires a running PostgreSQL instance; the schema is created on demand.
"""
import asyncio
import os
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from dotenv import load_dotenv

# Load environment variables from .env file (for local development)
load_dotenv()

from src.satdesk.core.database import close_pool, create_pool
from src.satdesk.core.exceptions import (
    DeviceUnavailableError,
    DuplicateOrderError,
    IntegrityError,
    StaleStateError,
)
from src.satdesk.rentals.adapters import (
    PostgresDeviceRegistry,
    PostgresOrderRepository,
    PostgresSatDeskRegistry,
    ensure_schema,
)
from src.satdesk.rentals.domain.entities import (
    CleanupStep,
    Device,
    DeviceFilter,
    DeviceStatus,
    DeviceUser,
    OrderStatus,
    RentalOrder,
    RentalWindow,
    SatDesk,
)
from src.satdesk.rentals.use_cases import DeviceAllocator, OrderLifecycle

# Skip all tests if no DB configured
pytestmark = pytest.mark.skipif(
    not os.getenv("DATABASE_URL"),
    reason="DATABASE_URL not set"
)

T0 = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def _window(start_day=1, days=7):
    start = T0 + timedelta(days=start_day)
    return RentalWindow(start=start, end=start + timedelta(days=days))


def _device(n, **kwargs):
    return Device(
        id=f"TEST-d{n}",
        imei=f"TEST-IMEI-{n}",
        device_number=9000 + n,
        sat_desk_id="TEST-desk",
        **kwargs,
    )


# ============================================
# Fixtures
# ============================================

@pytest_asyncio.fixture
async def db_pool():
    """Create a pool, make sure the schema exists and clean up test rows."""
    pool = await create_pool(os.getenv("DATABASE_URL"), min_size=1, max_size=5)
    await ensure_schema(pool)
    yield pool
    async with pool.acquire() as conn:
        await conn.execute("DELETE FROM rental_orders WHERE order_number LIKE 'TEST-%'")
        await conn.execute("DELETE FROM devices WHERE id LIKE 'TEST-%'")
        await conn.execute("DELETE FROM sat_desks WHERE id LIKE 'TEST-%'")
    await close_pool(pool)


@pytest_asyncio.fixture
async def sat_desks(db_pool):
    registry = PostgresSatDeskRegistry(db_pool)
    await registry.add(SatDesk(id="TEST-desk", name="Test Desk", device_quota=10, number=900))
    return registry


@pytest_asyncio.fixture
async def devices(db_pool, sat_desks):
    registry = PostgresDeviceRegistry(db_pool)
    for n in (1, 2, 3):
        await registry.add(_device(n))
    return registry


@pytest.fixture
def orders(db_pool):
    return PostgresOrderRepository(db_pool)


# ============================================
# Device Registry
# ============================================

class TestPostgresDeviceRegistry:
    """Tests for PostgresDeviceRegistry."""

    @pytest.mark.asyncio
    async def test_claim_round_trip(self, devices):
        user = DeviceUser(first_name="Lena", last_name="Berg", phone="+1 555 0199")
        await devices.claim("TEST-d1", _window(), "TEST-order", user=user)

        stored = await devices.get("TEST-d1")

        assert stored.status == DeviceStatus.ACTIVE
        assert stored.rental_window == _window()
        assert stored.current_user.full_name == "Lena Berg"
        assert stored.order_ref == "TEST-order"
        assert stored.version == 1

    @pytest.mark.asyncio
    async def test_concurrent_claims(self, devices):
        results = await asyncio.gather(
            devices.claim("TEST-d1", _window(), "TEST-a"),
            devices.claim("TEST-d1", _window(), "TEST-b"),
            return_exceptions=True,
        )

        failures = [r for r in results if isinstance(r, Exception)]
        assert len(failures) == 1
        assert isinstance(failures[0], DeviceUnavailableError)

    @pytest.mark.asyncio
    async def test_free_during_filter(self, devices):
        await devices.claim("TEST-d1", _window(start_day=1, days=7), "TEST-order")

        overlapping = await devices.find(
            DeviceFilter(sat_desk_id="TEST-desk", free_during=_window(start_day=5, days=2))
        )
        later = await devices.find(
            DeviceFilter(sat_desk_id="TEST-desk", free_during=_window(start_day=20, days=2))
        )

        assert [d.id for d in overlapping] == ["TEST-d2", "TEST-d3"]
        assert [d.id for d in later] == ["TEST-d1", "TEST-d2", "TEST-d3"]

    @pytest.mark.asyncio
    async def test_return_and_cleanup(self, devices):
        await devices.claim("TEST-d1", _window(), "TEST-order")
        await devices.return_device("TEST-d1")
        for step in CleanupStep:
            await devices.mark_cleanup_step("TEST-d1", step)

        stored = await devices.get("TEST-d1")

        assert stored.status == DeviceStatus.ARCHIVED
        assert stored.cleanup_checklist.is_complete
        assert stored.claim_block_reason(_window()) is None

    @pytest.mark.asyncio
    async def test_duplicate_imei(self, devices):
        with pytest.raises(IntegrityError):
            await devices.add(Device(
                id="TEST-d9",
                imei="TEST-IMEI-1",
                device_number=9009,
                sat_desk_id="TEST-desk",
            ))

    @pytest.mark.asyncio
    async def test_device_count(self, devices, sat_desks):
        await devices.set_status("TEST-d3", DeviceStatus.ARCHIVED)

        assert await sat_desks.device_count("TEST-desk") == 2


# ============================================
# Order Repository
# ============================================

class TestPostgresOrderRepository:
    """Tests for PostgresOrderRepository."""

    def _order(self, order_id, order_number, draft_factory):
        draft = draft_factory()
        return RentalOrder(
            id=order_id,
            order_number=order_number,
            customer_info=draft.customer_info,
            preferences=draft.preferences,
            rental_details=draft.rental_details,
            created_at=T0,
        )

    @pytest.mark.asyncio
    async def test_add_and_get(self, orders, draft_factory):
        await orders.add(self._order("TEST-o1", "TEST-2024-001", draft_factory))

        stored = await orders.get("TEST-o1")

        assert stored.order_number == "TEST-2024-001"
        assert stored.preferences.emergency_contact.name == "Ana Ruiz"
        assert stored.version == 0

    @pytest.mark.asyncio
    async def test_duplicate_number(self, orders, draft_factory):
        await orders.add(self._order("TEST-o1", "TEST-2024-001", draft_factory))

        with pytest.raises(DuplicateOrderError):
            await orders.add(self._order("TEST-o2", "TEST-2024-001", draft_factory))

    @pytest.mark.asyncio
    async def test_version_checked_save(self, orders, draft_factory):
        order = await orders.add(self._order("TEST-o1", "TEST-2024-001", draft_factory))
        order.status = OrderStatus.CANCELLED

        saved = await orders.save(order, expected_version=0)
        assert saved.version == 1
        assert [o.id for o in await orders.list(OrderStatus.CANCELLED) if o.id == "TEST-o1"]

        with pytest.raises(StaleStateError):
            await orders.save(order, expected_version=0)

    @pytest.mark.asyncio
    async def test_next_order_number(self, orders, draft_factory):
        await orders.add(self._order("TEST-o1", "TEST-2024-007", draft_factory))

        assert await orders.next_order_number("TEST", 2024) == "TEST-2024-008"


# ============================================
# Lifecycle against PostgreSQL
# ============================================

class TestLifecycleOnPostgres:
    """End-to-end order flow using the PostgreSQL adapters."""

    @pytest.mark.asyncio
    async def test_assign_and_cancel(self, devices, orders, draft_factory):
        allocator = DeviceAllocator(devices, release_initial_delay=0.0)
        lifecycle = OrderLifecycle(orders, allocator, order_number_prefix="TEST")

        order = await lifecycle.create(draft_factory())
        assigned = await lifecycle.assign_device(order.id, "TEST-d2", "TEST-IMEI-2")
        assert assigned.status == OrderStatus.PROCESSING

        cancelled = await lifecycle.cancel(order.id, reason="test run")

        assert cancelled.status == OrderStatus.CANCELLED
        assert cancelled.pending_release_device_ids == []
        assert (await devices.get("TEST-d2")).status == DeviceStatus.AVAILABLE
