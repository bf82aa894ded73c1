"""Tests for the in-memory adapters."""

import pytest

from src.satdesk.core.exceptions import (
    DeviceUnavailableError,
    DuplicateOrderError,
    IntegrityError,
    NotFoundError,
    StaleStateError,
)
from src.satdesk.rentals.adapters import (
    InMemoryDeviceRegistry,
    InMemoryEventBus,
    InMemoryOrderRepository,
    InMemorySatDeskRegistry,
)
from src.satdesk.rentals.domain.entities import (
    DeviceStatus,
    DomainEvent,
    OrderStatus,
    RentalOrder,
    SatDesk,
)


@pytest.fixture
def order_factory(draft_factory):
    def _build(order_id, order_number, **kwargs):
        draft = draft_factory()
        return RentalOrder(
            id=order_id,
            order_number=order_number,
            customer_info=draft.customer_info,
            preferences=draft.preferences,
            rental_details=draft.rental_details,
            **kwargs,
        )

    return _build


class TestInMemoryDeviceRegistry:
    """Tests for InMemoryDeviceRegistry."""

    def test_rejects_duplicate_imei(self, device_factory):
        with pytest.raises(IntegrityError):
            InMemoryDeviceRegistry(
                [device_factory("a", 1, imei="1"), device_factory("b", 2, imei="1")]
            )

    @pytest.mark.asyncio
    async def test_rejects_duplicate_id(self, device_registry, device_factory):
        with pytest.raises(IntegrityError):
            await device_registry.add(device_factory("d1", 99))

    @pytest.mark.asyncio
    async def test_reads_are_copies(self, device_registry):
        device = await device_registry.get("d1")
        device.status = DeviceStatus.MAINTENANCE

        assert (await device_registry.get("d1")).status == DeviceStatus.AVAILABLE

    @pytest.mark.asyncio
    async def test_list_sorted_by_number(self, device_factory):
        registry = InMemoryDeviceRegistry(
            [device_factory("c", 3), device_factory("a", 1), device_factory("b", 2)]
        )

        assert [d.id for d in await registry.list_all()] == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_claim_checks_expected_version(self, device_registry, window_factory):
        with pytest.raises(StaleStateError):
            await device_registry.claim("d1", window_factory(), "order-1", expected_version=5)

        claimed = await device_registry.claim(
            "d1", window_factory(), "order-1", expected_version=0
        )
        assert claimed.version == 1

    @pytest.mark.asyncio
    async def test_claim_unknown_device(self, device_registry, window_factory):
        with pytest.raises(NotFoundError):
            await device_registry.claim("ghost", window_factory(), "order-1")

    @pytest.mark.asyncio
    async def test_return_and_release(self, device_registry, window_factory):
        await device_registry.claim("d1", window_factory(), "order-1")

        returned = await device_registry.return_device("d1")
        assert returned.status == DeviceStatus.ARCHIVED

        with pytest.raises(DeviceUnavailableError):
            await device_registry.return_device("d1")


class TestInMemorySatDeskRegistry:
    """Tests for InMemorySatDeskRegistry."""

    @pytest.mark.asyncio
    async def test_device_count_skips_archived(self, device_factory):
        devices = InMemoryDeviceRegistry(
            [
                device_factory("a", 1),
                device_factory("b", 2, status=DeviceStatus.ARCHIVED),
                device_factory("c", 3, status=DeviceStatus.MAINTENANCE),
                device_factory("d", 4, sat_desk_id="desk-2"),
            ]
        )
        registry = InMemorySatDeskRegistry(devices)

        assert await registry.device_count("desk-1") == 2
        assert await registry.device_count("desk-2") == 1

    @pytest.mark.asyncio
    async def test_add_and_list(self, sat_desk_registry):
        await sat_desk_registry.add(SatDesk(id="desk-0", name="First", device_quota=5, number=0))

        assert [s.id for s in await sat_desk_registry.list()] == ["desk-0", "desk-1"]

        with pytest.raises(IntegrityError):
            await sat_desk_registry.add(SatDesk(id="desk-0", name="Again", device_quota=5))


class TestInMemoryOrderRepository:
    """Tests for InMemoryOrderRepository."""

    @pytest.mark.asyncio
    async def test_duplicate_order_number(self, order_factory):
        repo = InMemoryOrderRepository()
        await repo.add(order_factory("o1", "MAG-2024-001"))

        with pytest.raises(DuplicateOrderError):
            await repo.add(order_factory("o2", "MAG-2024-001"))

    @pytest.mark.asyncio
    async def test_save_bumps_version(self, order_factory):
        repo = InMemoryOrderRepository()
        order = await repo.add(order_factory("o1", "MAG-2024-001"))

        order.notes = "called"
        saved = await repo.save(order, expected_version=0)

        assert saved.version == 1
        assert (await repo.get("o1")).notes == "called"

    @pytest.mark.asyncio
    async def test_save_rejects_stale_version(self, order_factory):
        repo = InMemoryOrderRepository()
        order = await repo.add(order_factory("o1", "MAG-2024-001"))
        await repo.save(order, expected_version=0)

        with pytest.raises(StaleStateError) as exc_info:
            await repo.save(order, expected_version=0)

        assert exc_info.value.actual_version == 1

    @pytest.mark.asyncio
    async def test_save_unknown_order(self, order_factory):
        with pytest.raises(NotFoundError):
            await InMemoryOrderRepository().save(order_factory("o1", "X"), expected_version=0)

    @pytest.mark.asyncio
    async def test_next_order_number(self, order_factory):
        repo = InMemoryOrderRepository()
        assert await repo.next_order_number("MAG", 2024) == "MAG-2024-001"

        await repo.add(order_factory("o1", "MAG-2024-009"))
        await repo.add(order_factory("o2", "MAG-2023-050"))
        await repo.add(order_factory("o3", "CUSTOM-7"))

        assert await repo.next_order_number("MAG", 2024) == "MAG-2024-010"

    @pytest.mark.asyncio
    async def test_list_by_status(self, order_factory):
        repo = InMemoryOrderRepository()
        await repo.add(order_factory("o1", "A"))
        await repo.add(order_factory("o2", "B", status=OrderStatus.CANCELLED))

        assert [o.id for o in await repo.list(status=OrderStatus.PENDING)] == ["o1"]
        assert len(await repo.list()) == 2
        assert (await repo.get_by_number("B")).id == "o2"


class TestInMemoryEventBus:
    """Tests for InMemoryEventBus."""

    @pytest.mark.asyncio
    async def test_handlers_receive_events(self):
        bus = InMemoryEventBus()
        seen = []

        async def on_created(event):
            seen.append(("created", event.payload["order_id"]))

        async def on_any(event):
            seen.append(("any", event.name))

        bus.subscribe("order.created", on_created)
        bus.subscribe("*", on_any)

        await bus.publish(DomainEvent(name="order.created", payload={"order_id": "o1"}))
        await bus.publish(DomainEvent(name="order.cancelled", payload={"order_id": "o1"}))

        assert seen == [
            ("created", "o1"),
            ("any", "order.created"),
            ("any", "order.cancelled"),
        ]

    @pytest.mark.asyncio
    async def test_failing_handler_is_isolated(self):
        bus = InMemoryEventBus()
        seen = []

        async def broken(event):
            raise RuntimeError("boom")

        async def working(event):
            seen.append(event.name)

        bus.subscribe("x", broken)
        bus.subscribe("x", working)

        await bus.publish(DomainEvent(name="x"))

        assert seen == ["x"]
        assert bus.names() == ["x"]

    @pytest.mark.asyncio
    async def test_history_is_bounded(self):
        bus = InMemoryEventBus(history_size=3)
        for n in range(5):
            await bus.publish(DomainEvent(name=f"e{n}"))

        assert bus.names() == ["e2", "e3", "e4"]

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        bus = InMemoryEventBus()
        seen = []

        async def handler(event):
            seen.append(event.name)

        bus.subscribe("x", handler)
        bus.unsubscribe("x", handler)
        await bus.publish(DomainEvent(name="x"))

        assert seen == []
