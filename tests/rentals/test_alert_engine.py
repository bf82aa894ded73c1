"""Tests for alert derivation and the AlertEngine."""

from datetime import timedelta

import pytest

from src.satdesk.rentals.adapters import (
    InMemoryDeviceRegistry,
    InMemoryEventBus,
    InMemoryOrderRepository,
    InMemorySatDeskRegistry,
)
from src.satdesk.rentals.domain.entities import (
    AlertSeverity,
    AlertType,
    CleanupStep,
    DeviceLocation,
    DeviceStatus,
    OrderStatus,
    RentalOrder,
    RentalWindow,
    SatDesk,
)
from src.satdesk.rentals.use_cases import AlertEngine, compute_alerts, days_until_due

DESK = SatDesk(id="desk-1", name="SatDesk 1", device_quota=50, number=1)


@pytest.fixture
def rented_device(device_factory, now):
    """Build a device out on rental that is due back ``due_in`` from now."""

    def _build(device_id, number, due_in, **kwargs):
        end = now + due_in
        return device_factory(
            device_id,
            number,
            status=DeviceStatus.ACTIVE,
            location=DeviceLocation.OUT,
            rental_window=RentalWindow(start=end - timedelta(days=7), end=end),
            order_ref=f"order-{device_id}",
            **kwargs,
        )

    return _build


@pytest.fixture
def order_factory(draft_factory):
    def _build(order_id, status=OrderStatus.PENDING):
        draft = draft_factory()
        return RentalOrder(
            id=order_id,
            order_number=f"MAG-2024-{order_id}",
            customer_info=draft.customer_info,
            preferences=draft.preferences,
            rental_details=draft.rental_details,
            status=status,
        )

    return _build


def _stock(device_factory, count, start=100):
    return [device_factory(f"stock-{n}", n) for n in range(start, start + count)]


def _by_id(alerts):
    return {a.id: a for a in alerts}


class TestDaysUntilDue:
    """Tests for the day arithmetic."""

    def test_rounds_partial_days_up(self, now):
        assert days_until_due(now + timedelta(hours=2), now) == 1
        assert days_until_due(now + timedelta(days=1), now) == 1
        assert days_until_due(now + timedelta(days=1, minutes=1), now) == 2

    def test_same_day_is_zero(self, now):
        assert days_until_due(now, now) == 0
        assert days_until_due(now - timedelta(hours=3), now) == 0

    def test_overdue_is_negative(self, now):
        assert days_until_due(now - timedelta(days=2), now) == -2


class TestRentalAlerts:
    """Tests for overdue and expiring rental alerts."""

    def test_due_tomorrow_is_warning(self, now, rented_device, device_factory):
        devices = [rented_device("d1", 1, timedelta(days=1))] + _stock(device_factory, 3)

        alert = _by_id(compute_alerts(now, devices, [DESK], []))["expiring-1day-d1"]

        assert alert.type == AlertType.RENTAL_EXPIRING
        assert alert.severity == AlertSeverity.WARNING
        assert alert.days_until_due == 1
        assert alert.order_id == "order-d1"

    def test_overdue_is_critical(self, now, rented_device, device_factory):
        devices = [rented_device("d1", 1, -timedelta(days=2))] + _stock(device_factory, 3)

        alert = _by_id(compute_alerts(now, devices, [DESK], []))["overdue-d1"]

        assert alert.type == AlertType.RENTAL_OVERDUE
        assert alert.severity == AlertSeverity.CRITICAL
        assert alert.days_until_due == -2
        assert "2 days overdue" in alert.message

    def test_due_later_today_is_info(self, now, rented_device, device_factory):
        # Zero days left is reported in the due-soon bucket, not as due tomorrow
        devices = [rented_device("d1", 1, -timedelta(hours=2))] + _stock(device_factory, 3)

        alerts = _by_id(compute_alerts(now, devices, [DESK], []))

        assert "overdue-d1" not in alerts
        alert = alerts["expiring-3days-d1"]
        assert alert.severity == AlertSeverity.INFO
        assert alert.days_until_due == 0

    def test_due_in_three_days_is_info(self, now, rented_device, device_factory):
        devices = [rented_device("d1", 1, timedelta(days=3))] + _stock(device_factory, 3)

        alert = _by_id(compute_alerts(now, devices, [DESK], []))["expiring-3days-d1"]

        assert alert.severity == AlertSeverity.INFO
        assert alert.days_until_due == 3

    def test_far_future_rental_is_quiet(self, now, rented_device, device_factory):
        devices = [rented_device("d1", 1, timedelta(days=4))] + _stock(device_factory, 3)

        assert compute_alerts(now, devices, [DESK], []) == []

    def test_inconsistent_devices_are_ignored(self, now, device_factory):
        past = RentalWindow(start=now - timedelta(days=9), end=now - timedelta(days=2))
        devices = [
            # Active but no rental window recorded
            device_factory("no-window", 1, status=DeviceStatus.ACTIVE, location=DeviceLocation.OUT),
            # Active but already back in stock
            device_factory("in-stock", 2, status=DeviceStatus.ACTIVE, rental_window=past),
            # Not active at all
            device_factory("available", 3, rental_window=past),
        ] + _stock(device_factory, 3)

        alerts = compute_alerts(now, devices, [DESK], [])

        assert [a for a in alerts if a.device_id] == []


class TestInventoryAlerts:
    """Tests for low-stock and quota alerts."""

    def test_low_stock_against_large_quota(self, now, rented_device, device_factory):
        devices = [
            rented_device(f"out-{n}", n, timedelta(days=30)) for n in range(1, 47)
        ] + _stock(device_factory, 2)

        alert = _by_id(compute_alerts(now, devices, [DESK], []))["low-inventory-desk-1"]

        assert alert.type == AlertType.LOW_INVENTORY
        assert alert.severity == AlertSeverity.WARNING
        assert alert.count == 2
        assert alert.sat_desk_id == "desk-1"

    def test_empty_stock_is_critical(self, now):
        alert = _by_id(compute_alerts(now, [], [DESK], []))["low-inventory-desk-1"]

        assert alert.severity == AlertSeverity.CRITICAL
        assert alert.count == 0

    def test_archived_devices_are_not_stock(self, now, device_factory):
        devices = [
            device_factory(f"old-{n}", n, status=DeviceStatus.ARCHIVED) for n in range(1, 6)
        ] + _stock(device_factory, 1)

        alert = _by_id(compute_alerts(now, devices, [DESK], []))["low-inventory-desk-1"]

        assert alert.count == 1

    def test_threshold_is_exclusive(self, now, device_factory):
        alerts = compute_alerts(now, _stock(device_factory, 3), [DESK], [])
        assert "low-inventory-desk-1" not in _by_id(alerts)

    def test_inactive_sat_desk_is_skipped(self, now):
        closed = SatDesk(id="desk-9", name="Closed", device_quota=10, is_active=False)
        assert compute_alerts(now, [], [closed], []) == []

    def test_over_quota(self, now, device_factory):
        small = SatDesk(id="desk-1", name="Small Desk", device_quota=2)

        alert = _by_id(compute_alerts(now, _stock(device_factory, 4), [small], []))[
            "over-quota-desk-1"
        ]

        assert alert.severity == AlertSeverity.WARNING
        assert alert.count == 4


class TestPendingOrderAlerts:
    """Tests for the pending backlog alert."""

    def test_small_backlog_is_info(self, now, device_factory, order_factory):
        orders = [order_factory(str(n)) for n in range(2)]
        orders.append(order_factory("x", status=OrderStatus.PROCESSING))

        alert = _by_id(compute_alerts(now, _stock(device_factory, 3), [DESK], orders))[
            "pending-orders"
        ]

        assert alert.severity == AlertSeverity.INFO
        assert alert.count == 2

    def test_large_backlog_is_warning(self, now, device_factory, order_factory):
        orders = [order_factory(str(n)) for n in range(6)]

        alert = _by_id(compute_alerts(now, _stock(device_factory, 3), [DESK], orders))[
            "pending-orders"
        ]

        assert alert.severity == AlertSeverity.WARNING
        assert alert.count == 6

    def test_threshold_backlog_is_info(self, now, device_factory, order_factory):
        orders = [order_factory(str(n)) for n in range(5)]

        alert = _by_id(compute_alerts(now, _stock(device_factory, 3), [DESK], orders))[
            "pending-orders"
        ]

        assert alert.severity == AlertSeverity.INFO


class TestOrdering:
    """Tests for deterministic output."""

    def test_sorted_by_severity_then_days(self, now, rented_device, device_factory, order_factory):
        devices = [
            rented_device("soon", 1, timedelta(days=2)),
            rented_device("tomorrow", 2, timedelta(days=1)),
            rented_device("late", 3, -timedelta(days=1)),
            rented_device("very-late", 4, -timedelta(days=5)),
        ] + _stock(device_factory, 3)
        orders = [order_factory("1")]

        alerts = compute_alerts(now, devices, [DESK], orders)

        assert [a.id for a in alerts] == [
            "overdue-very-late",
            "overdue-late",
            "expiring-1day-tomorrow",
            "expiring-3days-soon",
            "pending-orders",
        ]

    def test_same_snapshot_same_alerts(self, now, rented_device, device_factory):
        devices = [rented_device("d1", 1, timedelta(days=1))] + _stock(device_factory, 1)

        first = compute_alerts(now, devices, [DESK], [])
        second = compute_alerts(now, devices, [DESK], [])

        assert [a.to_dict() for a in first] == [a.to_dict() for a in second]


class TestAlertEngine:
    """Tests for scans, dismissals and first-seen tracking."""

    @pytest.fixture
    def engine_parts(self, rented_device, device_factory):
        devices = InMemoryDeviceRegistry(
            [rented_device("d1", 1, -timedelta(days=1))] + _stock(device_factory, 3)
        )
        desks = InMemorySatDeskRegistry(devices, [DESK])
        return devices, desks, InMemoryOrderRepository()

    @pytest.mark.asyncio
    async def test_scan_and_dismiss(self, engine_parts, now):
        engine = AlertEngine(*engine_parts, clock=lambda: now)

        alerts = await engine.scan()
        assert [a.id for a in alerts] == ["overdue-d1"]
        assert engine.last_scan_at == now

        assert engine.dismiss("overdue-d1") is True
        assert engine.active_alerts() == []
        assert len(engine.alerts()) == 1

    @pytest.mark.asyncio
    async def test_dismissal_survives_rescan(self, engine_parts, now):
        engine = AlertEngine(*engine_parts, clock=lambda: now)
        await engine.scan()
        engine.dismiss("overdue-d1")

        alerts = await engine.scan(now + timedelta(hours=1))

        assert alerts[0].dismissed is True
        assert alerts[0].created_at == now

    @pytest.mark.asyncio
    async def test_cleared_condition_forgets_dismissal(self, engine_parts, now):
        devices, desks, orders = engine_parts
        engine = AlertEngine(devices, desks, orders, clock=lambda: now)
        await engine.scan()
        engine.dismiss("overdue-d1")

        await devices.return_device("d1")
        assert await engine.scan() == []

        # The same device overdue again raises a fresh, undismissed alert
        for step in CleanupStep:
            await devices.mark_cleanup_step("d1", step)
        late = RentalWindow(start=now - timedelta(days=5), end=now - timedelta(days=1))
        await devices.claim("d1", late, "order-2")

        alerts = await engine.scan(now + timedelta(hours=1))

        assert [a.id for a in alerts] == ["overdue-d1"]
        assert alerts[0].dismissed is False
        assert alerts[0].created_at == now + timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_unknown_alert_dismissal(self, engine_parts, now):
        engine = AlertEngine(*engine_parts, clock=lambda: now)
        await engine.scan()

        assert engine.dismiss("overdue-nope") is False

    @pytest.mark.asyncio
    async def test_dismiss_all(self, engine_parts, draft_factory, now):
        devices, desks, orders = engine_parts
        engine = AlertEngine(devices, desks, orders, clock=lambda: now)
        order = RentalOrder(
            id="o1",
            order_number="MAG-2024-001",
            customer_info=draft_factory().customer_info,
            preferences=draft_factory().preferences,
            rental_details=draft_factory().rental_details,
        )
        await orders.add(order)
        await engine.scan()

        assert engine.dismiss_all() == 2
        assert engine.dismiss_all() == 0
        assert engine.active_alerts() == []

    @pytest.mark.asyncio
    async def test_scan_publishes_event(self, engine_parts, now):
        events = InMemoryEventBus()
        engine = AlertEngine(*engine_parts, events=events, clock=lambda: now)

        await engine.scan()

        assert events.names() == ["alerts.updated"]
        assert events.events[0].payload == {"total": 1, "active": 1}
