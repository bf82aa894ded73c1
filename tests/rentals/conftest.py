"""Shared fixtures for rental tests.

Everything runs against the in-memory adapters with a fixed clock so
timestamps and alert day counts are deterministic.
"""

from datetime import datetime, timedelta, timezone

import pytest

from src.satdesk.rentals.adapters import (
    InMemoryDeviceRegistry,
    InMemoryEventBus,
    InMemoryOrderRepository,
    InMemorySatDeskRegistry,
)
from src.satdesk.rentals.domain.entities import (
    CustomerInfo,
    Device,
    EmergencyContact,
    OrderDraft,
    OrderPreferences,
    PresetMessage,
    RentalDetails,
    RentalWindow,
    SatDesk,
)
from src.satdesk.rentals.use_cases import AlertEngine, DeviceAllocator, OrderLifecycle

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def make_device(device_id: str, number: int, sat_desk_id: str = "desk-1", **kwargs) -> Device:
    return Device(
        id=device_id,
        imei=kwargs.pop("imei", f"30043406{number:07d}"),
        device_number=number,
        sat_desk_id=sat_desk_id,
        device_name=f"inReach #{number}",
        **kwargs,
    )


def make_draft(complete: bool = True, days: int = 7, **kwargs) -> OrderDraft:
    start = kwargs.pop("start", NOW + timedelta(days=1))
    if complete:
        preferences = OrderPreferences(
            trip_destination="Denali",
            trip_duration_days=days,
            emergency_contact=EmergencyContact(name="Ana Ruiz", phone="+1 555 0100"),
            preset_messages=[PresetMessage(slot=1, message="All good, camp reached")],
        )
        phone = "+1 555 0199"
    else:
        preferences = OrderPreferences(trip_destination="Denali")
        phone = ""

    return OrderDraft(
        customer_info=CustomerInfo(
            first_name="Lena",
            last_name="Berg",
            email="lena@example.com",
            phone=phone,
        ),
        preferences=preferences,
        rental_details=RentalDetails(start=start, end=start + timedelta(days=days)),
        **kwargs,
    )


def window(start_days: int = 1, length_days: int = 7) -> RentalWindow:
    start = NOW + timedelta(days=start_days)
    return RentalWindow(start=start, end=start + timedelta(days=length_days))


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def device_factory():
    return make_device


@pytest.fixture
def draft_factory():
    return make_draft


@pytest.fixture
def window_factory():
    return window


@pytest.fixture
def device_registry():
    return InMemoryDeviceRegistry(
        [
            make_device("d1", 1),
            make_device("d2", 2),
            make_device("d3", 3),
        ]
    )


@pytest.fixture
def sat_desk_registry(device_registry):
    return InMemorySatDeskRegistry(
        device_registry,
        [SatDesk(id="desk-1", name="SatDesk 1", device_quota=50, number=1)],
    )


@pytest.fixture
def order_repo():
    return InMemoryOrderRepository()


@pytest.fixture
def event_bus():
    return InMemoryEventBus()


@pytest.fixture
def allocator(device_registry, event_bus):
    return DeviceAllocator(
        device_registry,
        events=event_bus,
        release_max_attempts=3,
        release_initial_delay=0.0,
    )


@pytest.fixture
def lifecycle(order_repo, allocator, event_bus):
    return OrderLifecycle(order_repo, allocator, events=event_bus, clock=lambda: NOW)


@pytest.fixture
def alert_engine(device_registry, sat_desk_registry, order_repo):
    return AlertEngine(device_registry, sat_desk_registry, order_repo, clock=lambda: NOW)
