"""Port interfaces for the rental engine.

These are abstract interfaces (ports) that define how the use cases
interact with storage and notification systems. Concrete implementations
(adapters) are provided in the adapters module: an in-memory set for
development and tests, and a PostgreSQL set for deployments. One set is
selected once at construction.

This follows the Hexagonal Architecture pattern.
"""

from abc import ABC, abstractmethod
from typing import Optional

from .entities import (
    CleanupStep,
    Device,
    DeviceFilter,
    DeviceStatus,
    DeviceUser,
    DomainEvent,
    OrderStatus,
    RentalOrder,
    RentalWindow,
    SatDesk,
)


class IDeviceRegistry(ABC):
    """Port for device records.

    ``claim`` is the one critical section of the engine: the status check
    and the write must be indivisible with respect to other claims on the
    same device.
    """

    @abstractmethod
    async def get(self, device_id: str) -> Optional[Device]:
        """Get a device by id, or None."""
        ...

    @abstractmethod
    async def find(self, device_filter: DeviceFilter) -> list[Device]:
        """Find devices matching a filter.

        Args:
            device_filter: Status, SatDesk, location and window constraints

        Returns:
            Matching devices, ordered by device number
        """
        ...

    @abstractmethod
    async def list_all(self) -> list[Device]:
        """Snapshot of every device, archived ones included."""
        ...

    @abstractmethod
    async def add(self, device: Device) -> Device:
        """Register a new device at intake.

        Raises:
            IntegrityError: If the id or IMEI is already registered
        """
        ...

    @abstractmethod
    async def claim(
        self,
        device_id: str,
        window: RentalWindow,
        order_ref: str,
        user: Optional[DeviceUser] = None,
        expected_version: Optional[int] = None,
    ) -> Device:
        """Atomically link a device to an order (compare-and-swap).

        Args:
            device_id: Device to claim
            window: Rental window to stamp
            order_ref: Id of the order taking the claim
            user: Customer profile to attach
            expected_version: Optional optimistic version check

        Returns:
            The claimed device

        Raises:
            NotFoundError: If the device does not exist
            DeviceUnavailableError: If the device is claimed, busy or gated
            StaleStateError: If expected_version does not match
        """
        ...

    @abstractmethod
    async def release(self, device_id: str) -> Device:
        """Return a claimed device to available with no window.

        Idempotent: releasing an available device is a no-op.
        """
        ...

    @abstractmethod
    async def return_device(self, device_id: str) -> Device:
        """Record a device coming back from the field (archived, needs cleanup)."""
        ...

    @abstractmethod
    async def set_status(self, device_id: str, status: DeviceStatus) -> Device:
        """Administrative status change (available, maintenance, archived).

        Raises:
            DeviceUnavailableError: If the device holds a claim or the
                cleanup checklist blocks a return to available
            ValueError: If status is one that only a claim may set
        """
        ...

    @abstractmethod
    async def mark_cleanup_step(
        self,
        device_id: str,
        step: CleanupStep,
        done: bool = True,
    ) -> Device:
        """Record progress on a device's cleanup checklist."""
        ...


class ISatDeskRegistry(ABC):
    """Port for SatDesk operator accounts."""

    @abstractmethod
    async def list(self) -> list[SatDesk]:
        """All SatDesks, active or not."""
        ...

    @abstractmethod
    async def get(self, sat_desk_id: str) -> Optional[SatDesk]:
        ...

    @abstractmethod
    async def add(self, sat_desk: SatDesk) -> SatDesk:
        ...

    @abstractmethod
    async def device_count(self, sat_desk_id: str) -> int:
        """Count of non-archived devices owned by the SatDesk."""
        ...


class IOrderRepository(ABC):
    """Port for rental order records. Orders are never deleted."""

    @abstractmethod
    async def get(self, order_id: str) -> Optional[RentalOrder]:
        ...

    @abstractmethod
    async def get_by_number(self, order_number: str) -> Optional[RentalOrder]:
        ...

    @abstractmethod
    async def list(self, status: Optional[OrderStatus] = None) -> list[RentalOrder]:
        """Orders, optionally filtered by status, oldest first."""
        ...

    @abstractmethod
    async def add(self, order: RentalOrder) -> RentalOrder:
        """Insert a new order.

        Raises:
            DuplicateOrderError: If the order number is taken
        """
        ...

    @abstractmethod
    async def save(self, order: RentalOrder, expected_version: int) -> RentalOrder:
        """Persist an order if its stored version still equals expected_version.

        The stored version becomes ``expected_version + 1``.

        Raises:
            NotFoundError: If the order does not exist
            StaleStateError: If the stored version differs
        """
        ...

    @abstractmethod
    async def next_order_number(self, prefix: str, year: int) -> str:
        """Next free human-facing number, e.g. ``MAG-2024-003``."""
        ...


class IEventPublisher(ABC):
    """Port for change notifications to persistence/UI collaborators."""

    @abstractmethod
    async def publish(self, event: DomainEvent) -> None:
        ...
