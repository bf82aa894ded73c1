"""In-memory adapter for the device registry.

Implements IDeviceRegistry for development, demos and tests. Every write
runs under a single asyncio.Lock, which makes ``claim`` a true
compare-and-swap: two concurrent claims on one device cannot both pass
the status check. Reads return copies so callers cannot mutate stored
records behind the registry's back.
"""

import asyncio
import logging
from copy import deepcopy
from typing import Iterable, Optional

from ...core.exceptions import (
    DeviceUnavailableError,
    IntegrityError,
    NotFoundError,
    StaleStateError,
)
from ..domain.entities import (
    CleanupStep,
    Device,
    DeviceFilter,
    DeviceStatus,
    DeviceUser,
    RentalWindow,
)
from ..domain.ports import IDeviceRegistry

logger = logging.getLogger(__name__)


class InMemoryDeviceRegistry(IDeviceRegistry):
    """Dictionary-backed implementation of IDeviceRegistry."""

    def __init__(self, devices: Optional[Iterable[Device]] = None):
        self._devices: dict[str, Device] = {}
        self._lock = asyncio.Lock()
        for device in devices or []:
            self._insert(device)

    def _insert(self, device: Device) -> None:
        if device.id in self._devices:
            raise IntegrityError(f"Device id {device.id} already registered", constraint="id")
        if any(d.imei == device.imei for d in self._devices.values()):
            raise IntegrityError(f"IMEI {device.imei} already registered", constraint="imei")
        self._devices[device.id] = deepcopy(device)

    def _require(self, device_id: str) -> Device:
        device = self._devices.get(device_id)
        if device is None:
            raise NotFoundError("Device", device_id)
        return device

    async def get(self, device_id: str) -> Optional[Device]:
        device = self._devices.get(device_id)
        return deepcopy(device) if device else None

    async def find(self, device_filter: DeviceFilter) -> list[Device]:
        matches = [d for d in self._devices.values() if device_filter.matches(d)]
        return [deepcopy(d) for d in sorted(matches, key=lambda d: d.device_number)]

    async def list_all(self) -> list[Device]:
        return [deepcopy(d) for d in sorted(self._devices.values(), key=lambda d: d.device_number)]

    async def add(self, device: Device) -> Device:
        async with self._lock:
            self._insert(device)
            logger.info(f"Registered device {device.id} (IMEI {device.imei})")
            return deepcopy(self._devices[device.id])

    async def claim(
        self,
        device_id: str,
        window: RentalWindow,
        order_ref: str,
        user: Optional[DeviceUser] = None,
        expected_version: Optional[int] = None,
    ) -> Device:
        async with self._lock:
            device = self._require(device_id)

            if expected_version is not None and device.version != expected_version:
                raise StaleStateError(
                    "Device",
                    device_id,
                    expected_version=expected_version,
                    actual_version=device.version,
                )

            reason = device.claim_block_reason(window)
            if reason:
                raise DeviceUnavailableError(device_id, reason)

            device.apply_claim(window, order_ref, user)
            logger.info(f"Device {device_id} claimed by order {order_ref}")
            return deepcopy(device)

    async def release(self, device_id: str) -> Device:
        async with self._lock:
            device = self._require(device_id)
            if device.order_ref is None and device.status != DeviceStatus.ACTIVE:
                return deepcopy(device)

            previous = device.order_ref
            device.apply_release()
            logger.info(f"Device {device_id} released from order {previous}")
            return deepcopy(device)

    async def return_device(self, device_id: str) -> Device:
        async with self._lock:
            device = self._require(device_id)
            if device.status != DeviceStatus.ACTIVE:
                raise DeviceUnavailableError(device_id, "device is not out on rental")

            device.apply_return()
            logger.info(f"Device {device_id} returned, cleanup required")
            return deepcopy(device)

    async def set_status(self, device_id: str, status: DeviceStatus) -> Device:
        status = DeviceStatus(status)
        async with self._lock:
            device = self._require(device_id)
            reason = device.status_change_block_reason(status)
            if reason:
                raise DeviceUnavailableError(device_id, reason)

            device.apply_status(status)
            return deepcopy(device)

    async def mark_cleanup_step(
        self,
        device_id: str,
        step: CleanupStep,
        done: bool = True,
    ) -> Device:
        async with self._lock:
            device = self._require(device_id)
            device.apply_cleanup_step(CleanupStep(step), done)
            return deepcopy(device)
