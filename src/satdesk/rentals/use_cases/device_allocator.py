"""Device Allocator use case.

Finds, ranks and claims devices for rental windows:

- Candidates: available devices, plus returned devices whose cleanup
  checklist is complete, with no overlapping rental window
- Ranking: condition score (excellent 3, good 2, fair 1) plus battery
  health / 100, best first, ties broken by device number
- Claims: delegated to the registry's compare-and-swap so two orders
  can never hold the same device
- Bulk allocation: claims in ranked order and reports a shortfall
  instead of failing when stock runs out

Releases are compensating actions and are retried with backoff until the
registry accepts them.
"""

import logging
from typing import Optional

from ...core.exceptions import DeviceUnavailableError, NotFoundError, StaleStateError
from ...core.resilience import retry_async
from ..domain.entities import (
    AllocationResult,
    CleanupStep,
    Device,
    DeviceCandidate,
    DeviceFilter,
    DeviceLocation,
    DeviceStatus,
    DeviceUser,
    DomainEvent,
    RentalWindow,
)
from ..domain.ports import IDeviceRegistry, IEventPublisher

logger = logging.getLogger(__name__)


class DeviceAllocator:
    """Allocate devices to rental windows without double-claims."""

    def __init__(
        self,
        device_registry: IDeviceRegistry,
        events: Optional[IEventPublisher] = None,
        recommended_limit: int = 5,
        release_max_attempts: int = 5,
        release_initial_delay: float = 0.5,
    ):
        """Initialize the allocator.

        Args:
            device_registry: Registry holding device records
            events: Optional publisher for change notifications
            recommended_limit: How many top-ranked devices are flagged recommended
            release_max_attempts: Attempts for a compensating release
            release_initial_delay: First backoff delay for releases, in seconds
        """
        self.registry = device_registry
        self.events = events
        self.recommended_limit = recommended_limit
        self.release_max_attempts = release_max_attempts
        self.release_initial_delay = release_initial_delay

    # ----------------------------------------
    # Queries
    # ----------------------------------------

    async def get_device(self, device_id: str) -> Device:
        device = await self.registry.get(device_id)
        if device is None:
            raise NotFoundError("Device", device_id)
        return device

    async def claimed_devices(self) -> list[Device]:
        """Devices currently held by some order."""
        active = await self.registry.find(DeviceFilter(statuses=frozenset({DeviceStatus.ACTIVE})))
        return [d for d in active if d.order_ref]

    async def find_candidates(
        self,
        window: RentalWindow,
        sat_desk_id: Optional[str] = None,
        include_cleanup: bool = True,
    ) -> list[Device]:
        """Devices that a claim for ``window`` would currently accept.

        Args:
            window: Requested rental window
            sat_desk_id: Restrict to one SatDesk's stock
            include_cleanup: Also offer returned devices whose checklist is done
        """
        statuses = {DeviceStatus.AVAILABLE}
        if include_cleanup:
            statuses.add(DeviceStatus.ARCHIVED)

        devices = await self.registry.find(
            DeviceFilter(
                statuses=frozenset(statuses),
                sat_desk_id=sat_desk_id,
                location=DeviceLocation.IN,
                free_during=window,
            )
        )
        return [d for d in devices if d.claim_block_reason(window) is None]

    @staticmethod
    def rank(devices: list[Device]) -> list[DeviceCandidate]:
        """Order devices best first: score descending, then device number."""
        ordered = sorted(devices, key=lambda d: (-d.ranking_score, d.device_number))
        return [DeviceCandidate(device=d, score=d.ranking_score) for d in ordered]

    async def recommend(
        self,
        window: RentalWindow,
        sat_desk_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[DeviceCandidate]:
        """Ranked candidates with the top ``limit`` flagged as recommended."""
        limit = self.recommended_limit if limit is None else limit
        ranked = self.rank(await self.find_candidates(window, sat_desk_id))
        for candidate in ranked[:limit]:
            candidate.recommended = True
        return ranked

    # ----------------------------------------
    # Commands
    # ----------------------------------------

    async def claim(
        self,
        device_id: str,
        window: RentalWindow,
        order_ref: str,
        user: Optional[DeviceUser] = None,
        expected_version: Optional[int] = None,
    ) -> Device:
        """Claim one device for an order.

        Raises:
            NotFoundError: If the device does not exist
            DeviceUnavailableError: If the device is claimed, busy or its
                cleanup checklist is incomplete
            StaleStateError: If expected_version no longer matches
        """
        device = await self.get_device(device_id)
        if device.requires_cleanup and not device.cleanup_checklist.is_complete:
            missing = ", ".join(s.value for s in device.cleanup_checklist.missing_steps)
            raise DeviceUnavailableError(device_id, f"cleanup checklist incomplete: {missing}")

        claimed = await self.registry.claim(
            device_id,
            window,
            order_ref,
            user=user,
            expected_version=expected_version,
        )
        await self._publish(
            "device.claimed",
            device_id=device_id,
            imei=claimed.imei,
            order_id=order_ref,
        )
        return claimed

    async def allocate_bulk(
        self,
        window: RentalWindow,
        device_count: int,
        order_ref: str,
        sat_desk_id: Optional[str] = None,
        user: Optional[DeviceUser] = None,
    ) -> AllocationResult:
        """Claim up to ``device_count`` devices in ranked order.

        Devices lost to a concurrent claim between ranking and claiming are
        skipped. A partial result is returned rather than raised.
        """
        if device_count < 1:
            raise ValueError("device_count must be at least 1")

        result = AllocationResult(requested=device_count)
        ranked = self.rank(await self.find_candidates(window, sat_desk_id))

        for candidate in ranked:
            if len(result.claimed) >= device_count:
                break
            try:
                device = await self.registry.claim(
                    candidate.device.id,
                    window,
                    order_ref,
                    user=user,
                )
            except (DeviceUnavailableError, StaleStateError) as e:
                logger.info(f"Skipping device {candidate.device.id}: {e.message}")
                result.skipped[candidate.device.id] = e.message
                continue
            result.claimed.append(device)

        if result.shortfall:
            logger.warning(
                f"Bulk allocation for order {order_ref} short by {result.shortfall} "
                f"({len(result.claimed)}/{device_count} claimed)"
            )
        else:
            logger.info(f"Bulk allocation for order {order_ref}: {device_count} devices claimed")

        await self._publish(
            "devices.allocated",
            order_id=order_ref,
            device_ids=[d.id for d in result.claimed],
            shortfall=result.shortfall,
        )
        return result

    async def release(self, device_id: str) -> Device:
        """Compensating release, retried with exponential backoff."""
        device = await retry_async(
            self.registry.release,
            device_id,
            max_attempts=self.release_max_attempts,
            initial_delay=self.release_initial_delay,
        )
        await self._publish("device.released", device_id=device_id)
        return device

    async def return_device(self, device_id: str) -> Device:
        """Take a device back from the field; it needs cleanup before re-use."""
        device = await self.registry.return_device(device_id)
        await self._publish("device.returned", device_id=device_id)
        return device

    async def mark_cleanup_step(
        self,
        device_id: str,
        step: CleanupStep,
        done: bool = True,
    ) -> Device:
        device = await self.registry.mark_cleanup_step(device_id, CleanupStep(step), done)
        await self._publish(
            "device.cleanup_step",
            device_id=device_id,
            step=CleanupStep(step).value,
            done=done,
            checklist_complete=device.cleanup_checklist.is_complete,
        )
        return device

    async def set_status(self, device_id: str, status: DeviceStatus) -> Device:
        """Administrative status change (available, maintenance, archived)."""
        device = await self.registry.set_status(device_id, DeviceStatus(status))
        await self._publish("device.status_changed", device_id=device_id, status=device.status.value)
        return device

    async def _publish(self, name: str, **payload) -> None:
        if self.events is not None:
            await self.events.publish(DomainEvent(name=name, payload=payload))
