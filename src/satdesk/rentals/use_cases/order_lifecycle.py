"""Order Lifecycle use case.

Owns rental orders and moves them through the order state machine:

    pending -> processing -> ready-to-ship -> shipped -> completed
    pending | processing -> cancelled
    pending | processing -> escalated -> processing

Every command runs under a per-order lock and persists with a version
check, so a read-validate-write sequence is never interleaved with another
writer of the same order. Completeness (``data_complete`` and
``missing_fields``) is recomputed on every create and update within that
same critical section.

Device claims are delegated to the DeviceAllocator. An order holds one
device (``assign_device``) or several (``allocate_devices``). When it
gives them up (cancel, triage escalation, or a failed save right after a
claim) the release is a compensating action: it is retried with backoff,
and if it still fails the device ids stay in ``pending_release_device_ids``
until ``retry_pending_releases`` succeeds. Claims that no order records at
all are found by the same sweep and released.
"""

import asyncio
import logging
from collections import Counter
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Callable, Optional
from uuid import uuid4

from ...core.exceptions import (
    DeviceUnavailableError,
    InvalidPatchError,
    InvalidTransitionError,
    NotFoundError,
    StaleStateError,
)
from ...core.resilience import DEFAULT_RETRYABLE_EXCEPTIONS
from ..domain.entities import (
    AllocationResult,
    Device,
    DomainEvent,
    OrderDraft,
    OrderStatus,
    RentalOrder,
    utcnow,
)
from ..domain.ports import IEventPublisher, IOrderRepository
from ..domain.validation import OrderValidator
from .device_allocator import DeviceAllocator

logger = logging.getLogger(__name__)

# Fields a patch may touch, per section; None means a scalar field
PATCHABLE_FIELDS: dict[str, Optional[set[str]]] = {
    "customer_info": {"first_name", "last_name", "email", "phone"},
    "preferences": {
        "trip_destination",
        "trip_duration_days",
        "needs_training",
        "emergency_contact",
        "preset_messages",
    },
    "rental_details": {
        "start",
        "end",
        "device_type",
        "preferred_sat_desk_id",
        "device_count",
    },
    "notes": None,
    "source": None,
    "needs_escalation": None,
}

EMERGENCY_CONTACT_FIELDS = {"name", "phone", "relationship"}

# Release failures that leave the claim pending rather than failing the command
RELEASE_FAILURES = DEFAULT_RETRYABLE_EXCEPTIONS


def _merge(base: dict, patch: dict) -> dict:
    """Recursively merge ``patch`` into a copy of ``base``. Lists are replaced."""
    merged = dict(base)
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _patch_problems(patch: dict) -> list[str]:
    """Dotted paths in ``patch`` that an update may not write."""
    problems: list[str] = []
    for key, value in patch.items():
        if key not in PATCHABLE_FIELDS:
            problems.append(key)
            continue

        allowed = PATCHABLE_FIELDS[key]
        if allowed is None:
            continue
        if not isinstance(value, dict):
            problems.append(key)
            continue

        for sub_key, sub_value in value.items():
            if sub_key not in allowed:
                problems.append(f"{key}.{sub_key}")
            elif sub_key == "emergency_contact" and isinstance(sub_value, dict):
                problems.extend(
                    f"{key}.{sub_key}.{k}" for k in sub_value if k not in EMERGENCY_CONTACT_FIELDS
                )
    return problems




class OrderLifecycle:
    """State machine and command surface for rental orders."""

    def __init__(
        self,
        order_repository: IOrderRepository,
        allocator: DeviceAllocator,
        validator: Optional[OrderValidator] = None,
        events: Optional[IEventPublisher] = None,
        order_number_prefix: str = "MAG",
        clock: Callable[[], datetime] = utcnow,
        orphan_grace: timedelta = timedelta(minutes=5),
    ):
        """Initialize the lifecycle.

        Args:
            order_repository: Storage for rental orders
            allocator: Allocator performing device claims and releases
            validator: Completeness rule (default OrderValidator)
            events: Optional publisher for change notifications
            order_number_prefix: Prefix for generated order numbers
            clock: Source of the current time
            orphan_grace: How long a claim no order records is left alone
                before the release sweep frees it
        """
        self.orders = order_repository
        self.allocator = allocator
        self.validator = validator or OrderValidator()
        self.events = events
        self.order_number_prefix = order_number_prefix
        self.clock = clock
        self.orphan_grace = orphan_grace

        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_holders: Counter[str] = Counter()
        self._create_lock = asyncio.Lock()

    # ----------------------------------------
    # Queries
    # ----------------------------------------

    async def get(self, order_id: str) -> RentalOrder:
        order = await self.orders.get(order_id)
        if order is None:
            raise NotFoundError("Order", order_id)
        return order

    async def list_orders(self, status: Optional[OrderStatus] = None) -> list[RentalOrder]:
        return await self.orders.list(status=OrderStatus(status) if status else None)

    async def pending_count(self) -> int:
        return len(await self.orders.list(status=OrderStatus.PENDING))

    # ----------------------------------------
    # Commands
    # ----------------------------------------

    async def create(self, draft: OrderDraft) -> RentalOrder:
        """Create a pending order. Incomplete data is recorded, never rejected.

        Raises:
            DuplicateOrderError: If ``draft.order_number`` is already taken
        """
        now = self.clock()
        async with self._create_lock:
            order_number = draft.order_number or await self.orders.next_order_number(
                self.order_number_prefix, now.year
            )
            order = RentalOrder(
                id=str(uuid4()),
                order_number=order_number,
                customer_info=draft.customer_info,
                preferences=draft.preferences,
                rental_details=draft.rental_details,
                status=OrderStatus.PENDING,
                source=draft.source,
                notes=draft.notes,
                created_at=now,
            )
            outcome = self.validator.apply(order)
            order.needs_escalation = not outcome.is_complete
            saved = await self.orders.add(order)

        if outcome.is_complete:
            logger.info(f"Created order {saved.order_number} ({saved.id})")
        else:
            logger.info(
                f"Created order {saved.order_number} ({saved.id}) with missing data: "
                f"{', '.join(outcome.missing_fields)}"
            )
        await self._publish("order.created", saved)
        return saved

    async def update(
        self,
        order_id: str,
        patch: dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> RentalOrder:
        """Merge a nested field patch and recompute completeness atomically.

        Args:
            order_id: Order to update
            patch: Nested dict, e.g. ``{"preferences": {"emergency_contact": {"name": "Ana"}}}``
            expected_version: Optional optimistic version check

        Raises:
            InvalidPatchError: If the patch touches fields owned by the state
                machine, unknown fields, or holds invalid values
            StaleStateError: If expected_version does not match
        """
        problems = _patch_problems(patch)
        if problems:
            raise InvalidPatchError(
                f"Fields cannot be updated directly: {', '.join(problems)}",
                fields=problems,
            )

        async with self._order_lock(order_id):
            order = await self._load(order_id, expected_version)

            if "rental_details" in patch and order.holds_device:
                raise InvalidPatchError(
                    "Rental details cannot change while a device is assigned",
                    fields=["rental_details"],
                )

            merged = _merge(order.to_dict(), patch)
            try:
                updated = RentalOrder.from_dict(merged)
            except (TypeError, ValueError, KeyError) as e:
                raise InvalidPatchError(f"Invalid patch: {e}", fields=sorted(patch), cause=e)

            outcome = self.validator.apply(updated)
            if "needs_escalation" in patch:
                updated.needs_escalation = bool(patch["needs_escalation"])
            elif updated.status == OrderStatus.ESCALATED:
                updated.needs_escalation = True
            else:
                updated.needs_escalation = not outcome.is_complete

            saved = await self.orders.save(updated, order.version)

        logger.info(f"Updated order {saved.order_number}: {', '.join(sorted(patch))}")
        await self._publish("order.updated", saved, fields=sorted(patch))
        return saved

    async def assign_device(
        self,
        order_id: str,
        device_id: str,
        imei: str,
        expected_version: Optional[int] = None,
    ) -> RentalOrder:
        """Claim a device for the order and move it to processing.

        Allowed from pending, and from escalated as the staff recovery path.

        Raises:
            InvalidTransitionError: If the order cannot move to processing
            DeviceUnavailableError: If the claim fails; the order is unchanged
        """
        async with self._order_lock(order_id):
            order = await self._load(order_id, expected_version)
            self._require_transition(order, OrderStatus.PROCESSING)

            device = await self.allocator.get_device(device_id)
            if device.imei != imei:
                raise DeviceUnavailableError(
                    device_id,
                    f"IMEI {imei} does not match device IMEI {device.imei}",
                )

            claimed = await self.allocator.claim(
                device_id,
                order.rental_details.window,
                order.id,
                user=order.device_user,
            )
            saved = await self._save_with_claims(order, [claimed])

        logger.info(f"Order {saved.order_number} assigned device {claimed.id} (IMEI {claimed.imei})")
        await self._publish("order.device_assigned", saved, device_id=claimed.id)
        return saved

    async def allocate_devices(
        self,
        order_id: str,
        device_count: Optional[int] = None,
        sat_desk_id: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> tuple[RentalOrder, AllocationResult]:
        """Claim several ranked devices for a group order.

        Args:
            order_id: Pending or escalated order to fill
            device_count: Devices to claim (default: the order's device_count)
            sat_desk_id: Restrict to one SatDesk (default: the preferred one)
            expected_version: Optional optimistic version check

        Returns:
            The order and the allocation outcome. A shortfall is reported,
            not raised; when nothing could be claimed the order is unchanged.

        Raises:
            InvalidTransitionError: If the order cannot move to processing
        """
        async with self._order_lock(order_id):
            order = await self._load(order_id, expected_version)
            self._require_transition(order, OrderStatus.PROCESSING)

            details = order.rental_details
            result = await self.allocator.allocate_bulk(
                details.window,
                device_count or details.device_count,
                order.id,
                sat_desk_id=sat_desk_id or details.preferred_sat_desk_id,
                user=order.device_user,
            )
            if not result.claimed:
                logger.warning(f"No devices available for order {order.order_number}")
                return order, result

            saved = await self._save_with_claims(order, result.claimed)

        logger.info(
            f"Order {saved.order_number} allocated {len(result.claimed)} devices: "
            f"{', '.join(saved.assigned_device_ids)}"
        )
        await self._publish(
            "order.devices_allocated",
            saved,
            device_ids=saved.assigned_device_ids,
            shortfall=result.shortfall,
        )
        return saved, result

    async def mark_as_ready_to_ship(self, order_id: str) -> RentalOrder:
        return await self._advance(order_id, OrderStatus.READY_TO_SHIP, "order.ready_to_ship")

    async def mark_as_shipped(self, order_id: str) -> RentalOrder:
        return await self._advance(order_id, OrderStatus.SHIPPED, "order.shipped")

    async def complete(self, order_id: str) -> RentalOrder:
        """Close a shipped rental and take its devices back for cleanup."""
        async with self._order_lock(order_id):
            order = await self._load(order_id)
            self._require_transition(order, OrderStatus.COMPLETED)

            for device_id in order.assigned_device_ids:
                device = await self.allocator.get_device(device_id)
                # A retried completion may find the device already returned
                if device.order_ref == order.id:
                    await self.allocator.return_device(device.id)

            order.status = OrderStatus.COMPLETED
            order.completed_at = self.clock()
            saved = await self.orders.save(order, order.version)

        logger.info(f"Order {saved.order_number} completed")
        await self._publish("order.completed", saved)
        return saved

    async def cancel(self, order_id: str, reason: Optional[str] = None) -> RentalOrder:
        """Cancel a pending or processing order, releasing every claimed device.

        The order is persisted as cancelled before the releases run, so a
        release that keeps failing never blocks the cancellation.
        """
        async with self._order_lock(order_id):
            order = await self._load(order_id)
            self._require_transition(order, OrderStatus.CANCELLED)

            order.status = OrderStatus.CANCELLED
            order.cancelled_at = self.clock()
            if reason:
                order.append_note(f"Cancelled: {reason}")
            self._detach_devices(order)

            saved = await self.orders.save(order, order.version)
            logger.info(f"Order {saved.order_number} cancelled")

            if saved.pending_release_device_ids:
                saved = await self._complete_release(saved)

        await self._publish("order.cancelled", saved)
        return saved

    async def escalate(
        self,
        order_id: str,
        reason: str,
        triage: bool = False,
    ) -> RentalOrder:
        """Flag an order for staff review.

        Args:
            order_id: Order to escalate
            reason: Appended to the order notes
            triage: Also move the status to escalated. A processing order
                gives up its devices so it can be re-assigned on recovery.
        """
        async with self._order_lock(order_id):
            order = await self._load(order_id)
            if order.status not in (OrderStatus.PENDING, OrderStatus.PROCESSING):
                raise InvalidTransitionError(
                    order_id,
                    current_status=order.status.value,
                    attempted_status=OrderStatus.ESCALATED.value,
                )

            order.needs_escalation = True
            order.append_note(f"Escalated: {reason}")
            if triage:
                order.status = OrderStatus.ESCALATED
                self._detach_devices(order)

            saved = await self.orders.save(order, order.version)
            logger.warning(f"Order {saved.order_number} escalated: {reason}")

            if saved.pending_release_device_ids:
                saved = await self._complete_release(saved)

        await self._publish("order.escalated", saved, reason=reason, triage=triage)
        return saved

    async def retry_pending_releases(self) -> int:
        """Drive stranded compensating releases to completion.

        Also frees orphaned claims: devices whose ``order_ref`` points at an
        order that neither holds nor is releasing them, left behind when a
        save and its compensating release both failed.

        Returns:
            Number of devices released on this pass
        """
        released = 0
        for candidate in await self.orders.list():
            if not candidate.pending_release_device_ids:
                continue
            async with self._order_lock(candidate.id):
                order = await self._load(candidate.id)
                before = len(order.pending_release_device_ids)
                if not before:
                    continue
                order = await self._complete_release(order)
                released += before - len(order.pending_release_device_ids)

        released += await self._release_orphaned_claims()

        if released:
            logger.info(f"Completed {released} pending device releases")
        return released

    # ----------------------------------------
    # Internals
    # ----------------------------------------

    @asynccontextmanager
    async def _order_lock(self, order_id: str) -> AsyncIterator[None]:
        """Per-order lock, dropped once no command holds or waits on it."""
        lock = self._locks.get(order_id)
        if lock is None:
            lock = self._locks[order_id] = asyncio.Lock()
        self._lock_holders[order_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._lock_holders[order_id] -= 1
            if self._lock_holders[order_id] <= 0:
                del self._lock_holders[order_id]
                del self._locks[order_id]

    async def _load(self, order_id: str, expected_version: Optional[int] = None) -> RentalOrder:
        order = await self.get(order_id)
        if expected_version is not None and order.version != expected_version:
            raise StaleStateError(
                "Order",
                order_id,
                expected_version=expected_version,
                actual_version=order.version,
            )
        return order

    @staticmethod
    def _require_transition(order: RentalOrder, target: OrderStatus) -> None:
        if not order.can_transition_to(target):
            raise InvalidTransitionError(
                order.id,
                current_status=order.status.value,
                attempted_status=target.value,
            )

    @staticmethod
    def _detach_devices(order: RentalOrder) -> None:
        """Move the order's claims into the pending-release list."""
        for device_id in order.assigned_device_ids:
            if device_id not in order.pending_release_device_ids:
                order.pending_release_device_ids.append(device_id)
        order.assigned_device_ids = []
        order.assigned_imei = None

    async def _save_with_claims(self, order: RentalOrder, claimed: list[Device]) -> RentalOrder:
        """Record fresh claims on the order and persist it as processing.

        If the save fails the claims are released and the save error is
        re-raised. Caller holds the order lock.
        """
        was_escalated = order.status == OrderStatus.ESCALATED
        order.status = OrderStatus.PROCESSING
        order.processed_at = self.clock()
        order.assigned_device_ids = [d.id for d in claimed]
        order.assigned_imei = claimed[0].imei
        if was_escalated:
            order.needs_escalation = not order.data_complete

        try:
            return await self.orders.save(order, order.version)
        except Exception:
            device_ids = order.assigned_device_ids
            logger.error(
                f"Saving order {order.id} failed after claiming {', '.join(device_ids)}, "
                f"releasing the claims"
            )
            stranded = await self._release_claims(order.id, device_ids)
            if stranded:
                logger.error(
                    f"Devices {', '.join(stranded)} are still claimed by order {order.id}; "
                    f"the release sweep will free them"
                )
            raise

    async def _release_claims(self, order_id: str, device_ids: list[str]) -> list[str]:
        """Release each device still claimed by ``order_id``.

        Returns:
            Device ids whose release failed and is still pending
        """
        pending: list[str] = []
        for device_id in device_ids:
            try:
                device = await self.allocator.get_device(device_id)
                # Another order may have claimed the device after an earlier release
                if device.order_ref == order_id:
                    await self.allocator.release(device_id)
            except NotFoundError:
                logger.warning(f"Device {device_id} for order {order_id} no longer exists")
            except RELEASE_FAILURES as e:
                logger.error(f"Release of device {device_id} for order {order_id} is still pending: {e}")
                pending.append(device_id)
        return pending

    async def _complete_release(self, order: RentalOrder) -> RentalOrder:
        """Release the order's pending devices and drop the ones that succeeded.

        Caller holds the order lock.
        """
        pending = await self._release_claims(order.id, order.pending_release_device_ids)
        if pending == order.pending_release_device_ids:
            return order
        order.pending_release_device_ids = pending
        return await self.orders.save(order, order.version)

    async def _release_orphaned_claims(self) -> int:
        # Device timestamps come from the wall clock, not the injected one
        cutoff = utcnow() - self.orphan_grace
        released = 0
        for device in await self.allocator.claimed_devices():
            if device.updated_at is not None and device.updated_at > cutoff:
                continue
            order_ref = device.order_ref
            async with self._order_lock(order_ref):
                order = await self.orders.get(order_ref)
                if order is not None and (
                    device.id in order.assigned_device_ids
                    or device.id in order.pending_release_device_ids
                ):
                    continue
                current = await self.allocator.get_device(device.id)
                if current.order_ref != order_ref:
                    continue
                logger.warning(f"Releasing device {device.id} orphaned by order {order_ref}")
                if not await self._release_claims(order_ref, [device.id]):
                    released += 1
        return released

    async def _publish(self, name: str, order: RentalOrder, **extra) -> None:
        if self.events is None:
            return
        payload = {
            "order_id": order.id,
            "order_number": order.order_number,
            "status": order.status.value,
            **extra,
        }
        await self.events.publish(DomainEvent(name=name, payload=payload))
