"""Alert Engine use case.

Derives alerts from snapshots of devices, SatDesks and orders:

- Overdue rentals (critical) and rentals due back soon (warning/info)
- Low stock per active SatDesk, and SatDesks holding more devices than
  their quota
- One aggregate alert for the pending order backlog

``compute_alerts`` is a pure function of its inputs, so scanning the same
snapshot at the same instant always yields the same alerts. ``AlertEngine``
wraps it with the ports and keeps dismissals and first-seen timestamps
across scans, keyed by the deterministic alert id.
"""

import logging
import math
from collections import Counter
from datetime import datetime
from typing import Callable, Iterable, Optional

from ..domain.entities import (
    SEVERITY_RANK,
    Alert,
    AlertSeverity,
    AlertType,
    Device,
    DeviceLocation,
    DeviceStatus,
    DomainEvent,
    OrderStatus,
    RentalOrder,
    SatDesk,
    utcnow,
)
from ..domain.ports import (
    IDeviceRegistry,
    IEventPublisher,
    IOrderRepository,
    ISatDeskRegistry,
)

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400


def days_until_due(end: datetime, now: datetime) -> int:
    """Whole days until ``end``, rounded up; negative once overdue."""
    return math.ceil((end - now).total_seconds() / SECONDS_PER_DAY)


def _plural(count: int, word: str) -> str:
    return f"{count} {word}" if count == 1 else f"{count} {word}s"


def _rental_alert(
    device: Device,
    now: datetime,
    expiring_window_days: int,
) -> Optional[Alert]:
    # Active without a window, or active but back in stock: nothing to report
    if device.rental_window is None or device.location != DeviceLocation.OUT:
        return None

    days = days_until_due(device.rental_window.end, now)
    who = device.current_user.full_name if device.current_user else "unassigned"
    label = f"Device #{device.device_number} ({who})"

    if days < 0:
        return Alert(
            id=f"overdue-{device.id}",
            type=AlertType.RENTAL_OVERDUE,
            severity=AlertSeverity.CRITICAL,
            title="Device Overdue",
            message=f"{label} is {_plural(abs(days), 'day')} overdue",
            device_id=device.id,
            order_id=device.order_ref,
            sat_desk_id=device.sat_desk_id,
            days_until_due=days,
            created_at=now,
        )
    if days == 1:
        return Alert(
            id=f"expiring-1day-{device.id}",
            type=AlertType.RENTAL_EXPIRING,
            severity=AlertSeverity.WARNING,
            title="Device Due Tomorrow",
            message=f"{label} is due back tomorrow",
            device_id=device.id,
            order_id=device.order_ref,
            sat_desk_id=device.sat_desk_id,
            days_until_due=days,
            created_at=now,
        )
    # Zero days left falls through to this bucket, not the warning one
    if days <= expiring_window_days:
        return Alert(
            id=f"expiring-3days-{device.id}",
            type=AlertType.RENTAL_EXPIRING,
            severity=AlertSeverity.INFO,
            title="Device Due Soon",
            message=f"{label} is due back in {_plural(days, 'day')}",
            device_id=device.id,
            order_id=device.order_ref,
            sat_desk_id=device.sat_desk_id,
            days_until_due=days,
            created_at=now,
        )
    return None


def _sort_key(alert: Alert):
    days = alert.days_until_due if alert.days_until_due is not None else math.inf
    return (SEVERITY_RANK[alert.severity], days, alert.id)


def compute_alerts(
    now: datetime,
    devices: Iterable[Device],
    sat_desks: Iterable[SatDesk],
    orders: Iterable[RentalOrder],
    low_inventory_threshold: int = 3,
    pending_orders_warning_count: int = 5,
    expiring_window_days: int = 3,
) -> list[Alert]:
    """Derive the full alert list from one snapshot.

    Args:
        now: Instant the scan is evaluated at
        devices: Every device, archived ones included
        sat_desks: Every SatDesk; inactive ones are ignored
        orders: Orders to consider for the pending backlog
        low_inventory_threshold: Fewer in-stock devices than this raises an alert
        pending_orders_warning_count: A backlog above this is a warning
        expiring_window_days: Days ahead a rental counts as due soon

    Returns:
        Alerts ordered by severity, then days until due, then id
    """
    devices = list(devices)
    alerts: list[Alert] = []

    for device in devices:
        if device.status != DeviceStatus.ACTIVE:
            continue
        alert = _rental_alert(device, now, expiring_window_days)
        if alert:
            alerts.append(alert)

    in_stock = Counter(d.sat_desk_id for d in devices if d.is_in_stock)
    owned = Counter(d.sat_desk_id for d in devices if d.status != DeviceStatus.ARCHIVED)

    for sat_desk in sat_desks:
        if not sat_desk.is_active:
            continue

        available = in_stock.get(sat_desk.id, 0)
        if available < low_inventory_threshold:
            alerts.append(
                Alert(
                    id=f"low-inventory-{sat_desk.id}",
                    type=AlertType.LOW_INVENTORY,
                    severity=AlertSeverity.CRITICAL if available == 0 else AlertSeverity.WARNING,
                    title="Low Inventory",
                    message=f"{sat_desk.name} has only {_plural(available, 'device')} available",
                    sat_desk_id=sat_desk.id,
                    count=available,
                    created_at=now,
                )
            )

        device_count = owned.get(sat_desk.id, 0)
        if device_count > sat_desk.device_quota:
            alerts.append(
                Alert(
                    id=f"over-quota-{sat_desk.id}",
                    type=AlertType.LOW_INVENTORY,
                    severity=AlertSeverity.WARNING,
                    title="Over Quota",
                    message=(
                        f"{sat_desk.name} holds {_plural(device_count, 'device')} "
                        f"against a quota of {sat_desk.device_quota}"
                    ),
                    sat_desk_id=sat_desk.id,
                    count=device_count,
                    created_at=now,
                )
            )

    pending = sum(1 for o in orders if o.status == OrderStatus.PENDING)
    if pending > 0:
        alerts.append(
            Alert(
                id="pending-orders",
                type=AlertType.ORDER_PENDING,
                severity=(
                    AlertSeverity.WARNING
                    if pending > pending_orders_warning_count
                    else AlertSeverity.INFO
                ),
                title="Pending Orders",
                message=f"{_plural(pending, 'order')} awaiting processing",
                count=pending,
                created_at=now,
            )
        )

    return sorted(alerts, key=_sort_key)


class AlertEngine:
    """Periodic alert scanning with dismissals that survive rescans."""

    def __init__(
        self,
        device_registry: IDeviceRegistry,
        sat_desk_registry: ISatDeskRegistry,
        order_repository: IOrderRepository,
        events: Optional[IEventPublisher] = None,
        low_inventory_threshold: int = 3,
        pending_orders_warning_count: int = 5,
        expiring_window_days: int = 3,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.devices = device_registry
        self.sat_desks = sat_desk_registry
        self.orders = order_repository
        self.events = events
        self.low_inventory_threshold = low_inventory_threshold
        self.pending_orders_warning_count = pending_orders_warning_count
        self.expiring_window_days = expiring_window_days
        self.clock = clock

        self._alerts: list[Alert] = []
        self._first_seen: dict[str, datetime] = {}
        self._dismissed: set[str] = set()
        self.last_scan_at: Optional[datetime] = None

    async def scan(self, now: Optional[datetime] = None) -> list[Alert]:
        """Recompute alerts from fresh snapshots and return all of them."""
        now = now or self.clock()

        devices = await self.devices.list_all()
        sat_desks = await self.sat_desks.list()
        orders = await self.orders.list(status=OrderStatus.PENDING)

        alerts = compute_alerts(
            now,
            devices,
            sat_desks,
            orders,
            low_inventory_threshold=self.low_inventory_threshold,
            pending_orders_warning_count=self.pending_orders_warning_count,
            expiring_window_days=self.expiring_window_days,
        )

        current_ids = {a.id for a in alerts}
        # Conditions that cleared forget their history
        self._first_seen = {k: v for k, v in self._first_seen.items() if k in current_ids}
        self._dismissed &= current_ids

        for alert in alerts:
            alert.created_at = self._first_seen.setdefault(alert.id, alert.created_at)
            alert.dismissed = alert.id in self._dismissed

        self._alerts = alerts
        self.last_scan_at = now

        active = self.active_alerts()
        logger.info(
            f"Alert scan: {len(alerts)} alerts, {len(active)} active "
            f"({sum(1 for a in active if a.severity == AlertSeverity.CRITICAL)} critical)"
        )
        if self.events is not None:
            await self.events.publish(
                DomainEvent(
                    name="alerts.updated",
                    payload={"total": len(alerts), "active": len(active)},
                    occurred_at=now,
                )
            )
        return list(alerts)

    def alerts(self) -> list[Alert]:
        """Alerts from the last scan, dismissed ones included."""
        return list(self._alerts)

    def active_alerts(self) -> list[Alert]:
        return [a for a in self._alerts if not a.dismissed]

    def dismiss(self, alert_id: str) -> bool:
        """Dismiss one alert. Returns False when the id is not current."""
        for alert in self._alerts:
            if alert.id == alert_id:
                alert.dismissed = True
                self._dismissed.add(alert_id)
                return True
        return False

    def dismiss_all(self) -> int:
        """Dismiss every current alert and return how many were newly dismissed."""
        count = 0
        for alert in self._alerts:
            if not alert.dismissed:
                alert.dismissed = True
                self._dismissed.add(alert.id)
                count += 1
        return count
