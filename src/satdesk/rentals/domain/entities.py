"""Domain entities for satellite device rentals.

These are pure domain objects with no infrastructure dependencies.
They represent the core business concepts of the rental workflow:
devices held by SatDesk accounts, rental orders moving through their
state machine, and the alerts derived from both.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


def utcnow() -> datetime:
    """Timezone-aware current time used for every timestamp."""
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def _require_aware(**values: datetime) -> None:
    """Reject naive datetimes; they cannot be compared with ``utcnow()``."""
    for name, value in values.items():
        if not isinstance(value, datetime):
            raise TypeError(f"{name} must be a datetime, got {type(value).__name__}")
        if value.utcoffset() is None:
            raise ValueError(f"{name} must include a timezone offset")


def _require_types(obj: Any, **expected: type) -> None:
    for name, kind in expected.items():
        value = getattr(obj, name)
        if not isinstance(value, kind):
            raise TypeError(
                f"{type(obj).__name__}.{name} must be {kind.__name__}, "
                f"got {type(value).__name__}"
            )


class DeviceStatus(str, Enum):
    """Lifecycle status of a physical device."""

    AVAILABLE = "available"
    ACTIVE = "active"  # Claimed by an order and out in the field
    PENDING = "pending"  # Awaiting activation
    MAINTENANCE = "maintenance"
    ARCHIVED = "archived"  # Returned or retired; needs cleanup before re-use


# Statuses staff may set directly; active/pending only come from a claim
ADMIN_DEVICE_STATUSES = frozenset(
    {DeviceStatus.AVAILABLE, DeviceStatus.MAINTENANCE, DeviceStatus.ARCHIVED}
)


class DeviceLocation(str, Enum):
    """Where the device physically is."""

    IN = "in"  # In inventory
    OUT = "out"  # In the field


class DeviceCondition(str, Enum):
    """Physical condition grade used for ranking."""

    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"


CONDITION_SCORES: dict[DeviceCondition, int] = {
    DeviceCondition.EXCELLENT: 3,
    DeviceCondition.GOOD: 2,
    DeviceCondition.FAIR: 1,
}


class CleanupStep(str, Enum):
    """Steps required before a previously assigned device can be re-claimed."""

    ARCHIVE_PREVIOUS_USER = "archive-previous-user"
    CLEAR_MESSAGES = "clear-messages"
    CLEAR_CONTACTS = "clear-contacts"
    RESET_ACCOUNT = "reset-account"
    PHYSICAL_INSPECTION = "physical-inspection"
    FACTORY_RESET = "factory-reset"


class OrderStatus(str, Enum):
    """Status of a rental order."""

    PENDING = "pending"
    PROCESSING = "processing"
    READY_TO_SHIP = "ready-to-ship"
    SHIPPED = "shipped"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ESCALATED = "escalated"  # Triage marker, re-enterable into processing


class OrderSource(str, Enum):
    """Channel an order arrived through."""

    WEBSITE = "website"
    PORTAL = "portal"
    MANUAL = "manual"


class AlertType(str, Enum):
    RENTAL_EXPIRING = "rental-expiring"
    RENTAL_OVERDUE = "rental-overdue"
    LOW_INVENTORY = "low-inventory"
    ORDER_PENDING = "order-pending"


class AlertSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


SEVERITY_RANK: dict[AlertSeverity, int] = {
    AlertSeverity.CRITICAL: 0,
    AlertSeverity.WARNING: 1,
    AlertSeverity.INFO: 2,
}


# The order state machine. Anything not listed here is rejected.
ALLOWED_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset(
        {OrderStatus.PROCESSING, OrderStatus.CANCELLED, OrderStatus.ESCALATED}
    ),
    OrderStatus.PROCESSING: frozenset(
        {OrderStatus.READY_TO_SHIP, OrderStatus.CANCELLED, OrderStatus.ESCALATED}
    ),
    OrderStatus.ESCALATED: frozenset({OrderStatus.PROCESSING}),
    OrderStatus.READY_TO_SHIP: frozenset({OrderStatus.SHIPPED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.COMPLETED}),
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

# Statuses in which an order holds a device claim
DEVICE_HOLDING_STATUSES = frozenset(
    {
        OrderStatus.PROCESSING,
        OrderStatus.READY_TO_SHIP,
        OrderStatus.SHIPPED,
        OrderStatus.COMPLETED,
    }
)


@dataclass(frozen=True)
class RentalWindow:
    """Closed date range a device is rented for."""

    start: datetime
    end: datetime

    def __post_init__(self):
        _require_aware(start=self.start, end=self.end)
        if self.end < self.start:
            raise ValueError(
                f"Rental window ends before it starts ({self.start} > {self.end})"
            )

    def overlaps(self, other: "RentalWindow") -> bool:
        """Check whether two closed windows share any instant."""
        return self.start <= other.end and other.start <= self.end

    @property
    def duration_days(self) -> int:
        return max(1, (self.end - self.start).days)

    def to_dict(self) -> dict:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional["RentalWindow"]:
        if not data:
            return None
        return cls(start=_parse_dt(data["start"]), end=_parse_dt(data["end"]))


@dataclass
class CleanupChecklist:
    """Completion state of the pre-reassignment cleanup steps."""

    completed: set[CleanupStep] = field(default_factory=set)

    def mark(self, step: CleanupStep, done: bool = True) -> None:
        if done:
            self.completed.add(CleanupStep(step))
        else:
            self.completed.discard(CleanupStep(step))

    @property
    def is_complete(self) -> bool:
        return all(step in self.completed for step in CleanupStep)

    @property
    def missing_steps(self) -> list[CleanupStep]:
        """Outstanding steps in canonical order."""
        return [step for step in CleanupStep if step not in self.completed]

    def reset(self) -> None:
        self.completed.clear()

    def to_dict(self) -> dict:
        return {step.value: step in self.completed for step in CleanupStep}

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "CleanupChecklist":
        if not data:
            return cls()
        return cls(completed={CleanupStep(key) for key, done in data.items() if done})


@dataclass
class DeviceUser:
    """Customer profile attached to a device while it is rented."""

    first_name: str
    last_name: str
    email: str = ""
    phone: str = ""

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def to_dict(self) -> dict:
        return {
            "first_name": self.first_name,
            "last_name": self.last_name,
            "email": self.email,
            "phone": self.phone,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional["DeviceUser"]:
        if not data:
            return None
        return cls(
            first_name=data.get("first_name", ""),
            last_name=data.get("last_name", ""),
            email=data.get("email", ""),
            phone=data.get("phone", ""),
        )


@dataclass
class Device:
    """A satellite communicator owned by exactly one SatDesk.

    Invariants:
    - At most one rental window at a time, held through ``order_ref``
    - ``location == OUT`` if and only if ``status == ACTIVE``
    """

    id: str
    imei: str
    device_number: int
    sat_desk_id: str
    device_name: str = ""
    status: DeviceStatus = DeviceStatus.AVAILABLE
    location: DeviceLocation = DeviceLocation.IN
    rental_window: Optional[RentalWindow] = None
    current_user: Optional[DeviceUser] = None
    order_ref: Optional[str] = None
    notes: Optional[str] = None
    condition: DeviceCondition = DeviceCondition.GOOD
    battery_health: int = 100
    cleanup_checklist: CleanupChecklist = field(default_factory=CleanupChecklist)
    version: int = 0
    updated_at: Optional[datetime] = None

    @property
    def requires_cleanup(self) -> bool:
        """Archived devices and devices with a stale user need the checklist."""
        if self.status == DeviceStatus.ARCHIVED:
            return True
        return self.current_user is not None and self.order_ref is None

    @property
    def is_in_stock(self) -> bool:
        """Counted as available stock at its SatDesk."""
        return self.status != DeviceStatus.ARCHIVED and self.location == DeviceLocation.IN

    @property
    def ranking_score(self) -> float:
        return CONDITION_SCORES.get(self.condition, 0) + self.battery_health / 100

    def claim_block_reason(self, window: Optional[RentalWindow] = None) -> Optional[str]:
        """Explain why this device cannot be claimed, or None if it can."""
        if self.order_ref is not None:
            return f"already claimed by order {self.order_ref}"
        if self.status not in (DeviceStatus.AVAILABLE, DeviceStatus.ARCHIVED):
            return f"status is {self.status.value}"
        if self.requires_cleanup and not self.cleanup_checklist.is_complete:
            missing = ", ".join(step.value for step in self.cleanup_checklist.missing_steps)
            return f"cleanup checklist incomplete: {missing}"
        if window and self.rental_window and self.rental_window.overlaps(window):
            return "overlapping rental window"
        return None

    def status_change_block_reason(self, status: DeviceStatus) -> Optional[str]:
        """Explain why an administrative status change is refused, or None."""
        if status not in ADMIN_DEVICE_STATUSES:
            raise ValueError(f"Status '{status.value}' can only be set by a claim")
        if self.order_ref is not None:
            return f"device holds a claim for order {self.order_ref}"
        if (
            status == DeviceStatus.AVAILABLE
            and self.requires_cleanup
            and not self.cleanup_checklist.is_complete
        ):
            missing = ", ".join(step.value for step in self.cleanup_checklist.missing_steps)
            return f"cleanup checklist incomplete: {missing}"
        return None

    def apply_claim(
        self,
        window: RentalWindow,
        order_ref: str,
        user: Optional[DeviceUser] = None,
    ) -> None:
        self.status = DeviceStatus.ACTIVE
        self.location = DeviceLocation.OUT
        self.rental_window = window
        self.order_ref = order_ref
        self.current_user = user
        self.cleanup_checklist.reset()
        self._touch()

    def apply_release(self) -> None:
        """Back to available with no window, user or claim."""
        self.status = DeviceStatus.AVAILABLE
        self.location = DeviceLocation.IN
        self.rental_window = None
        self.order_ref = None
        self.current_user = None
        self._touch()

    def apply_return(self) -> None:
        """Returned from the field; the previous user stays until cleanup."""
        self.status = DeviceStatus.ARCHIVED
        self.location = DeviceLocation.IN
        self.rental_window = None
        self.order_ref = None
        self.cleanup_checklist.reset()
        self._touch()

    def apply_status(self, status: DeviceStatus) -> None:
        """Administrative move between in-stock statuses."""
        self.status = status
        self.location = DeviceLocation.IN
        if status == DeviceStatus.AVAILABLE:
            self.current_user = None
            self.cleanup_checklist.reset()
        self._touch()

    def apply_cleanup_step(self, step: CleanupStep, done: bool = True) -> None:
        self.cleanup_checklist.mark(step, done)
        self._touch()

    def _touch(self) -> None:
        self.version += 1
        self.updated_at = utcnow()

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        return {
            "id": self.id,
            "imei": self.imei,
            "device_number": self.device_number,
            "device_name": self.device_name,
            "sat_desk_id": self.sat_desk_id,
            "status": self.status.value,
            "location": self.location.value,
            "rental_window": self.rental_window.to_dict() if self.rental_window else None,
            "current_user": self.current_user.to_dict() if self.current_user else None,
            "order_ref": self.order_ref,
            "notes": self.notes,
            "condition": self.condition.value,
            "battery_health": self.battery_health,
            "cleanup_checklist": self.cleanup_checklist.to_dict(),
            "requires_cleanup": self.requires_cleanup,
            "version": self.version,
            "updated_at": _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Device":
        return cls(
            id=data["id"],
            imei=data["imei"],
            device_number=int(data["device_number"]),
            sat_desk_id=data["sat_desk_id"],
            device_name=data.get("device_name") or "",
            status=DeviceStatus(data.get("status", DeviceStatus.AVAILABLE)),
            location=DeviceLocation(data.get("location", DeviceLocation.IN)),
            rental_window=RentalWindow.from_dict(data.get("rental_window")),
            current_user=DeviceUser.from_dict(data.get("current_user")),
            order_ref=data.get("order_ref"),
            notes=data.get("notes"),
            condition=DeviceCondition(data.get("condition", DeviceCondition.GOOD)),
            battery_health=int(data.get("battery_health", 100)),
            cleanup_checklist=CleanupChecklist.from_dict(data.get("cleanup_checklist")),
            version=int(data.get("version", 0)),
            updated_at=_parse_dt(data.get("updated_at")),
        )


@dataclass
class SatDesk:
    """An operator account with a fixed device quota.

    The device count is derived from the registry, never stored here.
    """

    id: str
    name: str
    device_quota: int
    number: int = 0
    description: str = ""
    is_active: bool = True

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "number": self.number,
            "name": self.name,
            "description": self.description,
            "device_quota": self.device_quota,
            "is_active": self.is_active,
        }


@dataclass
class CustomerInfo:
    first_name: str = ""
    last_name: str = ""
    email: str = ""
    phone: str = ""

    def __post_init__(self):
        _require_types(self, first_name=str, last_name=str, email=str, phone=str)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


@dataclass
class EmergencyContact:
    name: str = ""
    phone: str = ""
    relationship: str = ""

    def __post_init__(self):
        _require_types(self, name=str, phone=str, relationship=str)


@dataclass
class PresetMessage:
    slot: int
    message: str

    def __post_init__(self):
        _require_types(self, slot=int, message=str)


@dataclass
class OrderPreferences:
    """Trip preferences captured at intake."""

    trip_destination: str = ""
    trip_duration_days: int = 0
    needs_training: bool = False
    emergency_contact: Optional[EmergencyContact] = None
    preset_messages: list[PresetMessage] = field(default_factory=list)

    def __post_init__(self):
        _require_types(
            self,
            trip_destination=str,
            trip_duration_days=int,
            needs_training=bool,
            preset_messages=list,
        )


@dataclass
class RentalDetails:
    start: datetime
    end: datetime
    device_type: Optional[str] = None
    preferred_sat_desk_id: Optional[str] = None
    device_count: int = 1

    def __post_init__(self):
        _require_aware(start=self.start, end=self.end)
        if self.end < self.start:
            raise ValueError(f"Rental ends before it starts ({self.start} > {self.end})")
        if self.device_count < 1:
            raise ValueError("device_count must be at least 1")

    @property
    def window(self) -> RentalWindow:
        return RentalWindow(start=self.start, end=self.end)


@dataclass
class OrderDraft:
    """Input for creating an order. Completeness is not required."""

    customer_info: CustomerInfo
    preferences: OrderPreferences
    rental_details: RentalDetails
    source: OrderSource = OrderSource.MANUAL
    notes: Optional[str] = None
    order_number: Optional[str] = None


@dataclass
class RentalOrder:
    """A customer's rental request and its progress through the lifecycle.

    Invariants:
    - ``data_complete == (missing_fields == ())``
    - ``assigned_device_ids`` is non-empty iff status is in DEVICE_HOLDING_STATUSES
    - ``assigned_device_id`` is the first of them, the device picked by IMEI
      or the best-ranked one of a bulk allocation
    """

    id: str
    order_number: str
    customer_info: CustomerInfo
    preferences: OrderPreferences
    rental_details: RentalDetails
    status: OrderStatus = OrderStatus.PENDING
    source: OrderSource = OrderSource.MANUAL
    data_complete: bool = False
    missing_fields: tuple[str, ...] = ()
    needs_escalation: bool = False
    notes: Optional[str] = None
    assigned_device_ids: list[str] = field(default_factory=list)
    assigned_imei: Optional[str] = None
    pending_release_device_ids: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    processed_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    version: int = 0

    def __post_init__(self):
        if self.notes is not None and not isinstance(self.notes, str):
            raise TypeError(f"RentalOrder.notes must be str, got {type(self.notes).__name__}")

    def can_transition_to(self, target: OrderStatus) -> bool:
        return target in ALLOWED_TRANSITIONS.get(self.status, frozenset())

    @property
    def assigned_device_id(self) -> Optional[str]:
        return self.assigned_device_ids[0] if self.assigned_device_ids else None

    @property
    def holds_device(self) -> bool:
        return bool(self.assigned_device_ids)

    @property
    def device_user(self) -> DeviceUser:
        """Customer profile to attach to a claimed device."""
        return DeviceUser(
            first_name=self.customer_info.first_name,
            last_name=self.customer_info.last_name,
            email=self.customer_info.email,
            phone=self.customer_info.phone,
        )

    def append_note(self, text: str) -> None:
        self.notes = f"{self.notes}\n\n{text}" if self.notes else text

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses and JSONB storage."""
        contact = self.preferences.emergency_contact
        return {
            "id": self.id,
            "order_number": self.order_number,
            "customer_info": {
                "first_name": self.customer_info.first_name,
                "last_name": self.customer_info.last_name,
                "email": self.customer_info.email,
                "phone": self.customer_info.phone,
            },
            "preferences": {
                "trip_destination": self.preferences.trip_destination,
                "trip_duration_days": self.preferences.trip_duration_days,
                "needs_training": self.preferences.needs_training,
                "emergency_contact": {
                    "name": contact.name,
                    "phone": contact.phone,
                    "relationship": contact.relationship,
                } if contact else None,
                "preset_messages": [
                    {"slot": m.slot, "message": m.message}
                    for m in self.preferences.preset_messages
                ],
            },
            "rental_details": {
                "start": self.rental_details.start.isoformat(),
                "end": self.rental_details.end.isoformat(),
                "device_type": self.rental_details.device_type,
                "preferred_sat_desk_id": self.rental_details.preferred_sat_desk_id,
                "device_count": self.rental_details.device_count,
            },
            "status": self.status.value,
            "source": self.source.value,
            "data_complete": self.data_complete,
            "missing_fields": list(self.missing_fields),
            "needs_escalation": self.needs_escalation,
            "notes": self.notes,
            "assigned_device_id": self.assigned_device_id,
            "assigned_device_ids": list(self.assigned_device_ids),
            "assigned_imei": self.assigned_imei,
            "pending_release_device_ids": list(self.pending_release_device_ids),
            "created_at": _iso(self.created_at),
            "processed_at": _iso(self.processed_at),
            "shipped_at": _iso(self.shipped_at),
            "completed_at": _iso(self.completed_at),
            "cancelled_at": _iso(self.cancelled_at),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RentalOrder":
        customer = data.get("customer_info") or {}
        prefs = data.get("preferences") or {}
        details = data["rental_details"]
        contact = prefs.get("emergency_contact")
        return cls(
            id=data["id"],
            order_number=data["order_number"],
            customer_info=CustomerInfo(**customer),
            preferences=OrderPreferences(
                trip_destination=prefs.get("trip_destination", ""),
                trip_duration_days=int(prefs.get("trip_duration_days", 0)),
                needs_training=prefs.get("needs_training", False),
                emergency_contact=EmergencyContact(**contact) if contact else None,
                preset_messages=[
                    PresetMessage(slot=m["slot"], message=m["message"])
                    for m in prefs.get("preset_messages") or []
                ],
            ),
            rental_details=RentalDetails(
                start=_parse_dt(details["start"]),
                end=_parse_dt(details["end"]),
                device_type=details.get("device_type"),
                preferred_sat_desk_id=details.get("preferred_sat_desk_id"),
                device_count=int(details.get("device_count", 1)),
            ),
            status=OrderStatus(data.get("status", OrderStatus.PENDING)),
            source=OrderSource(data.get("source", OrderSource.MANUAL)),
            data_complete=bool(data.get("data_complete", False)),
            missing_fields=tuple(data.get("missing_fields") or ()),
            needs_escalation=bool(data.get("needs_escalation", False)),
            notes=data.get("notes"),
            assigned_device_ids=list(data.get("assigned_device_ids") or []),
            assigned_imei=data.get("assigned_imei"),
            pending_release_device_ids=list(data.get("pending_release_device_ids") or []),
            created_at=_parse_dt(data.get("created_at")) or utcnow(),
            processed_at=_parse_dt(data.get("processed_at")),
            shipped_at=_parse_dt(data.get("shipped_at")),
            completed_at=_parse_dt(data.get("completed_at")),
            cancelled_at=_parse_dt(data.get("cancelled_at")),
            version=int(data.get("version", 0)),
        )


@dataclass
class Alert:
    """A derived warning about rentals, stock or the order backlog.

    ``id`` is deterministic from the alert condition and its subject, so
    rescans keep ids stable and a dismissal survives them.
    """

    id: str
    type: AlertType
    severity: AlertSeverity
    title: str
    message: str
    created_at: datetime
    device_id: Optional[str] = None
    order_id: Optional[str] = None
    sat_desk_id: Optional[str] = None
    days_until_due: Optional[int] = None
    count: Optional[int] = None
    dismissed: bool = False

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type.value,
            "severity": self.severity.value,
            "title": self.title,
            "message": self.message,
            "device_id": self.device_id,
            "order_id": self.order_id,
            "sat_desk_id": self.sat_desk_id,
            "days_until_due": self.days_until_due,
            "count": self.count,
            "created_at": self.created_at.isoformat(),
            "dismissed": self.dismissed,
        }


@dataclass(frozen=True)
class DeviceFilter:
    """Query for ``IDeviceRegistry.find``. Unset fields match everything."""

    statuses: Optional[frozenset[DeviceStatus]] = None
    sat_desk_id: Optional[str] = None
    location: Optional[DeviceLocation] = None
    free_during: Optional[RentalWindow] = None  # Exclude overlapping windows

    def matches(self, device: Device) -> bool:
        if self.statuses is not None and device.status not in self.statuses:
            return False
        if self.sat_desk_id is not None and device.sat_desk_id != self.sat_desk_id:
            return False
        if self.location is not None and device.location != self.location:
            return False
        if (
            self.free_during is not None
            and device.rental_window is not None
            and device.rental_window.overlaps(self.free_during)
        ):
            return False
        return True


@dataclass
class DeviceCandidate:
    """A claimable device with its ranking score."""

    device: Device
    score: float
    recommended: bool = False

    def to_dict(self) -> dict:
        return {
            "device": self.device.to_dict(),
            "score": round(self.score, 4),
            "recommended": self.recommended,
        }


@dataclass
class AllocationResult:
    """Outcome of a bulk allocation. Partial fulfilment is not an error."""

    requested: int
    claimed: list[Device] = field(default_factory=list)
    skipped: dict[str, str] = field(default_factory=dict)  # device_id -> reason

    @property
    def shortfall(self) -> int:
        return max(0, self.requested - len(self.claimed))

    @property
    def is_complete(self) -> bool:
        return self.shortfall == 0

    def to_dict(self) -> dict:
        return {
            "requested": self.requested,
            "claimed": [d.to_dict() for d in self.claimed],
            "shortfall": self.shortfall,
            "is_complete": self.is_complete,
            "skipped": self.skipped,
        }


@dataclass
class DomainEvent:
    """Change notification published after a successful command."""

    name: str
    payload: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=utcnow)
