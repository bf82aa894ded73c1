"""Domain layer for satellite device rentals.

Contains:
- Entities: Core business objects and the order transition table
- Validation: Order completeness rule
- Ports: Interface definitions for infrastructure adapters
"""

from .entities import (
    ALLOWED_TRANSITIONS,
    DEVICE_HOLDING_STATUSES,
    Alert,
    AlertSeverity,
    AlertType,
    AllocationResult,
    CleanupChecklist,
    CleanupStep,
    CustomerInfo,
    Device,
    DeviceCandidate,
    DeviceCondition,
    DeviceFilter,
    DeviceLocation,
    DeviceStatus,
    DeviceUser,
    DomainEvent,
    EmergencyContact,
    OrderDraft,
    OrderPreferences,
    OrderSource,
    OrderStatus,
    PresetMessage,
    RentalDetails,
    RentalOrder,
    RentalWindow,
    SatDesk,
)
from .ports import (
    IDeviceRegistry,
    IEventPublisher,
    IOrderRepository,
    ISatDeskRegistry,
)
from .validation import OrderValidator, ValidationOutcome

__all__ = [
    # Entities
    "Alert",
    "AlertSeverity",
    "AlertType",
    "AllocationResult",
    "ALLOWED_TRANSITIONS",
    "CleanupChecklist",
    "CleanupStep",
    "CustomerInfo",
    "DEVICE_HOLDING_STATUSES",
    "Device",
    "DeviceCandidate",
    "DeviceCondition",
    "DeviceFilter",
    "DeviceLocation",
    "DeviceStatus",
    "DeviceUser",
    "DomainEvent",
    "EmergencyContact",
    "OrderDraft",
    "OrderPreferences",
    "OrderSource",
    "OrderStatus",
    "PresetMessage",
    "RentalDetails",
    "RentalOrder",
    "RentalWindow",
    "SatDesk",
    # Validation
    "OrderValidator",
    "ValidationOutcome",
    # Ports
    "IDeviceRegistry",
    "ISatDeskRegistry",
    "IOrderRepository",
    "IEventPublisher",
]
