"""Use cases for satellite device rentals.

Each use case owns one aggregate's commands and orchestrates domain logic
without knowing about infrastructure details.
"""

from .alert_engine import AlertEngine, compute_alerts, days_until_due
from .device_allocator import DeviceAllocator
from .order_lifecycle import OrderLifecycle

__all__ = [
    "AlertEngine",
    "compute_alerts",
    "days_until_due",
    "DeviceAllocator",
    "OrderLifecycle",
]
