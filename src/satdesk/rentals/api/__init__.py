"""API layer for satellite device rentals.

Contains:
- FastAPI router with endpoints
- Pydantic schemas for request/response validation
- Dependency wiring and error-to-HTTP mapping
"""

from .errors import register_exception_handlers
from .router import router
from .schemas import (
    AssignDeviceRequest,
    BulkAllocateRequest,
    CreateOrderRequest,
    OrderResponse,
    UpdateOrderRequest,
)

__all__ = [
    "router",
    "register_exception_handlers",
    "AssignDeviceRequest",
    "BulkAllocateRequest",
    "CreateOrderRequest",
    "OrderResponse",
    "UpdateOrderRequest",
]
