"""FastAPI router for rental order and device allocation endpoints.

Endpoints are thin: they translate HTTP into use-case calls. Every rule
lives in the use cases; RentalsError subclasses are mapped to status
codes by the handlers in ``errors``.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ...core.exceptions import NotFoundError, QuotaExceededError
from ..domain.entities import DeviceFilter, DeviceStatus, OrderStatus
from ..domain.ports import IDeviceRegistry, ISatDeskRegistry
from ..use_cases import AlertEngine, DeviceAllocator, OrderLifecycle
from .dependencies import (
    get_alert_engine,
    get_allocator,
    get_device_registry,
    get_lifecycle,
    get_sat_desk_registry,
)
from .schemas import (
    AlertListResponse,
    AssignDeviceRequest,
    BulkAllocateRequest,
    CancelOrderRequest,
    CleanupStepRequest,
    CreateOrderRequest,
    DeviceCreateRequest,
    DeviceStatusRequest,
    DismissResponse,
    EscalateOrderRequest,
    OrderListResponse,
    OrderResponse,
    RecommendRequest,
    SatDeskCreateRequest,
    UpdateOrderRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/rentals", tags=["Rentals"])


@router.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}


# ========== Orders ==========


@router.post("/orders", response_model=OrderResponse, status_code=status.HTTP_201_CREATED)
async def create_order(
    request: CreateOrderRequest,
    lifecycle: OrderLifecycle = Depends(get_lifecycle),
):
    """Create a rental order.

    Incomplete orders are accepted; ``missing_fields`` lists what staff
    still need to collect.
    """
    order = await lifecycle.create(request.to_draft())
    return OrderResponse(**order.to_dict())


@router.get("/orders", response_model=OrderListResponse)
async def list_orders(
    order_status: Optional[OrderStatus] = Query(default=None, alias="status"),
    lifecycle: OrderLifecycle = Depends(get_lifecycle),
):
    orders = await lifecycle.list_orders(order_status)
    return OrderListResponse(
        orders=[OrderResponse(**o.to_dict()) for o in orders],
        total=len(orders),
    )


@router.get("/orders/pending-count")
async def pending_order_count(lifecycle: OrderLifecycle = Depends(get_lifecycle)):
    return {"pending": await lifecycle.pending_count()}


@router.get("/orders/{order_id}", response_model=OrderResponse)
async def get_order(order_id: str, lifecycle: OrderLifecycle = Depends(get_lifecycle)):
    order = await lifecycle.get(order_id)
    return OrderResponse(**order.to_dict())


@router.patch("/orders/{order_id}", response_model=OrderResponse)
async def update_order(
    order_id: str,
    request: UpdateOrderRequest,
    lifecycle: OrderLifecycle = Depends(get_lifecycle),
):
    """Merge a nested field patch and recompute completeness."""
    order = await lifecycle.update(order_id, request.patch, request.expected_version)
    return OrderResponse(**order.to_dict())


@router.post("/orders/{order_id}/assign", response_model=OrderResponse)
async def assign_device(
    order_id: str,
    request: AssignDeviceRequest,
    lifecycle: OrderLifecycle = Depends(get_lifecycle),
):
    """Claim a device for the order and move it to processing.

    Returns 409 if the device was claimed by another order in the meantime;
    the client should refresh recommendations and pick again.
    """
    order = await lifecycle.assign_device(
        order_id,
        request.device_id,
        request.imei,
        expected_version=request.expected_version,
    )
    return OrderResponse(**order.to_dict())


@router.post("/orders/{order_id}/allocate")
async def allocate_devices(
    order_id: str,
    request: BulkAllocateRequest,
    lifecycle: OrderLifecycle = Depends(get_lifecycle),
):
    """Claim several devices for a group order. A shortfall is reported, not raised."""
    order, result = await lifecycle.allocate_devices(
        order_id,
        device_count=request.device_count,
        sat_desk_id=request.sat_desk_id,
        expected_version=request.expected_version,
    )
    return {"order": OrderResponse(**order.to_dict()), "allocation": result.to_dict()}


@router.post("/orders/{order_id}/ready-to-ship", response_model=OrderResponse)
async def mark_ready_to_ship(order_id: str, lifecycle: OrderLifecycle = Depends(get_lifecycle)):
    order = await lifecycle.mark_as_ready_to_ship(order_id)
    return OrderResponse(**order.to_dict())


@router.post("/orders/{order_id}/ship", response_model=OrderResponse)
async def mark_shipped(order_id: str, lifecycle: OrderLifecycle = Depends(get_lifecycle)):
    order = await lifecycle.mark_as_shipped(order_id)
    return OrderResponse(**order.to_dict())


@router.post("/orders/{order_id}/complete", response_model=OrderResponse)
async def complete_order(order_id: str, lifecycle: OrderLifecycle = Depends(get_lifecycle)):
    order = await lifecycle.complete(order_id)
    return OrderResponse(**order.to_dict())


@router.post("/orders/{order_id}/cancel", response_model=OrderResponse)
async def cancel_order(
    order_id: str,
    request: Optional[CancelOrderRequest] = None,
    lifecycle: OrderLifecycle = Depends(get_lifecycle),
):
    order = await lifecycle.cancel(order_id, reason=request.reason if request else None)
    return OrderResponse(**order.to_dict())


@router.post("/orders/{order_id}/escalate", response_model=OrderResponse)
async def escalate_order(
    order_id: str,
    request: EscalateOrderRequest,
    lifecycle: OrderLifecycle = Depends(get_lifecycle),
):
    order = await lifecycle.escalate(order_id, request.reason, triage=request.triage)
    return OrderResponse(**order.to_dict())


# ========== SatDesks ==========


@router.get("/sat-desks")
async def list_sat_desks(registry: ISatDeskRegistry = Depends(get_sat_desk_registry)):
    """SatDesks with their derived device counts."""
    sat_desks = await registry.list()
    result = []
    for sat_desk in sat_desks:
        data = sat_desk.to_dict()
        data["device_count"] = await registry.device_count(sat_desk.id)
        result.append(data)
    return {"sat_desks": result, "total": len(result)}


@router.post("/sat-desks", status_code=status.HTTP_201_CREATED)
async def create_sat_desk(
    request: SatDeskCreateRequest,
    registry: ISatDeskRegistry = Depends(get_sat_desk_registry),
):
    sat_desk = await registry.add(request.to_sat_desk())
    return sat_desk.to_dict()


# ========== Devices ==========


@router.get("/devices")
async def list_devices(
    device_status: Optional[DeviceStatus] = Query(default=None, alias="status"),
    sat_desk_id: Optional[str] = None,
    registry: IDeviceRegistry = Depends(get_device_registry),
):
    device_filter = DeviceFilter(
        statuses=frozenset({device_status}) if device_status else None,
        sat_desk_id=sat_desk_id,
    )
    devices = await registry.find(device_filter)
    return {"devices": [d.to_dict() for d in devices], "total": len(devices)}


@router.post("/devices", status_code=status.HTTP_201_CREATED)
async def register_device(
    request: DeviceCreateRequest,
    registry: IDeviceRegistry = Depends(get_device_registry),
    sat_desks: ISatDeskRegistry = Depends(get_sat_desk_registry),
):
    """Register a device at intake.

    Going over the SatDesk quota is allowed; the response carries a
    ``quota_warning`` and the next alert scan reports it.
    """
    sat_desk = await sat_desks.get(request.sat_desk_id)
    if sat_desk is None:
        raise NotFoundError("SatDesk", request.sat_desk_id)
    device = await registry.add(request.to_device())

    data = device.to_dict()
    device_count = await sat_desks.device_count(sat_desk.id)
    if device_count > sat_desk.device_quota:
        warning = QuotaExceededError(sat_desk.id, device_count, sat_desk.device_quota)
        logger.warning(warning.message)
        data["quota_warning"] = warning.to_dict()
    return data


@router.post("/devices/recommendations")
async def recommend_devices(
    request: RecommendRequest,
    allocator: DeviceAllocator = Depends(get_allocator),
):
    """Ranked claimable devices for a window; the best ones are flagged recommended."""
    candidates = await allocator.recommend(request.window, request.sat_desk_id, request.limit)
    return {"candidates": [c.to_dict() for c in candidates], "total": len(candidates)}


@router.get("/devices/{device_id}")
async def get_device(device_id: str, allocator: DeviceAllocator = Depends(get_allocator)):
    device = await allocator.get_device(device_id)
    return device.to_dict()


@router.post("/devices/{device_id}/cleanup")
async def mark_cleanup_step(
    device_id: str,
    request: CleanupStepRequest,
    allocator: DeviceAllocator = Depends(get_allocator),
):
    device = await allocator.mark_cleanup_step(device_id, request.step, request.done)
    return device.to_dict()


@router.post("/devices/{device_id}/status")
async def set_device_status(
    device_id: str,
    request: DeviceStatusRequest,
    allocator: DeviceAllocator = Depends(get_allocator),
):
    device = await allocator.set_status(device_id, request.status)
    return device.to_dict()


# ========== Alerts ==========


def _alert_list(engine: AlertEngine, include_dismissed: bool) -> AlertListResponse:
    alerts = engine.alerts() if include_dismissed else engine.active_alerts()
    return AlertListResponse(
        alerts=[a.to_dict() for a in alerts],
        total=len(alerts),
        active=len(engine.active_alerts()),
        scanned_at=engine.last_scan_at.isoformat() if engine.last_scan_at else None,
    )


@router.get("/alerts", response_model=AlertListResponse)
async def list_alerts(
    include_dismissed: bool = False,
    engine: AlertEngine = Depends(get_alert_engine),
):
    """Alerts from the latest scan. Scans first if none has run yet."""
    if engine.last_scan_at is None:
        await engine.scan()
    return _alert_list(engine, include_dismissed)


@router.post("/alerts/scan", response_model=AlertListResponse)
async def scan_alerts(engine: AlertEngine = Depends(get_alert_engine)):
    await engine.scan()
    return _alert_list(engine, include_dismissed=False)


@router.post("/alerts/dismiss-all", response_model=DismissResponse)
async def dismiss_all_alerts(engine: AlertEngine = Depends(get_alert_engine)):
    return DismissResponse(dismissed=engine.dismiss_all())


@router.post("/alerts/{alert_id}/dismiss", response_model=DismissResponse)
async def dismiss_alert(alert_id: str, engine: AlertEngine = Depends(get_alert_engine)):
    if not engine.dismiss(alert_id):
        raise HTTPException(status_code=404, detail=f"Alert '{alert_id}' not found")
    return DismissResponse(dismissed=1)
