"""In-memory adapter for rental orders."""

import asyncio
import logging
import re
from copy import deepcopy
from typing import Optional

from ...core.exceptions import DuplicateOrderError, NotFoundError, StaleStateError
from ..domain.entities import OrderStatus, RentalOrder
from ..domain.ports import IOrderRepository

logger = logging.getLogger(__name__)


class InMemoryOrderRepository(IOrderRepository):
    """Dictionary-backed implementation of IOrderRepository.

    ``save`` is a version-checked write: it only succeeds when the stored
    version still equals the version the caller read.
    """

    def __init__(self):
        self._orders: dict[str, RentalOrder] = {}
        self._lock = asyncio.Lock()

    async def get(self, order_id: str) -> Optional[RentalOrder]:
        order = self._orders.get(order_id)
        return deepcopy(order) if order else None

    async def get_by_number(self, order_number: str) -> Optional[RentalOrder]:
        for order in self._orders.values():
            if order.order_number == order_number:
                return deepcopy(order)
        return None

    async def list(self, status: Optional[OrderStatus] = None) -> list[RentalOrder]:
        orders = [
            o for o in self._orders.values()
            if status is None or o.status == status
        ]
        return [deepcopy(o) for o in sorted(orders, key=lambda o: o.created_at)]

    async def add(self, order: RentalOrder) -> RentalOrder:
        async with self._lock:
            if any(o.order_number == order.order_number for o in self._orders.values()):
                raise DuplicateOrderError(order.order_number)
            self._orders[order.id] = deepcopy(order)
            return deepcopy(order)

    async def save(self, order: RentalOrder, expected_version: int) -> RentalOrder:
        async with self._lock:
            stored = self._orders.get(order.id)
            if stored is None:
                raise NotFoundError("Order", order.id)
            if stored.version != expected_version:
                raise StaleStateError(
                    "Order",
                    order.id,
                    expected_version=expected_version,
                    actual_version=stored.version,
                )

            saved = deepcopy(order)
            saved.version = expected_version + 1
            self._orders[order.id] = saved
            return deepcopy(saved)

    async def next_order_number(self, prefix: str, year: int) -> str:
        pattern = re.compile(rf"^{re.escape(prefix)}-{year}-(\d+)$")
        highest = 0
        for order in self._orders.values():
            match = pattern.match(order.order_number)
            if match:
                highest = max(highest, int(match.group(1)))
        return f"{prefix}-{year}-{highest + 1:03d}"
