"""PostgreSQL adapter for rental orders.

Orders are stored as a JSONB document. The version column makes ``save``
a conditional update: it matches only while the stored version is the
one the caller read.
"""

import json
import logging
import re
from copy import deepcopy
from typing import Optional

import asyncpg

from ...core.database import database_connection, database_transaction
from ...core.exceptions import DuplicateOrderError, NotFoundError, StaleStateError
from ..domain.entities import OrderStatus, RentalOrder
from ..domain.ports import IOrderRepository

logger = logging.getLogger(__name__)


class PostgresOrderRepository(IOrderRepository):
    """PostgreSQL implementation of IOrderRepository."""

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def get(self, order_id: str) -> Optional[RentalOrder]:
        async with database_connection(self.pool) as conn:
            row = await conn.fetchrow(
                "SELECT document, version FROM rental_orders WHERE id = $1",
                order_id,
            )
            return self._row_to_order(row) if row else None

    async def get_by_number(self, order_number: str) -> Optional[RentalOrder]:
        async with database_connection(self.pool) as conn:
            row = await conn.fetchrow(
                "SELECT document, version FROM rental_orders WHERE order_number = $1",
                order_number,
            )
            return self._row_to_order(row) if row else None

    async def list(self, status: Optional[OrderStatus] = None) -> list[RentalOrder]:
        async with database_connection(self.pool) as conn:
            if status is None:
                rows = await conn.fetch(
                    "SELECT document, version FROM rental_orders ORDER BY created_at"
                )
            else:
                rows = await conn.fetch(
                    """
                    SELECT document, version FROM rental_orders
                    WHERE status = $1
                    ORDER BY created_at
                    """,
                    OrderStatus(status).value,
                )
            return [self._row_to_order(row) for row in rows]

    async def add(self, order: RentalOrder) -> RentalOrder:
        async with database_transaction(self.pool) as conn:
            try:
                await conn.execute(
                    """
                    INSERT INTO rental_orders (id, order_number, status, version, created_at, document)
                    VALUES ($1, $2, $3, $4, $5, $6::jsonb)
                    """,
                    order.id,
                    order.order_number,
                    order.status.value,
                    order.version,
                    order.created_at,
                    json.dumps(order.to_dict()),
                )
            except asyncpg.UniqueViolationError as e:
                raise DuplicateOrderError(order.order_number, cause=e)
        return order

    async def save(self, order: RentalOrder, expected_version: int) -> RentalOrder:
        saved = deepcopy(order)
        saved.version = expected_version + 1

        async with database_transaction(self.pool) as conn:
            result = await conn.fetchval(
                """
                UPDATE rental_orders
                SET status = $2, version = $3, document = $4::jsonb
                WHERE id = $1 AND version = $5
                RETURNING version
                """,
                order.id,
                saved.status.value,
                saved.version,
                json.dumps(saved.to_dict()),
                expected_version,
            )

            if result is None:
                actual = await conn.fetchval(
                    "SELECT version FROM rental_orders WHERE id = $1",
                    order.id,
                )
                if actual is None:
                    raise NotFoundError("Order", order.id)
                raise StaleStateError(
                    "Order",
                    order.id,
                    expected_version=expected_version,
                    actual_version=actual,
                )

        return saved

    async def next_order_number(self, prefix: str, year: int) -> str:
        async with database_connection(self.pool) as conn:
            rows = await conn.fetch(
                "SELECT order_number FROM rental_orders WHERE order_number LIKE $1",
                f"{prefix}-{year}-%",
            )

        pattern = re.compile(rf"^{re.escape(prefix)}-{year}-(\d+)$")
        highest = 0
        for row in rows:
            match = pattern.match(row["order_number"])
            if match:
                highest = max(highest, int(match.group(1)))
        return f"{prefix}-{year}-{highest + 1:03d}"

    @staticmethod
    def _row_to_order(row) -> RentalOrder:
        document = row["document"]
        if isinstance(document, str):
            document = json.loads(document)
        order = RentalOrder.from_dict(document)
        order.version = row["version"]
        return order
