"""PostgreSQL adapter for SatDesk accounts."""

import logging
from typing import Optional

import asyncpg

from ...core.database import database_connection, database_transaction
from ..domain.entities import DeviceStatus, SatDesk
from ..domain.ports import ISatDeskRegistry

logger = logging.getLogger(__name__)


class PostgresSatDeskRegistry(ISatDeskRegistry):
    """PostgreSQL implementation of ISatDeskRegistry."""

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def list(self) -> list[SatDesk]:
        async with database_connection(self.pool) as conn:
            rows = await conn.fetch(
                """
                SELECT id, number, name, description, device_quota, is_active
                FROM sat_desks
                ORDER BY number, id
                """
            )
            return [self._row_to_sat_desk(row) for row in rows]

    async def get(self, sat_desk_id: str) -> Optional[SatDesk]:
        async with database_connection(self.pool) as conn:
            row = await conn.fetchrow(
                """
                SELECT id, number, name, description, device_quota, is_active
                FROM sat_desks
                WHERE id = $1
                """,
                sat_desk_id,
            )
            return self._row_to_sat_desk(row) if row else None

    async def add(self, sat_desk: SatDesk) -> SatDesk:
        async with database_transaction(self.pool) as conn:
            await conn.execute(
                """
                INSERT INTO sat_desks (id, number, name, description, device_quota, is_active)
                VALUES ($1, $2, $3, $4, $5, $6)
                """,
                sat_desk.id,
                sat_desk.number,
                sat_desk.name,
                sat_desk.description,
                sat_desk.device_quota,
                sat_desk.is_active,
            )
        logger.info(f"Registered SatDesk {sat_desk.id} (quota {sat_desk.device_quota})")
        return sat_desk

    async def device_count(self, sat_desk_id: str) -> int:
        async with database_connection(self.pool) as conn:
            count = await conn.fetchval(
                "SELECT COUNT(*) FROM devices WHERE sat_desk_id = $1 AND status <> $2",
                sat_desk_id,
                DeviceStatus.ARCHIVED.value,
            )
            return int(count or 0)

    @staticmethod
    def _row_to_sat_desk(row) -> SatDesk:
        return SatDesk(
            id=row["id"],
            number=row["number"],
            name=row["name"],
            description=row["description"] or "",
            device_quota=row["device_quota"],
            is_active=row["is_active"],
        )
