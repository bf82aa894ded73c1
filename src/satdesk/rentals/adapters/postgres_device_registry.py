"""PostgreSQL adapter for the device registry.

Every write locks the device row with ``SELECT ... FOR UPDATE`` inside a
transaction, re-runs the domain checks against the locked row and writes
the result back. Two concurrent claims on the same device therefore
serialise on the row lock and the second one sees the first one's claim.
"""

import json
import logging
from typing import Optional

import asyncpg

from ...core.database import database_connection, database_transaction
from ...core.exceptions import (
    DeviceUnavailableError,
    NotFoundError,
    StaleStateError,
)
from ..domain.entities import (
    CleanupChecklist,
    CleanupStep,
    Device,
    DeviceCondition,
    DeviceFilter,
    DeviceLocation,
    DeviceStatus,
    DeviceUser,
    RentalWindow,
)
from ..domain.ports import IDeviceRegistry

logger = logging.getLogger(__name__)

DEVICE_COLUMNS = """
    id, imei, device_number, sat_desk_id, device_name, status, location,
    rental_start, rental_end, assigned_user, order_ref, notes, condition,
    battery_health, cleanup_checklist, version, updated_at
"""


class PostgresDeviceRegistry(IDeviceRegistry):
    """PostgreSQL implementation of IDeviceRegistry."""

    def __init__(self, pool: asyncpg.Pool):
        """Initialize with database connection pool.

        Args:
            pool: asyncpg connection pool
        """
        self.pool = pool

    async def get(self, device_id: str) -> Optional[Device]:
        async with database_connection(self.pool) as conn:
            row = await conn.fetchrow(
                f"SELECT {DEVICE_COLUMNS} FROM devices WHERE id = $1",
                device_id,
            )
            return self._row_to_device(row) if row else None

    async def find(self, device_filter: DeviceFilter) -> list[Device]:
        conditions: list[str] = []
        params: list = []

        if device_filter.statuses is not None:
            params.append([s.value for s in device_filter.statuses])
            conditions.append(f"status = ANY(${len(params)})")
        if device_filter.sat_desk_id is not None:
            params.append(device_filter.sat_desk_id)
            conditions.append(f"sat_desk_id = ${len(params)}")
        if device_filter.location is not None:
            params.append(device_filter.location.value)
            conditions.append(f"location = ${len(params)}")
        if device_filter.free_during is not None:
            params.append(device_filter.free_during.start)
            start_param = len(params)
            params.append(device_filter.free_during.end)
            end_param = len(params)
            conditions.append(
                f"NOT (rental_start IS NOT NULL AND rental_start <= ${end_param} "
                f"AND ${start_param} <= rental_end)"
            )

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        async with database_connection(self.pool) as conn:
            rows = await conn.fetch(
                f"SELECT {DEVICE_COLUMNS} FROM devices {where} ORDER BY device_number",
                *params,
            )
            return [self._row_to_device(row) for row in rows]

    async def list_all(self) -> list[Device]:
        return await self.find(DeviceFilter())

    async def add(self, device: Device) -> Device:
        async with database_transaction(self.pool) as conn:
            await conn.execute(
                """
                INSERT INTO devices (
                    id, imei, device_number, sat_desk_id, device_name, status,
                    location, rental_start, rental_end, assigned_user, order_ref,
                    notes, condition, battery_health, cleanup_checklist,
                    version, updated_at
                ) VALUES (
                    $1, $2, $3, $4, $5, $6, $7, $8, $9, $10::jsonb, $11,
                    $12, $13, $14, $15::jsonb, $16, $17
                )
                """,
                *self._device_params(device),
            )
        logger.info(f"Registered device {device.id} (IMEI {device.imei})")
        return device

    async def claim(
        self,
        device_id: str,
        window: RentalWindow,
        order_ref: str,
        user: Optional[DeviceUser] = None,
        expected_version: Optional[int] = None,
    ) -> Device:
        async with database_transaction(self.pool) as conn:
            device = await self._lock_device(conn, device_id)

            if expected_version is not None and device.version != expected_version:
                raise StaleStateError(
                    "Device",
                    device_id,
                    expected_version=expected_version,
                    actual_version=device.version,
                )

            reason = device.claim_block_reason(window)
            if reason:
                raise DeviceUnavailableError(device_id, reason)

            device.apply_claim(window, order_ref, user)
            await self._write(conn, device)

        logger.info(f"Device {device_id} claimed by order {order_ref}")
        return device

    async def release(self, device_id: str) -> Device:
        async with database_transaction(self.pool) as conn:
            device = await self._lock_device(conn, device_id)
            if device.order_ref is None and device.status != DeviceStatus.ACTIVE:
                return device

            previous = device.order_ref
            device.apply_release()
            await self._write(conn, device)

        logger.info(f"Device {device_id} released from order {previous}")
        return device

    async def return_device(self, device_id: str) -> Device:
        async with database_transaction(self.pool) as conn:
            device = await self._lock_device(conn, device_id)
            if device.status != DeviceStatus.ACTIVE:
                raise DeviceUnavailableError(device_id, "device is not out on rental")

            device.apply_return()
            await self._write(conn, device)

        logger.info(f"Device {device_id} returned, cleanup required")
        return device

    async def set_status(self, device_id: str, status: DeviceStatus) -> Device:
        status = DeviceStatus(status)
        async with database_transaction(self.pool) as conn:
            device = await self._lock_device(conn, device_id)
            reason = device.status_change_block_reason(status)
            if reason:
                raise DeviceUnavailableError(device_id, reason)

            device.apply_status(status)
            await self._write(conn, device)
        return device

    async def mark_cleanup_step(
        self,
        device_id: str,
        step: CleanupStep,
        done: bool = True,
    ) -> Device:
        async with database_transaction(self.pool) as conn:
            device = await self._lock_device(conn, device_id)
            device.apply_cleanup_step(CleanupStep(step), done)
            await self._write(conn, device)
        return device

    async def _lock_device(self, conn, device_id: str) -> Device:
        row = await conn.fetchrow(
            f"SELECT {DEVICE_COLUMNS} FROM devices WHERE id = $1 FOR UPDATE",
            device_id,
        )
        if row is None:
            raise NotFoundError("Device", device_id)
        return self._row_to_device(row)

    async def _write(self, conn, device: Device) -> None:
        await conn.execute(
            """
            UPDATE devices SET
                imei = $2,
                device_number = $3,
                sat_desk_id = $4,
                device_name = $5,
                status = $6,
                location = $7,
                rental_start = $8,
                rental_end = $9,
                assigned_user = $10::jsonb,
                order_ref = $11,
                notes = $12,
                condition = $13,
                battery_health = $14,
                cleanup_checklist = $15::jsonb,
                version = $16,
                updated_at = $17
            WHERE id = $1
            """,
            *self._device_params(device),
        )

    @staticmethod
    def _device_params(device: Device) -> tuple:
        window = device.rental_window
        return (
            device.id,
            device.imei,
            device.device_number,
            device.sat_desk_id,
            device.device_name,
            device.status.value,
            device.location.value,
            window.start if window else None,
            window.end if window else None,
            json.dumps(device.current_user.to_dict()) if device.current_user else None,
            device.order_ref,
            device.notes,
            device.condition.value,
            device.battery_health,
            json.dumps(device.cleanup_checklist.to_dict()),
            device.version,
            device.updated_at,
        )

    @staticmethod
    def _row_to_device(row) -> Device:
        """Convert a database row to a Device entity."""
        window = None
        if row["rental_start"] is not None and row["rental_end"] is not None:
            window = RentalWindow(start=row["rental_start"], end=row["rental_end"])

        user = json.loads(row["assigned_user"]) if row["assigned_user"] else None
        checklist = json.loads(row["cleanup_checklist"]) if row["cleanup_checklist"] else {}

        return Device(
            id=row["id"],
            imei=row["imei"],
            device_number=row["device_number"],
            sat_desk_id=row["sat_desk_id"],
            device_name=row["device_name"] or "",
            status=DeviceStatus(row["status"]),
            location=DeviceLocation(row["location"]),
            rental_window=window,
            current_user=DeviceUser.from_dict(user),
            order_ref=row["order_ref"],
            notes=row["notes"],
            condition=DeviceCondition(row["condition"]),
            battery_health=row["battery_health"],
            cleanup_checklist=CleanupChecklist.from_dict(checklist),
            version=row["version"],
            updated_at=row["updated_at"],
        )
