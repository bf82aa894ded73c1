"""PostgreSQL schema for the rental engine.

Devices and SatDesks are stored as columns; orders are stored as a JSONB
document next to the columns that queries and constraints need
(order number, status, version).
"""

import logging

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS sat_desks (
    id TEXT PRIMARY KEY,
    number INTEGER NOT NULL DEFAULT 0,
    name TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    device_quota INTEGER NOT NULL,
    is_active BOOLEAN NOT NULL DEFAULT TRUE
);

CREATE TABLE IF NOT EXISTS devices (
    id TEXT PRIMARY KEY,
    imei TEXT NOT NULL UNIQUE,
    device_number INTEGER NOT NULL,
    sat_desk_id TEXT NOT NULL REFERENCES sat_desks(id),
    device_name TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL DEFAULT 'available',
    location TEXT NOT NULL DEFAULT 'in',
    rental_start TIMESTAMPTZ,
    rental_end TIMESTAMPTZ,
    assigned_user JSONB,
    order_ref TEXT,
    notes TEXT,
    condition TEXT NOT NULL DEFAULT 'good',
    battery_health INTEGER NOT NULL DEFAULT 100,
    cleanup_checklist JSONB NOT NULL DEFAULT '{}'::jsonb,
    version INTEGER NOT NULL DEFAULT 0,
    updated_at TIMESTAMPTZ
);

CREATE INDEX IF NOT EXISTS idx_devices_sat_desk ON devices(sat_desk_id);
CREATE INDEX IF NOT EXISTS idx_devices_status ON devices(status);

CREATE TABLE IF NOT EXISTS rental_orders (
    id TEXT PRIMARY KEY,
    order_number TEXT NOT NULL UNIQUE,
    status TEXT NOT NULL,
    version INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMPTZ NOT NULL,
    document JSONB NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_rental_orders_status ON rental_orders(status);
"""


async def ensure_schema(pool) -> None:
    """Create the rental tables if they do not exist."""
    async with pool.acquire() as conn:
        await conn.execute(SCHEMA_SQL)
    logger.info("Rental schema ensured")
