#!/usr/bin/env python3
"""Automated Scheduler for SatDesk rental housekeeping.

This module provides a long-running scheduler that periodically:
    - Retries compensating device releases left pending by cancellations
      or triage escalations, and frees claims no order records, so no
      device stays stranded on a dead order
    - Rescans alerts (overdue and expiring rentals, low stock, pending
      order backlog) and logs the critical ones

Designed to run as the main process in a Docker container next to the
API, sharing the same PostgreSQL database.

Architecture:
    - Simple asyncio loop with sleep (no external scheduler)
    - Graceful shutdown on SIGTERM/SIGINT
    - Configurable via environment variables
    - Health check endpoint via optional HTTP server

Environment Variables:
    ALERT_SCAN_INTERVAL_MINUTES: Minutes between cycles (default: 15)
    SCAN_ON_STARTUP: Run a cycle immediately on startup (default: true)
    HEALTH_CHECK_PORT: Port for health check endpoint (default: 8080, 0 to disable)
    RENTALS_BACKEND, DATABASE_URL and the alert thresholds: see
        src/satdesk/core/config.py

Example:
    # Run every 5 minutes
    ALERT_SCAN_INTERVAL_MINUTES=5 python scheduler.py
"""
import asyncio
import logging
import os
import signal
import sys
from datetime import UTC, datetime, timedelta
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

# Local imports
from src.satdesk.core.config import RentalsSettings
from src.satdesk.core.exceptions import ConfigurationError, RentalsError
from src.satdesk.rentals.api.dependencies import (
    RentalServices,
    close_services,
    init_services,
)
from src.satdesk.rentals.domain.entities import AlertSeverity

# Initialize logger
logger = logging.getLogger(__name__)

# ============================================
# Configuration
# ============================================

class SchedulerConfig:
    """Configuration loaded from environment variables."""

    def __init__(self, settings: Optional[RentalsSettings] = None):
        self.settings = settings or RentalsSettings()
        self.interval_minutes = self.settings.alert_scan_interval_minutes
        self.scan_on_startup = os.getenv("SCAN_ON_STARTUP", "true").lower() == "true"
        self.health_check_port = int(os.getenv("HEALTH_CHECK_PORT", "8080"))

    def __repr__(self):
        return (
            f"SchedulerConfig("
            f"interval={self.interval_minutes}m, "
            f"backend={self.settings.backend}, "
            f"startup={self.scan_on_startup}, "
            f"health_port={self.health_check_port})"
        )


# ============================================
# Housekeeping Cycle
# ============================================

async def run_cycle(services: RentalServices) -> dict:
    """Run one housekeeping cycle.

    Pending releases run first so the alert scan sees the freed stock.
    A failure in one step is recorded and does not skip the other.

    Args:
        services: Wired rental services

    Returns:
        Dict with cycle results
    """
    start_time = datetime.now(UTC)
    results = {
        "started_at": start_time.isoformat(),
        "releases": None,
        "alerts": None,
        "success": True,
        "errors": [],
    }

    try:
        released = await services.lifecycle.retry_pending_releases()
        results["releases"] = {"released": released}
    except RentalsError as e:
        logger.error(f"Pending release retry failed: {e}", exc_info=True)
        results["errors"].append({"step": "releases", **e.to_dict()})
        results["success"] = False

    try:
        alerts = await services.alert_engine.scan()
        active = services.alert_engine.active_alerts()
        critical = [a for a in active if a.severity == AlertSeverity.CRITICAL]
        for alert in critical:
            logger.warning(f"CRITICAL alert {alert.id}: {alert.message}")
        results["alerts"] = {
            "total": len(alerts),
            "active": len(active),
            "critical": len(critical),
        }
    except RentalsError as e:
        logger.error(f"Alert scan failed: {e}", exc_info=True)
        results["errors"].append({"step": "alerts", **e.to_dict()})
        results["success"] = False

    end_time = datetime.now(UTC)
    results["completed_at"] = end_time.isoformat()
    results["duration_seconds"] = (end_time - start_time).total_seconds()

    return results


# ============================================
# Health Check Server
# ============================================

class HealthState:
    """Shared state for health checks."""

    def __init__(self):
        self.last_cycle_at: Optional[datetime] = None
        self.last_cycle_success: bool = False
        self.total_cycles: int = 0
        self.failed_cycles: int = 0
        self.started_at: datetime = datetime.now(UTC)

    def record(self, results: dict) -> None:
        self.total_cycles += 1
        self.last_cycle_at = datetime.now(UTC)
        self.last_cycle_success = results["success"]
        if not results["success"]:
            self.failed_cycles += 1

    @property
    def healthy(self) -> bool:
        return self.last_cycle_success or self.total_cycles == 0


async def health_check_handler(reader, writer, state: HealthState):
    """Handle HTTP health check requests."""
    # Read request (we don't care about the content)
    await reader.read(1024)

    uptime = (datetime.now(UTC) - state.started_at).total_seconds()
    status = "healthy" if state.healthy else "unhealthy"

    body = (
        f'{{"status": "{status}", '
        f'"uptime_seconds": {uptime:.0f}, '
        f'"total_cycles": {state.total_cycles}, '
        f'"failed_cycles": {state.failed_cycles}, '
        f'"last_cycle_at": "{state.last_cycle_at.isoformat() if state.last_cycle_at else "never"}"}}'
    )

    http_status = 200 if status == "healthy" else 503
    response = (
        f"HTTP/1.1 {http_status} {'OK' if http_status == 200 else 'Service Unavailable'}\r\n"
        f"Content-Type: application/json\r\n"
        f"Content-Length: {len(body)}\r\n"
        f"Connection: close\r\n"
        f"\r\n"
        f"{body}"
    )

    writer.write(response.encode())
    await writer.drain()
    writer.close()
    await writer.wait_closed()


async def start_health_server(port: int, state: HealthState):
    """Start the health check HTTP server."""
    if port <= 0:
        return None

    async def handler(reader, writer):
        await health_check_handler(reader, writer, state)

    server = await asyncio.start_server(handler, "0.0.0.0", port)
    logger.info(f"Health check server listening on port {port}")
    return server


# ============================================
# Main Scheduler Loop
# ============================================

async def scheduler_loop(
    config: SchedulerConfig,
    services: RentalServices,
    health_state: HealthState,
    shutdown_event: asyncio.Event,
):
    """Main scheduling loop.

    Args:
        config: Scheduler configuration
        services: Wired rental services
        health_state: Shared health state
        shutdown_event: Event to signal shutdown
    """
    interval_seconds = config.interval_minutes * 60

    if config.scan_on_startup:
        logger.info("Running initial cycle on startup...")
        results = await run_cycle(services)
        health_state.record(results)
        logger.info(f"Initial cycle complete: {results}")

    next_run = datetime.now(UTC) + timedelta(seconds=interval_seconds)
    logger.info(f"Next cycle at {next_run.isoformat()} (in {config.interval_minutes} minutes)")

    while not shutdown_event.is_set():
        try:
            # Wait for either the interval or shutdown
            await asyncio.wait_for(
                shutdown_event.wait(),
                timeout=interval_seconds,
            )
            # If we get here, shutdown was requested
            break
        except asyncio.TimeoutError:
            # Timeout means it's time to run
            pass

        results = await run_cycle(services)
        health_state.record(results)

        logger.info(
            f"Cycle complete: success={results['success']}, "
            f"duration={results.get('duration_seconds', 0):.1f}s"
        )

        next_run = datetime.now(UTC) + timedelta(seconds=interval_seconds)
        logger.info(f"Next cycle at {next_run.isoformat()} (in {config.interval_minutes} minutes)")

    logger.info("Shutdown requested, exiting loop")


# ============================================
# Main Entry Point
# ============================================

async def main():
    """Main entry point for the scheduler."""
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    logger.info("SatDesk Rentals Scheduler starting")

    try:
        config = SchedulerConfig(RentalsSettings().validate())
    except ConfigurationError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)
    logger.info(f"Config: {config}")

    if config.settings.backend == "memory":
        logger.warning(
            "RENTALS_BACKEND=memory: the scheduler only sees its own in-process data. "
            "Use the postgres backend to share state with the API."
        )

    services = await init_services(config.settings)

    health_state = HealthState()
    shutdown_event = asyncio.Event()

    def handle_shutdown(signum, frame):
        logger.info(f"Received signal {signum}, initiating shutdown...")
        shutdown_event.set()

    signal.signal(signal.SIGTERM, handle_shutdown)
    signal.signal(signal.SIGINT, handle_shutdown)

    health_server = await start_health_server(config.health_check_port, health_state)

    try:
        await scheduler_loop(
            config=config,
            services=services,
            health_state=health_state,
            shutdown_event=shutdown_event,
        )
    finally:
        logger.info("Cleaning up...")

        if health_server:
            health_server.close()
            await health_server.wait_closed()

        await close_services()

        logger.info("Shutdown complete")


if __name__ == "__main__":
    asyncio.run(main())
