"""Runtime configuration loaded from environment variables.

Entry points call ``load_dotenv()`` before constructing settings so a local
``.env`` file is honoured during development.

Environment Variables:
    RENTALS_BACKEND: "memory" or "postgres" (default: memory)
    DATABASE_URL: PostgreSQL connection string (required for postgres)
    LOW_INVENTORY_THRESHOLD: Alert when fewer devices are in stock (default: 3)
    PENDING_ORDERS_WARNING_COUNT: Pending backlog above this is a warning (default: 5)
    EXPIRING_WINDOW_DAYS: Days ahead a rental counts as expiring (default: 3)
    RECOMMENDED_DEVICE_LIMIT: Number of recommended devices (default: 5)
    ORDER_NUMBER_PREFIX: Prefix for generated order numbers (default: MAG)
    RELEASE_MAX_ATTEMPTS: Attempts for a compensating release (default: 5)
    RELEASE_INITIAL_DELAY_SECONDS: First backoff delay for releases (default: 0.5)
    ALERT_SCAN_INTERVAL_MINUTES: Scheduler scan interval (default: 15)
    ORPHAN_CLAIM_GRACE_SECONDS: Age before an unrecorded claim is released (default: 300)
"""

import os
from typing import Optional

from .exceptions import ConfigurationError

BACKENDS = ("memory", "postgres")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, str(default))
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}", cause=e)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, str(default))
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}", cause=e)


class RentalsSettings:
    """Configuration loaded from environment variables."""

    def __init__(self):
        self.backend = os.getenv("RENTALS_BACKEND", "memory").lower()
        self.database_url: Optional[str] = os.getenv("DATABASE_URL") or None
        self.low_inventory_threshold = _env_int("LOW_INVENTORY_THRESHOLD", 3)
        self.pending_orders_warning_count = _env_int("PENDING_ORDERS_WARNING_COUNT", 5)
        self.expiring_window_days = _env_int("EXPIRING_WINDOW_DAYS", 3)
        self.recommended_device_limit = _env_int("RECOMMENDED_DEVICE_LIMIT", 5)
        self.order_number_prefix = os.getenv("ORDER_NUMBER_PREFIX", "MAG")
        self.release_max_attempts = _env_int("RELEASE_MAX_ATTEMPTS", 5)
        self.release_initial_delay = _env_float("RELEASE_INITIAL_DELAY_SECONDS", 0.5)
        self.alert_scan_interval_minutes = _env_int("ALERT_SCAN_INTERVAL_MINUTES", 15)
        self.orphan_claim_grace_seconds = _env_int("ORPHAN_CLAIM_GRACE_SECONDS", 300)

    def validate(self) -> "RentalsSettings":
        """Check cross-field requirements.

        Raises:
            ConfigurationError: If the backend is unknown or misconfigured
        """
        if self.backend not in BACKENDS:
            raise ConfigurationError(
                f"RENTALS_BACKEND must be one of {', '.join(BACKENDS)}, got {self.backend!r}"
            )
        if self.backend == "postgres" and not self.database_url:
            raise ConfigurationError(
                "DATABASE_URL is required for the postgres backend",
                missing_keys=["DATABASE_URL"],
            )
        if self.release_max_attempts < 1:
            raise ConfigurationError("RELEASE_MAX_ATTEMPTS must be at least 1")
        if self.orphan_claim_grace_seconds < 0:
            raise ConfigurationError("ORPHAN_CLAIM_GRACE_SECONDS must not be negative")
        return self

    def __repr__(self):
        return (
            f"RentalsSettings("
            f"backend={self.backend}, "
            f"low_inventory_threshold={self.low_inventory_threshold}, "
            f"pending_warning={self.pending_orders_warning_count}, "
            f"expiring_days={self.expiring_window_days}, "
            f"release_attempts={self.release_max_attempts})"
        )


def load_settings() -> RentalsSettings:
    """Build and validate settings from the current environment."""
    return RentalsSettings().validate()
