"""Shared infrastructure for the SatDesk rental engine.

Modules:
    exceptions: RentalsError hierarchy
    resilience: Retry with exponential backoff
    database: asyncpg transaction and pool helpers
    config: Environment-driven settings
"""
from .config import RentalsSettings, load_settings
from .exceptions import (
    ConfigurationError,
    ConnectionPoolError,
    DatabaseError,
    DeviceUnavailableError,
    DuplicateOrderError,
    IntegrityError,
    InvalidPatchError,
    InvalidTransitionError,
    NotFoundError,
    QuotaExceededError,
    RentalsError,
    StaleStateError,
    TransactionError,
    ValidationIncompleteError,
)
from .resilience import DEFAULT_RETRYABLE_EXCEPTIONS, retry_async

__all__ = [
    # Config
    "RentalsSettings",
    "load_settings",
    # Exceptions
    "RentalsError",
    "ConfigurationError",
    "NotFoundError",
    "InvalidPatchError",
    "DuplicateOrderError",
    "ValidationIncompleteError",
    "InvalidTransitionError",
    "DeviceUnavailableError",
    "QuotaExceededError",
    "StaleStateError",
    "DatabaseError",
    "ConnectionPoolError",
    "TransactionError",
    "IntegrityError",
    # Resilience
    "DEFAULT_RETRYABLE_EXCEPTIONS",
    "retry_async",
]
