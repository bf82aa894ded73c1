#!/usr/bin/env python3
"""Exception Hierarchy for the SatDesk rental engine.

This module provides a structured exception hierarchy for the rental order
lifecycle, device allocation and persistence layers.

Design Principles:
    - All exceptions inherit from RentalsError base class
    - Exceptions preserve context (original error, timestamps, details)
    - Exceptions are categorized by recoverability
    - Details carry enough data to drive UI messaging (missing field list,
      current vs. attempted state) without re-deriving the rule

Exception Hierarchy:
    RentalsError (base)
    ├── ConfigurationError (unrecoverable - fix config)
    ├── NotFoundError
    ├── InvalidPatchError
    ├── DuplicateOrderError
    ├── ValidationIncompleteError (non-fatal - recorded on the order)
    ├── InvalidTransitionError (rejected - order unchanged)
    ├── DeviceUnavailableError (rejected - caller must re-select)
    ├── QuotaExceededError (soft - surfaces as an alert)
    ├── StaleStateError (optimistic concurrency - refetch and retry)
    └── DatabaseError (may be recoverable)
        ├── ConnectionPoolError
        ├── TransactionError
        └── IntegrityError
"""
from datetime import datetime, timezone
from typing import Any, Optional

# ============================================
# Base Exception
# ============================================

class RentalsError(Exception):
    """Base exception for all rental engine errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code (e.g., "INVALID_TRANSITION")
        details: Additional context as a dictionary
        timestamp: When the error occurred
        cause: The original exception that caused this error
        recoverable: Whether this error might be recoverable with retry
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        recoverable: bool = False,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.__class__.__name__.upper()
        self.details = details or {}
        self.timestamp = datetime.now(timezone.utc)
        self.cause = cause
        self.recoverable = recoverable

        if cause:
            self.__cause__ = cause

    def __str__(self) -> str:
        parts = [self.message]
        if self.code:
            parts.insert(0, f"[{self.code}]")
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            parts.append(f"({detail_str})")
        return " ".join(parts)

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"code={self.code!r}, "
            f"details={self.details!r}, "
            f"recoverable={self.recoverable})"
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "code": self.code,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
            "recoverable": self.recoverable,
            "cause": str(self.cause) if self.cause else None,
        }


# ============================================
# Configuration Errors (Unrecoverable)
# ============================================

class ConfigurationError(RentalsError):
    """Raised when configuration is missing or invalid."""

    def __init__(
        self,
        message: str,
        missing_keys: Optional[list[str]] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if missing_keys:
            details["missing_keys"] = missing_keys
        super().__init__(
            message,
            code="CONFIGURATION_ERROR",
            details=details,
            recoverable=False,
            **kwargs,
        )


# ============================================
# Lookup and Input Errors
# ============================================

class NotFoundError(RentalsError):
    """Raised when an order, device or SatDesk does not exist."""

    def __init__(
        self,
        resource_type: str,
        resource_id: Optional[str] = None,
        **kwargs,
    ):
        message = f"{resource_type} not found"
        if resource_id:
            message = f"{resource_type} '{resource_id}' not found"

        details = kwargs.pop("details", {})
        details["resource_type"] = resource_type
        if resource_id:
            details["resource_id"] = resource_id

        super().__init__(
            message,
            code="NOT_FOUND",
            details=details,
            recoverable=False,
            **kwargs,
        )
        self.resource_type = resource_type
        self.resource_id = resource_id


class InvalidPatchError(RentalsError):
    """Raised when an update tries to write fields owned by the state machine."""

    def __init__(
        self,
        message: str,
        fields: Optional[list[str]] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if fields:
            details["fields"] = fields
        super().__init__(
            message,
            code="INVALID_PATCH",
            details=details,
            recoverable=False,
            **kwargs,
        )
        self.fields = fields or []


class DuplicateOrderError(RentalsError):
    """Raised when an order number is already taken."""

    def __init__(self, order_number: str, **kwargs):
        details = kwargs.pop("details", {})
        details["order_number"] = order_number
        super().__init__(
            f"Order number '{order_number}' already exists",
            code="DUPLICATE_ORDER",
            details=details,
            recoverable=False,
            **kwargs,
        )
        self.order_number = order_number


# ============================================
# Order Lifecycle Errors
# ============================================

class ValidationIncompleteError(RentalsError):
    """Describes an order with missing required data.

    Never raised by create/update; the defect is recorded on the order as
    ``missing_fields``. Used to report the gap to collaborators.
    """

    def __init__(
        self,
        missing_fields: list[str],
        order_id: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        details["missing_fields"] = list(missing_fields)
        if order_id:
            details["order_id"] = order_id
        super().__init__(
            f"Order data incomplete: {', '.join(missing_fields)}",
            code="VALIDATION_INCOMPLETE",
            details=details,
            recoverable=True,
            **kwargs,
        )
        self.missing_fields = list(missing_fields)
        self.order_id = order_id


class InvalidTransitionError(RentalsError):
    """Raised when a status change is not allowed from the current status."""

    def __init__(
        self,
        order_id: str,
        current_status: str,
        attempted_status: str,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        details["order_id"] = order_id
        details["current_status"] = current_status
        details["attempted_status"] = attempted_status
        super().__init__(
            f"Cannot move order from '{current_status}' to '{attempted_status}'",
            code="INVALID_TRANSITION",
            details=details,
            recoverable=False,
            **kwargs,
        )
        self.order_id = order_id
        self.current_status = current_status
        self.attempted_status = attempted_status


class DeviceUnavailableError(RentalsError):
    """Raised when a claim loses a race or the device is gated.

    The caller must re-select against a fresh candidate list.
    """

    def __init__(
        self,
        device_id: str,
        reason: str = "Device is not available",
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        details["device_id"] = device_id
        details["reason"] = reason
        super().__init__(
            f"Device '{device_id}' unavailable: {reason}",
            code="DEVICE_UNAVAILABLE",
            details=details,
            recoverable=True,
            **kwargs,
        )
        self.device_id = device_id
        self.reason = reason


class QuotaExceededError(RentalsError):
    """Describes a SatDesk holding more devices than its quota.

    Soft condition: reported, never raised to block an order.
    """

    def __init__(
        self,
        sat_desk_id: str,
        device_count: int,
        device_quota: int,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        details["sat_desk_id"] = sat_desk_id
        details["device_count"] = device_count
        details["device_quota"] = device_quota
        super().__init__(
            f"SatDesk '{sat_desk_id}' holds {device_count} devices (quota {device_quota})",
            code="QUOTA_EXCEEDED",
            details=details,
            recoverable=True,
            **kwargs,
        )
        self.sat_desk_id = sat_desk_id
        self.device_count = device_count
        self.device_quota = device_quota


class StaleStateError(RentalsError):
    """Raised on an optimistic-concurrency conflict."""

    def __init__(
        self,
        entity: str,
        entity_id: str,
        expected_version: Optional[int] = None,
        actual_version: Optional[int] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        details["entity"] = entity
        details["entity_id"] = entity_id
        if expected_version is not None:
            details["expected_version"] = expected_version
        if actual_version is not None:
            details["actual_version"] = actual_version
        super().__init__(
            f"{entity} '{entity_id}' was modified concurrently",
            code="STALE_STATE",
            details=details,
            recoverable=True,
            **kwargs,
        )
        self.entity = entity
        self.entity_id = entity_id
        self.expected_version = expected_version
        self.actual_version = actual_version


# ============================================
# Database Errors
# ============================================

class DatabaseError(RentalsError):
    """Base class for database-related errors."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("recoverable", True)
        super().__init__(message, **kwargs)


class ConnectionPoolError(DatabaseError):
    """Raised when database connection pool is exhausted or unavailable."""

    def __init__(
        self,
        message: str = "Database connection pool error",
        **kwargs,
    ):
        super().__init__(message, code="CONNECTION_POOL_ERROR", **kwargs)


class TransactionError(DatabaseError):
    """Raised when database transaction fails."""

    def __init__(
        self,
        message: str = "Database transaction failed",
        operation: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if operation:
            details["operation"] = operation
        super().__init__(
            message,
            code="TRANSACTION_ERROR",
            details=details,
            **kwargs,
        )


class IntegrityError(DatabaseError):
    """Raised when database integrity constraint is violated."""

    def __init__(
        self,
        message: str = "Database integrity error",
        constraint: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if constraint:
            details["constraint"] = constraint
        super().__init__(
            message,
            code="INTEGRITY_ERROR",
            details=details,
            recoverable=False,
            **kwargs,
        )


__all__ = [
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
]
