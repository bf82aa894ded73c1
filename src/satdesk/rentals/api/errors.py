"""Mapping of rental errors to HTTP responses.

Domain errors are returned with their structured ``to_dict`` payload so a
client can show the missing fields or the current vs. attempted status.
Database errors are logged in full and returned with a generic message,
since driver messages can carry connection details.
"""

import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from ...core.exceptions import (
    ConfigurationError,
    DatabaseError,
    DeviceUnavailableError,
    DuplicateOrderError,
    IntegrityError,
    InvalidPatchError,
    InvalidTransitionError,
    NotFoundError,
    RentalsError,
    StaleStateError,
)

logger = logging.getLogger(__name__)

STATUS_CODES: dict[type[RentalsError], int] = {
    NotFoundError: status.HTTP_404_NOT_FOUND,
    InvalidTransitionError: status.HTTP_409_CONFLICT,
    DeviceUnavailableError: status.HTTP_409_CONFLICT,
    StaleStateError: status.HTTP_409_CONFLICT,
    DuplicateOrderError: status.HTTP_409_CONFLICT,
    InvalidPatchError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    IntegrityError: status.HTTP_409_CONFLICT,
    ConfigurationError: status.HTTP_500_INTERNAL_SERVER_ERROR,
    DatabaseError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def status_code_for(exc: RentalsError) -> int:
    for error_type in type(exc).__mro__:
        if error_type in STATUS_CODES:
            return STATUS_CODES[error_type]
    return status.HTTP_400_BAD_REQUEST


async def rentals_error_handler(request: Request, exc: RentalsError) -> JSONResponse:
    code = status_code_for(exc)

    if isinstance(exc, DatabaseError):
        logger.error(f"Database error on {request.url.path}: {exc}", exc_info=exc)
        return JSONResponse(
            status_code=code,
            content={
                "error_type": "DatabaseError",
                "code": exc.code,
                "message": (
                    "Conflicts with an existing record"
                    if isinstance(exc, IntegrityError)
                    else "Database operation failed"
                ),
                "recoverable": exc.recoverable,
            },
        )

    logger.info(f"{request.method} {request.url.path} rejected: {exc}")
    return JSONResponse(status_code=code, content=exc.to_dict())


async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"error_type": "ValueError", "code": "INVALID_VALUE", "message": str(exc)},
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(RentalsError, rentals_error_handler)
    app.add_exception_handler(ValueError, value_error_handler)
