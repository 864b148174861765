# backend/icm/api/deps/errors.py
from typing import Any

from fastapi import HTTPException, status

from icm.core.errors import (
    ExecutionLogNotFoundError,
    IcmError,
    PersistenceError,
    ProductionRunConflictError,
    RuleConfigurationError,
    SchemeNotFoundError,
    TenantConfigurationError,
    TenantConnectionError,
    ValidationError,
)

# first match wins
STATUS_BY_ERROR: list[tuple[type[IcmError], int]] = [
    (ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (SchemeNotFoundError, status.HTTP_404_NOT_FOUND),
    (ExecutionLogNotFoundError, status.HTTP_404_NOT_FOUND),
    (TenantConfigurationError, status.HTTP_409_CONFLICT),
    (ProductionRunConflictError, status.HTTP_409_CONFLICT),
    (TenantConnectionError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (RuleConfigurationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (PersistenceError, status.HTTP_500_INTERNAL_SERVER_ERROR),
]


def status_for(exc: IcmError) -> int:
    for cls, code in STATUS_BY_ERROR:
        if isinstance(exc, cls):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def http_error(exc: IcmError, **extra: Any) -> HTTPException:
    """HTTPException with detail {"error": code, "message", "retryable", "details"?, **extra}."""
    detail: dict[str, Any] = {"error": exc.code, "message": exc.message, "retryable": exc.retryable}
    if exc.details:
        detail["details"] = exc.details
    detail.update({k: v for k, v in extra.items() if v is not None})
    return HTTPException(status_code=status_for(exc), detail=detail)
