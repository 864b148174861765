# backend/icm/core/errors.py
from __future__ import annotations

from typing import Any


class IcmError(Exception):
    """
    Base for every error the engine reports on purpose.

    `code` is the stable machine-readable identifier that ends up in the
    execution log and in HTTP error bodies, `retryable` tells operators whether
    re-submitting the same run can succeed without fixing anything first.
    """

    code: str = "ICM_ERROR"
    retryable: bool = False

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "type": type(self).__name__,
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.details:
            data["details"] = self.details
        return data


class ValidationError(IcmError):
    code = "VALIDATION_ERROR"


class RunCancelledError(ValidationError):
    code = "RUN_CANCELLED"


class SchemeNotFoundError(IcmError):
    code = "SCHEME_NOT_FOUND"


class ExecutionLogNotFoundError(IcmError):
    code = "EXECUTION_LOG_NOT_FOUND"


class ProductionRunConflictError(IcmError):
    code = "PRODUCTION_ALREADY_RUN"


class TenantConfigurationError(IcmError):
    code = "TENANT_CONFIGURATION_ERROR"


class TenantNotConfiguredError(TenantConfigurationError):
    code = "TENANT_NOT_CONFIGURED"


class TenantSetupIncompleteError(TenantConfigurationError):
    code = "TENANT_SETUP_INCOMPLETE"


# Causes reported with TenantConnectionError.kind
AUTH_FAILURE = "auth_failure"
HOST_UNREACHABLE = "host_unreachable"
MALFORMED_URI = "malformed_uri"
TIMEOUT = "timeout"
UNKNOWN = "unknown"


class TenantConnectionError(IcmError):
    code = "CONNECTION_FAILED"
    retryable = True

    def __init__(self, message: str, *, kind: str = UNKNOWN, **details: Any) -> None:
        super().__init__(message, kind=kind, **details)
        self.kind = kind


class RuleConfigurationError(IcmError):
    code = "RULE_CONFIGURATION_ERROR"

    def __init__(self, message: str, *, issues: list[str] | None = None, **details: Any) -> None:
        self.issues = list(issues or [message])
        super().__init__(message, issues=self.issues, **details)


class RuleExpressionError(IcmError):
    code = "RULE_EXPRESSION_ERROR"

    def __init__(self, message: str, *, position: int | None = None) -> None:
        if position is None:
            super().__init__(message)
        else:
            super().__init__(message, position=position)
        self.position = position


class PostProcessingError(IcmError):
    code = "POST_PROCESSING_ERROR"


class PersistenceError(IcmError):
    code = "PERSISTENCE_ERROR"
    retryable = True
