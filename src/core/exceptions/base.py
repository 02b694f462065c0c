from typing import Any


class AppException(Exception):
    """Base application exception."""

    def __init__(
        self,
        message: str,
        status_code: int = 400,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class NotFoundError(AppException):
    """Resource not found."""

    def __init__(self, resource: str, identifier: Any = None):
        message = f"{resource} not found"
        if identifier:
            message = f"{resource} with id={identifier} not found"
        super().__init__(message=message, status_code=404)


class ValidationError(AppException):
    """Malformed or out-of-range input. Never retried."""

    def __init__(self, message: str, field: str | None = None, details: dict[str, Any] | None = None):
        merged = dict(details or {})
        if field:
            merged["field"] = field
        super().__init__(message=message, status_code=400, details=merged)


class AuthenticationError(AppException):
    """Authentication failed."""

    def __init__(self, message: str = "Invalid credentials"):
        super().__init__(message=message, status_code=401)


class AuthorizationError(AppException):
    """Not authorized to perform action."""

    def __init__(self, message: str = "Not authorized"):
        super().__init__(message=message, status_code=403)


class StateConflictError(AppException):
    """Entity is not in a state that allows the requested transition."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message=message, status_code=409, details=details)


class ExternalServiceError(AppException):
    """Transient failure talking to an external system (timeout, network, 5xx)."""

    def __init__(self, service: str, message: str):
        super().__init__(
            message=f"{service}: {message}",
            status_code=502,
            details={"service": service},
        )
        self.service = service


class ConfigurationError(AppException):
    """Missing credentials or misconfigured settings. Fails the whole job."""

    def __init__(self, message: str):
        super().__init__(message=message, status_code=500)


class AllocationIncompleteError(AppException):
    """A multi-month allocation stopped before settling every requested month."""

    def __init__(self, message: str, applied_invoice_ids: list[int], failed_period: str | None):
        super().__init__(
            message=message,
            status_code=409,
            details={"applied_invoice_ids": applied_invoice_ids, "failed_period": failed_period},
        )
        self.applied_invoice_ids = applied_invoice_ids
