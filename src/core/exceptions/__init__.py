from src.core.exceptions.base import (
    AppException,
    NotFoundError,
    ValidationError,
    AuthenticationError,
    AuthorizationError,
    StateConflictError,
    ExternalServiceError,
    ConfigurationError,
    AllocationIncompleteError,
)

__all__ = [
    "AppException",
    "NotFoundError",
    "ValidationError",
    "AuthenticationError",
    "AuthorizationError",
    "StateConflictError",
    "ExternalServiceError",
    "ConfigurationError",
    "AllocationIncompleteError",
]
