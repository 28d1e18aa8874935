"""Custom exception classes for Pledge Hub API"""
from typing import Any, TypeVar

from fastapi import HTTPException, status

from pledgehub.domain.results import Result
from pledgehub.utils.errors import (
    ConfigurationError,
    ConflictError,
    ConsistencyError,
    DatabaseError,
    NotFoundError,
    PermissionDeniedError,
    PledgeHubError,
    ProviderError,
    ValidationError,
)

T = TypeVar("T")

# Checked in order; subclasses resolve to their family's status
STATUS_BY_ERROR = (
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (PermissionDeniedError, status.HTTP_403_FORBIDDEN),
    (ConflictError, status.HTTP_409_CONFLICT),
    (ProviderError, status.HTTP_402_PAYMENT_REQUIRED),
    (ConsistencyError, status.HTTP_409_CONFLICT),
    (DatabaseError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (ConfigurationError, status.HTTP_500_INTERNAL_SERVER_ERROR),
)


class PledgeHubException(HTTPException):
    """Base exception with error_code support"""

    def __init__(self, error_code: str, message: str, status_code: int, details=None):
        super().__init__(status_code=status_code, detail=message)
        self.error_code = error_code
        self.details = details


class ResourceNotFoundException(PledgeHubException):
    """Exception for when a resource is not found"""

    def __init__(self, resource: str, identifier: str = None):
        message = f"{resource} not found"
        if identifier:
            message += f": {identifier}"
        super().__init__(
            error_code="NOT_FOUND",
            message=message,
            status_code=status.HTTP_404_NOT_FOUND
        )


class UnauthorizedException(PledgeHubException):
    """Exception for unauthorized access"""

    def __init__(self, message: str = "Unauthorized access"):
        super().__init__(
            error_code="UNAUTHORIZED",
            message=message,
            status_code=status.HTTP_401_UNAUTHORIZED
        )


def status_for_error(error: PledgeHubError) -> int:
    for error_type, code in STATUS_BY_ERROR:
        if isinstance(error, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def from_domain_error(error: PledgeHubError) -> PledgeHubException:
    """Translate a service error into an HTTP exception."""
    return PledgeHubException(
        error_code=error.code,
        message=error.message,
        status_code=status_for_error(error),
        details=error.details or None,
    )


def unwrap_result(result: Result[T]) -> T:
    """Return a successful result's value or raise its mapped HTTP error."""
    if result.ok:
        return result.value
    raise from_domain_error(result.error)


def error_body(error_code: str, message: str, status_code: int, details: Any = None) -> dict:
    return {
        "error_code": error_code,
        "message": message,
        "details": details,
        "status_code": status_code,
    }
