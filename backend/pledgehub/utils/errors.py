"""
Custom exceptions for Pledge Hub.

Provides domain-specific exceptions with clear error messages and
support for structured error handling. Each concrete error carries a
stable ``code`` that API clients can branch on.
"""

from typing import Optional, Dict, Any


class PledgeHubError(Exception):
    """Base exception for all Pledge Hub errors."""

    code = "PLEDGE_HUB_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


# ============================================================================
# Database Errors
# ============================================================================

class DatabaseError(PledgeHubError):
    """Database operation failed."""
    code = "DATABASE_ERROR"


class NotFoundError(PledgeHubError):
    """Requested record does not exist."""
    code = "NOT_FOUND"


# ============================================================================
# Authorization Errors
# ============================================================================

class PermissionDeniedError(PledgeHubError):
    """Actor is not allowed to perform this action."""
    code = "PERMISSION_DENIED"


class DematNotApprovedError(PermissionDeniedError):
    """User has no approved brokerage account link."""
    code = "DEMAT_NOT_APPROVED"


# ============================================================================
# Validation Errors
# ============================================================================

class ValidationError(PledgeHubError):
    """Input failed validation. Never audited unless a write was attempted."""
    code = "VALIDATION_ERROR"


class InvalidAccountIdError(ValidationError):
    code = "INVALID_ACCOUNT_ID"


class InvalidQuantityError(ValidationError):
    code = "INVALID_QUANTITY"


class InvalidPriceError(ValidationError):
    code = "INVALID_PRICE"


class DisclosureIncompleteError(ValidationError):
    code = "DISCLOSURE_INCOMPLETE"


class ConsentIncompleteError(ValidationError):
    code = "CONSENT_INCOMPLETE"


class InvalidSessionConfigError(ValidationError):
    code = "INVALID_SESSION_CONFIG"


# ============================================================================
# Conflict Errors
# ============================================================================

class ConflictError(PledgeHubError):
    """Request conflicts with current state; caller may retry with different input."""
    code = "CONFLICT"


class AccountAlreadyLinkedError(ConflictError):
    code = "ACCOUNT_ALREADY_LINKED"


class DuplicatePendingRequestError(ConflictError):
    code = "DUPLICATE_PENDING_REQUEST"


class DuplicatePledgeError(ConflictError):
    code = "DUPLICATE_PLEDGE"


class SessionFullError(ConflictError):
    code = "SESSION_FULL"


class SessionExpiredError(ConflictError):
    code = "SESSION_EXPIRED"


class InvalidTransitionError(ConflictError):
    code = "INVALID_TRANSITION"


class AutoSellNotTriggeredError(ConflictError):
    code = "AUTO_SELL_NOT_TRIGGERED"


# ============================================================================
# Provider Errors
# ============================================================================

class ProviderError(PledgeHubError):
    """External provider (payment gateway, broker) rejected the request."""
    code = "PROVIDER_ERROR"


class PaymentFailedError(ProviderError):
    code = "PAYMENT_FAILED"


# ============================================================================
# Consistency Errors
# ============================================================================

class ConsistencyError(PledgeHubError):
    """A concurrent actor changed the record first."""
    code = "CONSISTENCY_ERROR"


class AlreadyExecutingError(ConsistencyError):
    code = "ALREADY_EXECUTING"


# ============================================================================
# Configuration Errors
# ============================================================================

class ConfigurationError(PledgeHubError):
    """Configuration error."""
    code = "CONFIGURATION_ERROR"


# Errors that services report as typed results instead of raising.
EXPECTED_ERRORS = (
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
    ConflictError,
    ProviderError,
    ConsistencyError,
)
