"""
Custom exception hierarchy for the calendar mirror service.
Provides structured error handling with proper context.
"""

from typing import Optional, Dict, Any


class CalendarServiceException(Exception):
    """Base exception for all calendar service errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        """
        Initialize exception with message and optional context.

        Args:
            message: Human-readable error message
            error_code: Machine-readable error code
            context: Additional context information
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.context = context or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/API responses."""
        return {
            "error": self.error_code,
            "message": self.message,
            "context": self.context,
        }


# ==================== Database Exceptions ====================


class DatabaseException(CalendarServiceException):
    """Base exception for database-related errors."""

    pass


class NotFoundError(CalendarServiceException):
    """Raised when a record does not exist or is not owned by the caller."""

    def __init__(self, model: str, identifier: Any):
        super().__init__(
            message=f"{model} not found",
            error_code="NOT_FOUND",
            context={"model": model, "identifier": identifier},
        )


# ==================== Validation Exceptions ====================


class ValidationError(CalendarServiceException):
    """Raised when input validation fails."""

    def __init__(self, field: str, reason: str):
        super().__init__(
            message=f"Invalid input: {field} - {reason}",
            error_code="VALIDATION_ERROR",
            context={"field": field, "reason": reason},
        )


class RecurrenceRuleError(ValidationError):
    """Raised when a recurrence rule is malformed or unsupported."""

    def __init__(self, rule: str, reason: str):
        super().__init__(field="recurrenceRule", reason=reason)
        self.error_code = "INVALID_RECURRENCE_RULE"
        self.context["rule"] = rule


# ==================== Auth Exceptions ====================


class AuthError(CalendarServiceException):
    """Raised when a session or credential is missing, invalid or expired."""

    def __init__(self, reason: str, forbidden: bool = False):
        super().__init__(
            message=reason,
            error_code="FORBIDDEN" if forbidden else "UNAUTHORIZED",
            context={},
        )
        self.forbidden = forbidden


class ProviderAuthError(AuthError):
    """Raised when the provider rejects the grant (expired or revoked)."""

    def __init__(self, provider: str, status_code: Optional[int] = None):
        super().__init__(reason=f"{provider} credentials rejected")
        self.error_code = "PROVIDER_AUTH_ERROR"
        self.context = {"provider": provider, "status_code": status_code}


# ==================== External Service Exceptions ====================


class ExternalServiceException(CalendarServiceException):
    """Base exception for external service errors."""

    pass


class ProviderError(ExternalServiceException):
    """Raised when a remote calendar API call fails. Retryable."""

    def __init__(
        self,
        provider: str,
        status_code: Optional[int] = None,
        details: Optional[str] = None,
    ):
        super().__init__(
            message=f"{provider} calendar request failed",
            error_code="PROVIDER_ERROR",
            context={"provider": provider, "status_code": status_code, "details": details},
        )
        self.provider = provider
        self.status_code = status_code


class RateLimitedError(ProviderError):
    """Raised when the provider answers 429. Callers back off instead of retrying."""

    def __init__(self, provider: str, retry_after_seconds: Optional[float] = None):
        super().__init__(provider=provider, status_code=429, details="rate limited")
        self.error_code = "RATE_LIMITED"
        self.retry_after_seconds = retry_after_seconds
        self.context["retry_after_seconds"] = retry_after_seconds


# ==================== Sync Exceptions ====================


class InvalidSyncTransition(CalendarServiceException):
    """Raised when the sync state machine is driven through an illegal edge."""

    def __init__(self, current: str, target: str):
        super().__init__(
            message=f"Illegal sync transition {current} -> {target}",
            error_code="INVALID_SYNC_TRANSITION",
            context={"current": current, "target": target},
        )
