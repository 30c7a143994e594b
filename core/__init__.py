"""
Core utilities and infrastructure for the calendar mirror service.
"""

from core.exceptions import (
    CalendarServiceException,
    DatabaseException,
    NotFoundError,
    ValidationError,
    RecurrenceRuleError,
    AuthError,
    ProviderAuthError,
    ExternalServiceException,
    ProviderError,
    RateLimitedError,
    InvalidSyncTransition,
)
from core.logging_config import configure_logging, get_logger
from core.clock import Clock, SystemClock, system_clock, utcnow, to_naive_utc
from core.cache import TTLCache

__all__ = [
    "CalendarServiceException",
    "DatabaseException",
    "NotFoundError",
    "ValidationError",
    "RecurrenceRuleError",
    "AuthError",
    "ProviderAuthError",
    "ExternalServiceException",
    "ProviderError",
    "RateLimitedError",
    "InvalidSyncTransition",
    "configure_logging",
    "get_logger",
    "Clock",
    "SystemClock",
    "system_clock",
    "utcnow",
    "to_naive_utc",
    "TTLCache",
]
