"""Calendar provider interfaces and the Google implementation."""

from .base import (
    BaseCalendarProvider, CredentialProvider, ProviderErrorKind, CalendarServiceError,
    SyncTokenExpiredError, AuthenticationError, CalendarNotFoundError, RateLimitError,
    error_for_status
)
from .google import GoogleCalendarProvider, ServiceAccountCredentialProvider

__all__ = [
    'BaseCalendarProvider',
    'CredentialProvider',
    'ProviderErrorKind',
    'CalendarServiceError',
    'SyncTokenExpiredError',
    'AuthenticationError',
    'CalendarNotFoundError',
    'RateLimitError',
    'error_for_status',
    'GoogleCalendarProvider',
    'ServiceAccountCredentialProvider',
]
