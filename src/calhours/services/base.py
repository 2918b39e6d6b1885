"""Calendar provider interfaces and error taxonomy."""

from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Optional
import logging

from ..models import EventPage

logger = logging.getLogger(__name__)


class ProviderErrorKind(str, Enum):
    """How the ingestion engine treats a provider failure."""

    TRANSIENT = "transient"  # Propagated; the scheduler tries again next cycle
    TOKEN_EXPIRED = "token_expired"  # Clear state and retry the run once
    FATAL = "fatal"  # Propagated; needs operator attention


class CalendarServiceError(Exception):
    """Base exception for calendar provider errors."""

    kind = ProviderErrorKind.TRANSIENT

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class SyncTokenExpiredError(CalendarServiceError):
    """The provider no longer accepts the resumption token (HTTP 410)."""

    kind = ProviderErrorKind.TOKEN_EXPIRED


class AuthenticationError(CalendarServiceError):
    """Authentication-related errors."""

    kind = ProviderErrorKind.FATAL


class CalendarNotFoundError(CalendarServiceError):
    """Calendar not found errors."""

    kind = ProviderErrorKind.FATAL


class RateLimitError(CalendarServiceError):
    """Rate limiting errors."""

    kind = ProviderErrorKind.TRANSIENT


def error_for_status(status: Optional[int], message: str) -> CalendarServiceError:
    """Map an HTTP status from the provider to the matching error class."""
    if status == 410:
        return SyncTokenExpiredError(message, status)
    if status in (401, 403):
        return AuthenticationError(message, status)
    if status == 404:
        return CalendarNotFoundError(message, status)
    if status == 429:
        return RateLimitError(message, status)
    return CalendarServiceError(message, status)


class BaseCalendarProvider(ABC):
    """A calendar client already authorized for one user."""

    @abstractmethod
    async def get_time_zone(self, calendar_id: str) -> str:
        """Get the IANA time zone of a calendar.

        Args:
            calendar_id: Calendar ID

        Returns:
            Time zone name, 'UTC' when the provider reports none

        Raises:
            CalendarServiceError: If the calendar metadata cannot be retrieved
        """
        pass

    @abstractmethod
    async def list_events(
        self,
        calendar_id: str,
        *,
        time_min: Optional[datetime] = None,
        time_max: Optional[datetime] = None,
        single_events: bool = False,
        order_by: Optional[str] = None,
        page_token: Optional[str] = None,
        sync_token: Optional[str] = None,
        show_deleted: bool = False,
        max_results: int = 250,
    ) -> EventPage:
        """Fetch one page of events.

        With ``sync_token`` only changes since that token are returned and the
        time bounds must be omitted. The final page carries ``next_sync_token``.

        Raises:
            SyncTokenExpiredError: If ``sync_token`` is no longer valid
            CalendarServiceError: For any other provider failure
        """
        pass


class CredentialProvider(ABC):
    """Hands out calendar clients authorized as a given user."""

    @abstractmethod
    async def calendar_for(self, user_email: str) -> BaseCalendarProvider:
        """Return a provider client acting as ``user_email``.

        Raises:
            AuthenticationError: If credentials cannot be obtained
        """
        pass
