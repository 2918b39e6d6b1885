"""Google Calendar provider backed by a delegated service account."""

import asyncio
import json
import logging
from datetime import date, datetime
from typing import Any, Dict, Optional

from google.oauth2 import service_account
from google_auth_httplib2 import AuthorizedHttp
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
import httplib2
import pytz

from .base import (
    BaseCalendarProvider, CalendarServiceError, AuthenticationError, CredentialProvider, error_for_status
)
from ..config import Settings
from ..models import EventPage, ProviderEvent, normalize_email

logger = logging.getLogger(__name__)


def parse_event_time(value: Optional[Dict[str, Any]]) -> Optional[datetime]:
    """Turn a Google ``start``/``end`` object into an aware instant.

    Timed events carry ``dateTime`` (RFC3339). All-day events carry only
    ``date``; those map to midnight UTC of that date with no zone shifting.
    """
    if not value:
        return None
    if value.get('dateTime'):
        return datetime.fromisoformat(value['dateTime'].replace('Z', '+00:00'))
    if value.get('date'):
        d = date.fromisoformat(value['date'])
        return datetime(d.year, d.month, d.day, tzinfo=pytz.UTC)
    return None


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace('Z', '+00:00'))


class GoogleCalendarProvider(BaseCalendarProvider):
    """Google Calendar v3 client for a single impersonated user."""

    def __init__(self, service, user_email: Optional[str] = None):
        """Initialize Google Calendar provider.

        Args:
            service: Authorized ``googleapiclient`` Calendar resource
            user_email: User the client acts as, for log context
        """
        self.service = service
        self.user_email = user_email
        self.logger = logger.getChild('provider')

    async def _execute(self, request_factory):
        """Run a blocking API request in the default executor."""
        try:
            return await asyncio.get_event_loop().run_in_executor(
                None,
                lambda: request_factory().execute()
            )
        except HttpError as e:
            status = getattr(e.resp, 'status', None)
            raise error_for_status(status, f"Google Calendar request failed ({status}): {e}") from e

    async def get_time_zone(self, calendar_id: str) -> str:
        """Get the calendar's time zone from the user's calendar list."""
        entry = await self._execute(
            lambda: self.service.calendarList().get(calendarId=calendar_id)
        )
        return entry.get('timeZone') or 'UTC'

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
        """Fetch one page of Google Calendar events."""
        params: Dict[str, Any] = {
            'calendarId': calendar_id,
            'maxResults': max_results,
            'showDeleted': show_deleted,
            'singleEvents': single_events,
        }
        if sync_token:
            # Sync token mode: the API rejects time filters and ordering here
            params['syncToken'] = sync_token
        else:
            if time_min is not None:
                params['timeMin'] = time_min.isoformat()
            if time_max is not None:
                params['timeMax'] = time_max.isoformat()
            if order_by:
                params['orderBy'] = order_by
        if page_token:
            params['pageToken'] = page_token

        result = await self._execute(lambda: self.service.events().list(**params))

        items = []
        for event_data in result.get('items', []):
            event = self._format_google_event(event_data)
            if event is not None:
                items.append(event)

        return EventPage(
            items=items,
            next_page_token=result.get('nextPageToken'),
            next_sync_token=result.get('nextSyncToken'),
        )

    def _format_google_event(self, event_data: Dict[str, Any]) -> Optional[ProviderEvent]:
        """Convert a raw Google event into a ProviderEvent.

        Unparsable instants become None so that one malformed event never
        aborts the page. Items without an id are dropped.
        """
        event_id = event_data.get('id')
        if not event_id:
            self.logger.warning("Skipping Google event without id")
            return None

        def safe(parser, value, field_name):
            try:
                return parser(value)
            except (TypeError, ValueError) as e:
                self.logger.warning(f"Event {event_id}: invalid {field_name} {value!r}: {e}")
                return None

        start = event_data.get('start') or {}
        organizer = event_data.get('organizer') or {}
        return ProviderEvent(
            id=event_id,
            summary=event_data.get('summary'),
            status=event_data.get('status'),
            organizer_email=organizer.get('email'),
            html_link=event_data.get('htmlLink'),
            location=event_data.get('location'),
            start=safe(parse_event_time, event_data.get('start'), 'start'),
            end=safe(parse_event_time, event_data.get('end'), 'end'),
            all_day=bool(start.get('date')) and not start.get('dateTime'),
            updated=safe(parse_timestamp, event_data.get('updated'), 'updated'),
        )


class ServiceAccountCredentialProvider(CredentialProvider):
    """Builds Calendar clients impersonating workspace users."""

    def __init__(self, settings: Settings):
        """Initialize credential provider.

        Args:
            settings: Application settings holding the service account key
        """
        self.settings = settings
        self.logger = logger.getChild('credentials')
        self._info: Optional[Dict[str, Any]] = None

    def _service_account_info(self) -> Dict[str, Any]:
        if self._info is not None:
            return self._info
        try:
            raw = self.settings.read_service_account_info()
        except ValueError as e:
            raise AuthenticationError(str(e))
        if raw is None:
            raise AuthenticationError("No service account key configured")
        try:
            info = json.loads(raw)
        except json.JSONDecodeError as e:
            raise AuthenticationError(f"Service account key is not valid JSON: {e}")
        if 'private_key' not in info or 'client_email' not in info:
            raise AuthenticationError("Service account key is missing private_key or client_email")
        self.logger.info(f"Using service account {info['client_email']}")
        self._info = info
        return info

    def _build_service(self, user_email: str):
        info = self._service_account_info()
        try:
            creds = service_account.Credentials.from_service_account_info(
                info, scopes=self.settings.google_scopes
            ).with_subject(user_email)
        except ValueError as e:
            raise AuthenticationError(f"Invalid service account key: {e}")
        http = AuthorizedHttp(creds, http=httplib2.Http(timeout=self.settings.request_timeout_seconds))
        return build('calendar', 'v3', http=http, cache_discovery=False)

    async def calendar_for(self, user_email: str) -> GoogleCalendarProvider:
        """Return a Calendar provider acting as ``user_email``."""
        user_email = normalize_email(user_email)
        try:
            service = await asyncio.get_event_loop().run_in_executor(
                None,
                lambda: self._build_service(user_email)
            )
        except CalendarServiceError:
            raise
        except Exception as e:
            raise AuthenticationError(f"Failed to create Calendar client for {user_email}: {e}") from e
        self.logger.debug(f"Created Calendar client for {user_email}")
        return GoogleCalendarProvider(service, user_email)
