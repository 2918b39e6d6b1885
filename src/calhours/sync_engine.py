"""Incremental calendar ingestion with sync tokens and tag attribution."""

import logging
from datetime import datetime, time, timedelta
from typing import Callable, List, Optional, Sequence

import pytz
from tenacity import AsyncRetrying, stop_after_attempt, retry_if_exception_type

from .config import Settings
from .models import (
    BatchResult, ProviderEvent, StoredEvent, SyncMode, SyncOperation, SyncReport, SyncState, ensure_utc,
    normalize_email
)
from .services import BaseCalendarProvider, CredentialProvider, SyncTokenExpiredError
from .stores import EventStore, SyncStateStore
from .tags import TagResolver

logger = logging.getLogger(__name__)


def resolve_zone(name: Optional[str]):
    """Return the pytz zone for ``name``, UTC when it is missing or unknown."""
    if not name:
        return pytz.UTC
    try:
        return pytz.timezone(name)
    except pytz.UnknownTimeZoneError:
        logger.warning(f"Unknown calendar time zone {name!r}, falling back to UTC")
        return pytz.UTC


def end_of_today_exclusive(now: datetime, zone) -> datetime:
    """Start of the next local day in ``zone``, as a UTC instant."""
    local_today = ensure_utc(now).astimezone(zone).date()
    next_midnight = zone.localize(datetime.combine(local_today + timedelta(days=1), time.min))
    return next_midnight.astimezone(pytz.UTC)


def same_local_day(first: datetime, second: datetime, zone) -> bool:
    return ensure_utc(first).astimezone(zone).date() == ensure_utc(second).astimezone(zone).date()


class IngestionEngine:
    """Pulls one calendar per user and stores its events against tasks.

    Runs for the same user must not overlap; callers serialize them
    (see ``SyncAdmin``). Runs for different users may run concurrently.
    """

    def __init__(
        self,
        settings: Settings,
        credentials: CredentialProvider,
        tag_resolver: TagResolver,
        event_store: EventStore,
        state_store: SyncStateStore,
        now_factory: Optional[Callable[[], datetime]] = None,
    ):
        """Initialize ingestion engine.

        Args:
            settings: Application settings
            credentials: Hands out calendar clients per user
            tag_resolver: Maps leading tags to tasks
            event_store: Event persistence
            state_store: Sync token persistence
            now_factory: Clock, defaults to the current UTC time

        Raises:
            MissingGenericTaskError: If the generic task does not exist
        """
        self.settings = settings
        self.config = settings.ingestion
        self.credentials = credentials
        self.tag_resolver = tag_resolver
        self.event_store = event_store
        self.state_store = state_store
        self._now_factory = now_factory or (lambda: datetime.now(pytz.UTC))
        self.logger = logger.getChild('engine')

        # Fail fast: every event needs a task to fall back on
        self.tag_resolver.generic_task()

    def _now(self) -> datetime:
        return ensure_utc(self._now_factory())

    async def sync_user(self, user_email: str) -> SyncReport:
        """Synchronize the configured calendar of one user.

        A stale sync token (HTTP 410) clears the stored state and the run is
        repeated once as a full sync. A second expiry, and every other
        provider error, propagates to the caller.

        Args:
            user_email: Workspace user to impersonate

        Returns:
            Report with mode and counts of the run
        """
        user_email = normalize_email(user_email)
        report: Optional[SyncReport] = None
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(2),
            retry=retry_if_exception_type(SyncTokenExpiredError),
            reraise=True,
        ):
            with attempt:
                report = await self._sync_user_once(user_email)
                report.retried = attempt.retry_state.attempt_number > 1
        return report

    async def _sync_user_once(self, user_email: str) -> SyncReport:
        calendar_id = self.config.calendar_id
        provider = await self.credentials.calendar_for(user_email)

        state = self.state_store.get(user_email, calendar_id)
        if state is None:
            state = SyncState(user_email=user_email, calendar_id=calendar_id)

        zone = resolve_zone(await provider.get_time_zone(calendar_id))
        now = self._now()
        window_until = end_of_today_exclusive(now, zone)

        token = None if state.needs_full_sync else state.sync_token
        if token and (state.last_synced_at is None or not same_local_day(state.last_synced_at, now, zone)):
            # Daily resync: yesterday's token is dropped in favour of a fresh window
            self.logger.info(f"{user_email}: last sync was on another day, running full sync")
            token = None

        report = SyncReport(
            user_email=user_email,
            calendar_id=calendar_id,
            mode=SyncMode.INCREMENTAL if token else SyncMode.FULL,
            started_at=now,
            window_until=window_until,
        )
        self.logger.info(
            f"Syncing {user_email}/{calendar_id} ({report.mode.value}, until {window_until.isoformat()})"
        )

        try:
            if token:
                next_token = await self._run_pages(
                    provider, report,
                    sync_token=token,
                    show_deleted=True,
                    single_events=True,
                )
            else:
                next_token = await self._run_pages(
                    provider, report,
                    time_min=now - timedelta(days=self.config.initial_days),
                    time_max=window_until,
                    single_events=True,
                    order_by='startTime',
                    show_deleted=True,
                )
        except SyncTokenExpiredError:
            self.logger.warning(f"{user_email}: sync token expired, clearing state for a full resync")
            state.clear()
            self.state_store.save(state)
            raise

        if next_token:
            state.sync_token = next_token
            state.last_synced_at = now
            self.state_store.save(state)
            report.token_committed = True
        else:
            self.logger.warning(f"{user_email}: provider returned no sync token, state left unchanged")

        report.completed_at = self._now()
        self.logger.info(
            f"Synced {user_email}: {report.pages} pages, {report.created} created, "
            f"{report.updated} updated, {report.deleted} deleted, {report.skipped_future} beyond window"
        )
        return report

    async def _run_pages(self, provider: BaseCalendarProvider, report: SyncReport, **list_kwargs) -> Optional[str]:
        """Walk every page, storing each one before requesting the next."""
        incremental = bool(list_kwargs.get('sync_token'))
        page_token = None
        next_sync_token = None

        while True:
            page = await provider.list_events(
                report.calendar_id,
                page_token=page_token,
                max_results=self.config.page_size,
                **list_kwargs
            )
            report.pages += 1

            items = page.items
            if incremental:
                # Change feeds are not bounded in time; future events are left for later days
                kept = [e for e in items if e.start is None or e.start < report.window_until]
                report.skipped_future += len(items) - len(kept)
                items = kept

            batch = await self.upsert_batch(report.user_email, report.calendar_id, items)
            report.add_batch(batch)

            if page.next_sync_token:
                next_sync_token = page.next_sync_token
            page_token = page.next_page_token
            if not page_token:
                return next_sync_token

    async def upsert_batch(
        self, user_email: str, calendar_id: str, events: Sequence[ProviderEvent]
    ) -> BatchResult:
        """Apply one page of provider events to local storage.

        Cancelled events are deleted. Every other event is stored against the
        task named by its leading tag, or the generic task. Tags of the whole
        page are resolved with a single lookup.
        """
        result = BatchResult()
        if not events:
            return result

        tags: List[str] = []
        for event in events:
            tag = self.tag_resolver.normalized_leading_tag(event.summary)
            if tag is not None and tag not in tags:
                tags.append(tag)

        resolved = self.tag_resolver.resolve_bulk(tags)
        generic = self.tag_resolver.generic_task()

        for event in events:
            if event.is_cancelled:
                if self.event_store.delete_one(user_email, calendar_id, event.id):
                    result.record(SyncOperation.DELETE)
                else:
                    result.record(SyncOperation.SKIP)
                continue

            tag = self.tag_resolver.normalized_leading_tag(event.summary)
            task = resolved.get(tag, generic) if tag else generic

            operation = self.event_store.upsert(StoredEvent(
                user_email=user_email,
                calendar_id=calendar_id,
                event_id=event.id,
                summary=event.summary,
                organizer_email=event.organizer_email,
                html_link=event.html_link,
                location=event.location,
                start=event.start,
                end=event.end,
                status=event.status,
                provider_updated_at=event.updated,
                task_id=task.id,
            ))
            result.record(operation)

        self.logger.debug(
            f"{user_email}: batch of {len(events)} -> {result.created} created, "
            f"{result.updated} updated, {result.deleted} deleted"
        )
        return result
