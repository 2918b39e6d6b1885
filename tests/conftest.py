import asyncio
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Union

import pytest
import pytz
from pydantic_settings import SettingsConfigDict

from calhours.config import Settings
from calhours.database import DatabaseManager
from calhours.models import EventPage, ProviderEvent
from calhours.services import BaseCalendarProvider, CredentialProvider, AuthenticationError
from calhours.stores import EventStore, SyncStateStore, TaskStore
from calhours.sync_engine import IngestionEngine
from calhours.tags import TagCache, TagResolver
from calhours.tasks import TaskService

# Friday 11:00 in Madrid (UTC+2)
NOW = datetime(2024, 5, 10, 9, 0, tzinfo=pytz.UTC)


class TestSettings(Settings):
    """Test-specific settings that don't read from .env files."""
    model_config = SettingsConfigDict(
        env_file=None,  # Don't read from .env files
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
        secrets_dir=None  # Don't read from secrets directory
    )


def make_settings(tmp_path, **overrides):
    values = dict(
        data_dir=tmp_path,
        database_url=f'sqlite:///{tmp_path}/test.db',
        workspace_users='alice@example.com,bob@example.com',
    )
    values.update(overrides)
    return TestSettings(**values)


def make_event(event_id: str, summary: Optional[str] = None, start: Optional[datetime] = None,
               hours: float = 1.0, status: str = 'confirmed', **extra) -> ProviderEvent:
    end = start + timedelta(hours=hours) if start is not None else None
    return ProviderEvent(id=event_id, summary=summary, start=start, end=end, status=status, **extra)


class FakeCalendar(BaseCalendarProvider):
    """Provider returning scripted pages (or raising scripted errors) in order."""

    def __init__(self, responses: List[Union[EventPage, Exception]], time_zone: str = 'Europe/Madrid',
                 delay: float = 0.0):
        self.responses = list(responses)
        self.time_zone = time_zone
        self.delay = delay
        self.calls: List[Dict] = []
        self.active = 0
        self.max_active = 0

    async def get_time_zone(self, calendar_id: str) -> str:
        return self.time_zone

    async def list_events(self, calendar_id, **kwargs) -> EventPage:
        self.calls.append(dict(kwargs, calendar_id=calendar_id))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if not self.responses:
                return EventPage(items=[], next_sync_token='exhausted')
            response = self.responses.pop(0)
            if isinstance(response, Exception):
                raise response
            return response
        finally:
            self.active -= 1


class FakeCredentials(CredentialProvider):
    def __init__(self, calendars: Dict[str, Union[FakeCalendar, Exception]]):
        self.calendars = calendars
        self.requested: List[str] = []

    async def calendar_for(self, user_email: str) -> BaseCalendarProvider:
        self.requested.append(user_email)
        calendar = self.calendars.get(user_email)
        if calendar is None:
            raise AuthenticationError(f"No delegation for {user_email}")
        if isinstance(calendar, Exception):
            raise calendar
        return calendar


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def db_manager(settings):
    manager = DatabaseManager(settings)
    manager.init_db()
    yield manager
    manager.dispose()


@pytest.fixture
def task_store(db_manager):
    return TaskStore(db_manager)


@pytest.fixture
def state_store(db_manager):
    return SyncStateStore(db_manager)


@pytest.fixture
def event_store(db_manager):
    return EventStore(db_manager)


@pytest.fixture
def resolver(task_store, settings):
    return TagResolver(task_store, TagCache(), settings.ingestion.generic_tag)


@pytest.fixture
def task_service(task_store, resolver):
    return TaskService(task_store, resolver)


@pytest.fixture
def generic_task(task_service):
    return task_service.ensure_generic_task()


@pytest.fixture
def project_id(task_store):
    return task_store.ensure_project("Support", "Acme")


@pytest.fixture
def acme_task(task_service, project_id):
    return task_service.create_task(name="Acme support", tag="#ACME", project_id=project_id)


@pytest.fixture
def make_engine(settings, resolver, event_store, state_store, generic_task):
    def factory(credentials: CredentialProvider, now: datetime = NOW) -> IngestionEngine:
        return IngestionEngine(
            settings, credentials, resolver, event_store, state_store, now_factory=lambda: now
        )
    return factory
