"""Data models for calendar ingestion and tag resolution."""

from datetime import datetime
from enum import Enum
from typing import Optional, List
from dataclasses import dataclass, field

from pydantic import BaseModel, Field, field_validator
import pytz


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Return ``value`` as an aware UTC datetime (naive values are taken as UTC)."""
    if value is None:
        return None
    if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
        return value.replace(tzinfo=pytz.UTC)
    return value.astimezone(pytz.UTC)


def normalize_email(email: str) -> str:
    """Canonical user key: trimmed and lower-cased."""
    return email.strip().lower()


class EventStatus(str, Enum):
    """Event status as reported by the calendar provider."""

    CONFIRMED = "confirmed"
    TENTATIVE = "tentative"
    CANCELLED = "cancelled"


class SyncMode(str, Enum):
    """How a sync pass talks to the provider."""

    FULL = "full"  # Time-window listing, no resumption token
    INCREMENTAL = "incremental"  # Changes since the stored sync token


class SyncOperation(str, Enum):
    """Outcome of applying one event to local storage."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    SKIP = "skip"


class UserSyncStatus(str, Enum):
    """Per-user result of an administrative sync."""

    OK = "OK"
    ERROR = "ERROR"


class IngestionConfiguration(BaseModel):
    """Calendar ingestion settings."""

    generic_tag: str = Field("#GENERICO", description="Tag of the fallback task")
    initial_days: int = Field(90, ge=1, description="Full-sync lookback window in days")
    calendar_id: str = Field("primary", description="Calendar ingested for every user")
    page_size: int = Field(250, ge=1, le=2500, description="Events requested per page")
    sync_interval_minutes: int = Field(1, ge=1, description="Scheduler cadence")

    @field_validator('generic_tag')
    @classmethod
    def validate_generic_tag(cls, v):
        """The generic tag must survive normalization."""
        v = v.strip()
        if not v or v == '#':
            raise ValueError("generic_tag must not be empty")
        return v if v.startswith('#') else f"#{v}"


class Task(BaseModel):
    """A task events are attributed to through their leading tag."""

    id: int
    name: str
    description: Optional[str] = None
    project_id: int
    tag: str
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    active: bool = True


class SyncState(BaseModel):
    """Resumption state of one (user, calendar) pair."""

    user_email: str
    calendar_id: str
    sync_token: Optional[str] = None
    last_synced_at: Optional[datetime] = None

    @field_validator('last_synced_at')
    @classmethod
    def ensure_timezone_aware(cls, v):
        """Stored timestamps come back naive from SQLite."""
        return ensure_utc(v)

    @property
    def needs_full_sync(self) -> bool:
        """A missing or blank token forces a full resync."""
        return not self.sync_token or not self.sync_token.strip()

    def clear(self) -> None:
        """Forget the resumption token and the last sync instant."""
        self.sync_token = None
        self.last_synced_at = None


class StoredEvent(BaseModel):
    """A calendar event as persisted locally."""

    user_email: str
    calendar_id: str
    event_id: str
    summary: Optional[str] = None
    organizer_email: Optional[str] = None
    html_link: Optional[str] = None
    location: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    status: Optional[str] = None
    provider_updated_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    task_id: int

    @field_validator('start', 'end', 'provider_updated_at', 'created_at', 'updated_at')
    @classmethod
    def ensure_timezone_aware(cls, v):
        """Ensure datetime objects are timezone-aware."""
        return ensure_utc(v)

    @property
    def identity(self) -> tuple:
        return (self.user_email, self.calendar_id, self.event_id)

    @property
    def duration_hours(self) -> float:
        """Hours between start and end; events without both instants count as zero."""
        if self.start is None or self.end is None:
            return 0.0
        return (self.end - self.start).total_seconds() / 3600.0

    def content_fields(self) -> dict:
        """Mutable fields compared when deciding whether an upsert changes anything."""
        return {
            'summary': self.summary,
            'organizer_email': self.organizer_email,
            'html_link': self.html_link,
            'location': self.location,
            'start': self.start,
            'end': self.end,
            'status': self.status,
            'provider_updated_at': self.provider_updated_at,
            'task_id': self.task_id,
        }


class ProviderEvent(BaseModel):
    """Event as returned by the calendar provider, already parsed."""

    id: str
    summary: Optional[str] = None
    status: Optional[str] = None
    organizer_email: Optional[str] = None
    html_link: Optional[str] = None
    location: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    all_day: bool = False
    updated: Optional[datetime] = None

    @field_validator('start', 'end', 'updated')
    @classmethod
    def ensure_timezone_aware(cls, v):
        """Ensure datetime objects are timezone-aware."""
        return ensure_utc(v)

    @property
    def is_cancelled(self) -> bool:
        return (self.status or "").lower() == EventStatus.CANCELLED.value


@dataclass
class EventPage:
    """One page of a provider listing."""

    items: List[ProviderEvent] = field(default_factory=list)
    next_page_token: Optional[str] = None
    next_sync_token: Optional[str] = None


@dataclass
class BatchResult:
    """Counts produced by applying one page to local storage."""

    created: int = 0
    updated: int = 0
    unchanged: int = 0
    deleted: int = 0

    def record(self, operation: SyncOperation) -> None:
        if operation == SyncOperation.CREATE:
            self.created += 1
        elif operation == SyncOperation.UPDATE:
            self.updated += 1
        elif operation == SyncOperation.DELETE:
            self.deleted += 1
        else:
            self.unchanged += 1


class SyncReport(BaseModel):
    """Summary of one ``sync_user`` run."""

    user_email: str
    calendar_id: str
    mode: Optional[SyncMode] = None
    started_at: datetime = Field(default_factory=lambda: datetime.now(pytz.UTC))
    completed_at: Optional[datetime] = None
    window_until: Optional[datetime] = None
    pages: int = 0
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    deleted: int = 0
    skipped_future: int = 0
    token_committed: bool = False
    retried: bool = False

    def add_batch(self, batch: BatchResult) -> None:
        self.created += batch.created
        self.updated += batch.updated
        self.unchanged += batch.unchanged
        self.deleted += batch.deleted


class UserSyncResult(BaseModel):
    """Result reported by the manual sync surface for one user."""

    email: str
    calendar_id: str
    reset: bool = False
    status: UserSyncStatus
    synced_at: Optional[datetime] = None
    error: Optional[str] = None
    report: Optional[SyncReport] = None
