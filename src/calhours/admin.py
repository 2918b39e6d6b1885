"""Manual and scheduled sync orchestration across workspace users."""

import asyncio
import logging
from datetime import datetime
from typing import Dict, List, Optional

import pytz

from .config import Settings
from .database import DatabaseManager
from .models import UserSyncResult, UserSyncStatus, normalize_email
from .services import CredentialProvider, ServiceAccountCredentialProvider
from .stores import EventStore, SyncStateStore, TaskStore
from .sync_engine import IngestionEngine
from .tags import TagCache, TagResolver

logger = logging.getLogger(__name__)


class NoUsersConfiguredError(Exception):
    """WORKSPACE_USERS is empty."""
    pass


class SyncAdmin:
    """Runs the ingestion engine for one or all users and reports per-user outcomes."""

    def __init__(self, settings: Settings, engine: IngestionEngine, state_store: SyncStateStore):
        self.settings = settings
        self.engine = engine
        self.state_store = state_store
        self.logger = logger.getChild('admin')
        self._user_locks: Dict[str, asyncio.Lock] = {}
        self._semaphore: Optional[asyncio.Semaphore] = None

    def _lock_for(self, email: str) -> asyncio.Lock:
        key = normalize_email(email)
        lock = self._user_locks.get(key)
        if lock is None:
            lock = self._user_locks[key] = asyncio.Lock()
        return lock

    def reset_state(self, email: str) -> bool:
        """Forget the sync token of ``email`` so the next run is a full sync."""
        return self.state_store.reset(normalize_email(email), self.settings.ingestion.calendar_id)

    async def sync_one_user(self, email: str, reset: bool = False) -> UserSyncResult:
        """Synchronize one user, optionally resetting state first.

        Failures are reported in the result, never raised.
        """
        email = normalize_email(email)
        calendar_id = self.settings.ingestion.calendar_id

        async with self._lock_for(email):
            try:
                if reset:
                    self.reset_state(email)
                report = await self.engine.sync_user(email)
            except Exception as e:
                self.logger.exception(f"Sync failed for {email}")
                return UserSyncResult(
                    email=email,
                    calendar_id=calendar_id,
                    reset=reset,
                    status=UserSyncStatus.ERROR,
                    error=f"{type(e).__name__}: {e}",
                )

        return UserSyncResult(
            email=email,
            calendar_id=calendar_id,
            reset=reset,
            status=UserSyncStatus.OK,
            synced_at=report.completed_at or datetime.now(pytz.UTC),
            report=report,
        )

    async def sync_all_users(self, reset: bool = False) -> List[UserSyncResult]:
        """Synchronize every configured user; one failure never stops the others.

        Raises:
            NoUsersConfiguredError: If no users are configured
        """
        users = self.settings.workspace_user_list
        if not users:
            raise NoUsersConfiguredError("No users configured in WORKSPACE_USERS")

        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self.settings.max_concurrent_users)

        async def run(email: str) -> UserSyncResult:
            async with self._semaphore:
                return await self.sync_one_user(email, reset=reset)

        results = await asyncio.gather(*(run(email) for email in users))
        failed = sum(1 for r in results if r.status == UserSyncStatus.ERROR)
        self.logger.info(f"Synced {len(results)} users ({failed} failed)")
        return list(results)


def create_sync_admin(
    settings: Settings,
    credentials: Optional[CredentialProvider] = None,
    db_manager: Optional[DatabaseManager] = None,
) -> SyncAdmin:
    """Wire database, stores, tag resolver and engine into a SyncAdmin.

    Raises:
        MissingGenericTaskError: If the generic task has not been created
    """
    db_manager = db_manager or DatabaseManager(settings)
    db_manager.init_db()

    task_store = TaskStore(db_manager)
    state_store = SyncStateStore(db_manager)
    event_store = EventStore(db_manager)

    resolver = TagResolver(task_store, TagCache(), settings.ingestion.generic_tag)
    resolver.load()

    engine = IngestionEngine(
        settings,
        credentials or ServiceAccountCredentialProvider(settings),
        resolver,
        event_store,
        state_store,
    )
    return SyncAdmin(settings, engine, state_store)
