"""Persistence for tasks, events and sync state."""

import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional

import pytz
from sqlalchemy import func

from .database import (
    DatabaseManager, ClientDB, ProjectDB, TaskDB, CalendarEventDB, CalendarSyncStateDB
)
from .models import SyncOperation, SyncState, StoredEvent, Task, ensure_utc

logger = logging.getLogger(__name__)


def _to_task(row: TaskDB) -> Task:
    return Task(
        id=row.id,
        name=row.name,
        description=row.description,
        project_id=row.project_id,
        tag=row.tag,
        starts_at=ensure_utc(row.starts_at),
        ends_at=ensure_utc(row.ends_at),
        active=bool(row.is_active),
    )


def _to_event(row: CalendarEventDB) -> StoredEvent:
    return StoredEvent(
        user_email=row.user_email,
        calendar_id=row.calendar_id,
        event_id=row.event_id,
        summary=row.summary,
        organizer_email=row.organizer_email,
        html_link=row.html_link,
        location=row.location,
        start=row.start_at,
        end=row.end_at,
        status=row.status,
        provider_updated_at=row.provider_updated_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
        task_id=row.task_id,
    )


def _to_state(row: CalendarSyncStateDB) -> SyncState:
    return SyncState(
        user_email=row.user_email,
        calendar_id=row.calendar_id,
        sync_token=row.sync_token,
        last_synced_at=row.last_synced_at,
    )


class TaskStore:
    """Read and write access to tasks, projects and clients."""

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager

    def all_tasks(self) -> List[Task]:
        with self.db_manager.get_session() as session:
            rows = session.query(TaskDB).order_by(TaskDB.id).all()
            return [_to_task(r) for r in rows]

    def get(self, task_id: int) -> Optional[Task]:
        with self.db_manager.get_session() as session:
            row = session.get(TaskDB, task_id)
            return _to_task(row) if row else None

    def find_by_tag(self, tag: str) -> Optional[Task]:
        """Point lookup by exact (case-sensitive) tag."""
        with self.db_manager.get_session() as session:
            row = session.query(TaskDB).filter(TaskDB.tag == tag).first()
            return _to_task(row) if row else None

    def find_by_tags(self, tags: Iterable[str]) -> List[Task]:
        """Fetch every task whose tag is in ``tags`` with a single IN query."""
        tags = list(tags)
        if not tags:
            return []
        with self.db_manager.get_session() as session:
            rows = session.query(TaskDB).filter(TaskDB.tag.in_(tags)).all()
            return [_to_task(r) for r in rows]

    def tag_exists(self, tag: str, exclude_task_id: Optional[int] = None) -> bool:
        with self.db_manager.get_session() as session:
            query = session.query(TaskDB.id).filter(TaskDB.tag == tag)
            if exclude_task_id is not None:
                query = query.filter(TaskDB.id != exclude_task_id)
            return query.first() is not None

    def event_count(self, task_id: int) -> int:
        """Number of stored events attributed to ``task_id``."""
        with self.db_manager.get_session() as session:
            return session.query(func.count(CalendarEventDB.id)).filter(
                CalendarEventDB.task_id == task_id
            ).scalar()

    def project_exists(self, project_id: int) -> bool:
        with self.db_manager.get_session() as session:
            return session.get(ProjectDB, project_id) is not None

    def ensure_project(self, project_name: str, client_name: str) -> int:
        """Return the id of ``project_name`` under ``client_name``, creating both if needed."""
        with self.db_manager.get_session() as session:
            client = session.query(ClientDB).filter(ClientDB.name == client_name).first()
            if client is None:
                client = ClientDB(name=client_name)
                session.add(client)
                session.flush()
            project = session.query(ProjectDB).filter(
                ProjectDB.client_id == client.id,
                ProjectDB.name == project_name
            ).first()
            if project is None:
                project = ProjectDB(name=project_name, client_id=client.id)
                session.add(project)
            session.commit()
            return project.id

    def add(
        self,
        name: str,
        tag: str,
        project_id: int,
        description: Optional[str] = None,
        starts_at: Optional[datetime] = None,
        ends_at: Optional[datetime] = None,
        active: bool = True,
    ) -> Task:
        with self.db_manager.get_session() as session:
            row = TaskDB(
                name=name,
                tag=tag,
                project_id=project_id,
                description=description,
                starts_at=ensure_utc(starts_at),
                ends_at=ensure_utc(ends_at),
                is_active=active,
            )
            session.add(row)
            session.commit()
            return _to_task(row)

    def update(self, task_id: int, **changes) -> Optional[Task]:
        """Apply ``changes`` (Task field names) to a task; returns None if it does not exist."""
        columns = {'active': 'is_active'}
        with self.db_manager.get_session() as session:
            row = session.get(TaskDB, task_id)
            if row is None:
                return None
            for key, value in changes.items():
                if key in ('starts_at', 'ends_at'):
                    value = ensure_utc(value)
                setattr(row, columns.get(key, key), value)
            session.commit()
            return _to_task(row)

    def delete(self, task_id: int) -> bool:
        with self.db_manager.get_session() as session:
            row = session.get(TaskDB, task_id)
            if row is None:
                return False
            session.delete(row)
            session.commit()
            return True


class SyncStateStore:
    """Resumption token and last-sync instant per (user, calendar)."""

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager

    def get(self, user_email: str, calendar_id: str) -> Optional[SyncState]:
        with self.db_manager.get_session() as session:
            row = session.query(CalendarSyncStateDB).filter(
                CalendarSyncStateDB.user_email == user_email,
                CalendarSyncStateDB.calendar_id == calendar_id
            ).first()
            return _to_state(row) if row else None

    def save(self, state: SyncState) -> SyncState:
        """Insert or update the state matched by (user, calendar)."""
        with self.db_manager.get_session() as session:
            row = session.query(CalendarSyncStateDB).filter(
                CalendarSyncStateDB.user_email == state.user_email,
                CalendarSyncStateDB.calendar_id == state.calendar_id
            ).first()
            if row is None:
                row = CalendarSyncStateDB(
                    user_email=state.user_email,
                    calendar_id=state.calendar_id
                )
                session.add(row)
            row.sync_token = state.sync_token
            row.last_synced_at = ensure_utc(state.last_synced_at)
            session.commit()
            return _to_state(row)

    def reset(self, user_email: str, calendar_id: str) -> bool:
        """Clear token and timestamp so the next run is a full sync."""
        state = self.get(user_email, calendar_id)
        if state is None:
            return False
        state.clear()
        self.save(state)
        logger.info(f"Reset sync state for {user_email}/{calendar_id}")
        return True

    def all_states(self) -> List[SyncState]:
        with self.db_manager.get_session() as session:
            rows = session.query(CalendarSyncStateDB).order_by(
                CalendarSyncStateDB.user_email, CalendarSyncStateDB.calendar_id
            ).all()
            return [_to_state(r) for r in rows]


class EventStore:
    """Calendar events keyed by (user, calendar, provider event id)."""

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager

    @staticmethod
    def _identity_filter(query, user_email: str, calendar_id: str, event_id: str):
        return query.filter(
            CalendarEventDB.user_email == user_email,
            CalendarEventDB.calendar_id == calendar_id,
            CalendarEventDB.event_id == event_id
        )

    def find_one(self, user_email: str, calendar_id: str, event_id: str) -> Optional[StoredEvent]:
        with self.db_manager.get_session() as session:
            row = self._identity_filter(
                session.query(CalendarEventDB), user_email, calendar_id, event_id
            ).first()
            return _to_event(row) if row else None

    def upsert(self, event: StoredEvent) -> SyncOperation:
        """Insert the event, or overwrite the mutable fields of the existing row.

        Identity fields and ``created_at`` of an existing row are never touched.
        Rows whose content already matches are left alone.

        Returns:
            CREATE, UPDATE or SKIP
        """
        now = datetime.now(pytz.UTC)
        with self.db_manager.get_session() as session:
            row = self._identity_filter(
                session.query(CalendarEventDB), event.user_email, event.calendar_id, event.event_id
            ).first()

            if row is None:
                row = CalendarEventDB(
                    user_email=event.user_email,
                    calendar_id=event.calendar_id,
                    event_id=event.event_id,
                    created_at=event.created_at or now,
                    updated_at=event.updated_at or now,
                )
                self._apply(row, event)
                session.add(row)
                session.commit()
                return SyncOperation.CREATE

            if _to_event(row).content_fields() == event.content_fields():
                return SyncOperation.SKIP

            self._apply(row, event)
            row.updated_at = event.updated_at or now
            session.commit()
            return SyncOperation.UPDATE

    @staticmethod
    def _apply(row: CalendarEventDB, event: StoredEvent) -> None:
        row.summary = event.summary
        row.organizer_email = event.organizer_email
        row.html_link = event.html_link
        row.location = event.location
        row.start_at = event.start
        row.end_at = event.end
        row.status = event.status
        row.provider_updated_at = event.provider_updated_at
        row.task_id = event.task_id

    def delete_one(self, user_email: str, calendar_id: str, event_id: str) -> bool:
        """Delete by identity; absent rows are not an error."""
        with self.db_manager.get_session() as session:
            deleted = self._identity_filter(
                session.query(CalendarEventDB), user_email, calendar_id, event_id
            ).delete(synchronize_session=False)
            session.commit()
            return deleted > 0

    def list_for_user(self, user_email: str, calendar_id: Optional[str] = None) -> List[StoredEvent]:
        with self.db_manager.get_session() as session:
            query = session.query(CalendarEventDB).filter(CalendarEventDB.user_email == user_email)
            if calendar_id is not None:
                query = query.filter(CalendarEventDB.calendar_id == calendar_id)
            rows = query.order_by(CalendarEventDB.start_at, CalendarEventDB.event_id).all()
            return [_to_event(r) for r in rows]

    def count_by_user(self) -> Dict[str, int]:
        with self.db_manager.get_session() as session:
            rows = session.query(
                CalendarEventDB.user_email, func.count(CalendarEventDB.id)
            ).group_by(CalendarEventDB.user_email).all()
            return {email: count for email, count in rows}
