"""Database models and session management for ingestion state."""

from datetime import datetime

from sqlalchemy import (
    create_engine, event, Column, String, DateTime, Boolean, Text, Integer, ForeignKey, Index, UniqueConstraint
)
from sqlalchemy.orm import declarative_base, sessionmaker, Session
import pytz

from .config import Settings

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(pytz.UTC)


class ClientDB(Base):
    """Database model for clients owning projects."""

    __tablename__ = 'clients'

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False, unique=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class ProjectDB(Base):
    """Database model for projects grouping tasks."""

    __tablename__ = 'projects'

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    client_id = Column(Integer, ForeignKey('clients.id'), nullable=False, index=True)

    __table_args__ = (
        UniqueConstraint('client_id', 'name', name='uq_project_client_name'),
    )


class TaskDB(Base):
    """Database model for tasks, addressed by their unique tag."""

    __tablename__ = 'tasks'

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    project_id = Column(Integer, ForeignKey('projects.id'), nullable=False, index=True)
    tag = Column(String(255), nullable=False)  # Stored normalized: '#' prefixed, trimmed
    starts_at = Column(DateTime(timezone=True), nullable=True)
    ends_at = Column(DateTime(timezone=True), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    __table_args__ = (
        UniqueConstraint('tag', name='uq_task_tag'),
        Index('idx_task_tag', 'tag'),
    )


class CalendarEventDB(Base):
    """Database model for ingested calendar events."""

    __tablename__ = 'calendar_events'

    id = Column(Integer, primary_key=True, autoincrement=True)

    # Identity triple
    user_email = Column(String(320), nullable=False)
    calendar_id = Column(String(512), nullable=False)
    event_id = Column(String(512), nullable=False)

    summary = Column(String(1024), nullable=True)
    organizer_email = Column(String(320), nullable=True)
    html_link = Column(String(1024), nullable=True)
    location = Column(String(1024), nullable=True)
    start_at = Column(DateTime(timezone=True), nullable=True)
    end_at = Column(DateTime(timezone=True), nullable=True)
    status = Column(String(64), nullable=True)  # confirmed | tentative
    provider_updated_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    task_id = Column(Integer, ForeignKey('tasks.id', name='fk_calendar_event_task'), nullable=False)

    __table_args__ = (
        UniqueConstraint('user_email', 'calendar_id', 'event_id', name='uq_event_user_calendar'),
        Index('idx_calendar_event_task', 'task_id'),
        Index('idx_calendar_event_user_start', 'user_email', 'start_at'),
    )


class CalendarSyncStateDB(Base):
    """Database model for per-user resumption state."""

    __tablename__ = 'calendar_sync_state'

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_email = Column(String(320), nullable=False)
    calendar_id = Column(String(512), nullable=False)  # Usually 'primary'
    sync_token = Column(String(2048), nullable=True)
    last_synced_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint('user_email', 'calendar_id', name='uq_sync_user_calendar'),
    )


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    """SQLite leaves foreign key enforcement off per connection."""
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class DatabaseManager:
    """Database manager owning the engine and session factory."""

    def __init__(self, settings: Settings):
        """Initialize database manager.

        Args:
            settings: Application settings
        """
        self.settings = settings
        connect_args = {}
        if settings.database_url.startswith('sqlite'):
            # The API server and scheduler share the engine across threads
            connect_args['check_same_thread'] = False
        self.engine = create_engine(
            settings.database_url,
            echo=settings.debug,
            pool_pre_ping=True,
            connect_args=connect_args
        )
        if settings.database_url.startswith('sqlite'):
            event.listen(self.engine, 'connect', _enable_sqlite_foreign_keys)
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    def init_db(self) -> None:
        """Initialize database tables."""
        Base.metadata.create_all(bind=self.engine)

    def get_session(self) -> Session:
        """Get database session."""
        return self.SessionLocal()

    def dispose(self) -> None:
        """Release pooled connections."""
        self.engine.dispose()
