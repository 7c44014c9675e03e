"""SQLModel engine singleton and session dependency."""
from typing import Generator

from sqlmodel import Session, SQLModel, create_engine

from vtrack.config import get_settings

_engine = None


def init_db(engine) -> None:
    """Create all tables (idempotent) and apply column migrations."""
    # Import all models so metadata is populated before create_all
    from vtrack.models.entities import AttendanceRecord, Event, Volunteer  # noqa
    from vtrack.models.sync import (  # noqa
        AuditLogEntry,
        BackupSnapshot,
        ChangeRecord,
        ConflictRecord,
        MigrationState,
        SyncCursor,
        SyncLog,
    )
    SQLModel.metadata.create_all(engine)
    from vtrack.db.migrations import run_migrations
    run_migrations(engine)


def get_engine():
    """Return the module-level engine, creating it on first call."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_engine(
            settings.database_url,
            connect_args={"check_same_thread": False},  # SQLite only; shared with the API thread
        )
        init_db(_engine)
    return _engine


def get_session() -> Generator[Session, None, None]:
    """FastAPI dependency that yields a DB session."""
    with Session(get_engine()) as session:
        yield session
