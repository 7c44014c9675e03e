"""
Audit Logger — structured, categorized, persisted log of sync activity.

Entries go to the AuditLogEntry table (the audit trail, exportable as JSON)
and are mirrored to the stdlib logger at the matching level so they also
show up in the process log. Retention is time-bounded (``retention_days``)
with an additional cap on the number of rows kept.
"""
import json
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, func
from sqlmodel import Session, select

from vtrack.models.sync import AuditLogEntry
from vtrack.sync.events import EventKind, SyncEvent, SyncEventBus

logger = logging.getLogger(__name__)

LEVELS = {"DEBUG": 0, "INFO": 1, "WARN": 2, "ERROR": 3, "CRITICAL": 4}

_STDLIB_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


class Category:
    SYNC = "sync"
    AUTH = "auth"
    NETWORK = "network"
    DATA = "data"
    CONFLICT = "conflict"
    PERFORMANCE = "performance"
    ERROR = "error"
    SYSTEM = "system"


_EVENT_LEVELS = {
    EventKind.CYCLE_FAILED: "ERROR",
    EventKind.RECORD_PARKED: "WARN",
    EventKind.ROLLBACK: "WARN",
    EventKind.STATE_CHANGED: "DEBUG",
}

_EVENT_CATEGORIES = {
    EventKind.CONFLICT_RESOLVED: Category.CONFLICT,
    EventKind.RECORD_PARKED: Category.DATA,
    EventKind.ROLLBACK: Category.DATA,
    EventKind.CYCLE_FAILED: Category.ERROR,
}


def generate_session_id() -> str:
    return f"session-{int(datetime.utcnow().timestamp() * 1000)}-{uuid.uuid4().hex[:9]}"


class AuditLogger:
    """Persisted audit trail with level filtering and retention."""

    def __init__(
        self,
        engine,
        *,
        level: str = "INFO",
        retention_days: int = 30,
        max_entries: int = 1000,
        session_id: Optional[str] = None,
    ):
        self.engine = engine
        self.retention_days = retention_days
        self.max_entries = max_entries
        self.session_id = session_id or generate_session_id()
        self.started_at = datetime.utcnow()
        self.set_level(level)

    def set_level(self, level: str) -> None:
        level = level.upper()
        if level == "WARNING":
            level = "WARN"
        if level not in LEVELS:
            raise ValueError(f"Unknown audit level: {level!r}")
        self.level = level

    # ─── Writing ──────────────────────────────────────────────────────────────

    def log(self, level: str, message: str, category: str = Category.SYNC, data: Optional[Dict[str, Any]] = None) -> Optional[AuditLogEntry]:
        """
        Append one entry if ``level`` passes the threshold.

        Returns:
            The persisted entry, or None when filtered out.
        """
        level = "WARN" if level.upper() == "WARNING" else level.upper()
        logger.log(_STDLIB_LEVELS.get(level, logging.INFO), "[%s] %s", category, message)
        if LEVELS.get(level, 1) < LEVELS[self.level]:
            return None

        entry = AuditLogEntry(
            timestamp=datetime.utcnow(),
            session_id=self.session_id,
            level=level,
            category=category,
            message=message,
            data=json.loads(json.dumps(data, default=str)) if data else None,
        )
        with Session(self.engine, expire_on_commit=False) as s:
            s.add(entry)
            s.commit()
        return entry

    def debug(self, message: str, category: str = Category.SYNC, data: Optional[Dict[str, Any]] = None):
        return self.log("DEBUG", message, category, data)

    def info(self, message: str, category: str = Category.SYNC, data: Optional[Dict[str, Any]] = None):
        return self.log("INFO", message, category, data)

    def warn(self, message: str, category: str = Category.SYNC, data: Optional[Dict[str, Any]] = None):
        return self.log("WARN", message, category, data)

    def error(self, message: str, category: str = Category.ERROR, data: Optional[Dict[str, Any]] = None):
        return self.log("ERROR", message, category, data)

    def critical(self, message: str, category: str = Category.ERROR, data: Optional[Dict[str, Any]] = None):
        return self.log("CRITICAL", message, category, data)

    # ─── Event bus integration ────────────────────────────────────────────────

    def attach(self, bus: SyncEventBus):
        """Record every published SyncEvent. Returns the unsubscribe function."""
        return bus.subscribe(self.on_event)

    def on_event(self, event: SyncEvent) -> None:
        data = dict(event.data)
        data["state"] = event.state.value
        if event.cycle_id:
            data["cycle_id"] = event.cycle_id
        self.log(
            _EVENT_LEVELS.get(event.kind, "INFO"),
            event.kind.value.replace("_", " "),
            _EVENT_CATEGORIES.get(event.kind, Category.SYNC),
            data,
        )

    # ─── Reading / retention ──────────────────────────────────────────────────

    def entries(
        self,
        *,
        category: Optional[str] = None,
        min_level: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[AuditLogEntry]:
        """Entries oldest first, optionally filtered."""
        with Session(self.engine) as s:
            stmt = select(AuditLogEntry)
            if category is not None:
                stmt = stmt.where(AuditLogEntry.category == category)
            if since is not None:
                stmt = stmt.where(AuditLogEntry.timestamp >= since)
            stmt = stmt.order_by(AuditLogEntry.id)
            rows = list(s.exec(stmt).all())
        if min_level is not None:
            floor = LEVELS[min_level.upper()]
            rows = [r for r in rows if LEVELS.get(r.level, 1) >= floor]
        if limit is not None:
            rows = rows[-limit:]
        return rows

    def cleanup(self, now: Optional[datetime] = None) -> int:
        """Delete entries past retention, then trim to ``max_entries``. Returns rows removed."""
        now = now or datetime.utcnow()
        cutoff = now - timedelta(days=self.retention_days)
        removed = 0
        with Session(self.engine) as s:
            result = s.exec(delete(AuditLogEntry).where(AuditLogEntry.timestamp < cutoff))
            removed += result.rowcount or 0

            total = s.exec(select(func.count()).select_from(AuditLogEntry)).one()
            overflow = total - self.max_entries
            if overflow > 0:
                oldest = s.exec(
                    select(AuditLogEntry.id).order_by(AuditLogEntry.id).limit(overflow)
                ).all()
                s.exec(delete(AuditLogEntry).where(AuditLogEntry.id.in_(oldest)))
                removed += len(oldest)
            s.commit()
        if removed:
            logger.info("Audit cleanup removed %d entries", removed)
        return removed

    def export(self, **filters: Any) -> str:
        """Serialize the audit trail (with session info) as a JSON document."""
        entries = self.entries(**filters)
        document = {
            "exported_at": datetime.utcnow().isoformat(),
            "session": {
                "session_id": self.session_id,
                "started_at": self.started_at.isoformat(),
            },
            "entry_count": len(entries),
            "entries": [
                {
                    "id": e.id,
                    "timestamp": e.timestamp.isoformat(),
                    "session_id": e.session_id,
                    "level": e.level,
                    "category": e.category,
                    "message": e.message,
                    "data": e.data,
                }
                for e in entries
            ],
        }
        return json.dumps(document, indent=2)
