"""Sync bookkeeping models: queue, cursors, conflicts, backups, audit, history."""
import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import Column, JSON, LargeBinary
from sqlmodel import Field, SQLModel


class Operation(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class Priority(str, Enum):
    HIGH = "high"  # user-initiated edits
    NORMAL = "normal"  # bulk / import


PRIORITY_RANK = {Priority.HIGH.value: 0, Priority.NORMAL.value: 1}


class ChangeStatus(str, Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    PARKED = "parked"  # failed permanently or exhausted retries


class Resolution(str, Enum):
    PENDING = "pending"
    LOCAL_WINS = "local-wins"
    REMOTE_WINS = "remote-wins"
    MERGED = "merged"


class ChangeRecord(SQLModel, table=True):
    """
    One local mutation awaiting transmission.

    Queue order is (priority_rank, seq): high before normal, FIFO within a
    tier. ``seq`` is reassigned on requeue so a retried record goes to the
    tail of its tier.
    """

    id: str = Field(default_factory=lambda: uuid.uuid4().hex, primary_key=True)
    entity_type: str = Field(index=True)
    entity_id: str = Field(index=True)
    operation: str
    payload: dict = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=datetime.utcnow)
    priority: str = Priority.HIGH.value
    priority_rank: int = Field(default=0, index=True)
    seq: int = Field(default=0, index=True)
    status: str = Field(default=ChangeStatus.PENDING.value, index=True)
    attempts: int = 0
    last_error: Optional[str] = None
    parked_at: Optional[datetime] = None


class SyncCursor(SQLModel, table=True):
    """Per-entity-type watermark of incorporated remote history."""

    entity_type: str = Field(primary_key=True)
    last_remote_version_token: Optional[str] = None
    last_synced_at: Optional[datetime] = None


class ConflictRecord(SQLModel, table=True):
    """Audit row for an entity that diverged on both sides since the last cursor."""

    id: Optional[int] = Field(default=None, primary_key=True)
    entity_type: str = Field(index=True)
    entity_id: str = Field(index=True)
    local_version: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    remote_version: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    detected_at: datetime = Field(default_factory=datetime.utcnow)
    resolution: str = Resolution.PENDING.value
    reason: Optional[str] = None  # "timestamp", "tie", "deletion"
    resolved_at: Optional[datetime] = None
    cycle_id: Optional[str] = Field(default=None, index=True)


class BackupSnapshot(SQLModel, table=True):
    """zlib-compressed JSON copy of entities taken before a bulk apply."""

    id: str = Field(primary_key=True)
    operation_id: str = Field(index=True)
    timestamp: datetime = Field(default_factory=datetime.utcnow, index=True)
    compressed_payload: bytes = Field(sa_column=Column(LargeBinary, nullable=False))
    metadata_: dict = Field(
        default_factory=dict, sa_column=Column("metadata", JSON)
    )


class AuditLogEntry(SQLModel, table=True):
    """Append-only structured log of sync activity."""

    id: Optional[int] = Field(default=None, primary_key=True)
    timestamp: datetime = Field(default_factory=datetime.utcnow, index=True)
    session_id: str = Field(index=True)
    level: str
    category: str = Field(index=True)
    message: str
    data: Optional[dict] = Field(default=None, sa_column=Column(JSON))


class SyncLog(SQLModel, table=True):
    """Records each sync cycle for status reporting and debugging."""

    id: Optional[int] = Field(default=None, primary_key=True)
    cycle_id: str = Field(index=True)
    mode: str = "periodic"  # "periodic", "manual", "targeted"
    started_at: datetime = Field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None
    status: str = "running"  # "running", "success", "partial", "error", "cancelled"
    records_pulled: int = 0
    records_pushed: int = 0
    conflicts: int = 0
    error_message: Optional[str] = None


class MigrationState(SQLModel, table=True):
    """Marks one-shot migrations that have completed."""

    name: str = Field(primary_key=True)
    completed_at: datetime = Field(default_factory=datetime.utcnow)
    details: Optional[dict] = Field(default=None, sa_column=Column(JSON))
