"""Domain entities kept in the on-device store: volunteers, events, attendance."""
from datetime import datetime
from typing import Dict, Optional, Type

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel


class Volunteer(SQLModel, table=True):
    """One row per registered volunteer."""

    id: str = Field(primary_key=True)
    name: str
    email: Optional[str] = None
    committee: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow, index=True)


class Event(SQLModel, table=True):
    """One row per scheduled event (e.g. a Sunday service)."""

    id: str = Field(primary_key=True)
    name: str
    date: str  # "YYYY-MM-DD"
    start_time: Optional[str] = None  # "HH:MM"
    end_time: Optional[str] = None
    status: str = "scheduled"  # "scheduled", "active", "completed", "cancelled"
    description: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow, index=True)


class AttendanceRecord(SQLModel, table=True):
    """
    One check-in of a volunteer at an event.

    The (volunteer_id, event_id) pair is unique so a duplicate delivery of the
    same check-in can never be counted twice.
    """

    __table_args__ = (UniqueConstraint("volunteer_id", "event_id"),)

    id: str = Field(primary_key=True)
    volunteer_id: str = Field(index=True)
    event_id: str = Field(index=True)
    volunteer_name: Optional[str] = None
    committee: Optional[str] = None
    date: str
    checked_in_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow, index=True)


# Entity type names double as remote table names.
VOLUNTEERS = "volunteers"
EVENTS = "events"
ATTENDANCE = "attendance"

ENTITY_MODELS: Dict[str, Type[SQLModel]] = {
    VOLUNTEERS: Volunteer,
    EVENTS: Event,
    ATTENDANCE: AttendanceRecord,
}

ENTITY_TYPES = tuple(ENTITY_MODELS)


def model_for(entity_type: str) -> Type[SQLModel]:
    """Return the table model for an entity type name."""
    try:
        return ENTITY_MODELS[entity_type]
    except KeyError:
        raise ValueError(f"Unknown entity type: {entity_type!r}") from None
