"""
Remote row normalizer.

Converts between local entity dicts (snake_case field names, as stored by
LocalStore) and remote rows (human-readable column headers, as kept in the
shared spreadsheet-style tables). No network or DB access here; callers
handle transport and persistence.

Column layout per table:

  volunteers:  ID, Name, Email, Committee, Created, Updated
  events:      ID, Name, Date, Start Time, End Time, Status, Description,
               Created, Updated
  attendance:  ID, Volunteer ID, Event ID, Volunteer Name, Committee, Date,
               Time, Created, Updated

Rows missing a required field are rejected by from_remote() (None), so a
half-typed row in the shared table never reaches the local store.
"""
import logging
from typing import Any, Dict, List, Optional, Tuple

from vtrack.models.entities import ATTENDANCE, EVENTS, VOLUNTEERS

logger = logging.getLogger(__name__)

# (local field, remote column)
FIELD_MAPPINGS: Dict[str, List[Tuple[str, str]]] = {
    VOLUNTEERS: [
        ("id", "ID"),
        ("name", "Name"),
        ("email", "Email"),
        ("committee", "Committee"),
        ("created_at", "Created"),
        ("updated_at", "Updated"),
    ],
    EVENTS: [
        ("id", "ID"),
        ("name", "Name"),
        ("date", "Date"),
        ("start_time", "Start Time"),
        ("end_time", "End Time"),
        ("status", "Status"),
        ("description", "Description"),
        ("created_at", "Created"),
        ("updated_at", "Updated"),
    ],
    ATTENDANCE: [
        ("id", "ID"),
        ("volunteer_id", "Volunteer ID"),
        ("event_id", "Event ID"),
        ("volunteer_name", "Volunteer Name"),
        ("committee", "Committee"),
        ("date", "Date"),
        ("checked_in_at", "Time"),
        ("created_at", "Created"),
        ("updated_at", "Updated"),
    ],
}

REQUIRED_FIELDS: Dict[str, Tuple[str, ...]] = {
    VOLUNTEERS: ("id", "name"),
    EVENTS: ("id", "name", "date"),
    ATTENDANCE: ("id", "volunteer_id", "event_id", "date"),
}


def _clean(value: Any) -> Any:
    """Spreadsheet cells come back as strings; blank means missing."""
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return value


def to_remote(entity_type: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    """Map a local entity dict onto remote column names."""
    return {
        column: payload.get(local)
        for local, column in FIELD_MAPPINGS[entity_type]
        if local in payload
    }


def from_remote(entity_type: str, values: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Map a remote row onto a local entity dict.

    Returns:
        The entity dict, or None if a required field is missing.
    """
    result: Dict[str, Any] = {}
    for local, column in FIELD_MAPPINGS[entity_type]:
        value = _clean(values.get(column))
        if value is not None:
            result[local] = value

    if "id" in result:
        result["id"] = str(result["id"])

    missing = [f for f in REQUIRED_FIELDS[entity_type] if f not in result]
    if missing:
        logger.warning(
            "Skipping %s row %r: missing %s",
            entity_type, values.get("ID"), ", ".join(missing),
        )
        return None
    return result


def entity_id_of(values: Dict[str, Any]) -> Optional[str]:
    """Row id even for rows that fail validation (e.g. deletion markers)."""
    value = _clean(values.get("ID"))
    return str(value) if value is not None else None
