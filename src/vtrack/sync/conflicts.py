"""
Conflict detection and resolution between local and remote versions.

A conflict exists only when an entity arrives in a pull *and* still has an
unacknowledged local ChangeRecord; entities changed on one side only are
applied directly by the orchestrator and never reach this module.

Policy (deterministic, no manual review queue):

  1. Deletion beats update on either side, regardless of timestamps, so
     data a user removed on purpose is never resurrected.
  2. Otherwise last-write-wins on ``updated_at``. The local timestamp falls
     back to the ChangeRecord's ``created_at`` when the payload has none.
  3. Equal timestamps (or a remote row without one): remote wins. The
     remote store is the shared source of truth across devices.

Every decision is persisted as a terminal ConflictRecord for audit.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlmodel import Session, select

from vtrack.models.sync import ChangeRecord, ConflictRecord, Operation, Resolution

logger = logging.getLogger(__name__)

LOCAL = "local"
REMOTE = "remote"

# Bookkeeping fields that never count as a divergence on their own
_IGNORED_FIELDS = {"updated_at", "created_at", "synced_at"}


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse datetimes, ISO 8601 strings (with or without 'Z') or epoch seconds/ms."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            return (value - value.utcoffset()).replace(tzinfo=None)
        return value
    if isinstance(value, (int, float)):
        seconds = value / 1000.0 if value > 1e11 else float(value)
        return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        logger.warning("Unparseable timestamp %r", value)
        return None
    if parsed.tzinfo is not None:
        parsed = (parsed - parsed.utcoffset()).replace(tzinfo=None)
    return parsed


def content_equal(a: Optional[Dict[str, Any]], b: Optional[Dict[str, Any]]) -> bool:
    """True when two entity payloads agree on every non-bookkeeping field."""
    if a is None or b is None:
        return a is b
    keys = (set(a) | set(b)) - _IGNORED_FIELDS
    return all(a.get(k) == b.get(k) for k in keys)


@dataclass
class ConflictDecision:
    winner: str  # LOCAL or REMOTE
    resolution: str
    reason: str  # "deletion", "timestamp", "tie"
    local_time: Optional[datetime] = None
    remote_time: Optional[datetime] = None


def decide(
    change: ChangeRecord,
    local_version: Optional[Dict[str, Any]],
    remote_version: Optional[Dict[str, Any]],
    remote_deleted: bool = False,
) -> ConflictDecision:
    """
    Pick the winning side for one diverged entity.

    Args:
        change: The unacknowledged local ChangeRecord for the entity.
        local_version: Local entity state (None when deleted locally).
        remote_version: Remote entity state from the pull.
        remote_deleted: The pulled row is a deletion marker.
    """
    local_deleted = change.operation == Operation.DELETE.value

    if local_deleted or remote_deleted:
        # deleted on both sides: nothing to keep, follow the remote tombstone
        winner = LOCAL if local_deleted and not remote_deleted else REMOTE
        return ConflictDecision(
            winner=winner,
            resolution=Resolution.LOCAL_WINS.value if winner == LOCAL else Resolution.REMOTE_WINS.value,
            reason="deletion",
        )

    local_time = parse_timestamp((local_version or {}).get("updated_at")) or change.created_at
    remote_time = parse_timestamp((remote_version or {}).get("updated_at"))

    if remote_time is None or local_time is None or local_time == remote_time:
        return ConflictDecision(REMOTE, Resolution.REMOTE_WINS.value, "tie", local_time, remote_time)
    if local_time > remote_time:
        return ConflictDecision(LOCAL, Resolution.LOCAL_WINS.value, "timestamp", local_time, remote_time)
    return ConflictDecision(REMOTE, Resolution.REMOTE_WINS.value, "timestamp", local_time, remote_time)


class ConflictResolver:
    """Applies decide() and keeps the audit trail of ConflictRecords."""

    def __init__(self, engine):
        self.engine = engine

    def resolve(
        self,
        entity_type: str,
        entity_id: str,
        change: ChangeRecord,
        local_version: Optional[Dict[str, Any]],
        remote_version: Optional[Dict[str, Any]],
        *,
        remote_deleted: bool = False,
        cycle_id: Optional[str] = None,
    ) -> ConflictDecision:
        """Decide the outcome and persist a resolved ConflictRecord."""
        decision = decide(change, local_version, remote_version, remote_deleted)
        now = datetime.utcnow()
        record = ConflictRecord(
            entity_type=entity_type,
            entity_id=entity_id,
            local_version=local_version if change.operation != Operation.DELETE.value else None,
            remote_version=None if remote_deleted else remote_version,
            detected_at=now,
            resolution=decision.resolution,
            reason=decision.reason,
            resolved_at=now,
            cycle_id=cycle_id,
        )
        with Session(self.engine) as s:
            s.add(record)
            s.commit()

        logger.info(
            "Conflict on %s/%s resolved %s (%s)",
            entity_type, entity_id, decision.resolution, decision.reason,
        )
        return decision

    def history(self, limit: int = 100, cycle_id: Optional[str] = None) -> List[ConflictRecord]:
        """Most recent ConflictRecords first."""
        with Session(self.engine) as s:
            stmt = select(ConflictRecord)
            if cycle_id is not None:
                stmt = stmt.where(ConflictRecord.cycle_id == cycle_id)
            return list(s.exec(stmt.order_by(ConflictRecord.id.desc()).limit(limit)).all())
