"""
MigrationRunner — one-shot upgrade from the legacy sync bookkeeping file.

The legacy format is a JSON dump of the old browser storage keys:

  vat_change_tracking   {type: [[id, {id, operation, data, timestamp, synced}], ...]}
  vat_unified_sync      {timestamp, volunteers, events, attendance}  (ISO last-sync times)
  vat_sync_queue        [{id, type: upload|delete, dataType, data, queuedAt, attempts, status}]

Unsynced entries become ChangeRecords; last-sync times become SyncCursors with
no version token, so the first cycle re-pulls everything (apply is
idempotent). The result is validated before the migration is marked done;
a failed validation raises MigrationError and sync must not start.
"""
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from sqlmodel import Session

from vtrack.models.entities import ENTITY_TYPES
from vtrack.models.sync import ChangeRecord, MigrationState, Operation, Priority, SyncCursor
from vtrack.sync.conflicts import parse_timestamp
from vtrack.sync.errors import MigrationError, SyncError
from vtrack.sync.queue import coalesce_operations

logger = logging.getLogger(__name__)

MIGRATION_NAME = "legacy_sync_state_v1"

_CHANGE_KEY = "vat_change_tracking"
_CURSOR_KEY = "vat_unified_sync"
_QUEUE_KEY = "vat_sync_queue"

_QUEUE_OPERATIONS = {"upload": Operation.UPDATE.value, "delete": Operation.DELETE.value}
_DONE_STATUSES = {"completed", "synced", "done"}

# (entity_type, entity_id) → (operation, payload, timestamp)
LegacyChanges = Dict[Tuple[str, str], Tuple[str, Optional[Dict[str, Any]], Optional[datetime]]]


class MigrationRunner:
    """Converts, validates and marks the legacy bookkeeping as migrated."""

    def __init__(self, engine, store, queue, legacy_path, name: str = MIGRATION_NAME):
        self.engine = engine
        self.store = store
        self.queue = queue
        self.legacy_path = Path(legacy_path)
        self.name = name

    def is_complete(self) -> bool:
        with Session(self.engine) as s:
            return s.get(MigrationState, self.name) is not None

    def run(self) -> Optional[Dict[str, Any]]:
        """
        Migrate the legacy file if present and not yet migrated.

        Returns:
            Summary dict of what was migrated, or None when there was
            nothing to do.

        Raises:
            MigrationError: The legacy file is unreadable or the converted
                state failed validation.
        """
        if self.is_complete():
            logger.debug("Migration %s already complete", self.name)
            return None
        if not self.legacy_path.exists():
            logger.debug("No legacy sync state at %s", self.legacy_path)
            return None

        logger.info("Migrating legacy sync state from %s", self.legacy_path)
        legacy = self._load()
        changes = collect_changes(legacy)
        cursors = collect_cursors(legacy)

        try:
            self._import_entities(changes)
            for (entity_type, entity_id), (operation, payload, timestamp) in changes.items():
                self.queue.enqueue(ChangeRecord(
                    entity_type=entity_type,
                    entity_id=entity_id,
                    operation=operation,
                    payload=payload,
                    created_at=timestamp or datetime.utcnow(),
                    priority=Priority.NORMAL.value,
                ))
            self._write_cursors(cursors)
        except SyncError as exc:
            raise MigrationError(f"Converting legacy sync state failed: {exc}") from exc

        self._validate(changes)

        details = {
            "source": str(self.legacy_path),
            "changes": len(changes),
            "cursors": sorted(cursors),
        }
        with Session(self.engine) as s:
            s.add(MigrationState(name=self.name, details=details))
            s.commit()
        logger.info(
            "Legacy migration complete: %d pending change(s), %d cursor(s)",
            len(changes), len(cursors),
        )
        return details

    # ─── Internal helpers ─────────────────────────────────────────────────────

    def _load(self) -> Dict[str, Any]:
        try:
            data = json.loads(self.legacy_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise MigrationError(f"Cannot read legacy sync state {self.legacy_path}: {exc}") from exc
        if not isinstance(data, dict):
            raise MigrationError("Legacy sync state must be a JSON object")
        return data

    def _import_entities(self, changes: LegacyChanges) -> None:
        """Make sure every non-deleted entity the legacy queue refers to exists locally."""
        for (entity_type, entity_id), (operation, payload, _) in changes.items():
            if operation == Operation.DELETE.value or not payload:
                continue
            if self.store.get(entity_type, entity_id) is None:
                self.store.put(entity_type, {**payload, "id": entity_id})

    def _write_cursors(self, cursors: Dict[str, datetime]) -> None:
        with Session(self.engine) as s:
            for entity_type, synced_at in cursors.items():
                cursor = s.get(SyncCursor, entity_type)
                if cursor is not None:
                    continue  # current bookkeeping is authoritative
                s.add(SyncCursor(
                    entity_type=entity_type,
                    last_remote_version_token=None,
                    last_synced_at=synced_at,
                ))
            s.commit()

    def _validate(self, changes: LegacyChanges) -> None:
        missing_records: List[str] = []
        missing_entities: List[str] = []
        pending_by_type: Dict[str, Dict[str, ChangeRecord]] = {}

        for (entity_type, entity_id), (operation, _, _) in changes.items():
            if entity_type not in pending_by_type:
                pending_by_type[entity_type] = self.queue.pending_for(entity_type)
            if entity_id not in pending_by_type[entity_type]:
                missing_records.append(f"{entity_type}/{entity_id}")
            if operation != Operation.DELETE.value and self.store.get(entity_type, entity_id) is None:
                missing_entities.append(f"{entity_type}/{entity_id}")

        if missing_records or missing_entities:
            raise MigrationError(
                "Legacy migration validation failed: "
                f"{len(missing_records)} change(s) not queued {missing_records[:5]}, "
                f"{len(missing_entities)} entit(ies) missing locally {missing_entities[:5]}"
            )


def collect_changes(legacy: Dict[str, Any]) -> LegacyChanges:
    """
    Fold every unsynced legacy entry into one change per entity.

    Entries are applied oldest first with the same coalescing rules the
    queue uses; an entity created and deleted before it ever synced drops out.
    """
    entries: List[Tuple[Optional[datetime], str, str, str, Optional[Dict[str, Any]]]] = []

    for entity_type, items in (legacy.get(_CHANGE_KEY) or {}).items():
        if entity_type not in ENTITY_TYPES:
            logger.warning("Skipping legacy changes for unknown type %r", entity_type)
            continue
        for item in items or []:
            entity_id, change = _unpack_tracked(item)
            if entity_id is None or change.get("synced"):
                continue
            operation = change.get("operation") or Operation.UPDATE.value
            if operation not in {o.value for o in Operation}:
                raise MigrationError(f"Unknown legacy operation {operation!r} for {entity_type}/{entity_id}")
            entries.append((
                parse_timestamp(change.get("timestamp")),
                entity_type,
                entity_id,
                operation,
                change.get("data"),
            ))

    for item in legacy.get(_QUEUE_KEY) or []:
        if (item.get("status") or "pending") in _DONE_STATUSES:
            continue
        entity_type = item.get("dataType")
        operation = _QUEUE_OPERATIONS.get(item.get("type"))
        data = item.get("data") or {}
        entity_id = data.get("id") if isinstance(data, dict) else None
        if entity_type not in ENTITY_TYPES or operation is None or entity_id is None:
            logger.warning("Skipping unrecognised legacy queue entry %r", item.get("id"))
            continue
        entries.append((
            parse_timestamp(item.get("queuedAt")),
            entity_type,
            str(entity_id),
            operation,
            data,
        ))

    entries.sort(key=lambda e: e[0] or datetime.min)

    folded: Dict[Tuple[str, str], Optional[Tuple[str, Optional[Dict[str, Any]], Optional[datetime]]]] = {}
    for timestamp, entity_type, entity_id, operation, data in entries:
        key = (entity_type, entity_id)
        previous = folded.get(key)
        if previous is None:
            # first entry, or an earlier create+delete cancelled out
            folded[key] = (operation, data, timestamp)
            continue
        merged = coalesce_operations(previous[0], operation)
        if merged is None:
            folded[key] = None
            continue
        payload = data if data is not None else previous[1]
        folded[key] = (merged, payload, previous[2])

    return {key: value for key, value in folded.items() if value is not None}


def collect_cursors(legacy: Dict[str, Any]) -> Dict[str, datetime]:
    """Last-sync times per entity type from the legacy unified sync record."""
    state = legacy.get(_CURSOR_KEY) or {}
    cursors: Dict[str, datetime] = {}
    for entity_type in ENTITY_TYPES:
        synced_at = parse_timestamp(state.get(entity_type))
        if synced_at is not None:
            cursors[entity_type] = synced_at
    return cursors


def _unpack_tracked(item: Any) -> Tuple[Optional[str], Dict[str, Any]]:
    """Legacy tracked entries are ``[id, change]`` pairs (Map.entries() dumps)."""
    if isinstance(item, (list, tuple)) and len(item) == 2 and isinstance(item[1], dict):
        entity_id = item[0] if item[0] is not None else item[1].get("id")
        return (str(entity_id) if entity_id is not None else None), item[1]
    if isinstance(item, dict):
        entity_id = item.get("id")
        return (str(entity_id) if entity_id is not None else None), item
    return None, {}
