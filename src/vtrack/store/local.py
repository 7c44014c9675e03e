"""
LocalStore — CRUD over the on-device SQLite store.

Entities cross this boundary as plain JSON-safe dicts keyed by
(entity_type, id); the sync engine never touches the SQLModel rows.

Two kinds of writes:

  save() / remove() / save_many()
      Local mutations. The entity write and its ChangeRecord share one
      Session, so both commit or neither does.

  put() / delete() / restore()
      Writes of data that came *from* the remote side (or from a backup).
      These are never tracked, otherwise every pull would echo back.

put() is an upsert by id, so applying the same remote row twice is a no-op.
Attendance is also matched on (volunteer_id, event_id) so a duplicate
check-in delivered under a different id updates the existing row.
"""
import logging
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, SQLModel, select

from vtrack.models.entities import ATTENDANCE, AttendanceRecord, model_for
from vtrack.models.sync import Operation, Priority
from vtrack.sync.errors import StorageError, ValidationError

logger = logging.getLogger(__name__)

# Fields that change on every write and say nothing about content
_VOLATILE_FIELDS = {"updated_at", "created_at"}


def to_payload(entity: SQLModel) -> Dict[str, Any]:
    """Serialize a row into a JSON-safe dict."""
    return entity.model_dump(mode="json")


class LocalStore:
    """Local Store Adapter used by the sync engine and the API."""

    def __init__(self, engine, tracker=None):
        """
        Args:
            engine: SQLAlchemy engine (SQLModel create_engine result).
            tracker: ChangeTracker; required for save()/remove().
        """
        self.engine = engine
        self.tracker = tracker

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with Session(self.engine, expire_on_commit=False) as s:
                yield s
        except SQLAlchemyError as exc:
            raise StorageError(f"Local store failure: {exc}") from exc

    # ─── Reads ────────────────────────────────────────────────────────────────

    def get(self, entity_type: str, entity_id: str) -> Optional[Dict[str, Any]]:
        model = model_for(entity_type)
        with self._session() as s:
            row = s.get(model, entity_id)
            return to_payload(row) if row is not None else None

    def get_all(self, entity_type: str) -> List[Dict[str, Any]]:
        model = model_for(entity_type)
        with self._session() as s:
            return [to_payload(row) for row in s.exec(select(model)).all()]

    def snapshot(self, entity_type: str, entity_ids: Iterable[str]) -> Dict[str, Optional[Dict[str, Any]]]:
        """Current state of the given entities; None marks "did not exist"."""
        model = model_for(entity_type)
        with self._session() as s:
            result = {}
            for entity_id in entity_ids:
                row = s.get(model, entity_id)
                result[entity_id] = to_payload(row) if row is not None else None
            return result

    def target_id(self, entity_type: str, data: Dict[str, Any]) -> str:
        """Id of the local row an upsert of ``data`` would write to."""
        model = model_for(entity_type)
        entity_id = str(data.get("id"))
        with self._session() as s:
            if s.get(model, entity_id) is not None or entity_type != ATTENDANCE:
                return entity_id
            match = s.exec(
                select(AttendanceRecord)
                .where(AttendanceRecord.volunteer_id == data.get("volunteer_id"))
                .where(AttendanceRecord.event_id == data.get("event_id"))
            ).first()
            return match.id if match is not None else entity_id

    # ─── Untracked writes (remote data, restores) ─────────────────────────────

    def put(self, entity_type: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """Upsert an entity without recording a change."""
        with self._session() as s:
            entity, _, _ = self._upsert(s, entity_type, data)
            s.commit()
            return to_payload(entity)

    def delete(self, entity_type: str, entity_id: str) -> bool:
        """Delete an entity without recording a change. Returns False if absent."""
        model = model_for(entity_type)
        with self._session() as s:
            row = s.get(model, entity_id)
            if row is None:
                return False
            s.delete(row)
            s.commit()
            return True

    def restore(self, entity_type: str, states: Dict[str, Optional[Dict[str, Any]]]) -> None:
        """Put every entity back to a snapshot() state, in one transaction."""
        model = model_for(entity_type)
        with self._session() as s:
            for entity_id, state in states.items():
                row = s.get(model, entity_id)
                if state is None:
                    if row is not None:
                        s.delete(row)
                    continue
                self._upsert(s, entity_type, state)
            s.commit()

    # ─── Tracked writes (local mutations) ─────────────────────────────────────

    def save(self, entity_type: str, data: Dict[str, Any], *, priority: str = Priority.HIGH.value) -> Dict[str, Any]:
        """
        Create or update an entity and record the change for sync.

        Args:
            entity_type: "volunteers", "events" or "attendance".
            data: Entity fields. A missing id is generated.
            priority: "high" for user edits, "normal" for bulk/import.

        Returns:
            The stored entity as a dict.
        """
        return self.save_many(entity_type, [data], priority=priority)[0]

    def save_many(
        self,
        entity_type: str,
        rows: List[Dict[str, Any]],
        *,
        priority: str = Priority.NORMAL.value,
    ) -> List[Dict[str, Any]]:
        """Tracked upsert of several entities in a single transaction."""
        self._require_tracker()
        now = datetime.utcnow()
        saved: List[Dict[str, Any]] = []
        changed_any = False
        with self._session() as s:
            for data in rows:
                data = dict(data)
                data.setdefault("id", uuid.uuid4().hex)
                data["updated_at"] = now
                entity, created, changed = self._upsert(s, entity_type, data, touch_unchanged=False)
                payload = to_payload(entity)
                saved.append(payload)
                if not changed:
                    continue
                changed_any = True
                self.tracker.record(
                    entity_type,
                    payload["id"],
                    Operation.CREATE.value if created else Operation.UPDATE.value,
                    payload,
                    priority=priority,
                    session=s,
                )
            s.commit()
        if changed_any:
            self.tracker.committed(entity_type, priority)
        return saved

    def remove(self, entity_type: str, entity_id: str, *, priority: str = Priority.HIGH.value) -> bool:
        """Delete an entity and record the deletion. Returns False if absent."""
        self._require_tracker()
        model = model_for(entity_type)
        with self._session() as s:
            row = s.get(model, entity_id)
            if row is None:
                return False
            payload = {"id": entity_id, "updated_at": datetime.utcnow().isoformat()}
            s.delete(row)
            self.tracker.record(
                entity_type, entity_id, Operation.DELETE.value, payload,
                priority=priority, session=s,
            )
            s.commit()
        self.tracker.committed(entity_type, priority)
        return True

    # ─── Internal helpers ─────────────────────────────────────────────────────

    def _require_tracker(self) -> None:
        if self.tracker is None:
            raise RuntimeError("LocalStore was built without a ChangeTracker")

    def _upsert(
        self,
        s: Session,
        entity_type: str,
        data: Dict[str, Any],
        *,
        touch_unchanged: bool = True,
    ) -> Tuple[SQLModel, bool, bool]:
        """
        Insert or update one row inside ``s``.

        Args:
            touch_unchanged: Write timestamp fields even when nothing else
                differs. Remote rows are mirrored exactly; local saves that
                change nothing leave the row alone.

        Returns:
            (row, created, changed) where ``changed`` ignores timestamps.
        """
        model = model_for(entity_type)
        try:
            validated = model.model_validate(data)
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid {entity_type} record: {exc}") from exc
        fields = validated.model_dump(exclude_unset=True)

        existing = s.get(model, validated.id)
        if existing is None and entity_type == ATTENDANCE:
            existing = s.exec(
                select(AttendanceRecord)
                .where(AttendanceRecord.volunteer_id == validated.volunteer_id)
                .where(AttendanceRecord.event_id == validated.event_id)
            ).first()
            if existing is not None:
                logger.info(
                    "Attendance %s matches existing check-in %s; updating in place",
                    validated.id, existing.id,
                )
                fields.pop("id", None)

        if existing is None:
            s.add(validated)
            s.flush()
            return validated, True, True

        changed = any(
            getattr(existing, key) != value
            for key, value in fields.items()
            if key not in _VOLATILE_FIELDS
        )
        if not changed and not touch_unchanged:
            return existing, False, False
        for key, value in fields.items():
            if key == "created_at" and not touch_unchanged:
                continue
            setattr(existing, key, value)
        s.add(existing)
        s.flush()
        return existing, False, changed
