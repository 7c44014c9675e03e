"""
Change tracking for local mutations.

The local store calls ChangeTracker.record() inside the same Session that
writes the entity, so the mutation and its ChangeRecord commit (or roll
back) together. After the commit the store calls committed(), which fans
out to subscribers; the orchestrator subscribes to schedule a push-only
pass for high-priority edits.
"""
import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlmodel import Session

from vtrack.models.entities import ENTITY_MODELS
from vtrack.models.sync import ChangeRecord, Operation, Priority
from vtrack.sync.queue import SyncQueue

logger = logging.getLogger(__name__)

ChangeListener = Callable[[str, str], Any]  # (entity_type, priority)


class ChangeTracker:
    """Turns local mutations into queued ChangeRecords."""

    def __init__(self, queue: SyncQueue):
        self.queue = queue
        self._listeners: List[ChangeListener] = []

    def record(
        self,
        entity_type: str,
        entity_id: str,
        operation: str,
        payload: Dict[str, Any],
        *,
        priority: str = Priority.HIGH.value,
        session: Optional[Session] = None,
    ) -> Optional[str]:
        """
        Record one local mutation.

        Args:
            entity_type: "volunteers", "events" or "attendance".
            entity_id: Stable id of the mutated entity.
            operation: "create", "update" or "delete".
            payload: Entity state after the mutation (id only for deletes).
            priority: "high" for user edits, "normal" for bulk/import.
            session: The Session performing the mutation. The caller commits.

        Returns:
            Id of the pending ChangeRecord for the entity, or None when the
            change cancelled out an unsent create.
        """
        if entity_type not in ENTITY_MODELS:
            raise ValueError(f"Unknown entity type: {entity_type!r}")
        operation = Operation(operation).value
        priority = Priority(priority).value

        change = ChangeRecord(
            id=uuid.uuid4().hex,
            entity_type=entity_type,
            entity_id=str(entity_id),
            operation=operation,
            payload=dict(payload),
            created_at=datetime.utcnow(),
            priority=priority,
        )
        change_id = self.queue.enqueue(change, session=session)
        logger.debug("Tracked %s %s/%s → %s", operation, entity_type, entity_id, change_id)
        return change_id

    # ─── Subscribers ──────────────────────────────────────────────────────────

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        """Register a callback run after a tracked mutation commits."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def committed(self, entity_type: str, priority: str) -> None:
        """Notify subscribers that a tracked mutation is durable."""
        for listener in list(self._listeners):
            try:
                listener(entity_type, priority)
            except Exception:
                # local writes must succeed regardless of sync health
                logger.exception("Change listener failed for %s", entity_type)
