"""
Typed sync lifecycle events and a synchronous publish/subscribe bus.

Subscribers (the audit logger, the status API, tests) receive events in
the order they were published, on the publisher's call stack. A subscriber
that raises is logged and skipped; the remaining subscribers still run.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class SyncState(str, Enum):
    IDLE = "idle"
    PULLING = "pulling"
    DIFFING = "diffing"
    RESOLVING = "resolving"
    APPLYING = "applying"
    PUSHING = "pushing"
    CHECKPOINTING = "checkpointing"
    FAILED = "failed"


class EventKind(str, Enum):
    CYCLE_STARTED = "cycle_started"
    STATE_CHANGED = "state_changed"
    CONFLICT_RESOLVED = "conflict_resolved"
    BATCH_PUSHED = "batch_pushed"
    RECORD_PARKED = "record_parked"
    ROLLBACK = "rollback"
    CYCLE_COMPLETED = "cycle_completed"
    CYCLE_FAILED = "cycle_failed"
    CYCLE_SKIPPED = "cycle_skipped"


@dataclass
class SyncEvent:
    kind: EventKind
    state: SyncState
    cycle_id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.utcnow)


Subscriber = Callable[[SyncEvent], None]


class SyncEventBus:
    """In-process fan-out of SyncEvents."""

    def __init__(self):
        self._subscribers: List[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register ``callback``; returns a function that unsubscribes it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, event: SyncEvent) -> None:
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception:
                logger.exception("Sync event subscriber failed on %s", event.kind.value)

    def __len__(self) -> int:
        return len(self._subscribers)
