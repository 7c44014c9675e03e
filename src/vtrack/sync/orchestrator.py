"""
SyncOrchestrator — drives one sync cycle end-to-end.

State machine per cycle:

    Idle → Pulling → Diffing → Resolving → Applying → Pushing → Checkpointing → Idle
      └──────────────────────── Failed ←─(any phase-level error)──┘ → Idle

  Pulling        pull every entity type concurrently, each from its cursor
  Diffing        split pulled rows into plain remote writes and collisions
                 with unacknowledged local ChangeRecords
  Resolving      ConflictResolver picks a side for every collision
  Applying       write remote winners locally (untracked), wrapped in a
                 backup snapshot and rolled back on failure
  Pushing        drain the queue per entity type in batches, for types
                 whose pull went through unthrottled
  Checkpointing  advance the cursor of every type whose pull AND push
                 succeeded; other types keep their old cursor

Errors scoped to one entity type (network, auth, rate limit) only mark that
type failed. Errors that leave the cycle in an unknown state (local store
failures, every pull failing) move the machine to Failed; the next trigger
starts again from Idle. Nothing here ever raises into the host process.

Only one cycle runs at a time. The ``_active`` flag is checked and set with
no await in between, which is atomic on a single-threaded event loop. A
trigger that arrives mid-cycle is remembered and run once more afterwards.
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from sqlmodel import Session, select

from vtrack.models.entities import ENTITY_TYPES
from vtrack.models.sync import ChangeRecord, ChangeStatus, Operation, Priority, SyncCursor, SyncLog
from vtrack.remote.adapter import PullResult, RemoteRow
from vtrack.sync.conflicts import REMOTE, content_equal, parse_timestamp
from vtrack.sync.errors import AuthError, RateLimitError, StorageError, SyncError, ValidationError
from vtrack.sync.events import EventKind, SyncEvent, SyncEventBus, SyncState

logger = logging.getLogger(__name__)


class SyncMode(str, Enum):
    PERIODIC = "periodic"  # timer; honours the minimum interval
    MANUAL = "manual"  # user request; bypasses throttles
    TARGETED = "targeted"  # push-only pass after a local edit


# When triggers coalesce, the more thorough cycle wins.
_MODE_WEIGHT = {SyncMode.TARGETED: 0, SyncMode.PERIODIC: 1, SyncMode.MANUAL: 2}


class SyncCancelled(Exception):
    """Raised between phases after stop() was requested."""


@dataclass
class TypeOutcome:
    entity_type: str
    pull_ok: bool = False
    push_ok: bool = False
    throttled: bool = False
    pulled: int = 0
    pushed: int = 0
    conflicts: int = 0
    version: Optional[str] = None
    error: Optional[str] = None


@dataclass
class CycleResult:
    cycle_id: str
    mode: SyncMode
    status: str = "running"  # success, partial, error, skipped, cancelled
    started_at: datetime = field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None
    types: Dict[str, TypeOutcome] = field(default_factory=dict)
    error: Optional[str] = None
    reason: Optional[str] = None  # why a cycle was skipped

    def outcome(self, entity_type: str) -> TypeOutcome:
        if entity_type not in self.types:
            self.types[entity_type] = TypeOutcome(entity_type)
        return self.types[entity_type]

    @property
    def pulled(self) -> int:
        return sum(t.pulled for t in self.types.values())

    @property
    def pushed(self) -> int:
        return sum(t.pushed for t in self.types.values())

    @property
    def conflicts(self) -> int:
        return sum(t.conflicts for t in self.types.values())


@dataclass
class SyncStatus:
    state: str
    last_sync_at: Optional[datetime]
    pending: int
    failed: int
    conflicts: int
    is_syncing: bool
    last_error: Optional[str] = None
    rate_limited_until: Optional[datetime] = None


@dataclass
class _Collision:
    entity_type: str
    row: RemoteRow
    change: ChangeRecord
    local: Optional[Dict[str, Any]]


@dataclass
class _Plan:
    # (entity_type, entity_id, payload or None for delete)
    writes: List[Tuple[str, str, Optional[Dict[str, Any]]]] = field(default_factory=list)
    collisions: List[_Collision] = field(default_factory=list)
    discards: List[str] = field(default_factory=list)  # ChangeRecord ids that lost


class SyncOrchestrator:
    """Owns the sync state machine, scheduling hooks and status."""

    def __init__(
        self,
        engine,
        *,
        store,
        queue,
        remote,
        resolver,
        backups,
        bus: Optional[SyncEventBus] = None,
        audit=None,
        tracker=None,
        entity_types: Sequence[str] = ENTITY_TYPES,
        batch_size: int = 100,
        max_change_attempts: int = 5,
        min_interval_seconds: float = 60.0,
        backup_min_records: int = 2,
        push_delay_seconds: float = 5.0,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        """
        Args:
            engine: SQLAlchemy engine holding cursors and sync history.
            store: LocalStore.
            queue: SyncQueue.
            remote: RemoteAdapter, optionally wrapped in PullThrottle.
            resolver: ConflictResolver.
            backups: BackupManager.
            bus: Event bus for lifecycle events; one is created if omitted.
            audit: AuditLogger; attached to the bus when given.
            tracker: ChangeTracker; high-priority edits schedule a push-only pass.
            entity_types: Types to sync, in push order (parents first).
            batch_size: Records per push batch (capped at 100 by the queue).
            max_change_attempts: Failed pushes before a record is parked.
            min_interval_seconds: Periodic cycles closer than this are skipped.
            backup_min_records: Apply batches at least this big get a snapshot.
            push_delay_seconds: Debounce before a push-only pass after an edit.
            clock: Source of "now" (naive UTC).
        """
        self.engine = engine
        self.store = store
        self.queue = queue
        self.remote = remote
        self.resolver = resolver
        self.backups = backups
        self.bus = bus or SyncEventBus()
        self.audit = audit
        self.entity_types = list(entity_types)
        self.batch_size = batch_size
        self.max_change_attempts = max_change_attempts
        self.min_interval = timedelta(seconds=min_interval_seconds)
        self.backup_min_records = backup_min_records
        self.push_delay_seconds = push_delay_seconds
        self._clock = clock

        self.state = SyncState.IDLE
        self._active = False
        self._rerun_mode: Optional[SyncMode] = None
        self._cancel_requested = False
        self._not_before: Optional[datetime] = None
        self._last_attempt_at: Optional[datetime] = None
        self._last_sync_at: Optional[datetime] = None
        self._last_conflicts = 0
        self._last_error: Optional[str] = None
        self._push_task: Optional[asyncio.Task] = None
        # entity_type -> {entity_id: version token our own push produced}
        self._pushed_versions: Dict[str, Dict[str, str]] = {}

        if audit is not None:
            audit.attach(self.bus)
        if tracker is not None:
            tracker.subscribe(self._on_local_change)

    # ─── Public surface ───────────────────────────────────────────────────────

    def start(self) -> None:
        """Recover from a previous crash and load the last successful sync time."""
        self.queue.recover()
        with Session(self.engine) as s:
            last = s.exec(
                select(SyncLog)
                .where(SyncLog.status.in_(["success", "partial"]))
                .order_by(SyncLog.finished_at.desc())
            ).first()
            if last is not None:
                self._last_sync_at = last.finished_at

    async def request_sync(self, mode: SyncMode = SyncMode.PERIODIC) -> Optional[CycleResult]:
        """
        Run a sync cycle, or queue one if a cycle is already running.

        Returns:
            The result of the last cycle run, or None when the request was
            folded into the cycle already in progress.
        """
        mode = SyncMode(mode)
        if self._active:
            if self._rerun_mode is None or _MODE_WEIGHT[mode] > _MODE_WEIGHT[self._rerun_mode]:
                self._rerun_mode = mode
            logger.info("Sync already running; %s sync queued to run afterwards", mode.value)
            return None
        self._active = True

        try:
            result = await self._run_cycle(mode)
            while self._rerun_mode is not None and not self._cancel_requested:
                next_mode, self._rerun_mode = self._rerun_mode, None
                result = await self._run_cycle(next_mode)
            return result
        finally:
            self._rerun_mode = None
            self._cancel_requested = False
            self._active = False

    def stop(self) -> bool:
        """Ask the running cycle to stop at the next phase boundary."""
        if not self._active:
            return False
        self._cancel_requested = True
        logger.info("Sync stop requested")
        return True

    def get_status(self) -> SyncStatus:
        pending = self.queue.count(ChangeStatus.PENDING.value) + self.queue.count(ChangeStatus.IN_FLIGHT.value)
        return SyncStatus(
            state=self.state.value,
            last_sync_at=self._last_sync_at,
            pending=pending,
            failed=self.queue.count(ChangeStatus.PARKED.value),
            conflicts=self._last_conflicts,
            is_syncing=self._active,
            last_error=self._last_error,
            rate_limited_until=self._not_before,
        )

    def on_sync_event(self, callback: Callable[[SyncEvent], None]) -> Callable[[], None]:
        """Subscribe to lifecycle events; returns the unsubscribe function."""
        return self.bus.subscribe(callback)

    def export_audit_log(self, **filters: Any) -> str:
        if self.audit is None:
            raise RuntimeError("No audit logger configured")
        return self.audit.export(**filters)

    def reset_cursors(self, entity_type: Optional[str] = None) -> None:
        """Forget cursors so the next cycle re-pulls everything (idempotent apply)."""
        with Session(self.engine) as s:
            stmt = select(SyncCursor)
            if entity_type is not None:
                stmt = stmt.where(SyncCursor.entity_type == entity_type)
            for cursor in s.exec(stmt).all():
                s.delete(cursor)
            s.commit()
        if entity_type is None:
            self._pushed_versions.clear()
        else:
            self._pushed_versions.pop(entity_type, None)
        reset = getattr(self.remote, "reset", None)
        if reset is not None:
            reset(entity_type)
        logger.info("Cursors reset for %s", entity_type or "all entity types")

    def retry_parked(self) -> int:
        return self.queue.retry_parked()

    async def close(self) -> None:
        if self._push_task is not None and not self._push_task.done():
            self._push_task.cancel()
        await self.remote.close()

    def cursors(self) -> Dict[str, SyncCursor]:
        with Session(self.engine) as s:
            return {c.entity_type: c for c in s.exec(select(SyncCursor)).all()}

    # ─── Cycle ────────────────────────────────────────────────────────────────

    async def _run_cycle(self, mode: SyncMode) -> CycleResult:
        now = self._clock()
        result = CycleResult(cycle_id=uuid.uuid4().hex[:12], mode=mode, started_at=now)

        skip_reason = self._skip_reason(mode, now)
        if skip_reason is not None:
            result.status = "skipped"
            result.reason = skip_reason
            result.finished_at = now
            self._publish(EventKind.CYCLE_SKIPPED, result.cycle_id, {"mode": mode.value, "reason": skip_reason})
            return result

        self._last_attempt_at = now
        log = self._create_sync_log(result)
        self._publish(EventKind.CYCLE_STARTED, result.cycle_id, {"mode": mode.value})

        try:
            if mode is SyncMode.TARGETED:
                self._transition(SyncState.PUSHING, result.cycle_id)
                await self._push_phase(result, self._types_with_pending())
            else:
                await self._full_cycle(result)
            result.status = self._overall_status(result)
            self._transition(SyncState.IDLE, result.cycle_id)
        except SyncCancelled:
            result.status = "cancelled"
            self._transition(SyncState.IDLE, result.cycle_id)
        except Exception as exc:
            logger.exception("Sync cycle %s failed", result.cycle_id)
            result.status = "error"
            result.error = f"{type(exc).__name__}: {exc}"
            self._transition(SyncState.FAILED, result.cycle_id)
            self._publish(EventKind.CYCLE_FAILED, result.cycle_id, {"error": result.error})
            self._transition(SyncState.IDLE, result.cycle_id)

        result.finished_at = self._clock()
        if result.status in ("success", "partial"):
            self._last_sync_at = result.finished_at
        if mode is not SyncMode.TARGETED:
            self._last_conflicts = result.conflicts
        self._last_error = result.error if result.status != "success" else None
        self._finish_sync_log(log, result)

        if result.status != "error":
            self._publish(EventKind.CYCLE_COMPLETED, result.cycle_id, {
                "mode": mode.value,
                "status": result.status,
                "pulled": result.pulled,
                "pushed": result.pushed,
                "conflicts": result.conflicts,
            })
        return result

    async def _full_cycle(self, result: CycleResult) -> None:
        self._transition(SyncState.PULLING, result.cycle_id)
        pulls = await self._pull_phase(result)
        self._check_cancel()

        self._transition(SyncState.DIFFING, result.cycle_id)
        plan = self._diff_phase(pulls)
        self._check_cancel()

        self._transition(SyncState.RESOLVING, result.cycle_id)
        self._resolve_phase(plan, result)
        self._check_cancel()

        self._transition(SyncState.APPLYING, result.cycle_id)
        await self._apply_phase(plan, result)
        self._check_cancel()

        self._transition(SyncState.PUSHING, result.cycle_id)
        # a throttled pull saw no remote rows, so its local changes wait
        pushable = [
            t for t in self.entity_types
            if result.outcome(t).pull_ok and not result.outcome(t).throttled
        ]
        await self._push_phase(result, pushable)
        self._check_cancel()

        self._transition(SyncState.CHECKPOINTING, result.cycle_id)
        self._checkpoint_phase(result)

    # ─── Phases ───────────────────────────────────────────────────────────────

    async def _pull_phase(self, result: CycleResult) -> Dict[str, PullResult]:
        cursors = self.cursors()
        force = result.mode is SyncMode.MANUAL

        async def pull_one(entity_type: str) -> PullResult:
            cursor = cursors.get(entity_type)
            since = cursor.last_remote_version_token if cursor else None
            return await self.remote.pull(entity_type, since, force=force)

        outcomes = await asyncio.gather(
            *(pull_one(t) for t in self.entity_types), return_exceptions=True
        )

        pulls: Dict[str, PullResult] = {}
        errors: List[BaseException] = []
        for entity_type, outcome in zip(self.entity_types, outcomes):
            type_outcome = result.outcome(entity_type)
            if isinstance(outcome, SyncError):
                self._record_remote_error(entity_type, outcome, type_outcome, "pull")
                errors.append(outcome)
                continue
            if isinstance(outcome, BaseException):
                raise outcome
            type_outcome.pull_ok = True
            type_outcome.throttled = outcome.throttled
            type_outcome.version = outcome.version
            if not outcome.throttled:
                pulls[entity_type] = outcome

        if errors and len(errors) == len(self.entity_types):
            raise errors[0]
        return pulls

    def _diff_phase(self, pulls: Dict[str, PullResult]) -> _Plan:
        plan = _Plan()
        for entity_type, pull in pulls.items():
            pending = self.queue.pending_for(entity_type)
            pushed = self._pushed_versions.get(entity_type, {})

            latest: Dict[str, RemoteRow] = {}
            for row in pull.rows:
                latest[row.entity_id] = row  # later versions supersede earlier ones

            for entity_id, row in latest.items():
                own_version = pushed.pop(entity_id, None)
                if own_version is not None and row.version == own_version:
                    continue  # echo of our own push, not a remote edit

                change = pending.get(entity_id)
                local = self.store.get(entity_type, entity_id)

                if change is None:
                    if row.deleted:
                        if local is not None:
                            plan.writes.append((entity_type, entity_id, None))
                    elif not _same_version(local, row.payload):
                        plan.writes.append((entity_type, entity_id, row.payload))
                    continue

                local_deleted = change.operation == Operation.DELETE.value
                if not row.deleted and not local_deleted and content_equal(change.payload, row.payload):
                    continue  # remote already holds our change
                if row.deleted and local_deleted:
                    plan.discards.append(change.id)  # both sides agree it is gone
                    continue
                plan.collisions.append(_Collision(entity_type, row, change, local))
        return plan

    def _resolve_phase(self, plan: _Plan, result: CycleResult) -> None:
        for collision in plan.collisions:
            local_version = collision.local or collision.change.payload
            decision = self.resolver.resolve(
                collision.entity_type,
                collision.row.entity_id,
                collision.change,
                local_version,
                collision.row.payload,
                remote_deleted=collision.row.deleted,
                cycle_id=result.cycle_id,
            )
            result.outcome(collision.entity_type).conflicts += 1
            if decision.winner == REMOTE:
                plan.writes.append((
                    collision.entity_type,
                    collision.row.entity_id,
                    None if collision.row.deleted else collision.row.payload,
                ))
                plan.discards.append(collision.change.id)
            self._publish(EventKind.CONFLICT_RESOLVED, result.cycle_id, {
                "entity_type": collision.entity_type,
                "entity_id": collision.row.entity_id,
                "resolution": decision.resolution,
                "reason": decision.reason,
            })

    async def _apply_phase(self, plan: _Plan, result: CycleResult) -> None:
        if not plan.writes:
            if plan.discards:
                self.queue.discard(plan.discards, reason="superseded by remote")
            return

        backup_id = None
        if len(plan.writes) >= self.backup_min_records:
            states = self._pre_apply_states(plan.writes)
            backup_id = self.backups.snapshot(
                f"apply-{result.cycle_id}",
                states,
                {"cycle_id": result.cycle_id, "records": len(plan.writes)},
            )

        try:
            for entity_type, entity_id, payload in plan.writes:
                if payload is None:
                    self.store.delete(entity_type, entity_id)
                else:
                    self.store.put(entity_type, payload)
                result.outcome(entity_type).pulled += 1
        except Exception as exc:
            if backup_id is not None:
                await self.backups.rollback(backup_id, self._restore_states)
                self._publish(EventKind.ROLLBACK, result.cycle_id, {
                    "backup_id": backup_id, "error": str(exc),
                })
            for outcome in result.types.values():
                outcome.pulled = 0
            if isinstance(exc, StorageError):
                raise
            raise StorageError(f"Applying remote changes failed: {exc}") from exc

        if plan.discards:
            self.queue.discard(plan.discards, reason="superseded by remote")
        if backup_id is not None:
            self.backups.discard(backup_id)

    async def _push_phase(self, result: CycleResult, entity_types: Sequence[str]) -> None:
        for entity_type in entity_types:
            outcome = result.outcome(entity_type)
            outcome.push_ok = await self._push_type(result, entity_type, outcome)

    async def _push_type(self, result: CycleResult, entity_type: str, outcome: TypeOutcome) -> bool:
        while True:
            if self._cancel_requested:
                return False
            batch = self.queue.drain(self.batch_size, entity_type=entity_type)
            if not batch:
                return True
            if not await self._send_batch(result, entity_type, batch, outcome):
                return False

    async def _send_batch(
        self,
        result: CycleResult,
        entity_type: str,
        batch: List[ChangeRecord],
        outcome: TypeOutcome,
    ) -> bool:
        """
        Push one in-flight batch and settle every record in it.

        A 4xx on a batch says nothing about which record is bad, so the batch
        is split in halves until the offending record is alone and parked.
        The others are not charged an attempt.

        Returns:
            False when the type should stop pushing for this cycle.
        """
        ids = [c.id for c in batch]
        try:
            push = await self.remote.push(entity_type, batch)
        except RateLimitError as exc:
            self.queue.requeue(ids, str(exc), count_attempt=False)
            self._record_remote_error(entity_type, exc, outcome, "push")
            return False
        except ValidationError as exc:
            if len(batch) == 1:
                self._park(result, ids, str(exc))
                logger.warning("Remote refused %s change %s: %s", entity_type, ids[0], exc)
                return True
            logger.info("Splitting %d-record %s batch after: %s", len(batch), entity_type, exc)
            middle = len(batch) // 2
            halves = [batch[:middle], batch[middle:]]
            for index, half in enumerate(halves):
                if not await self._send_batch(result, entity_type, half, outcome):
                    untried = [c.id for rest in halves[index + 1:] for c in rest]
                    if untried:
                        self.queue.requeue(untried, count_attempt=False)
                    return False
            return True
        except SyncError as exc:
            self.queue.requeue(ids, str(exc))
            self._park_exhausted(result)
            self._record_remote_error(entity_type, exc, outcome, "push")
            return False
        except Exception:
            self.queue.requeue(ids, count_attempt=False)
            raise

        self.queue.acknowledge(push.accepted)
        outcome.pushed += len(push.accepted)
        self._pushed_versions.setdefault(entity_type, {}).update(push.new_version_tokens)
        if push.rejected:
            for change_id, reason in push.rejected.items():
                self._park(result, [change_id], reason)

        unanswered = [i for i in ids if i not in push.accepted and i not in push.rejected]
        self._publish(EventKind.BATCH_PUSHED, result.cycle_id, {
            "entity_type": entity_type,
            "size": len(batch),
            "accepted": len(push.accepted),
            "rejected": len(push.rejected),
        })
        if unanswered:
            self.queue.requeue(unanswered, "not acknowledged by remote")
            self._park_exhausted(result)
            outcome.error = f"{len(unanswered)} change(s) not acknowledged"
            return False
        return True

    def _checkpoint_phase(self, result: CycleResult) -> None:
        now = self._clock()
        with Session(self.engine) as s:
            for entity_type in self.entity_types:
                outcome = result.outcome(entity_type)
                if not (outcome.pull_ok and outcome.push_ok) or outcome.throttled:
                    continue
                cursor = s.get(SyncCursor, entity_type) or SyncCursor(entity_type=entity_type)
                cursor.last_remote_version_token = outcome.version
                cursor.last_synced_at = now
                s.add(cursor)
            s.commit()

    # ─── Internal helpers ─────────────────────────────────────────────────────

    def _skip_reason(self, mode: SyncMode, now: datetime) -> Optional[str]:
        if self._not_before is not None and now < self._not_before:
            return "rate_limited"
        if (
            mode is SyncMode.PERIODIC
            and self._last_attempt_at is not None
            and now - self._last_attempt_at < self.min_interval
        ):
            return "min_interval"
        return None

    def _overall_status(self, result: CycleResult) -> str:
        outcomes = list(result.types.values())
        if not outcomes:
            return "success"
        if result.mode is SyncMode.TARGETED:
            ok = [o.push_ok for o in outcomes]
        else:
            ok = [o.pull_ok and (o.push_ok or o.throttled) for o in outcomes]
        if all(ok):
            return "success"
        return "partial" if any(ok) else "error"

    def _types_with_pending(self) -> List[str]:
        pending = set(self.queue.entity_types_pending())
        return [t for t in self.entity_types if t in pending]

    def _record_remote_error(self, entity_type: str, exc: SyncError, outcome: TypeOutcome, phase: str) -> None:
        outcome.error = f"{type(exc).__name__}: {exc}"
        if isinstance(exc, RateLimitError):
            self._not_before = self._clock() + timedelta(seconds=exc.retry_after)
            logger.warning("Rate limited during %s of %s; backing off %.0fs", phase, entity_type, exc.retry_after)
        elif isinstance(exc, AuthError):
            logger.error("Authentication failed during %s of %s: %s", phase, entity_type, exc)
        else:
            logger.warning("%s of %s failed: %s", phase.capitalize(), entity_type, exc)

    def _park(self, result: CycleResult, change_ids: List[str], reason: str) -> None:
        if self.queue.park(change_ids, reason):
            for change_id in change_ids:
                self._publish(EventKind.RECORD_PARKED, result.cycle_id, {
                    "change_id": change_id, "reason": reason,
                })

    def _park_exhausted(self, result: CycleResult) -> None:
        for record in self.queue.park_exhausted(self.max_change_attempts):
            self._publish(EventKind.RECORD_PARKED, result.cycle_id, {
                "change_id": record.id,
                "entity_type": record.entity_type,
                "entity_id": record.entity_id,
                "reason": record.last_error,
            })

    def _pre_apply_states(self, writes) -> Dict[str, Dict[str, Optional[Dict[str, Any]]]]:
        ids_by_type: Dict[str, List[str]] = {}
        for entity_type, entity_id, payload in writes:
            ids = ids_by_type.setdefault(entity_type, [])
            ids.append(entity_id)
            if payload is not None:
                # a deduplicated attendance row lands on a different local id
                target = self.store.target_id(entity_type, payload)
                if target != entity_id:
                    ids.append(target)
        return {t: self.store.snapshot(t, ids) for t, ids in ids_by_type.items()}

    def _restore_states(self, states: Dict[str, Dict[str, Optional[Dict[str, Any]]]]) -> None:
        for entity_type, entity_states in states.items():
            self.store.restore(entity_type, entity_states)

    def _check_cancel(self) -> None:
        if self._cancel_requested:
            raise SyncCancelled()

    def _transition(self, state: SyncState, cycle_id: Optional[str]) -> None:
        previous, self.state = self.state, state
        self._publish(EventKind.STATE_CHANGED, cycle_id, {"from": previous.value, "to": state.value})

    def _publish(self, kind: EventKind, cycle_id: Optional[str], data: Dict[str, Any]) -> None:
        self.bus.publish(SyncEvent(kind=kind, state=self.state, cycle_id=cycle_id, data=data))

    def _on_local_change(self, entity_type: str, priority: str) -> None:
        """Schedule a debounced push-only pass after a high-priority edit."""
        if priority != Priority.HIGH.value:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return  # no event loop (scripts, tests): the next periodic cycle pushes it
        if self._push_task is None or self._push_task.done():
            self._push_task = loop.create_task(self._debounced_push())

    async def _debounced_push(self) -> None:
        await asyncio.sleep(self.push_delay_seconds)
        await self.request_sync(SyncMode.TARGETED)

    def _create_sync_log(self, result: CycleResult) -> SyncLog:
        log = SyncLog(
            cycle_id=result.cycle_id,
            mode=result.mode.value,
            started_at=result.started_at,
            status="running",
        )
        with Session(self.engine) as s:
            s.add(log)
            s.commit()
            s.refresh(log)
        return log

    def _finish_sync_log(self, log: SyncLog, result: CycleResult) -> None:
        with Session(self.engine) as s:
            db_log = s.get(SyncLog, log.id)
            db_log.status = result.status
            db_log.finished_at = result.finished_at
            db_log.records_pulled = result.pulled
            db_log.records_pushed = result.pushed
            db_log.conflicts = result.conflicts
            db_log.error_message = result.error or _type_errors(result)
            s.add(db_log)
            s.commit()


def _same_version(local: Optional[Dict[str, Any]], remote: Optional[Dict[str, Any]]) -> bool:
    """True when applying ``remote`` would not change ``local``."""
    if local is None or remote is None:
        return local is remote
    if not content_equal(local, remote):
        return False
    return parse_timestamp(local.get("updated_at")) == parse_timestamp(remote.get("updated_at"))


def _type_errors(result: CycleResult) -> Optional[str]:
    errors = [f"{t}: {o.error}" for t, o in result.types.items() if o.error]
    return "; ".join(errors) or None
