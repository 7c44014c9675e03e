"""Shared test fixtures."""
from typing import Any, Dict, List, Optional

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine

# Import all models so SQLModel.metadata knows about them
from vtrack.models.entities import AttendanceRecord, Event, Volunteer  # noqa: F401
from vtrack.models.sync import (  # noqa: F401
    AuditLogEntry,
    BackupSnapshot,
    ChangeRecord,
    ConflictRecord,
    MigrationState,
    SyncCursor,
    SyncLog,
)
from vtrack.remote.adapter import PullResult, PushResult, RemoteRow
from vtrack.store.local import LocalStore
from vtrack.sync.audit import AuditLogger
from vtrack.sync.backup import BackupManager
from vtrack.sync.conflicts import ConflictResolver
from vtrack.sync.errors import ValidationError
from vtrack.sync.events import SyncEventBus
from vtrack.sync.orchestrator import SyncOrchestrator
from vtrack.sync.queue import SyncQueue
from vtrack.sync.tracker import ChangeTracker


@pytest.fixture(name="engine")
def engine_fixture():
    """In-memory SQLite engine. Tables recreated fresh for each test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture
def queue(engine) -> SyncQueue:
    return SyncQueue(engine)


@pytest.fixture
def tracker(queue) -> ChangeTracker:
    return ChangeTracker(queue)


@pytest.fixture
def store(engine, tracker) -> LocalStore:
    return LocalStore(engine, tracker=tracker)


# ─── Fake remote ──────────────────────────────────────────────────────────────

class FakeRemote:
    """
    In-memory stand-in for RemoteAdapter.

    Rows are kept in local field names. Every write bumps a global version
    counter; pull(since) returns the rows of one table written after it.
    Failures are injected per entity type via ``fail_pull`` / ``fail_push``
    (an exception instance, raised on every call until removed),
    ``fail_after_apply`` (raised after the batch was written, like a timeout
    on the response), ``reject`` (change ids refused permanently) and
    ``invalid`` (entity ids that make the whole batch fail with a 4xx).
    ``on_push`` is called once at the start of the next push.
    """

    def __init__(self):
        self.tables: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.history: List[tuple] = []  # (version, entity_type, entity_id, payload or None)
        self.version = 0
        self.pull_calls: List[tuple] = []  # (entity_type, since, force)
        self.push_calls: List[tuple] = []  # (entity_type, [change ids])
        self.fail_pull: Dict[str, Exception] = {}
        self.fail_push: Dict[str, BaseException] = {}
        self.fail_push_on_call: Dict[int, BaseException] = {}  # 1-based push call number
        self.fail_after_apply: Dict[str, BaseException] = {}
        self.reject: Dict[str, str] = {}
        self.invalid: Dict[str, str] = {}
        self.on_push = None
        self.pull_gate = None  # asyncio.Event awaited inside pull() when set

    # Helpers for tests
    def write(self, entity_type: str, payload: Dict[str, Any]) -> None:
        """An independent edit made on the remote side."""
        self.version += 1
        self.tables.setdefault(entity_type, {})[payload["id"]] = dict(payload)
        self.history.append((self.version, entity_type, payload["id"], dict(payload)))

    def remove(self, entity_type: str, entity_id: str) -> None:
        self.version += 1
        self.tables.setdefault(entity_type, {}).pop(entity_id, None)
        self.history.append((self.version, entity_type, entity_id, None))

    def row(self, entity_type: str, entity_id: str) -> Optional[Dict[str, Any]]:
        return self.tables.get(entity_type, {}).get(entity_id)

    # RemoteAdapter interface
    async def pull(self, entity_type: str, since: Optional[str], *, force: bool = False) -> PullResult:
        self.pull_calls.append((entity_type, since, force))
        if self.pull_gate is not None:
            await self.pull_gate.wait()
        if entity_type in self.fail_pull:
            raise self.fail_pull[entity_type]
        floor = int(since or 0)
        rows = [
            RemoteRow(entity_id=eid, version=str(v), payload=payload, deleted=payload is None)
            for v, t, eid, payload in self.history
            if t == entity_type and v > floor
        ]
        return PullResult(entity_type=entity_type, rows=rows, version=str(self.version))

    async def push(self, entity_type: str, changes) -> PushResult:
        self.push_calls.append((entity_type, [c.id for c in changes]))
        if self.on_push is not None:
            hook, self.on_push = self.on_push, None
            hook()
        failure = self.fail_push_on_call.get(len(self.push_calls)) or self.fail_push.get(entity_type)
        if failure is not None:
            raise failure
        bad = [self.invalid[c.entity_id] for c in changes if c.entity_id in self.invalid]
        if bad:
            raise ValidationError(f"HTTP 422: {bad[0]}")
        result = PushResult()
        for change in changes:
            if change.id in self.reject:
                result.rejected[change.id] = self.reject[change.id]
                continue
            if change.operation == "delete":
                self.remove(entity_type, change.entity_id)
            else:
                self.write(entity_type, change.payload)
            result.accepted.append(change.id)
            result.new_version_tokens[change.entity_id] = str(self.version)
        if entity_type in self.fail_after_apply:
            raise self.fail_after_apply[entity_type]
        return result

    def reset(self, entity_type: Optional[str] = None) -> None:
        pass

    async def close(self) -> None:
        pass


@pytest.fixture
def remote() -> FakeRemote:
    return FakeRemote()


@pytest.fixture
def bus() -> SyncEventBus:
    return SyncEventBus()


@pytest.fixture
def audit(engine) -> AuditLogger:
    return AuditLogger(engine, level="DEBUG")


@pytest.fixture
def orchestrator(engine, store, queue, remote, bus, audit) -> SyncOrchestrator:
    orch = SyncOrchestrator(
        engine,
        store=store,
        queue=queue,
        remote=remote,
        resolver=ConflictResolver(engine),
        backups=BackupManager(engine, max_backups=10),
        bus=bus,
        audit=audit,
        batch_size=100,
        max_change_attempts=3,
        min_interval_seconds=60,
    )
    orch.start()
    return orch

