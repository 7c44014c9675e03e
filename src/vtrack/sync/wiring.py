"""
Explicit construction of the sync engine.

There is no process-wide orchestrator: the entry point, the API and the
tests call build_orchestrator() and pass the instance to whoever needs it.
"""
import logging
from typing import Optional

import httpx

from vtrack.config import Settings, get_settings
from vtrack.models.entities import VOLUNTEERS
from vtrack.remote.adapter import RemoteAdapter
from vtrack.remote.auth import CredentialProvider
from vtrack.remote.client import RemoteTableClient
from vtrack.remote.throttle import PullThrottle
from vtrack.store.local import LocalStore
from vtrack.sync.audit import AuditLogger, Category
from vtrack.sync.backup import BackupManager
from vtrack.sync.conflicts import ConflictResolver
from vtrack.sync.events import SyncEventBus
from vtrack.sync.migration import MigrationRunner
from vtrack.sync.orchestrator import SyncOrchestrator
from vtrack.sync.queue import SyncQueue
from vtrack.sync.tracker import ChangeTracker

logger = logging.getLogger(__name__)


def build_orchestrator(
    engine,
    settings: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> SyncOrchestrator:
    """
    Compose store, queue, remote adapter and bookkeeping into an orchestrator.

    Args:
        engine: SQLAlchemy engine (tables already created).
        settings: Defaults to get_settings().
        transport: httpx transport override, used by tests to fake the remote.
    """
    settings = settings or get_settings()

    queue = SyncQueue(engine)
    tracker = ChangeTracker(queue)
    store = LocalStore(engine, tracker=tracker)

    credentials = CredentialProvider(
        settings.credentials_dir,
        settings.remote_token_url,
        timeout=settings.request_timeout_seconds,
        transport=transport,
    )
    client = RemoteTableClient(
        settings.remote_base_url,
        timeout=settings.request_timeout_seconds,
        transport=transport,
    )
    adapter = RemoteAdapter(
        client,
        credentials,
        max_attempts=settings.max_retry_attempts,
        base_delay=settings.backoff_base_seconds,
        max_delay=settings.backoff_max_seconds,
    )
    remote = PullThrottle(adapter, {VOLUNTEERS: settings.volunteer_pull_interval_seconds})

    bus = SyncEventBus()
    audit = AuditLogger(
        engine,
        level=settings.audit_level,
        retention_days=settings.audit_retention_days,
        max_entries=settings.audit_max_entries,
    )

    orchestrator = SyncOrchestrator(
        engine,
        store=store,
        queue=queue,
        remote=remote,
        resolver=ConflictResolver(engine),
        backups=BackupManager(engine, max_backups=settings.backup_max_count),
        bus=bus,
        audit=audit,
        tracker=tracker,
        batch_size=settings.push_batch_size,
        max_change_attempts=settings.max_change_attempts,
        min_interval_seconds=settings.min_sync_interval_seconds,
        backup_min_records=settings.backup_min_records,
    )
    return orchestrator


def run_startup_migration(orchestrator: SyncOrchestrator, settings: Optional[Settings] = None) -> None:
    """
    Migrate legacy bookkeeping before sync starts.

    Raises:
        MigrationError: Sync must not start; the caller surfaces it.
    """
    settings = settings or get_settings()
    runner = MigrationRunner(
        orchestrator.engine,
        orchestrator.store,
        orchestrator.queue,
        settings.legacy_state_path,
    )
    summary = runner.run()
    if summary is not None and orchestrator.audit is not None:
        orchestrator.audit.info("Legacy sync state migrated", Category.SYSTEM, summary)
