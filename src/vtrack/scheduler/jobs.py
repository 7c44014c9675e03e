"""
APScheduler jobs for background sync.

Two jobs:

  periodic_sync   every ``sync_interval_minutes``; a periodic cycle, so it is
                  skipped when the previous attempt was too recent or the
                  remote asked us to back off
  audit_cleanup   daily at ``audit_cleanup_hour`` UTC; drops audit entries
                  past retention

The scheduler runs inside the same event loop as the API (wired in __main__).
"""
import logging
from datetime import datetime

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from vtrack.config import get_settings
from vtrack.sync.orchestrator import SyncMode

logger = logging.getLogger(__name__)


def build_scheduler(orchestrator, audit=None) -> AsyncIOScheduler:
    """
    Create and configure the APScheduler.

    Args:
        orchestrator: SyncOrchestrator driven by the periodic job.
        audit: AuditLogger swept nightly; defaults to the orchestrator's.

    Returns:
        Configured AsyncIOScheduler (not yet started).
    """
    settings = get_settings()
    audit = audit or orchestrator.audit
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        _periodic_sync,
        trigger="interval",
        minutes=settings.sync_interval_minutes,
        id="periodic_sync",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        kwargs={"orchestrator": orchestrator},
    )

    if audit is not None:
        scheduler.add_job(
            _audit_cleanup,
            trigger="cron",
            hour=settings.audit_cleanup_hour,
            minute=0,
            id="audit_cleanup",
            replace_existing=True,
            kwargs={"audit": audit},
        )

    return scheduler


async def _periodic_sync(orchestrator) -> None:
    """Periodic job: run one sync cycle. Never raises into the scheduler."""
    logger.debug("Periodic sync tick at %s", datetime.utcnow().isoformat())
    try:
        result = await orchestrator.request_sync(SyncMode.PERIODIC)
    except Exception as exc:
        logger.error("Periodic sync failed: %s", exc)
        return
    if result is not None and result.status not in ("skipped", "success"):
        logger.warning("Periodic sync finished with status %s: %s", result.status, result.error)


async def _audit_cleanup(audit) -> None:
    """Nightly job: apply audit log retention."""
    try:
        removed = audit.cleanup()
        logger.info("Audit cleanup removed %d entr(ies)", removed)
    except Exception as exc:
        logger.error("Audit cleanup failed: %s", exc)
