"""
Main entrypoint: migration, then scheduler + API in one process.

Usage:
    python -m vtrack setup          # one-time remote API credential setup
    python -m vtrack migrate        # only migrate legacy sync bookkeeping
    python -m vtrack sync           # run one manual sync cycle and exit
    python -m vtrack                # migrate, then start scheduler + API
"""
import asyncio
import logging
import sys

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)


def _run_setup() -> None:
    from vtrack.scripts.setup import run_setup
    run_setup()


def _prepare():
    """Build the orchestrator and migrate; exits non-zero if migration fails."""
    from vtrack.config import get_settings
    from vtrack.db.engine import get_engine
    from vtrack.sync.errors import MigrationError
    from vtrack.sync.wiring import build_orchestrator, run_startup_migration

    settings = get_settings()
    orchestrator = build_orchestrator(get_engine(), settings)
    try:
        run_startup_migration(orchestrator, settings)
    except MigrationError as exc:
        logger.critical("Legacy migration failed; sync will not start: %s", exc)
        if orchestrator.audit is not None:
            orchestrator.audit.critical(f"Legacy migration failed: {exc}")
        sys.exit(1)
    return orchestrator


def _run_migrate() -> None:
    _prepare()
    logger.info("Migration step finished.")


async def _run_once() -> None:
    from vtrack.sync.orchestrator import SyncMode

    orchestrator = _prepare()
    orchestrator.start()
    try:
        result = await orchestrator.request_sync(SyncMode.MANUAL)
    finally:
        await orchestrator.close()
    logger.info(
        "Sync %s: pulled %d, pushed %d, conflicts %d",
        result.status, result.pulled, result.pushed, result.conflicts,
    )
    if result.status == "error":
        logger.error("Sync failed: %s", result.error)
        sys.exit(1)


async def _run_service() -> None:
    import uvicorn

    from vtrack.api.main import create_app
    from vtrack.config import get_settings
    from vtrack.remote.auth import CredentialProvider
    from vtrack.scheduler.jobs import build_scheduler

    settings = get_settings()
    orchestrator = _prepare()

    if not CredentialProvider(settings.credentials_dir).has_credentials():
        logger.warning(
            "No remote API credentials found. Local edits are saved and will "
            "sync after `python -m vtrack setup`."
        )

    # Scheduler
    scheduler = build_scheduler(orchestrator)
    scheduler.start()
    logger.info("Scheduler started (sync every %d min)", settings.sync_interval_minutes)

    # API
    app = create_app(orchestrator)
    server = uvicorn.Server(uvicorn.Config(
        app,
        host=settings.api_host,
        port=settings.api_port,
        log_level="info",
    ))

    logger.info("Starting API on %s:%d", settings.api_host, settings.api_port)
    try:
        await server.serve()
    finally:
        scheduler.shutdown()
        logger.info("Goodbye.")


if __name__ == "__main__":
    # Dispatch on first argument: `python -m vtrack <command>` or just `python -m vtrack`
    command = sys.argv[1] if len(sys.argv) > 1 else None
    if command == "setup":
        _run_setup()
    elif command == "migrate":
        _run_migrate()
    elif command == "sync":
        asyncio.run(_run_once())
    else:
        asyncio.run(_run_service())
