"""
Full resync: forget cursors and pull everything from the remote API.

Usage:
    python -m vtrack.scripts.resync                  # all entity types
    python -m vtrack.scripts.resync --type events    # one entity type

Applying remote rows is idempotent, so re-pulling only rewrites rows that
differ locally. Pending local changes are kept and pushed as usual;
collisions go through normal conflict resolution.
"""
import argparse
import asyncio
import logging

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
logger = logging.getLogger(__name__)


async def _resync(entity_type=None) -> int:
    from vtrack.db.engine import get_engine
    from vtrack.sync.orchestrator import SyncMode
    from vtrack.sync.wiring import build_orchestrator, run_startup_migration

    orchestrator = build_orchestrator(get_engine())
    run_startup_migration(orchestrator)
    orchestrator.start()
    orchestrator.reset_cursors(entity_type)

    try:
        result = await orchestrator.request_sync(SyncMode.MANUAL)
    finally:
        await orchestrator.close()

    logger.info(
        "Resync %s. Pulled: %d, Pushed: %d, Conflicts: %d",
        result.status, result.pulled, result.pushed, result.conflicts,
    )
    return 0 if result.status == "success" else 1


def main() -> None:
    from vtrack.models.entities import ENTITY_TYPES

    parser = argparse.ArgumentParser(description="Re-pull all records from the remote API")
    parser.add_argument(
        "--type",
        dest="entity_type",
        choices=ENTITY_TYPES,
        default=None,
        help="Only resync this entity type (default: all)",
    )
    args = parser.parse_args()
    raise SystemExit(asyncio.run(_resync(args.entity_type)))


if __name__ == "__main__":
    main()
