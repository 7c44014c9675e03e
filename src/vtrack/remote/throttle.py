"""
Pull throttling middleware for the remote adapter.

Volunteer lists change rarely and are the largest table, so periodic
cycles pull them at most once per ``min_interval`` seconds. Manual syncs
pass ``force=True`` and always pull. The first pull after start-up is
never throttled.

Composed explicitly at wiring time:

    remote = PullThrottle(RemoteAdapter(client, creds), {"volunteers": 600})
"""
import logging
import time
from typing import Callable, Dict, List, Optional

from vtrack.remote.adapter import PullResult, PushResult

logger = logging.getLogger(__name__)


class PullThrottle:
    """Wraps anything with async pull()/push() and rate-limits pull() per entity type."""

    def __init__(
        self,
        inner,
        min_intervals: Dict[str, float],
        clock: Callable[[], float] = time.monotonic,
    ):
        self.inner = inner
        self.min_intervals = dict(min_intervals)
        self._clock = clock
        self._last_pull: Dict[str, float] = {}

    async def pull(self, entity_type: str, since: Optional[str], *, force: bool = False) -> PullResult:
        interval = self.min_intervals.get(entity_type)
        last = self._last_pull.get(entity_type)
        now = self._clock()
        if not force and interval and last is not None and now - last < interval:
            logger.debug(
                "Pull of %s throttled (%.0fs since last, min %.0fs)",
                entity_type, now - last, interval,
            )
            return PullResult(entity_type=entity_type, version=since, throttled=True)

        result = await self.inner.pull(entity_type, since, force=force)
        self._last_pull[entity_type] = self._clock()
        return result

    async def push(self, entity_type: str, changes: List) -> PushResult:
        return await self.inner.push(entity_type, changes)

    def reset(self, entity_type: Optional[str] = None) -> None:
        """Forget pull times so the next pull goes through."""
        if entity_type is None:
            self._last_pull.clear()
        else:
            self._last_pull.pop(entity_type, None)

    async def close(self) -> None:
        await self.inner.close()
