"""
RemoteAdapter — the sync engine's view of the remote tabular API.

Responsibilities:
  * attach the bearer credential to every call; on an auth failure ask the
    CredentialProvider for a refresh and retry exactly once
  * retry transient NetworkErrors with the shared backoff utility
  * let RateLimitError through untouched so the orchestrator can back off
  * translate ChangeRecords into remote rows and remote rows into local
    entity dicts (via normalizer)
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from vtrack.models.sync import ChangeRecord, Operation
from vtrack.remote import normalizer
from vtrack.sync.backoff import retry_async
from vtrack.sync.errors import AuthError, CredentialExpiredError, NetworkError

logger = logging.getLogger(__name__)


@dataclass
class RemoteRow:
    entity_id: str
    version: Optional[str]
    payload: Optional[Dict[str, Any]]  # None for deletion markers
    deleted: bool = False


@dataclass
class PullResult:
    entity_type: str
    rows: List[RemoteRow] = field(default_factory=list)
    version: Optional[str] = None  # token to store in the cursor
    throttled: bool = False  # no request was made


@dataclass
class PushResult:
    accepted: List[str] = field(default_factory=list)  # ChangeRecord ids
    rejected: Dict[str, str] = field(default_factory=dict)  # ChangeRecord id → reason
    new_version_tokens: Dict[str, str] = field(default_factory=dict)  # entity id → token


def change_to_remote(change: ChangeRecord) -> Dict[str, Any]:
    """Serialize one ChangeRecord for the batch endpoint."""
    payload = change.payload or {}
    values = {} if change.operation == Operation.DELETE.value else normalizer.to_remote(
        change.entity_type, payload
    )
    return {
        "changeId": change.id,
        "id": change.entity_id,
        "operation": change.operation,
        "values": values,
        "updatedAt": payload.get("updated_at") or change.created_at.isoformat(),
    }


class RemoteAdapter:
    """pull()/push() over RemoteTableClient with auth refresh and retries."""

    def __init__(
        self,
        client,
        credentials,
        *,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        """
        Args:
            client: RemoteTableClient (or AsyncMock in tests).
            credentials: CredentialProvider.
            max_attempts: Calls per request before a NetworkError surfaces.
            base_delay: Backoff base in seconds.
            max_delay: Backoff cap in seconds.
            sleep: Injectable sleep for tests.
        """
        self.client = client
        self.credentials = credentials
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._sleep = sleep

    async def pull(self, entity_type: str, since: Optional[str], *, force: bool = False) -> PullResult:
        """
        Fetch rows changed after the ``since`` version token.

        ``force`` is accepted for interface parity with PullThrottle.
        """
        body = await self._call(
            lambda token: self.client.fetch_rows(entity_type, since, token),
            label=f"pull {entity_type}",
        )

        rows: List[RemoteRow] = []
        for raw in body.get("rows", []):
            values = raw.get("values") or {}
            deleted = bool(raw.get("deleted"))
            entity_id = normalizer.entity_id_of(values) or raw.get("id")
            if entity_id is None:
                logger.warning("Skipping %s row without an ID", entity_type)
                continue
            payload = None if deleted else normalizer.from_remote(entity_type, values)
            if payload is None and not deleted:
                continue
            rows.append(RemoteRow(
                entity_id=str(entity_id),
                version=raw.get("version"),
                payload=payload,
                deleted=deleted,
            ))

        version = body.get("version")
        if version is None and rows:
            version = rows[-1].version
        logger.info("Pulled %d %s row(s) since %s", len(rows), entity_type, since or "start")
        return PullResult(entity_type=entity_type, rows=rows, version=version or since)

    async def push(self, entity_type: str, changes: List[ChangeRecord]) -> PushResult:
        """Send one batch of ChangeRecords for a single entity type."""
        if not changes:
            return PushResult()
        wire = [change_to_remote(c) for c in changes]
        body = await self._call(
            lambda token: self.client.write_rows(entity_type, wire, token),
            label=f"push {entity_type}",
        )

        known = {c.id for c in changes}
        accepted = [cid for cid in body.get("accepted", []) if cid in known]
        rejected = {
            item.get("changeId"): item.get("reason") or "rejected"
            for item in body.get("rejected", [])
            if item.get("changeId") in known
        }
        logger.info(
            "Pushed %d %s change(s): %d accepted, %d rejected",
            len(changes), entity_type, len(accepted), len(rejected),
        )
        return PushResult(
            accepted=accepted,
            rejected=rejected,
            new_version_tokens=dict(body.get("versions") or {}),
        )

    async def close(self) -> None:
        await self.client.close()

    # ─── Internal helpers ─────────────────────────────────────────────────────

    async def _call(self, request: Callable[[str], Awaitable[Dict[str, Any]]], *, label: str) -> Dict[str, Any]:
        return await retry_async(
            lambda: self._authorized(request),
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            sleep=self._sleep,
            retry_on=(NetworkError,),
            label=label,
        )

    async def _authorized(self, request: Callable[[str], Awaitable[Dict[str, Any]]]) -> Dict[str, Any]:
        """Run ``request`` with a valid token; refresh and retry once on AuthError."""
        try:
            token = self.credentials.get_token()
        except CredentialExpiredError:
            token = await self.credentials.refresh()

        try:
            return await request(token)
        except AuthError:
            logger.info("Credential rejected; refreshing and retrying once")
            token = await self.credentials.refresh()
            return await request(token)
