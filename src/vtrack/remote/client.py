"""
Async HTTP client for the remote tabular API.

Two endpoints per table ("volunteers", "events", "attendance"):

    GET  {base}/tables/{table}/rows?since=<version token>
         → {"rows": [{"version": "...", "deleted": false,
                      "values": {"ID": "...", "Name": "...", ...}}],
            "version": "<latest token>"}

    POST {base}/tables/{table}/rows:batch
         {"changes": [{"changeId", "id", "operation", "values", "updatedAt"}]}
         → {"accepted": ["<changeId>", ...],
            "rejected": [{"changeId": "...", "reason": "..."}],
            "versions": {"<entity id>": "<version token>"}}

The batch endpoint upserts by entity id and ignores change ids it has
already applied, so re-sending a batch after a dropped response is safe.

No retry or credential logic here: every failure is raised as the
classified SyncError and RemoteAdapter decides what to do.
"""
from typing import Any, Dict, List, Optional

import httpx

from vtrack.sync.errors import NetworkError, ValidationError, raise_for_response


class RemoteTableClient:
    """Thin async wrapper over httpx.AsyncClient."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 20.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            base_url: API root, e.g. "https://sync.example.org/api/v1".
            timeout: Bound for every request, in seconds.
            transport: Optional httpx transport (MockTransport in tests).
        """
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport
        self._http: Optional[httpx.AsyncClient] = None

    def _client(self) -> httpx.AsyncClient:
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=httpx.Timeout(self._timeout),
                transport=self._transport,
            )
        return self._http

    async def close(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    async def fetch_rows(self, table: str, since: Optional[str], token: str) -> Dict[str, Any]:
        """Read rows changed after ``since`` (all rows when None)."""
        params = {"since": since} if since else {}
        return await self._request("GET", f"/tables/{table}/rows", token, params=params)

    async def write_rows(self, table: str, changes: List[Dict[str, Any]], token: str) -> Dict[str, Any]:
        """Append/update/delete rows in one batch."""
        return await self._request(
            "POST", f"/tables/{table}/rows:batch", token, json={"changes": changes}
        )

    async def _request(self, method: str, path: str, token: str, **kwargs) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {token}"}
        try:
            response = await self._client().request(method, path, headers=headers, **kwargs)
        except httpx.TimeoutException as exc:
            raise NetworkError(f"{method} {path} timed out after {self._timeout}s") from exc
        except httpx.RequestError as exc:
            raise NetworkError(f"{method} {path} failed: {exc}") from exc

        raise_for_response(response)
        try:
            body = response.json()
        except ValueError as exc:
            raise ValidationError(f"{method} {path} returned invalid JSON") from exc
        if not isinstance(body, dict):
            raise ValidationError(f"{method} {path} returned {type(body).__name__}, expected object")
        return body
