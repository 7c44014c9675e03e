"""
Tests for RemoteTableClient + RemoteAdapter against an httpx.MockTransport.

No real network calls are made.
"""
import json
from datetime import datetime, timedelta
from unittest.mock import AsyncMock

import httpx
import pytest

from vtrack.models.sync import ChangeRecord
from vtrack.remote.adapter import RemoteAdapter, change_to_remote
from vtrack.remote.auth import CredentialProvider
from vtrack.remote.client import RemoteTableClient
from vtrack.sync.errors import AuthError, NetworkError, RateLimitError, ValidationError

BASE_URL = "https://sync.example.org/api/v1"
TOKEN_URL = "https://sync.example.org/oauth/token"


class FakeApi:
    """Routes requests to canned responses and records what was sent."""

    def __init__(self):
        self.requests = []
        self.rows_responses = []  # queued responses for GET rows
        self.batch_responses = []  # queued responses for POST batch
        self.token_response = httpx.Response(200, json={"access_token": "fresh", "expires_in": 3600})

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path.endswith("/oauth/token"):
            return self.token_response
        if request.method == "GET":
            return self.rows_responses.pop(0)
        return self.batch_responses.pop(0)


@pytest.fixture
def api():
    return FakeApi()


@pytest.fixture
def adapter(api, tmp_path):
    transport = httpx.MockTransport(api)
    creds = CredentialProvider(tmp_path / "creds", TOKEN_URL, transport=transport)
    creds.save({
        "access_token": "tok-1",
        "refresh_token": "ref-1",
        "expires_at": (datetime.utcnow() + timedelta(hours=1)).isoformat(),
    })
    client = RemoteTableClient(BASE_URL, transport=transport)
    return RemoteAdapter(client, creds, max_attempts=3, sleep=AsyncMock())


def change(entity_id="v1", operation="update", **payload):
    return ChangeRecord(
        id=f"chg-{entity_id}",
        entity_type="volunteers",
        entity_id=entity_id,
        operation=operation,
        payload={"id": entity_id, "updated_at": "2026-01-01T10:00:00", **payload},
    )


# ─── pull ─────────────────────────────────────────────────────────────────────

class TestPull:
    @pytest.mark.asyncio
    async def test_pull_normalizes_rows(self, adapter, api):
        api.rows_responses.append(httpx.Response(200, json={
            "rows": [
                {"version": "7", "values": {"ID": "v1", "Name": "Alice", "Updated": "2026-01-01T10:00:00"}},
                {"version": "8", "deleted": True, "values": {"ID": "v2"}},
            ],
            "version": "8",
        }))

        result = await adapter.pull("volunteers", "5")

        assert result.version == "8"
        assert [r.entity_id for r in result.rows] == ["v1", "v2"]
        assert result.rows[0].payload == {"id": "v1", "name": "Alice", "updated_at": "2026-01-01T10:00:00"}
        assert result.rows[1].deleted and result.rows[1].payload is None

        request = api.requests[0]
        assert request.url.path == "/api/v1/tables/volunteers/rows"
        assert request.url.params["since"] == "5"
        assert request.headers["Authorization"] == "Bearer tok-1"

    @pytest.mark.asyncio
    async def test_invalid_rows_skipped(self, adapter, api):
        api.rows_responses.append(httpx.Response(200, json={
            "rows": [{"version": "1", "values": {"ID": "v1"}}],  # no Name
            "version": "1",
        }))
        result = await adapter.pull("volunteers", None)
        assert result.rows == []
        assert result.version == "1"

    @pytest.mark.asyncio
    async def test_empty_pull_keeps_cursor(self, adapter, api):
        api.rows_responses.append(httpx.Response(200, json={"rows": []}))
        result = await adapter.pull("volunteers", "42")
        assert result.version == "42"

    @pytest.mark.asyncio
    async def test_server_errors_retried_with_backoff(self, adapter, api):
        api.rows_responses.extend([
            httpx.Response(503),
            httpx.Response(502),
            httpx.Response(200, json={"rows": [], "version": "3"}),
        ])
        result = await adapter.pull("events", None)
        assert result.version == "3"
        assert adapter._sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_network_error_after_max_attempts(self, adapter, api):
        api.rows_responses.extend([httpx.Response(500)] * 3)
        with pytest.raises(NetworkError):
            await adapter.pull("events", None)

    @pytest.mark.asyncio
    async def test_rate_limit_surfaces_with_delay(self, adapter, api):
        api.rows_responses.append(httpx.Response(429, headers={"Retry-After": "90"}))
        with pytest.raises(RateLimitError) as exc_info:
            await adapter.pull("events", None)
        assert exc_info.value.retry_after == 90.0
        adapter._sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_auth_error_refreshes_once_and_retries(self, adapter, api):
        api.rows_responses.extend([
            httpx.Response(401),
            httpx.Response(200, json={"rows": [], "version": "1"}),
        ])
        await adapter.pull("events", None)

        paths = [r.url.path for r in api.requests]
        assert paths == ["/api/v1/tables/events/rows", "/oauth/token", "/api/v1/tables/events/rows"]
        assert api.requests[-1].headers["Authorization"] == "Bearer fresh"

    @pytest.mark.asyncio
    async def test_second_auth_error_surfaces(self, adapter, api):
        api.rows_responses.extend([httpx.Response(403), httpx.Response(403)])
        with pytest.raises(AuthError):
            await adapter.pull("events", None)


# ─── push ─────────────────────────────────────────────────────────────────────

class TestPush:
    def test_change_to_remote(self):
        wire = change(name="Alice")
        assert change_to_remote(wire) == {
            "changeId": "chg-v1",
            "id": "v1",
            "operation": "update",
            "values": {"ID": "v1", "Name": "Alice", "Updated": "2026-01-01T10:00:00"},
            "updatedAt": "2026-01-01T10:00:00",
        }

    def test_delete_sends_no_values(self):
        assert change_to_remote(change(operation="delete"))["values"] == {}

    @pytest.mark.asyncio
    async def test_push_reports_accepted_and_rejected(self, adapter, api):
        api.batch_responses.append(httpx.Response(200, json={
            "accepted": ["chg-v1"],
            "rejected": [{"changeId": "chg-v2", "reason": "duplicate email"}],
            "versions": {"v1": "9"},
        }))

        result = await adapter.push("volunteers", [change("v1", name="A"), change("v2", name="B")])

        assert result.accepted == ["chg-v1"]
        assert result.rejected == {"chg-v2": "duplicate email"}
        assert result.new_version_tokens == {"v1": "9"}
        body = json.loads(api.requests[0].content)
        assert [c["changeId"] for c in body["changes"]] == ["chg-v1", "chg-v2"]
        assert api.requests[0].url.path == "/api/v1/tables/volunteers/rows:batch"

    @pytest.mark.asyncio
    async def test_unknown_change_ids_ignored(self, adapter, api):
        api.batch_responses.append(httpx.Response(200, json={"accepted": ["chg-v1", "someone-else"]}))
        result = await adapter.push("volunteers", [change("v1", name="A")])
        assert result.accepted == ["chg-v1"]

    @pytest.mark.asyncio
    async def test_empty_push_makes_no_request(self, adapter, api):
        result = await adapter.push("volunteers", [])
        assert result.accepted == []
        assert api.requests == []

    @pytest.mark.asyncio
    async def test_bad_request_is_validation_error(self, adapter, api):
        api.batch_responses.append(httpx.Response(400, text="malformed"))
        with pytest.raises(ValidationError):
            await adapter.push("volunteers", [change(name="A")])

    @pytest.mark.asyncio
    async def test_non_json_body_is_validation_error(self, adapter, api):
        api.batch_responses.append(httpx.Response(200, text="<html>oops</html>"))
        with pytest.raises(ValidationError):
            await adapter.push("volunteers", [change(name="A")])


@pytest.mark.asyncio
async def test_timeout_is_network_error(tmp_path):
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    client = RemoteTableClient(BASE_URL, timeout=0.1, transport=httpx.MockTransport(handler))
    with pytest.raises(NetworkError, match="timed out"):
        await client.fetch_rows("events", None, "tok")
    await client.close()
