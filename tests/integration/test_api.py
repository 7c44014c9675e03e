"""Integration tests for /sync and /records routes."""
import json
from datetime import datetime, timedelta

import httpx
import pytest
from fastapi.testclient import TestClient

from vtrack.api.main import create_app
from vtrack.config import Settings
from vtrack.remote.auth import CredentialProvider
from vtrack.sync.errors import NetworkError
from vtrack.sync.wiring import build_orchestrator


@pytest.fixture(name="client")
def client_fixture(orchestrator):
    app = create_app(orchestrator)
    with TestClient(app) as c:
        yield c


class TestSyncRoutes:
    def test_trigger_returns_202_and_runs_cycle(self, client, remote, store):
        store.save("volunteers", {"id": "v1", "name": "Alice"})

        resp = client.post("/sync/trigger", json={})

        assert resp.status_code == 202
        assert resp.json() == {"message": "Sync started", "mode": "manual"}
        # background tasks finish before TestClient returns
        assert remote.row("volunteers", "v1")["name"] == "Alice"

    def test_trigger_with_mode(self, client, remote):
        resp = client.post("/sync/trigger", json={"mode": "targeted"})
        assert resp.status_code == 202
        assert resp.json()["mode"] == "targeted"
        assert remote.pull_calls == []

    def test_trigger_rejects_unknown_mode(self, client):
        resp = client.post("/sync/trigger", json={"mode": "turbo"})
        assert resp.status_code == 422

    def test_status_before_first_sync(self, client, store):
        store.save("volunteers", {"id": "v1", "name": "Alice"})
        resp = client.get("/sync/status")
        assert resp.status_code == 200
        body = resp.json()
        assert body["state"] == "idle"
        assert body["pending"] == 1
        assert body["last_sync_at"] is None
        assert body["is_syncing"] is False

    def test_status_after_sync(self, client):
        client.post("/sync/trigger", json={})
        body = client.get("/sync/status").json()
        assert body["last_sync_at"] is not None
        assert body["pending"] == 0

    def test_status_reports_error(self, client, remote):
        for entity_type in ("volunteers", "events", "attendance"):
            remote.fail_pull[entity_type] = NetworkError("offline")
        client.post("/sync/trigger", json={})
        assert "offline" in client.get("/sync/status").json()["last_error"]

    def test_stop_when_idle(self, client):
        resp = client.post("/sync/stop")
        assert resp.status_code == 200
        assert resp.json() == {"stopping": False}

    def test_audit_export(self, client):
        client.post("/sync/trigger", json={})
        resp = client.get("/sync/audit", params={"level": "info"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["entry_count"] == len(body["entries"])
        assert any(e["message"] == "cycle completed" for e in body["entries"])
        assert all(e["level"] != "DEBUG" for e in body["entries"])

    def test_audit_bad_level(self, client):
        resp = client.get("/sync/audit", params={"level": "loud"})
        assert resp.status_code == 422

    def test_conflicts_listed(self, client, remote, store):
        remote.write("volunteers", {"id": "v1", "name": "Base"})
        client.post("/sync/trigger", json={})
        local = store.save("volunteers", {"id": "v1", "name": "Local"})
        later = datetime.fromisoformat(local["updated_at"]) + timedelta(minutes=1)
        remote.write("volunteers", {"id": "v1", "name": "Remote", "updated_at": later.isoformat()})
        client.post("/sync/trigger", json={})

        resp = client.get("/sync/conflicts")
        assert resp.status_code == 200
        (conflict,) = resp.json()
        assert conflict["entity_id"] == "v1"
        assert conflict["resolution"] == "remote-wins"

    def test_retry_parked(self, client, remote, store, queue):
        store.save("volunteers", {"id": "v1", "name": "Alice"})
        (change,) = queue.records()
        remote.reject[change.id] = "bad row"
        client.post("/sync/trigger", json={})
        assert client.get("/sync/status").json()["failed"] == 1

        resp = client.post("/sync/parked/retry")
        assert resp.json() == {"requeued": 1}
        assert client.get("/sync/status").json()["failed"] == 0


class TestRecordRoutes:
    def test_put_creates_tracked_record(self, client, queue):
        resp = client.put("/records/volunteers/v1", json={"name": "Alice"})
        assert resp.status_code == 200
        assert resp.json()["id"] == "v1"

        (change,) = queue.records()
        assert change.operation == "create"
        assert change.priority == "high"

    def test_put_invalid_record_is_422(self, client, queue):
        resp = client.put("/records/events/e1", json={"name": "No date"})
        assert resp.status_code == 422
        assert queue.records() == []

    def test_get_and_list(self, client):
        client.put("/records/volunteers/v1", json={"name": "Alice"})
        assert client.get("/records/volunteers/v1").json()["name"] == "Alice"
        assert len(client.get("/records/volunteers").json()) == 1

    def test_get_missing_is_404(self, client):
        assert client.get("/records/volunteers/ghost").status_code == 404

    def test_unknown_type_is_404(self, client):
        assert client.get("/records/donors").status_code == 404
        assert client.put("/records/donors/d1", json={"name": "x"}).status_code == 404

    def test_delete(self, client, store, queue):
        store.put("volunteers", {"id": "v1", "name": "Alice"})
        resp = client.delete("/records/volunteers/v1")
        assert resp.json() == {"deleted": "v1"}
        (change,) = queue.records()
        assert change.operation == "delete"

    def test_delete_missing_is_404(self, client):
        assert client.delete("/records/volunteers/ghost").status_code == 404

    def test_import_uses_normal_priority(self, client, queue):
        rows = [{"id": f"v{i}", "name": f"V{i}"} for i in range(3)]
        resp = client.post("/records/volunteers:import", json=rows)
        assert resp.json() == {"imported": 3}
        assert {c.priority for c in queue.records()} == {"normal"}


# ─── End to end over HTTP ─────────────────────────────────────────────────────

class RemoteServer:
    """Minimal tabular API: canned rows per table, accepts every pushed change."""

    def __init__(self):
        self.tables = {
            "volunteers": {"rows": [{"version": "3", "values": {"ID": "r1", "Name": "From Remote"}}], "version": "3"},
            "events": {"rows": [], "version": "1"},
            "attendance": {"rows": [], "version": "1"},
        }
        self.pushed = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        table = request.url.path.split("/tables/")[1].split("/")[0]
        if request.method == "GET":
            return httpx.Response(200, json=self.tables[table])
        changes = json.loads(request.content)["changes"]
        self.pushed.extend(changes)
        return httpx.Response(200, json={"accepted": [c["changeId"] for c in changes]})


class TestEndToEnd:
    def test_local_edit_and_remote_rows_meet(self, engine, tmp_path):
        server = RemoteServer()
        settings = Settings(
            remote_base_url="https://sync.example.org/api/v1",
            remote_token_url="https://sync.example.org/oauth/token",
            credentials_dir=tmp_path / "creds",
            legacy_state_path=tmp_path / "legacy.json",
        )
        CredentialProvider(settings.credentials_dir).save({
            "access_token": "tok",
            "expires_at": (datetime.utcnow() + timedelta(hours=1)).isoformat(),
        })
        orchestrator = build_orchestrator(engine, settings, transport=httpx.MockTransport(server))

        with TestClient(create_app(orchestrator)) as client:
            client.put("/records/volunteers/v1", json={"name": "Alice"})
            assert client.post("/sync/trigger", json={"mode": "manual"}).status_code == 202

            assert client.get("/records/volunteers/r1").json()["name"] == "From Remote"
            status = client.get("/sync/status").json()
            assert status["pending"] == 0

        (pushed,) = server.pushed
        assert pushed["id"] == "v1"
        assert pushed["values"]["Name"] == "Alice"
        assert orchestrator.cursors()["volunteers"].last_remote_version_token == "3"
