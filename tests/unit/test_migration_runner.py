"""Tests for the one-shot legacy bookkeeping migration."""
import json

import pytest
from sqlmodel import Session, select

from vtrack.models.sync import MigrationState, SyncCursor
from vtrack.sync.errors import MigrationError
from vtrack.sync.migration import MigrationRunner, collect_changes, collect_cursors

LEGACY = {
    "vat_change_tracking": {
        "volunteers": [
            ["v1", {"id": "v1", "operation": "update", "synced": False,
                    "timestamp": "2025-11-02T10:00:00Z",
                    "data": {"id": "v1", "name": "Alice Smith"}}],
            ["v2", {"id": "v2", "operation": "create", "synced": True,
                    "timestamp": "2025-11-02T10:01:00Z",
                    "data": {"id": "v2", "name": "Already Synced"}}],
        ],
        "events": [
            ["e1", {"id": "e1", "operation": "create", "synced": False,
                    "timestamp": "2025-11-02T09:00:00Z",
                    "data": {"id": "e1", "name": "Sunday Service", "date": "2025-11-02"}}],
        ],
    },
    "vat_sync_queue": [
        {"id": "q1", "type": "upload", "dataType": "volunteers", "status": "pending",
         "queuedAt": "2025-11-02T10:05:00Z", "attempts": 1,
         "data": {"id": "v1", "name": "Alice B. Smith"}},
        {"id": "q2", "type": "upload", "dataType": "attendance", "status": "completed",
         "queuedAt": "2025-11-02T10:06:00Z", "attempts": 0,
         "data": {"id": "a1", "volunteer_id": "v1", "event_id": "e1", "date": "2025-11-02"}},
        {"id": "q3", "type": "delete", "dataType": "volunteers", "status": "failed",
         "queuedAt": "2025-11-02T10:07:00Z", "attempts": 3,
         "data": {"id": "v3"}},
    ],
    "vat_unified_sync": {
        "timestamp": "2025-11-02T08:00:00Z",
        "volunteers": "2025-11-02T08:00:00Z",
        "events": "2025-11-01T08:00:00Z",
    },
}


@pytest.fixture
def legacy_file(tmp_path):
    path = tmp_path / "legacy_sync_state.json"
    path.write_text(json.dumps(LEGACY))
    return path


@pytest.fixture
def runner(engine, store, queue, legacy_file):
    return MigrationRunner(engine, store, queue, legacy_file)


class TestCollect:
    def test_unsynced_changes_folded_per_entity(self):
        changes = collect_changes(LEGACY)
        assert set(changes) == {("volunteers", "v1"), ("events", "e1"), ("volunteers", "v3")}
        operation, payload, _ = changes[("volunteers", "v1")]
        assert operation == "update"
        assert payload["name"] == "Alice B. Smith"  # the later queue entry wins

    def test_create_then_delete_drops_out(self):
        legacy = {"vat_change_tracking": {"volunteers": [
            ["v9", {"operation": "create", "timestamp": "2025-01-01T00:00:00Z", "data": {"id": "v9", "name": "Temp"}}],
            ["v9", {"operation": "delete", "timestamp": "2025-01-01T00:01:00Z", "data": {"id": "v9"}}],
        ]}}
        assert collect_changes(legacy) == {}

    def test_unknown_operation_fails(self):
        legacy = {"vat_change_tracking": {"volunteers": [
            ["v1", {"operation": "merge", "data": {"id": "v1"}}],
        ]}}
        with pytest.raises(MigrationError):
            collect_changes(legacy)

    def test_cursors(self):
        cursors = collect_cursors(LEGACY)
        assert set(cursors) == {"volunteers", "events"}
        assert cursors["events"].isoformat() == "2025-11-01T08:00:00"


class TestMigrationRunner:
    def test_migrates_changes_and_cursors(self, runner, engine, queue, store):
        summary = runner.run()

        assert summary["changes"] == 3
        pending = {(c.entity_type, c.entity_id): c for c in queue.records()}
        assert set(pending) == {("volunteers", "v1"), ("events", "e1"), ("volunteers", "v3")}
        assert {c.priority for c in pending.values()} == {"normal"}
        assert pending[("volunteers", "v3")].operation == "delete"

        # entities the legacy queue refers to exist locally
        assert store.get("events", "e1")["name"] == "Sunday Service"

        with Session(engine) as s:
            cursors = {c.entity_type: c for c in s.exec(select(SyncCursor)).all()}
        assert set(cursors) == {"volunteers", "events"}
        assert cursors["volunteers"].last_remote_version_token is None
        assert cursors["volunteers"].last_synced_at is not None

    def test_does_not_track_imported_entities(self, runner, queue):
        """Only the legacy changes are queued; importing entities adds nothing."""
        runner.run()
        assert len(queue.records()) == 3

    def test_runs_only_once(self, runner, queue):
        runner.run()
        assert runner.is_complete()
        assert runner.run() is None
        assert len(queue.records()) == 3

    def test_legacy_file_left_untouched(self, runner, legacy_file):
        before = legacy_file.read_text()
        runner.run()
        assert legacy_file.read_text() == before

    def test_no_legacy_file_is_a_noop(self, engine, store, queue, tmp_path):
        runner = MigrationRunner(engine, store, queue, tmp_path / "missing.json")
        assert runner.run() is None
        assert not runner.is_complete()

    def test_existing_local_entity_not_overwritten(self, runner, store):
        store.put("volunteers", {"id": "v1", "name": "Newer Local Name"})
        runner.run()
        assert store.get("volunteers", "v1")["name"] == "Newer Local Name"

    def test_corrupt_file_raises(self, engine, store, queue, tmp_path):
        path = tmp_path / "legacy.json"
        path.write_text("{not json")
        runner = MigrationRunner(engine, store, queue, path)
        with pytest.raises(MigrationError):
            runner.run()
        assert not runner.is_complete()

    def test_invalid_entity_data_fails_and_is_not_marked_done(self, engine, store, queue, tmp_path):
        path = tmp_path / "legacy.json"
        path.write_text(json.dumps({"vat_change_tracking": {"events": [
            ["e1", {"operation": "create", "data": {"id": "e1", "name": "No date"}}],
        ]}}))
        runner = MigrationRunner(engine, store, queue, path)
        with pytest.raises(MigrationError):
            runner.run()
        with Session(engine) as s:
            assert s.exec(select(MigrationState)).first() is None

    def test_validation_catches_lost_changes(self, runner, queue, monkeypatch):
        monkeypatch.setattr(queue, "enqueue", lambda record, session=None: None)
        with pytest.raises(MigrationError, match="not queued"):
            runner.run()
        assert not runner.is_complete()
