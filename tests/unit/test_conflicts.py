"""Tests for conflict decisions and the persisted conflict trail."""
from datetime import datetime, timedelta

import pytest

from vtrack.models.sync import ChangeRecord
from vtrack.sync.conflicts import (
    LOCAL,
    REMOTE,
    ConflictResolver,
    content_equal,
    decide,
    parse_timestamp,
)

T1 = datetime(2026, 3, 1, 9, 0, 0)


def change(operation="update", created_at=T1):
    return ChangeRecord(
        entity_type="volunteers",
        entity_id="v1",
        operation=operation,
        payload={"id": "v1"},
        created_at=created_at,
    )


def version(name, at):
    return {"id": "v1", "name": name, "updated_at": at.isoformat() if at else None}


class TestParseTimestamp:
    def test_iso_string(self):
        assert parse_timestamp("2026-03-01T09:00:00") == T1

    def test_zulu_suffix_converted_to_naive_utc(self):
        assert parse_timestamp("2026-03-01T09:00:00Z") == T1

    def test_offset_converted_to_utc(self):
        assert parse_timestamp("2026-03-01T10:00:00+01:00") == T1

    def test_epoch_milliseconds(self):
        assert parse_timestamp(1772355600000) == T1

    def test_garbage_is_none(self):
        assert parse_timestamp("yesterday-ish") is None
        assert parse_timestamp("") is None


class TestContentEqual:
    def test_ignores_timestamps(self):
        a = {"id": "v1", "name": "A", "updated_at": "2026-01-01T00:00:00"}
        b = {"id": "v1", "name": "A", "updated_at": "2026-02-01T00:00:00"}
        assert content_equal(a, b)

    def test_missing_key_equals_none(self):
        assert content_equal({"id": "v1", "email": None}, {"id": "v1"})

    def test_different_values(self):
        assert not content_equal({"name": "A"}, {"name": "B"})


class TestDecide:
    @pytest.mark.parametrize("offset_s, winner", [(-60, LOCAL), (0, REMOTE), (60, REMOTE)])
    def test_last_write_wins_remote_on_tie(self, offset_s, winner):
        """Local at T1, remote at T1 + offset: later side wins, ties go to remote."""
        remote_at = T1 + timedelta(seconds=offset_s)
        decision = decide(change(), version("Local", T1), version("Remote", remote_at))
        assert decision.winner == winner

    def test_remote_without_timestamp_is_a_tie(self):
        decision = decide(change(), version("Local", T1), version("Remote", None))
        assert decision.winner == REMOTE
        assert decision.reason == "tie"

    def test_local_time_falls_back_to_change_created_at(self):
        later = T1 + timedelta(hours=1)
        decision = decide(change(created_at=later), {"id": "v1"}, version("Remote", T1))
        assert decision.winner == LOCAL

    def test_remote_deletion_beats_newer_local_update(self):
        decision = decide(
            change(), version("Local", T1 + timedelta(days=1)), None, remote_deleted=True
        )
        assert decision.winner == REMOTE
        assert decision.reason == "deletion"

    def test_local_deletion_beats_newer_remote_update(self):
        decision = decide(
            change("delete"), None, version("Remote", T1 + timedelta(days=1))
        )
        assert decision.winner == LOCAL
        assert decision.resolution == "local-wins"


class TestConflictResolver:
    def test_persists_terminal_record(self, engine):
        resolver = ConflictResolver(engine)
        decision = resolver.resolve(
            "volunteers", "v1", change(),
            version("Alicia", T1), version("Alice Smith", T1 + timedelta(minutes=5)),
            cycle_id="c1",
        )
        assert decision.resolution == "remote-wins"

        (record,) = resolver.history()
        assert record.resolution == "remote-wins"
        assert record.reason == "timestamp"
        assert record.resolved_at is not None
        assert record.local_version["name"] == "Alicia"
        assert record.remote_version["name"] == "Alice Smith"
        assert record.cycle_id == "c1"

    def test_history_filters_by_cycle(self, engine):
        resolver = ConflictResolver(engine)
        for cycle in ("c1", "c2", "c2"):
            resolver.resolve("volunteers", "v1", change(), version("L", T1), version("R", T1), cycle_id=cycle)
        assert len(resolver.history(cycle_id="c2")) == 2
        assert len(resolver.history(limit=1)) == 1
