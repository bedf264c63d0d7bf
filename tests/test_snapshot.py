"""Tests for tablelog.snapshot: immutable snapshots and arena replay."""

from dataclasses import FrozenInstanceError

import pytest

from tablelog.errors import NotFoundError
from tablelog.log import LogEntry
from tablelog.operation import AddFiles, FileDelta, RemoveFiles, SchemaChange
from tablelog.schema import AddColumn, SchemaVersion
from tablelog.snapshot import Snapshot, SnapshotManager


SCHEMA = SchemaVersion.initial([("id", "long")])


def make_log():
    """Entries for: create @100, add {a,b} @200, add {c} remove {a} @300."""
    return {
        0: LogEntry(0, (SchemaChange((), SCHEMA),), 100.0),
        1: LogEntry(1, (AddFiles(["a", "b"]),), 200.0),
        2: LogEntry(2, (RemoveFiles(["a"]), AddFiles(["c"])), 300.0),
    }


def manager_for(entries):
    reads = []

    def read_entry(table, version):
        reads.append(version)
        try:
            return entries[version]
        except KeyError:
            raise NotFoundError(f"Version {version} not found") from None

    return SnapshotManager(read_entry), reads


class TestSnapshot:

    def test_frozen(self):
        s = Snapshot(0, 1.0, None, frozenset(), 0)
        with pytest.raises(FrozenInstanceError):
            s.manifest = frozenset({"x"})


class TestReplay:

    def test_materializes_from_log(self):
        mgr, _ = manager_for(make_log())
        assert mgr.get_snapshot("t", 0).manifest == frozenset()
        assert mgr.get_snapshot("t", 1).manifest == {"a", "b"}
        assert mgr.get_snapshot("t", 2).manifest == {"b", "c"}
        assert mgr.get_snapshot("t", 2).parent_version == 1

    def test_replays_each_version_once(self):
        mgr, reads = manager_for(make_log())
        mgr.get_snapshot("t", 2)
        mgr.get_snapshot("t", 1)
        mgr.get_snapshot("t", 2)
        assert reads == [0, 1, 2]

    def test_missing_version(self):
        mgr, _ = manager_for(make_log())
        with pytest.raises(NotFoundError):
            mgr.get_snapshot("t", 3)
        with pytest.raises(NotFoundError):
            mgr.get_snapshot("t", -1)

    def test_schema_change_sets_schema_id(self):
        entries = make_log()
        evolved = SCHEMA.evolve([AddColumn("x", "int")])
        entries[3] = LogEntry(3, (SchemaChange([AddColumn("x", "int")], evolved),), 400.0)
        mgr, _ = manager_for(entries)
        assert mgr.get_snapshot("t", 2).schema_id == 0
        assert mgr.get_snapshot("t", 3).schema_id == 1
        assert mgr.get_snapshot("t", 3).manifest == {"b", "c"}


class TestCreateSnapshot:

    def test_child_of_parent(self):
        mgr, _ = manager_for(make_log())
        child = mgr.create_snapshot("t", 2, FileDelta(frozenset({"d"}), frozenset({"b"})), 500.0)
        assert child.version == 3
        assert child.manifest == {"c", "d"}
        assert child.parent_version == 2
        # Parent untouched and child not published
        assert mgr.get_snapshot("t", 2).manifest == {"b", "c"}
        with pytest.raises(NotFoundError):
            mgr.get_snapshot("t", 3)

    def test_remove_missing_file(self):
        mgr, _ = manager_for(make_log())
        with pytest.raises(NotFoundError, match="Cannot remove"):
            mgr.create_snapshot("t", 2, FileDelta(removed=frozenset({"a"})), 500.0)

    def test_add_present_file(self):
        mgr, _ = manager_for(make_log())
        with pytest.raises(ValueError, match="already in"):
            mgr.create_snapshot("t", 2, FileDelta(added=frozenset({"b"})), 500.0)

    def test_timestamp_never_decreases(self):
        mgr, _ = manager_for(make_log())
        child = mgr.create_snapshot("t", 2, FileDelta(added=frozenset({"d"})), 10.0)
        assert child.timestamp_ms == 300.0


class TestPublish:

    def test_publish_is_idempotent(self):
        mgr, reads = manager_for(make_log())
        s0 = SnapshotManager.from_entry(None, make_log()[0])
        mgr.publish("t", s0)
        mgr.publish("t", s0)
        assert mgr.get_snapshot("t", 0) is s0
        assert reads == []

    def test_gap_is_not_published(self):
        mgr, reads = manager_for(make_log())
        mgr.publish("t", Snapshot(2, 300.0, 1, frozenset({"b", "c"}), 0))
        mgr.get_snapshot("t", 2)
        assert reads == [0, 1, 2]

    def test_forget(self):
        mgr, reads = manager_for(make_log())
        mgr.get_snapshot("t", 1)
        mgr.forget("t")
        mgr.get_snapshot("t", 1)
        assert reads == [0, 1, 0, 1]


class TestAsOfTimestamp:

    @pytest.mark.parametrize("ts,version", [
        (100.0, 0), (150.0, 0), (200.0, 1), (299.9, 1), (300.0, 2), (10_000.0, 2),
    ])
    def test_nearest_at_or_before(self, ts, version):
        mgr, _ = manager_for(make_log())
        assert mgr.snapshot_as_of_timestamp("t", ts, head_version=2).version == version

    def test_bounded_by_head(self):
        mgr, _ = manager_for(make_log())
        assert mgr.snapshot_as_of_timestamp("t", 10_000.0, head_version=1).version == 1

    def test_before_creation(self):
        mgr, _ = manager_for(make_log())
        with pytest.raises(NotFoundError):
            mgr.snapshot_as_of_timestamp("t", 99.0, head_version=2)
