"""Tests for tablelog.log: optimistic commits, conflicts and roll-forward."""

import pytest

from tablelog.catalog import MetadataCatalog
from tablelog.errors import (
    CommitConflictError,
    NotFoundError,
    SchemaIncompatibleError,
    TableExistsError,
)
from tablelog.log import LogEntry, TransactionLog, log_key
from tablelog.operation import AddFiles, OperationKind, RemoveFiles, SchemaChange
from tablelog.schema import AddColumn, DropColumn, SchemaVersion
from tablelog.storage import InMemoryStorageProvider, LocalFileStorageProvider


SCHEMA = SchemaVersion.initial([("id", "long", False), ("payload", "string")])


class Clock:
    """Deterministic ms clock; advances by step on every call."""

    def __init__(self, start=1000.0, step=10.0):
        self.now = start
        self.step = step

    def __call__(self):
        t = self.now
        self.now += self.step
        return t


def make_log(storage=None):
    storage = storage if storage is not None else InMemoryStorageProvider()
    log = TransactionLog(storage, MetadataCatalog(storage), clock=Clock())
    log.create_table("events", SCHEMA)
    return log


class TestCreateTable:

    def test_version_zero(self):
        log = make_log()
        assert log.head("events") == 0
        entry = log.entry("events", 0)
        assert entry.kinds == (OperationKind.SCHEMA_CHANGE,)
        assert entry.schema == SCHEMA
        assert log.snapshots.get_snapshot("events", 0).manifest == frozenset()

    def test_twice(self):
        log = make_log()
        with pytest.raises(TableExistsError):
            log.create_table("events", SCHEMA)

    def test_rolls_forward_dead_creator(self):
        storage = InMemoryStorageProvider()
        entry = LogEntry(0, (SchemaChange((), SCHEMA),), 5.0)
        storage.put_if_absent(log_key("events", 0), entry.encode())

        log = TransactionLog(storage, MetadataCatalog(storage))
        with pytest.raises(TableExistsError):
            log.create_table("events", SCHEMA)
        assert log.head("events") == 0


class TestCommit:

    def test_sequential_versions(self):
        log = make_log()
        assert log.commit("events", 0, [AddFiles(["a"])]) == 1
        assert log.commit("events", 1, [AddFiles(["b"])]) == 2
        assert log.head("events") == 2
        assert [e.version for e in log.entries("events")] == [0, 1, 2]

    def test_stale_base_conflicts(self):
        log = make_log()
        log.commit("events", 0, [AddFiles(["a"])])
        with pytest.raises(CommitConflictError) as exc:
            log.commit("events", 0, [AddFiles(["b"])])
        assert exc.value.expected_version == 0
        assert exc.value.actual_version == 1
        # Loser left no trace
        assert log.head("events") == 1
        assert log.snapshots.get_snapshot("events", 1).manifest == {"a"}

    def test_future_base_not_found(self):
        log = make_log()
        with pytest.raises(NotFoundError):
            log.commit("events", 5, [AddFiles(["a"])])

    def test_unknown_table(self):
        log = make_log()
        with pytest.raises(NotFoundError):
            log.commit("nope", 0, [AddFiles(["a"])])

    def test_empty_operations(self):
        log = make_log()
        with pytest.raises(ValueError):
            log.commit("events", 0, [])

    def test_remove_missing_file(self):
        log = make_log()
        with pytest.raises(NotFoundError):
            log.commit("events", 0, [RemoveFiles(["ghost"])])
        assert log.head("events") == 0

    def test_add_and_remove_in_one_commit(self):
        log = make_log()
        log.commit("events", 0, [AddFiles(["a", "b"])])
        v = log.commit("events", 1, [RemoveFiles(["a"]), AddFiles(["c"])])
        entry = log.entry("events", v)
        assert entry.kinds == (OperationKind.REMOVE_FILES, OperationKind.ADD_FILES)
        assert log.snapshots.get_snapshot("events", v).manifest == {"b", "c"}

    def test_timestamps_non_decreasing(self):
        log = make_log()
        for i in range(5):
            log.commit("events", i, [AddFiles([f"f{i}"])])
        stamps = [e.commit_timestamp_ms for e in log.entries("events")]
        assert stamps == sorted(stamps)

    def test_entry_round_trip(self):
        log = make_log()
        log.commit("events", 0, [AddFiles(["a"], {"id": "long"})])
        raw = log._storage.get(log_key("events", 1)).data
        assert LogEntry.decode(raw) == log.entry("events", 1)


class TestSchemaOperations:

    def test_schema_change_recorded(self):
        log = make_log()
        v = log.commit("events", 0, [SchemaChange([AddColumn("region", "string")])])
        schema = log.entry("events", v).schema
        assert schema.schema_id == 1
        assert log.catalog.current_schema("events") == schema
        assert log.snapshots.get_snapshot("events", v).schema_id == 1

    def test_write_checked_against_schema(self):
        log = make_log()
        with pytest.raises(SchemaIncompatibleError):
            log.commit("events", 0, [AddFiles(["a"], {"id": "string"})])
        with pytest.raises(SchemaIncompatibleError):
            log.commit("events", 0, [AddFiles(["a"], {"payload": "string"})])

    def test_write_checked_against_new_schema(self):
        log = make_log()
        v = log.commit("events", 0, [
            SchemaChange([DropColumn("payload")]),
            AddFiles(["a"], {"id": "long"}),
        ])
        assert log.snapshots.get_snapshot("events", v).manifest == {"a"}

    def test_required_column_rejected_once_data_exists(self):
        log = make_log()
        log.commit("events", 0, [AddFiles(["a"])])
        with pytest.raises(SchemaIncompatibleError):
            log.commit("events", 1, [SchemaChange([AddColumn("r", "int", nullable=False)])])
        assert log.catalog.current_schema("events").schema_id == 0

    def test_one_schema_change_per_commit(self):
        log = make_log()
        with pytest.raises(ValueError):
            log.commit("events", 0, [
                SchemaChange([AddColumn("x", "int")]),
                SchemaChange([AddColumn("y", "int")]),
            ])


class TestRollForward:

    def test_claimed_slot_without_pointer(self):
        log = make_log()
        # A writer claimed version 1 and died before advancing the pointer
        orphan = LogEntry(1, (AddFiles(["orphan"]),), 2000.0)
        log._storage.put_if_absent(log_key("events", 1), orphan.encode())
        assert log.head("events") == 0

        with pytest.raises(CommitConflictError) as exc:
            log.commit("events", 0, [AddFiles(["mine"])])
        assert exc.value.actual_version == 1
        assert log.head("events") == 1
        assert log.snapshots.get_snapshot("events", 1).manifest == {"orphan"}

        assert log.commit("events", 1, [AddFiles(["mine"])]) == 2

    def test_orphan_schema_change_installed(self):
        log = make_log()
        evolved = SCHEMA.evolve([AddColumn("x", "int")])
        orphan = LogEntry(1, (SchemaChange([AddColumn("x", "int")], evolved),), 2000.0)
        log._storage.put_if_absent(log_key("events", 1), orphan.encode())

        with pytest.raises(CommitConflictError):
            log.commit("events", 0, [AddFiles(["a"])])
        assert log.catalog.current_schema("events") == evolved


class TestReplayAcrossProcesses:

    def test_second_log_sees_commits(self, tmp_path):
        writer = make_log(LocalFileStorageProvider(tmp_path))
        writer.commit("events", 0, [AddFiles(["a", "b"])])
        writer.commit("events", 1, [RemoveFiles(["a"]), AddFiles(["c"])])

        storage = LocalFileStorageProvider(tmp_path)
        reader = TransactionLog(storage, MetadataCatalog(storage))
        assert reader.head("events") == 2
        assert reader.snapshots.get_snapshot("events", 1).manifest == {"a", "b"}
        assert reader.snapshots.get_snapshot("events", 2).manifest == {"b", "c"}
