"""Immutable table snapshots and the per-table snapshot arena.

A Snapshot is the table as of one committed version: the set of data-file
paths (manifest) plus the id of the schema in force. Snapshots are never
mutated; each commit builds a new one from its parent.

The SnapshotManager keeps, per table, a list indexed by version (the
arena). Versions not yet in the arena, e.g. commits made by another
process, are materialized by replaying log entries in order.
"""

from __future__ import annotations

import bisect
import logging
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Optional

from tablelog.errors import NotFoundError
from tablelog.operation import FileDelta, SchemaChange

if TYPE_CHECKING:
    from tablelog.log import LogEntry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Snapshot:
    """Immutable view of a table at one version.

    Attributes:
        version: Log version that produced this snapshot (0 = table creation)
        timestamp_ms: Commit time; non-decreasing along the log
        parent_version: Previous version, None for version 0
        manifest: Data-file paths visible at this version
        schema_id: Schema in force at this version
    """
    version: int
    timestamp_ms: float
    parent_version: Optional[int]
    manifest: frozenset[str]
    schema_id: int


class SnapshotManager:
    """Builds, publishes and looks up immutable snapshots.

    Args:
        read_entry: Callable (table, version) -> LogEntry used to replay
            versions this manager has not seen. Must raise NotFoundError
            for versions that do not exist.
    """

    def __init__(self, read_entry: Callable[[str, int], LogEntry]):
        self._read_entry = read_entry
        self._arena: dict[str, list[Snapshot]] = {}
        self._timestamps: dict[str, list[float]] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Building
    # ------------------------------------------------------------------

    def create_snapshot(
        self,
        table: str,
        parent_version: int,
        delta: FileDelta,
        timestamp_ms: float,
        schema_id: Optional[int] = None,
    ) -> Snapshot:
        """Build the child of parent_version with delta applied.

        The result is not published; the caller publishes it once the
        commit holding it has won its version.

        Raises:
            NotFoundError: parent_version does not exist, or delta removes
                a file the parent does not reference.
            ValueError: delta adds a file the parent already references.
        """
        parent = self.get_snapshot(table, parent_version)
        return self._child(parent, delta, timestamp_ms, schema_id)

    @staticmethod
    def _child(
        parent: Snapshot,
        delta: FileDelta,
        timestamp_ms: float,
        schema_id: Optional[int],
    ) -> Snapshot:
        missing = delta.removed - parent.manifest
        if missing:
            raise NotFoundError(
                f"Cannot remove files not in version {parent.version}: {sorted(missing)}"
            )
        present = delta.added & parent.manifest
        if present:
            raise ValueError(
                f"Files already in version {parent.version}: {sorted(present)}"
            )
        return Snapshot(
            version=parent.version + 1,
            timestamp_ms=max(timestamp_ms, parent.timestamp_ms),
            parent_version=parent.version,
            manifest=(parent.manifest - delta.removed) | delta.added,
            schema_id=parent.schema_id if schema_id is None else schema_id,
        )

    @staticmethod
    def from_entry(parent: Optional[Snapshot], entry: LogEntry) -> Snapshot:
        """Replay one log entry on top of its parent snapshot."""
        schema_id = None
        for op in entry.operations:
            if isinstance(op, SchemaChange):
                schema_id = op.schema.schema_id
        delta = FileDelta.from_operations(entry.operations)
        if parent is None:
            if entry.version != 0:
                raise ValueError(f"Replay must start at version 0, got {entry.version}")
            return Snapshot(
                version=0,
                timestamp_ms=entry.commit_timestamp_ms,
                parent_version=None,
                manifest=delta.added,
                schema_id=schema_id if schema_id is not None else 0,
            )
        return SnapshotManager._child(parent, delta, entry.commit_timestamp_ms, schema_id)

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    def publish(self, table: str, snapshot: Snapshot) -> None:
        """Add a committed snapshot to the arena.

        Publishing a version that is already present is a no-op; a gap
        (version beyond arena end) is left for replay to fill.
        """
        with self._lock:
            arena = self._arena.setdefault(table, [])
            if snapshot.version == len(arena):
                arena.append(snapshot)
                self._timestamps.setdefault(table, []).append(snapshot.timestamp_ms)

    def forget(self, table: str) -> None:
        """Drop cached snapshots for a table."""
        with self._lock:
            self._arena.pop(table, None)
            self._timestamps.pop(table, None)

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get_snapshot(self, table: str, version: int) -> Snapshot:
        """Return the snapshot at version.

        Raises:
            NotFoundError: version < 0 or not present in the log.
        """
        if version < 0:
            raise NotFoundError(f"Version {version} not found for table {table!r}")
        with self._lock:
            arena = self._arena.get(table, [])
            if version < len(arena):
                return arena[version]
        self._materialize(table, version)
        return self._arena[table][version]

    def snapshot_as_of_timestamp(self, table: str, timestamp_ms: float,
                                 head_version: int) -> Snapshot:
        """Latest snapshot with timestamp <= timestamp_ms, at most head_version.

        Raises:
            NotFoundError: the table had no snapshot yet at timestamp_ms.
        """
        self.get_snapshot(table, head_version)
        with self._lock:
            timestamps = self._timestamps[table][:head_version + 1]
            idx = bisect.bisect_right(timestamps, timestamp_ms) - 1
            if idx < 0:
                raise NotFoundError(
                    f"Table {table!r} has no snapshot at or before {timestamp_ms}"
                )
            return self._arena[table][idx]

    def _materialize(self, table: str, version: int) -> None:
        """Replay log entries until the arena covers version."""
        with self._lock:
            arena = self._arena.get(table, [])
            start = len(arena)
            parent = arena[-1] if arena else None
        replayed = []
        for v in range(start, version + 1):
            entry = self._read_entry(table, v)
            parent = self.from_entry(parent, entry)
            replayed.append(parent)
        logger.debug(f"Replayed versions {start}..{version} of table {table!r}")
        for snapshot in replayed:
            self.publish(table, snapshot)
