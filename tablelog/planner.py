"""Read path: resolve a table as of a version or timestamp.

The planner pins one snapshot and returns its manifest. Later commits
cannot change the result because snapshots are immutable.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from tablelog.catalog import MetadataCatalog
from tablelog.errors import NotFoundError
from tablelog.schema import SchemaVersion
from tablelog.snapshot import Snapshot, SnapshotManager


@dataclass(frozen=True)
class ScanPlan:
    """Files to read for a table at a pinned version, with its schema."""
    table: str
    version: int
    timestamp_ms: float
    files: frozenset[str]
    schema: SchemaVersion


class QueryPlanner:

    def __init__(self, catalog: MetadataCatalog, snapshots: SnapshotManager):
        self._catalog = catalog
        self._snapshots = snapshots

    def resolve_snapshot(
        self,
        table: str,
        version: Optional[int] = None,
        timestamp_ms: Optional[float] = None,
    ) -> Snapshot:
        """Nearest snapshot at or before the requested point.

        With neither argument, returns the current head.

        Raises:
            NotFoundError: unknown table, a version beyond the head, or a
                timestamp earlier than the table's creation.
        """
        if version is not None and timestamp_ms is not None:
            raise ValueError("Specify version or timestamp_ms, not both")

        head = self._catalog.resolve(table).current_version
        if timestamp_ms is not None:
            return self._snapshots.snapshot_as_of_timestamp(table, timestamp_ms, head)
        if version is None:
            version = head
        if version < 0 or version > head:
            raise NotFoundError(f"Version {version} not found for table {table!r}")
        return self._snapshots.get_snapshot(table, version)

    def plan(
        self,
        table: str,
        version: Optional[int] = None,
        timestamp_ms: Optional[float] = None,
    ) -> frozenset[str]:
        """Data files to scan for table as of version or timestamp."""
        return self.resolve_snapshot(table, version, timestamp_ms).manifest

    def scan(
        self,
        table: str,
        version: Optional[int] = None,
        timestamp_ms: Optional[float] = None,
    ) -> ScanPlan:
        """Like plan(), plus the schema valid at the resolved snapshot."""
        snapshot = self.resolve_snapshot(table, version, timestamp_ms)
        return ScanPlan(
            table=table,
            version=snapshot.version,
            timestamp_ms=snapshot.timestamp_ms,
            files=snapshot.manifest,
            schema=self._catalog.schema(table, snapshot.schema_id),
        )
