"""Append-only transaction log with optimistic commits.

Each table's log is a sequence of JSON objects, one storage key per
version. commit() is optimistic:

1. Check base_version is the catalog head (else CommitConflictError)
2. Validate operations against the snapshot and schema at base_version
3. Build the child snapshot (no locks held)
4. Claim the version slot with put_if_absent
5. Advance the catalog pointer with CAS
6. Publish the snapshot

Step 4 is the linearization point: whoever claims slot N owns version N.
If a writer dies between 4 and 5, the slot is claimed but the pointer
lags; the next writer to hit the occupied slot rolls the pointer forward
on its behalf (the log is the source of truth) and then reports a
conflict so the caller rebases on the new head.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from tablelog.catalog import MetadataCatalog, validate_table_name
from tablelog.errors import CommitConflictError, NotFoundError, TableExistsError
from tablelog.operation import (
    AddFiles,
    FileDelta,
    Operation,
    OperationKind,
    RemoveFiles,
    SchemaChange,
    operation_from_dict,
)
from tablelog.schema import SchemaVersion
from tablelog.snapshot import Snapshot, SnapshotManager
from tablelog.storage import StorageProvider

logger = logging.getLogger(__name__)

LOG_DIR = "_log"


def log_key(table: str, version: int) -> str:
    return f"{table}/{LOG_DIR}/{version:020d}.json"


def _wall_clock_ms() -> float:
    return time.time() * 1000.0


@dataclass(frozen=True)
class LogEntry:
    """One committed change. Immutable once written."""
    version: int
    operations: tuple[Operation, ...]
    commit_timestamp_ms: float

    @property
    def kinds(self) -> tuple[OperationKind, ...]:
        return tuple(op.kind for op in self.operations)

    @property
    def schema(self) -> Optional[SchemaVersion]:
        """Schema introduced by this entry, if any."""
        for op in self.operations:
            if isinstance(op, SchemaChange):
                return op.schema
        return None

    def encode(self) -> bytes:
        return json.dumps({
            "version": self.version,
            "commit_timestamp_ms": self.commit_timestamp_ms,
            "operations": [op.to_dict() for op in self.operations],
        }, sort_keys=True).encode("utf-8")

    @classmethod
    def decode(cls, data: bytes) -> LogEntry:
        raw = json.loads(data)
        return cls(
            version=raw["version"],
            operations=tuple(operation_from_dict(op) for op in raw["operations"]),
            commit_timestamp_ms=raw["commit_timestamp_ms"],
        )


class TransactionLog:
    """Serializes commits to per-table logs.

    Args:
        storage: Provider holding log entries (and, via catalog, pointers).
        catalog: Catalog whose pointer marks each table's head.
        clock: Returns the current time in ms. Defaults to wall clock.
    """

    def __init__(
        self,
        storage: StorageProvider,
        catalog: MetadataCatalog,
        clock: Optional[Callable[[], float]] = None,
    ):
        self._storage = storage
        self._catalog = catalog
        self._clock = clock if clock is not None else _wall_clock_ms
        self._snapshots = SnapshotManager(self.entry)

    @property
    def snapshots(self) -> SnapshotManager:
        return self._snapshots

    @property
    def catalog(self) -> MetadataCatalog:
        return self._catalog

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def entry(self, table: str, version: int) -> LogEntry:
        """Read the entry at version.

        Raises:
            NotFoundError: no entry at that version.
        """
        validate_table_name(table)
        if version < 0:
            raise NotFoundError(f"Version {version} not found for table {table!r}")
        obj = self._storage.get(log_key(table, version))
        if obj is None:
            raise NotFoundError(f"Version {version} not found for table {table!r}")
        return LogEntry.decode(obj.data)

    def entries(self, table: str, start: int = 0,
                end: Optional[int] = None) -> list[LogEntry]:
        """Committed entries start..end inclusive (end defaults to head)."""
        head = self.head(table)
        end = head if end is None else min(end, head)
        return [self.entry(table, v) for v in range(max(start, 0), end + 1)]

    def head(self, table: str) -> int:
        return self._catalog.resolve(table).current_version

    # ------------------------------------------------------------------
    # Table creation
    # ------------------------------------------------------------------

    def create_table(self, table: str, schema: SchemaVersion) -> Snapshot:
        """Write version 0 (empty manifest, initial schema) and the pointer.

        Raises:
            TableExistsError: table already exists.
        """
        validate_table_name(table)
        entry = LogEntry(
            version=0,
            operations=(SchemaChange((), schema),),
            commit_timestamp_ms=self._clock(),
        )
        claimed = self._storage.put_if_absent(log_key(table, 0), entry.encode())
        if not claimed.success:
            if not self._catalog.exists(table):
                # Creator died before installing the pointer
                existing = self.entry(table, 0)
                try:
                    self._catalog.create_table(table, existing.schema)
                    logger.warning(f"Rolled forward creation of table {table!r}")
                except TableExistsError:
                    pass
            raise TableExistsError(f"Table {table!r} already exists")

        try:
            self._catalog.create_table(table, schema)
        except TableExistsError:
            # A peer installed the pointer from our entry
            logger.debug(f"Pointer for {table!r} installed by roll-forward")

        snapshot = SnapshotManager.from_entry(None, entry)
        self._snapshots.publish(table, snapshot)
        return snapshot

    # ------------------------------------------------------------------
    # Commit
    # ------------------------------------------------------------------

    def commit(
        self,
        table: str,
        base_version: int,
        operations: Iterable[Operation],
    ) -> int:
        """Commit operations on top of base_version.

        Returns:
            The new version (base_version + 1).

        Raises:
            CommitConflictError: base_version is not the head.
            NotFoundError: unknown table/version, or removing a missing file.
            SchemaIncompatibleError: operations violate the schema.
            ValueError: empty or malformed operations.
        """
        operations = tuple(operations)
        if not operations:
            raise ValueError("Commit requires at least one operation")

        head = self._catalog.resolve(table)
        if base_version > head.current_version or base_version < 0:
            raise NotFoundError(f"Version {base_version} not found for table {table!r}")
        if base_version != head.current_version:
            raise CommitConflictError(table, base_version, head.current_version)

        parent = self._snapshots.get_snapshot(table, base_version)
        schema = self._catalog.schema(table, parent.schema_id)
        resolved, new_schema = self._resolve_operations(operations, schema, parent)

        snapshot = self._snapshots.create_snapshot(
            table,
            base_version,
            FileDelta.from_operations(resolved),
            self._clock(),
            schema_id=new_schema.schema_id if new_schema is not None else None,
        )
        entry = LogEntry(snapshot.version, resolved, snapshot.timestamp_ms)

        claimed = self._storage.put_if_absent(log_key(table, entry.version), entry.encode())
        if not claimed.success:
            self._roll_forward(table, base_version)
            actual = self.head(table)
            logger.debug(
                f"TABLE {table} version {entry.version} already claimed, head is {actual}"
            )
            raise CommitConflictError(table, base_version, actual)

        result = self._catalog.advance(table, base_version, entry.version, new_schema)
        if not result.success and result.entry.current_version < entry.version:
            # Cannot happen while slot entry.version is ours
            raise CommitConflictError(table, base_version, result.entry.current_version)

        self._snapshots.publish(table, snapshot)
        logger.debug(
            f"TABLE {table} committed version {entry.version} "
            f"({', '.join(k.value for k in entry.kinds)})"
        )
        return entry.version

    def _resolve_operations(
        self,
        operations: tuple[Operation, ...],
        schema: SchemaVersion,
        parent: Snapshot,
    ) -> tuple[tuple[Operation, ...], Optional[SchemaVersion]]:
        """Validate operations in order and resolve schema changes."""
        has_data = bool(parent.manifest)
        new_schema = None
        resolved: list[Operation] = []
        for op in operations:
            if isinstance(op, SchemaChange):
                if new_schema is not None:
                    raise ValueError("At most one schema change per commit")
                schema = schema.evolve(op.updates, has_data=has_data)
                new_schema = schema
                resolved.append(SchemaChange(op.updates, schema))
            elif isinstance(op, AddFiles):
                if op.column_types is not None:
                    schema.check_write(dict(op.column_types))
                has_data = has_data or bool(op.files)
                resolved.append(op)
            elif isinstance(op, RemoveFiles):
                resolved.append(op)
            else:
                raise TypeError(f"Not an operation: {op!r}")
        return tuple(resolved), new_schema

    def _roll_forward(self, table: str, base_version: int) -> None:
        """Advance a pointer left behind by a writer that claimed a slot."""
        try:
            entry = self.entry(table, base_version + 1)
        except NotFoundError:
            return
        result = self._catalog.advance(table, base_version, entry.version, entry.schema)
        if result.success:
            logger.warning(f"Rolled forward table {table!r} to version {entry.version}")
