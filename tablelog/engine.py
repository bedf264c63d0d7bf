"""TableEngine: one object wiring storage, catalog, log and planner.

Usage:
    engine = TableEngine(InMemoryStorageProvider())
    engine.create_table("events", [("id", "long", False), ("payload", "string")])
    engine.transaction("events").append_files(["a", "b"]).commit()
    engine.plan("events", version=1)
"""

from __future__ import annotations

import threading
from typing import Callable, Iterable, Optional, Union

import numpy as np

from tablelog.catalog import CatalogEntry, MetadataCatalog
from tablelog.log import LogEntry, TransactionLog
from tablelog.operation import Operation
from tablelog.planner import QueryPlanner, ScanPlan
from tablelog.schema import Column, SchemaVersion
from tablelog.snapshot import Snapshot, SnapshotManager
from tablelog.storage import StorageProvider
from tablelog.transaction import RetryPolicy, Transaction


class TableEngine:

    def __init__(
        self,
        storage: StorageProvider,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Optional[Callable[[], float]] = None,
        seed: Optional[int] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self._storage = storage
        self._catalog = MetadataCatalog(storage)
        self._log = TransactionLog(storage, self._catalog, clock=clock)
        self._planner = QueryPlanner(self._catalog, self._log.snapshots)
        self._policy = retry_policy if retry_policy is not None else RetryPolicy()
        self._sleep = sleep
        self._rng = np.random.RandomState(seed) if seed is not None else np.random.RandomState()
        self._rng_lock = threading.Lock()

    @property
    def storage(self) -> StorageProvider:
        return self._storage

    @property
    def catalog(self) -> MetadataCatalog:
        return self._catalog

    @property
    def log(self) -> TransactionLog:
        return self._log

    @property
    def snapshots(self) -> SnapshotManager:
        return self._log.snapshots

    @property
    def planner(self) -> QueryPlanner:
        return self._planner

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._policy

    # -- Tables --

    def create_table(
        self,
        table: str,
        columns: Union[SchemaVersion, Iterable[Union[Column, tuple]]],
    ) -> Snapshot:
        schema = columns if isinstance(columns, SchemaVersion) else SchemaVersion.initial(columns)
        return self._log.create_table(table, schema)

    def list_tables(self) -> list[str]:
        return self._catalog.list_tables()

    def resolve(self, table: str) -> CatalogEntry:
        return self._catalog.resolve(table)

    # -- Writes --

    def transaction(self, table: str) -> Transaction:
        with self._rng_lock:
            rng = np.random.RandomState(self._rng.randint(0, 2**31 - 1))
        kwargs = {"sleep": self._sleep} if self._sleep is not None else {}
        return Transaction(self._log, table, policy=self._policy, rng=rng, **kwargs)

    def commit(self, table: str, base_version: int,
               operations: Iterable[Operation]) -> int:
        """Single optimistic attempt; raises CommitConflictError on a race."""
        return self._log.commit(table, base_version, operations)

    # -- Reads --

    def plan(self, table: str, version: Optional[int] = None,
             timestamp_ms: Optional[float] = None) -> frozenset[str]:
        return self._planner.plan(table, version, timestamp_ms)

    def scan(self, table: str, version: Optional[int] = None,
             timestamp_ms: Optional[float] = None) -> ScanPlan:
        return self._planner.scan(table, version, timestamp_ms)

    def snapshot(self, table: str, version: Optional[int] = None) -> Snapshot:
        return self._planner.resolve_snapshot(table, version)

    def history(self, table: str) -> list[LogEntry]:
        return self._log.entries(table)

    def schema_at(self, table: str, version: Optional[int] = None) -> SchemaVersion:
        return self.scan(table, version).schema
