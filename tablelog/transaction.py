"""Writer transactions with bounded optimistic retries.

A Transaction collects operations against one table, then commit() runs
the commit loop:

1. Read the head version from the catalog
2. Call TransactionLog.commit(head, operations)
3. On success: return COMMITTED result
4. On CommitConflictError: back off, re-read head, retry
5. After max_retries conflicts: raise CommitConflictError

NotFoundError and SchemaIncompatibleError are never retried. Re-applying
the operations on a newer head surfaces them when a concurrent commit
removed a file this transaction removes, or changed the schema under it.

Key types (public):
- RetryPolicy: Retry budget and exponential backoff parameters (frozen)
- TransactionStatus: Lifecycle enum
- TransactionResult: Immutable commit outcome
- Transaction: Builder + commit loop
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum, auto
from typing import Callable, Iterable, Mapping, Optional

import numpy as np

from tablelog.errors import CommitConflictError
from tablelog.log import TransactionLog
from tablelog.operation import AddFiles, Operation, RemoveFiles, SchemaChange
from tablelog.schema import (
    AddColumn,
    DropColumn,
    RenameColumn,
    SchemaUpdate,
    UpdateColumnType,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget and exponential backoff configuration."""
    max_retries: int = 10
    backoff_enabled: bool = True
    backoff_base_ms: float = 10.0
    backoff_multiplier: float = 2.0
    backoff_max_ms: float = 5000.0
    backoff_jitter: float = 0.1


def calculate_backoff_ms(
    policy: RetryPolicy,
    retry_number: int,
    rng: np.random.RandomState,
) -> float:
    """Calculate exponential backoff time with jitter.

    Args:
        policy: Backoff parameters
        retry_number: Current retry attempt (1-indexed)
        rng: Seeded random state for the jitter

    Returns:
        Backoff time in milliseconds
    """
    if not policy.backoff_enabled:
        return 0.0

    # Exponential backoff: base * multiplier^(retry_number - 1)
    backoff = policy.backoff_base_ms * (policy.backoff_multiplier ** (retry_number - 1))

    # Cap at maximum
    backoff = min(backoff, policy.backoff_max_ms)

    # Add jitter: random factor between (1 - jitter) and (1 + jitter)
    if policy.backoff_jitter > 0:
        jitter_factor = 1.0 + rng.uniform(-policy.backoff_jitter, policy.backoff_jitter)
        backoff *= jitter_factor

    return max(0.0, float(backoff))


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

class TransactionStatus(Enum):
    """Transaction lifecycle states."""
    PENDING = auto()
    COMMITTING = auto()
    COMMITTED = auto()
    ABORTED = auto()


@dataclass(frozen=True)
class TransactionResult:
    """Immutable result of a committed transaction."""
    status: TransactionStatus
    table: str
    version: int              # Version this transaction created
    base_version: int         # Head it finally committed on top of
    total_retries: int
    backoff_ms: float         # Total time spent backing off
    commit_latency_ms: float  # Wall time inside commit()


# ---------------------------------------------------------------------------
# Transaction
# ---------------------------------------------------------------------------

class Transaction:
    """Builder for one atomic commit to a table.

    Usage:
        txn = engine.transaction("events")
        txn.append_files(["a.parquet", "b.parquet"])
        result = txn.commit()
    """

    def __init__(
        self,
        log: TransactionLog,
        table: str,
        policy: Optional[RetryPolicy] = None,
        rng: Optional[np.random.RandomState] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._log = log
        self.table = table
        self._policy = policy if policy is not None else RetryPolicy()
        self._rng = rng if rng is not None else np.random.RandomState()
        self._sleep = sleep
        self._operations: list[Operation] = []
        self._schema_updates: list[SchemaUpdate] = []
        self._status = TransactionStatus.PENDING

    @property
    def status(self) -> TransactionStatus:
        return self._status

    @property
    def operations(self) -> tuple[Operation, ...]:
        ops = list(self._operations)
        if self._schema_updates:
            ops.insert(0, SchemaChange(self._schema_updates))
        return tuple(ops)

    def _check_pending(self) -> None:
        if self._status is not TransactionStatus.PENDING:
            raise RuntimeError(f"Transaction is {self._status.name.lower()}")

    # -- Data files --

    def append_files(self, files: Iterable[str],
                     column_types: Optional[Mapping[str, str]] = None) -> Transaction:
        self._check_pending()
        self._operations.append(AddFiles(files, column_types))
        return self

    def remove_files(self, files: Iterable[str]) -> Transaction:
        self._check_pending()
        self._operations.append(RemoveFiles(files))
        return self

    def overwrite(self, removed: Iterable[str], added: Iterable[str],
                  column_types: Optional[Mapping[str, str]] = None) -> Transaction:
        """Replace files atomically (remove then add in one commit)."""
        return self.remove_files(removed).append_files(added, column_types)

    # -- Schema evolution (applied before file operations) --

    def add_column(self, name: str, type_: str, nullable: bool = True) -> Transaction:
        return self._update_schema(AddColumn(name, type_, nullable))

    def rename_column(self, name: str, new_name: str) -> Transaction:
        return self._update_schema(RenameColumn(name, new_name))

    def drop_column(self, name: str) -> Transaction:
        return self._update_schema(DropColumn(name))

    def update_column_type(self, name: str, new_type: str) -> Transaction:
        return self._update_schema(UpdateColumnType(name, new_type))

    def _update_schema(self, update: SchemaUpdate) -> Transaction:
        self._check_pending()
        self._schema_updates.append(update)
        return self

    # -- Commit loop --

    def commit(self) -> TransactionResult:
        """Commit with bounded retries on conflict.

        Raises:
            CommitConflictError: retry budget exhausted.
            NotFoundError, SchemaIncompatibleError: surfaced immediately.
        """
        self._check_pending()
        operations = self.operations
        if not operations:
            raise ValueError("Nothing to commit")

        self._status = TransactionStatus.COMMITTING
        start = time.monotonic()
        backoff_total = 0.0
        retries = 0

        try:
            while True:
                base = self._log.head(self.table)
                try:
                    version = self._log.commit(self.table, base, operations)
                except CommitConflictError as e:
                    if retries >= self._policy.max_retries:
                        logger.debug(f"TABLE {self.table} giving up after {retries} retries")
                        raise CommitConflictError(
                            self.table, e.expected_version, e.actual_version,
                            f"commit to {self.table!r} failed after {retries} retries: {e}",
                        ) from e
                    retries += 1
                    backoff = calculate_backoff_ms(self._policy, retries, self._rng)
                    if backoff > 0:
                        logger.debug(
                            f"TABLE {self.table} backing off for {backoff:.1f}ms (retry {retries})"
                        )
                        self._sleep(backoff / 1000.0)
                        backoff_total += backoff
                    continue

                self._status = TransactionStatus.COMMITTED
                return TransactionResult(
                    status=TransactionStatus.COMMITTED,
                    table=self.table,
                    version=version,
                    base_version=base,
                    total_retries=retries,
                    backoff_ms=backoff_total,
                    commit_latency_ms=(time.monotonic() - start) * 1000.0,
                )
        except Exception:
            self._status = TransactionStatus.ABORTED
            raise
