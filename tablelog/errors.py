"""Error kinds surfaced by the table log.

- CommitConflictError: optimistic commit lost a race (retryable)
- NotFoundError: unknown table, version, schema, column or data file
- SchemaIncompatibleError: write or schema change violates the schema
- LockTimeoutError: local storage lock held past its timeout

Conflicts are retried by Transaction.commit() up to its retry budget.
The others are surfaced to the caller immediately.
"""

from __future__ import annotations


class TableLogError(Exception):
    """Base class for table log errors."""


class CommitConflictError(TableLogError):
    """Raised when base_version is no longer the head of the log."""

    def __init__(self, table: str, expected_version: int, actual_version: int,
                 message: str | None = None):
        self.table = table
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            message
            or f"commit conflict on {table!r}: based on version {expected_version}, "
               f"head is {actual_version}"
        )


class NotFoundError(TableLogError):
    """Raised for unknown tables, versions, schemas, columns or files."""


class SchemaIncompatibleError(TableLogError):
    """Raised when a write or schema change violates the current schema."""


class TableExistsError(TableLogError):
    """Raised by create_table when the name is already taken."""


class LockTimeoutError(TableLogError, TimeoutError):
    """Raised when a storage lock stays held past the lock timeout."""
