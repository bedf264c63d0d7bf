"""Metadata catalog: table name -> current version pointer and schemas.

Each table has one small pointer document in storage holding the current
version, the current schema id and the full schema history. The pointer
only moves through advance(), a compare-and-swap on the expected prior
version backed by the storage generation CAS. This is the single point
of mutual exclusion between writers.

Key types (public):
- CatalogEntry: Immutable (table_name, current_version, schema_id)
- CASResult: Result of advance(); on failure carries the observed entry
- MetadataCatalog: resolve/advance/create_table/schemas
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Optional

from tablelog.errors import NotFoundError, TableExistsError
from tablelog.schema import SchemaVersion
from tablelog.storage import StorageProvider, UnsupportedOperationError

logger = logging.getLogger(__name__)

_TABLE_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_.\-]*$")

POINTER_FILE = "_pointer.json"


def pointer_key(table: str) -> str:
    return f"{table}/{POINTER_FILE}"


def validate_table_name(table: str) -> None:
    if not _TABLE_NAME.match(table):
        raise ValueError(f"Invalid table name: {table!r}")


# ---------------------------------------------------------------------------
# Core data types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CatalogEntry:
    """Immutable view of a table's pointer."""
    table_name: str
    current_version: int
    schema_id: int


@dataclass(frozen=True)
class CASResult:
    """Result of a pointer compare-and-swap.

    On success: entry is the newly installed pointer.
    On failure: entry is the pointer found in the catalog, so the caller
    can rebase without another read.
    """
    success: bool
    entry: CatalogEntry


@dataclass(frozen=True)
class _PointerDocument:
    entry: CatalogEntry
    schemas: tuple[SchemaVersion, ...]
    generation: int

    def encode(self) -> bytes:
        return json.dumps({
            "table": self.entry.table_name,
            "current_version": self.entry.current_version,
            "schema_id": self.entry.schema_id,
            "schemas": [s.to_dict() for s in self.schemas],
        }, sort_keys=True).encode("utf-8")

    @classmethod
    def decode(cls, data: bytes, generation: int) -> _PointerDocument:
        raw = json.loads(data)
        return cls(
            entry=CatalogEntry(raw["table"], raw["current_version"], raw["schema_id"]),
            schemas=tuple(SchemaVersion.from_dict(s) for s in raw["schemas"]),
            generation=generation,
        )


# ---------------------------------------------------------------------------
# MetadataCatalog
# ---------------------------------------------------------------------------

class MetadataCatalog:
    """Catalog of table pointers backed by a StorageProvider.

    Invariants:
    - current_version advances by exactly 1 per successful advance()
    - current_version never decreases or skips values
    - schema history is append-only; schema ids are never reused
    """

    def __init__(self, storage: StorageProvider):
        self._storage = storage

    def _load(self, table: str) -> _PointerDocument:
        validate_table_name(table)
        obj = self._storage.get(pointer_key(table))
        if obj is None:
            raise NotFoundError(f"Table {table!r} not found")
        return _PointerDocument.decode(obj.data, obj.generation)

    def _require_cas(self) -> None:
        if not self._storage.supports_cas:
            raise UnsupportedOperationError(
                f"Catalog writes require storage with CAS support, got {self._storage.name}"
            )

    # -- Table lifecycle --

    def create_table(self, table: str, schema: SchemaVersion,
                     version: int = 0) -> CatalogEntry:
        """Install the pointer for a new table.

        Raises:
            TableExistsError: a pointer for this name already exists.
        """
        validate_table_name(table)
        self._require_cas()
        doc = _PointerDocument(
            entry=CatalogEntry(table, version, schema.schema_id),
            schemas=(schema,),
            generation=0,
        )
        result = self._storage.cas(pointer_key(table), 0, doc.encode())
        if not result.success:
            raise TableExistsError(f"Table {table!r} already exists")
        logger.info(f"Created table {table!r} with schema {schema.column_names}")
        return doc.entry

    def exists(self, table: str) -> bool:
        validate_table_name(table)
        return self._storage.get(pointer_key(table)) is not None

    def list_tables(self) -> list[str]:
        suffix = "/" + POINTER_FILE
        return sorted(
            key[:-len(suffix)]
            for key in self._storage.list_keys()
            if key.endswith(suffix)
        )

    # -- Pointer --

    def resolve(self, table: str) -> CatalogEntry:
        """Return the current pointer for table.

        Raises:
            NotFoundError: unknown table.
        """
        return self._load(table).entry

    def advance(
        self,
        table: str,
        expected_version: int,
        new_version: int,
        new_schema: Optional[SchemaVersion] = None,
    ) -> CASResult:
        """Move the pointer from expected_version to new_version.

        Fails (success=False) if the pointer is not at expected_version.
        If new_schema is given it is appended to the schema history and
        becomes the current schema.
        """
        if new_version != expected_version + 1:
            raise ValueError(
                f"Pointer must advance by one: {expected_version} -> {new_version}"
            )
        self._require_cas()

        # Every successful pointer write made by the catalog moves
        # current_version, so a pass that loses the generation CAS is
        # followed by one that sees a new version and returns.
        while True:
            doc = self._load(table)
            if doc.entry.current_version != expected_version:
                return CASResult(success=False, entry=doc.entry)

            schemas = doc.schemas
            schema_id = doc.entry.schema_id
            if new_schema is not None:
                if any(s.schema_id == new_schema.schema_id for s in schemas):
                    raise ValueError(
                        f"Schema id {new_schema.schema_id} already used by {table!r}"
                    )
                schemas = schemas + (new_schema,)
                schema_id = new_schema.schema_id

            new_doc = _PointerDocument(
                entry=CatalogEntry(table, new_version, schema_id),
                schemas=schemas,
                generation=doc.generation,
            )
            result = self._storage.cas(pointer_key(table), doc.generation, new_doc.encode())
            if result.success:
                return CASResult(success=True, entry=new_doc.entry)
            # Generation moved under us; re-read and re-check the version
            logger.debug(f"Pointer generation race on {table!r}, re-reading")

    # -- Schemas --

    def schemas(self, table: str) -> tuple[SchemaVersion, ...]:
        """All schema versions of table, oldest first."""
        return self._load(table).schemas

    def schema(self, table: str, schema_id: int) -> SchemaVersion:
        """Schema with the given id.

        Raises:
            NotFoundError: unknown table or schema id.
        """
        for s in self._load(table).schemas:
            if s.schema_id == schema_id:
                return s
        raise NotFoundError(f"Schema {schema_id} not found for table {table!r}")

    def current_schema(self, table: str) -> SchemaVersion:
        doc = self._load(table)
        for s in doc.schemas:
            if s.schema_id == doc.entry.schema_id:
                return s
        raise NotFoundError(f"Schema {doc.entry.schema_id} not found for table {table!r}")
