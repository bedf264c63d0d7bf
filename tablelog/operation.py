"""Operations recorded in the transaction log.

A commit carries one or more operations. Each has a kind:

1. ADD_FILES: Adds data-file paths to the manifest. May declare the
   column types the files were written with, checked against the schema.

2. REMOVE_FILES: Removes data-file paths from the manifest. Every path
   must be present in the parent snapshot.

3. SCHEMA_CHANGE: Applies schema updates. The resulting SchemaVersion is
   recorded in the log entry, so replay never has to re-derive it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import ClassVar, Iterable, Mapping, Optional, Union

from tablelog.schema import (
    SchemaUpdate,
    SchemaVersion,
    update_from_dict,
    update_to_dict,
)


class OperationKind(Enum):
    ADD_FILES = "add_files"
    REMOVE_FILES = "remove_files"
    SCHEMA_CHANGE = "schema_change"


@dataclass(frozen=True)
class AddFiles:
    files: frozenset[str]
    column_types: Optional[tuple[tuple[str, str], ...]] = None
    kind: ClassVar[OperationKind] = OperationKind.ADD_FILES

    def __init__(self, files: Iterable[str],
                 column_types: Optional[Mapping[str, str]] = None):
        object.__setattr__(self, "files", frozenset(files))
        object.__setattr__(
            self, "column_types",
            tuple(sorted(column_types.items())) if column_types is not None else None,
        )

    def to_dict(self) -> dict:
        raw = {"kind": self.kind.value, "files": sorted(self.files)}
        if self.column_types is not None:
            raw["column_types"] = dict(self.column_types)
        return raw


@dataclass(frozen=True)
class RemoveFiles:
    files: frozenset[str]
    kind: ClassVar[OperationKind] = OperationKind.REMOVE_FILES

    def __init__(self, files: Iterable[str]):
        object.__setattr__(self, "files", frozenset(files))

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "files": sorted(self.files)}


@dataclass(frozen=True)
class SchemaChange:
    updates: tuple[SchemaUpdate, ...]
    schema: Optional[SchemaVersion] = field(default=None, compare=False)
    kind: ClassVar[OperationKind] = OperationKind.SCHEMA_CHANGE

    def __init__(self, updates: Iterable[SchemaUpdate],
                 schema: Optional[SchemaVersion] = None):
        object.__setattr__(self, "updates", tuple(updates))
        object.__setattr__(self, "schema", schema)

    def to_dict(self) -> dict:
        if self.schema is None:
            raise ValueError("SchemaChange must be resolved before it is logged")
        return {
            "kind": self.kind.value,
            "updates": [update_to_dict(u) for u in self.updates],
            "schema": self.schema.to_dict(),
        }


Operation = Union[AddFiles, RemoveFiles, SchemaChange]


def operation_from_dict(raw: Mapping) -> Operation:
    kind = OperationKind(raw["kind"])
    if kind is OperationKind.ADD_FILES:
        return AddFiles(raw["files"], raw.get("column_types"))
    if kind is OperationKind.REMOVE_FILES:
        return RemoveFiles(raw["files"])
    return SchemaChange(
        [update_from_dict(u) for u in raw["updates"]],
        SchemaVersion.from_dict(raw["schema"]),
    )


@dataclass(frozen=True)
class FileDelta:
    """Net manifest change of one commit."""
    added: frozenset[str] = frozenset()
    removed: frozenset[str] = frozenset()

    @classmethod
    def from_operations(cls, operations: Iterable[Operation]) -> FileDelta:
        added: set[str] = set()
        removed: set[str] = set()
        for op in operations:
            if isinstance(op, AddFiles):
                overlap = op.files & removed
                if overlap:
                    raise ValueError(f"Files both removed and added in one commit: {sorted(overlap)}")
                dup = op.files & added
                if dup:
                    raise ValueError(f"Files added twice in one commit: {sorted(dup)}")
                added |= op.files
            elif isinstance(op, RemoveFiles):
                overlap = op.files & added
                if overlap:
                    raise ValueError(f"Files both added and removed in one commit: {sorted(overlap)}")
                removed |= op.files
        return cls(frozenset(added), frozenset(removed))
