"""Table schemas and additive schema evolution.

A SchemaVersion is an immutable, ordered tuple of columns. Each column has
a numeric id assigned once from SchemaVersion.last_column_id and never
reused, so data files and old snapshots keep referring to the same column
after renames or drops.

Evolution operations (applied in order by SchemaVersion.evolve):
- AddColumn: new id, appended at the end
- RenameColumn: same id, new name
- DropColumn: removed from the column list, id retired
- UpdateColumnType: allowed promotions only (int->long, float->double)
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Iterable, Mapping, Union

from tablelog.errors import NotFoundError, SchemaIncompatibleError

PRIMITIVE_TYPES = frozenset({
    "boolean", "int", "long", "float", "double",
    "string", "binary", "date", "timestamp",
})

_PROMOTIONS = {
    ("int", "long"),
    ("float", "double"),
}


@dataclass(frozen=True)
class Column:
    column_id: int
    name: str
    type: str
    nullable: bool = True

    def to_dict(self) -> dict:
        return {"id": self.column_id, "name": self.name,
                "type": self.type, "nullable": self.nullable}

    @classmethod
    def from_dict(cls, raw: Mapping) -> Column:
        return cls(column_id=raw["id"], name=raw["name"],
                   type=raw["type"], nullable=raw["nullable"])


# ---------------------------------------------------------------------------
# Evolution operations
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AddColumn:
    name: str
    type: str
    nullable: bool = True


@dataclass(frozen=True)
class RenameColumn:
    name: str
    new_name: str


@dataclass(frozen=True)
class DropColumn:
    name: str


@dataclass(frozen=True)
class UpdateColumnType:
    name: str
    new_type: str


SchemaUpdate = Union[AddColumn, RenameColumn, DropColumn, UpdateColumnType]

_UPDATE_KINDS = {
    "add": AddColumn,
    "rename": RenameColumn,
    "drop": DropColumn,
    "update_type": UpdateColumnType,
}


def update_to_dict(update: SchemaUpdate) -> dict:
    """Serialize a schema update for the transaction log."""
    for kind, cls in _UPDATE_KINDS.items():
        if isinstance(update, cls):
            return {"op": kind, **asdict(update)}
    raise TypeError(f"Not a schema update: {update!r}")


def update_from_dict(raw: Mapping) -> SchemaUpdate:
    fields = dict(raw)
    kind = fields.pop("op")
    try:
        cls = _UPDATE_KINDS[kind]
    except KeyError:
        raise ValueError(f"Unknown schema update {kind!r}") from None
    return cls(**fields)


# ---------------------------------------------------------------------------
# SchemaVersion
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SchemaVersion:
    """Immutable schema of a table at one point in its history."""
    schema_id: int
    columns: tuple[Column, ...]
    last_column_id: int

    @classmethod
    def initial(cls, columns: Iterable[Union[Column, tuple]]) -> SchemaVersion:
        """Build schema 0 from (name, type[, nullable]) tuples or Columns.

        Column ids are reassigned 1..N in the given order.
        """
        built = []
        for i, col in enumerate(columns, start=1):
            if isinstance(col, Column):
                name, type_, nullable = col.name, col.type, col.nullable
            else:
                name, type_, *rest = col
                nullable = rest[0] if rest else True
            built.append(Column(i, name, type_, nullable))
        _check_columns(built)
        return cls(schema_id=0, columns=tuple(built), last_column_id=len(built))

    @property
    def column_names(self) -> tuple[str, ...]:
        return tuple(c.name for c in self.columns)

    @property
    def column_ids(self) -> frozenset[int]:
        return frozenset(c.column_id for c in self.columns)

    def find(self, name: str) -> Column:
        for col in self.columns:
            if col.name == name:
                return col
        raise NotFoundError(f"Column {name!r} not found in schema {self.schema_id}")

    def has_column(self, name: str) -> bool:
        return any(c.name == name for c in self.columns)

    def evolve(self, updates: Iterable[SchemaUpdate],
               has_data: bool = False) -> SchemaVersion:
        """Apply updates and return the next schema version.

        Args:
            updates: Evolution operations, applied in order.
            has_data: Whether the table already references data files.
                Required columns cannot be added to a non-empty table.

        Raises:
            NotFoundError: An update names a column that does not exist.
            SchemaIncompatibleError: An update would break existing data.
        """
        columns = list(self.columns)
        last_id = self.last_column_id

        def index_of(name: str) -> int:
            for i, col in enumerate(columns):
                if col.name == name:
                    return i
            raise NotFoundError(f"Column {name!r} not found in schema {self.schema_id}")

        updates = list(updates)
        if not updates:
            raise ValueError("Schema change requires at least one update")

        for update in updates:
            if isinstance(update, AddColumn):
                if any(c.name == update.name for c in columns):
                    raise SchemaIncompatibleError(f"Column {update.name!r} already exists")
                if not update.nullable and has_data:
                    raise SchemaIncompatibleError(
                        f"Cannot add required column {update.name!r} to a table with data"
                    )
                last_id += 1
                columns.append(Column(last_id, update.name, update.type, update.nullable))
            elif isinstance(update, RenameColumn):
                i = index_of(update.name)
                if any(c.name == update.new_name for c in columns):
                    raise SchemaIncompatibleError(f"Column {update.new_name!r} already exists")
                old = columns[i]
                columns[i] = Column(old.column_id, update.new_name, old.type, old.nullable)
            elif isinstance(update, DropColumn):
                del columns[index_of(update.name)]
            elif isinstance(update, UpdateColumnType):
                i = index_of(update.name)
                old = columns[i]
                if old.type != update.new_type and (old.type, update.new_type) not in _PROMOTIONS:
                    raise SchemaIncompatibleError(
                        f"Cannot change {update.name!r} from {old.type} to {update.new_type}"
                    )
                columns[i] = Column(old.column_id, old.name, update.new_type, old.nullable)
            else:
                raise TypeError(f"Not a schema update: {update!r}")

        _check_columns(columns)
        return SchemaVersion(schema_id=self.schema_id + 1,
                             columns=tuple(columns), last_column_id=last_id)

    def check_write(self, columns: Mapping[str, str]) -> None:
        """Check that a data file with the given column types fits this schema.

        Raises:
            SchemaIncompatibleError: Unknown column, type mismatch, or a
                required column missing from the file.
        """
        by_name = {c.name: c for c in self.columns}
        for name, type_ in columns.items():
            col = by_name.get(name)
            if col is None:
                raise SchemaIncompatibleError(
                    f"Column {name!r} is not in schema {self.schema_id}"
                )
            if col.type != type_ and (type_, col.type) not in _PROMOTIONS:
                raise SchemaIncompatibleError(
                    f"Column {name!r} has type {type_}, schema expects {col.type}"
                )
        missing = [c.name for c in self.columns if not c.nullable and c.name not in columns]
        if missing:
            raise SchemaIncompatibleError(f"Missing required columns: {missing}")

    def to_dict(self) -> dict:
        return {
            "schema_id": self.schema_id,
            "last_column_id": self.last_column_id,
            "columns": [c.to_dict() for c in self.columns],
        }

    @classmethod
    def from_dict(cls, raw: Mapping) -> SchemaVersion:
        return cls(
            schema_id=raw["schema_id"],
            columns=tuple(Column.from_dict(c) for c in raw["columns"]),
            last_column_id=raw["last_column_id"],
        )


def _check_columns(columns: Iterable[Column]) -> None:
    seen = set()
    for col in columns:
        if not col.name:
            raise SchemaIncompatibleError("Column names must be non-empty")
        if col.name in seen:
            raise SchemaIncompatibleError(f"Duplicate column name {col.name!r}")
        if col.type not in PRIMITIVE_TYPES:
            raise SchemaIncompatibleError(
                f"Unsupported type {col.type!r} for column {col.name!r}"
            )
        seen.add(col.name)
