"""Immutable view of what one role can see and do."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Iterator, Mapping, Optional


class Operation(str, Enum):
    """Operations the gate can be asked about."""

    CONNECT = "connect"
    USAGE = "usage"
    SELECT = "select"
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True, order=True)
class TableRef:
    database: str
    schema: str
    table: str

    @property
    def qualified(self) -> str:
        return f"{self.database}.{self.schema}.{self.table}"

    def to_dict(self) -> dict[str, str]:
        return {"database": self.database, "schema": self.schema, "table": self.table}


@dataclass(frozen=True)
class ColumnInfo:
    name: str
    data_type: str
    nullable: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "data_type": self.data_type, "nullable": self.nullable}


@dataclass(frozen=True)
class ForeignKey:
    """A foreign key from ``columns`` of the owning table to ``referenced``.

    ``opaque`` is set when the role could not see the referenced table at
    probe time; the edge is kept so the UI can show that a parent exists.
    """

    name: str
    columns: tuple[str, ...]
    referenced: TableRef
    referenced_columns: tuple[str, ...]
    opaque: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "columns": list(self.columns),
            "referenced": self.referenced.to_dict(),
            "referenced_columns": list(self.referenced_columns),
            "opaque": self.opaque,
        }


@dataclass(frozen=True)
class PrivilegeSet:
    select: bool = False
    insert: bool = False
    update: bool = False
    delete: bool = False

    def allows(self, op: Operation) -> bool:
        return bool(getattr(self, op.value, False))

    def to_dict(self) -> dict[str, bool]:
        return {"select": self.select, "insert": self.insert, "update": self.update, "delete": self.delete}


@dataclass(frozen=True)
class TableAccess:
    ref: TableRef
    columns: tuple[ColumnInfo, ...] = ()
    primary_key: tuple[str, ...] = ()
    foreign_keys: tuple[ForeignKey, ...] = ()
    privileges: PrivilegeSet = field(default_factory=PrivilegeSet)

    @property
    def column_names(self) -> tuple[str, ...]:
        return tuple(column.name for column in self.columns)

    def has_column(self, name: str) -> bool:
        return name in self.column_names

    def foreign_key(self, name: str) -> Optional[ForeignKey]:
        for fk in self.foreign_keys:
            if fk.name == name:
                return fk
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.ref.to_dict(),
            "columns": [column.to_dict() for column in self.columns],
            "primary_key": list(self.primary_key),
            "foreign_keys": [fk.to_dict() for fk in self.foreign_keys],
            "privileges": self.privileges.to_dict(),
        }


@dataclass(frozen=True)
class DatabaseCatalog:
    """Result of probing one database."""

    database: str
    schemas: tuple[str, ...] = ()
    tables: tuple[TableAccess, ...] = ()


@dataclass(frozen=True)
class RoleAccess:
    """Everything one role may see, as of one probe.

    Values are never mutated after construction; a refresh builds a new
    RoleAccess and swaps it into the cache wholesale.
    """

    role: str
    databases: tuple[str, ...] = ()
    schemas: Mapping[str, tuple[str, ...]] = field(default_factory=dict)
    tables: Mapping[TableRef, TableAccess] = field(default_factory=dict)
    probed_at: float = 0.0

    def __post_init__(self) -> None:
        object.__setattr__(self, "schemas", MappingProxyType(dict(self.schemas)))
        object.__setattr__(self, "tables", MappingProxyType(dict(self.tables)))

    @classmethod
    def from_catalogs(
        cls, role: str, catalogs: list[DatabaseCatalog], *, probed_at: float = 0.0
    ) -> "RoleAccess":
        tables: dict[TableRef, TableAccess] = {}
        for catalog in catalogs:
            for table in catalog.tables:
                tables[table.ref] = table
        return cls(
            role=role,
            databases=tuple(catalog.database for catalog in catalogs),
            schemas={catalog.database: catalog.schemas for catalog in catalogs},
            tables=tables,
            probed_at=probed_at,
        )

    @property
    def is_empty(self) -> bool:
        return not self.tables

    def has_database(self, database: str) -> bool:
        return database in self.databases

    def has_schema(self, database: str, schema: str) -> bool:
        return schema in self.schemas.get(database, ())

    def table(self, ref: TableRef) -> Optional[TableAccess]:
        return self.tables.get(ref)

    def tables_in(self, database: str, schema: str) -> list[TableAccess]:
        return sorted(
            (t for t in self.tables.values() if t.ref.database == database and t.ref.schema == schema),
            key=lambda t: t.ref.table,
        )

    def first_table(self) -> Optional[TableRef]:
        """First accessible table in database, schema, table order."""
        for database in self.databases:
            for schema in self.schemas.get(database, ()):
                tables = self.tables_in(database, schema)
                if tables:
                    return tables[0].ref
        return None

    def children_of(self, ref: TableRef) -> Iterator[tuple[TableAccess, ForeignKey]]:
        """Visible tables holding a foreign key that references ``ref``."""
        for table in self.tables.values():
            for fk in table.foreign_keys:
                if fk.referenced == ref:
                    yield table, fk

    def to_dict(self) -> dict[str, Any]:
        return {
            "role": self.role,
            "databases": list(self.databases),
            "schemas": {db: list(schemas) for db, schemas in self.schemas.items()},
            "tables": {
                f"{db}.{schema}": [t.ref.table for t in self.tables_in(db, schema)]
                for db in self.databases
                for schema in self.schemas.get(db, ())
            },
            "privileges": {
                ref.qualified: table.privileges.to_dict() for ref, table in sorted(self.tables.items())
            },
        }
