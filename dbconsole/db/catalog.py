"""Catalog probe: builds a RoleAccess from PostgreSQL's system catalogs.

All queries run as the role being probed, and every privilege column is
computed with ``has_*_privilege`` for that role, so the result reflects
grants made through role membership as well as direct grants.
"""

from __future__ import annotations

from contextlib import AbstractAsyncContextManager
from typing import Callable, Optional

from dbconsole.access.models import (
    ColumnInfo,
    DatabaseCatalog,
    ForeignKey,
    PrivilegeSet,
    RoleAccess,
    TableAccess,
    TableRef,
)
from dbconsole.core.clock import Clock
from dbconsole.core.exceptions import ConsoleError
from dbconsole.core.logging import get_logger
from dbconsole.db.backend import Connection

logger = get_logger(__name__)

ConnectTo = Callable[[str], AbstractAsyncContextManager[Connection]]

DATABASES_SQL = """
SELECT d.datname
FROM pg_catalog.pg_database d
WHERE NOT d.datistemplate
  AND d.datallowconn
  AND has_database_privilege(CAST(:role AS name), d.datname, 'CONNECT')
ORDER BY d.datname
"""

SCHEMAS_SQL = """
SELECT n.nspname
FROM pg_catalog.pg_namespace n
WHERE n.nspname NOT IN ('pg_catalog', 'information_schema', 'pg_toast')
  AND n.nspname NOT LIKE 'pg_temp_%'
  AND n.nspname NOT LIKE 'pg_toast_temp_%'
  AND has_schema_privilege(CAST(:role AS name), n.oid, 'USAGE')
ORDER BY n.nspname
"""

TABLES_SQL = """
SELECT n.nspname AS schema_name,
       c.relname AS table_name,
       has_table_privilege(CAST(:role AS name), c.oid, 'SELECT') AS can_select,
       has_table_privilege(CAST(:role AS name), c.oid, 'INSERT') AS can_insert,
       has_table_privilege(CAST(:role AS name), c.oid, 'UPDATE') AS can_update,
       has_table_privilege(CAST(:role AS name), c.oid, 'DELETE') AS can_delete
FROM pg_catalog.pg_class c
JOIN pg_catalog.pg_namespace n ON n.oid = c.relnamespace
WHERE c.relkind IN ('r', 'p', 'v', 'm', 'f')
  AND n.nspname NOT IN ('pg_catalog', 'information_schema', 'pg_toast')
  AND has_schema_privilege(CAST(:role AS name), n.oid, 'USAGE')
ORDER BY n.nspname, c.relname
"""

COLUMNS_SQL = """
SELECT table_schema, table_name, column_name, data_type, is_nullable
FROM information_schema.columns
WHERE table_schema NOT IN ('pg_catalog', 'information_schema')
ORDER BY table_schema, table_name, ordinal_position
"""

PRIMARY_KEYS_SQL = """
SELECT n.nspname AS schema_name,
       c.relname AS table_name,
       a.attname AS column_name
FROM pg_catalog.pg_index i
JOIN pg_catalog.pg_class c ON c.oid = i.indrelid
JOIN pg_catalog.pg_namespace n ON n.oid = c.relnamespace
CROSS JOIN LATERAL unnest(i.indkey::int2[]) WITH ORDINALITY AS k(attnum, position)
JOIN pg_catalog.pg_attribute a ON a.attrelid = c.oid AND a.attnum = k.attnum
WHERE i.indisprimary
  AND n.nspname NOT IN ('pg_catalog', 'information_schema', 'pg_toast')
ORDER BY n.nspname, c.relname, k.position
"""

FOREIGN_KEYS_SQL = """
SELECT con.conname AS constraint_name,
       sn.nspname AS schema_name,
       sc.relname AS table_name,
       sa.attname AS column_name,
       tn.nspname AS referenced_schema,
       tc.relname AS referenced_table,
       ta.attname AS referenced_column
FROM pg_catalog.pg_constraint con
JOIN pg_catalog.pg_class sc ON sc.oid = con.conrelid
JOIN pg_catalog.pg_namespace sn ON sn.oid = sc.relnamespace
JOIN pg_catalog.pg_class tc ON tc.oid = con.confrelid
JOIN pg_catalog.pg_namespace tn ON tn.oid = tc.relnamespace
CROSS JOIN LATERAL unnest(con.conkey, con.confkey) WITH ORDINALITY AS k(src, dst, position)
JOIN pg_catalog.pg_attribute sa ON sa.attrelid = sc.oid AND sa.attnum = k.src
JOIN pg_catalog.pg_attribute ta ON ta.attrelid = tc.oid AND ta.attnum = k.dst
WHERE con.contype = 'f'
  AND sn.nspname NOT IN ('pg_catalog', 'information_schema', 'pg_toast')
ORDER BY sn.nspname, sc.relname, con.conname, k.position
"""


class CatalogProbe:
    """Reads databases, schemas, tables, columns, keys and privileges."""

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or Clock()

    async def list_databases(self, conn: Connection, role: str) -> list[str]:
        result = await conn.execute(DATABASES_SQL, {"role": role})
        return [row[0] for row in result.rows]

    async def probe(self, conn: Connection, role: str) -> DatabaseCatalog:
        """Probe the database ``conn`` is attached to."""
        database = conn.database
        params = {"role": role}

        schemas = tuple(row[0] for row in (await conn.execute(SCHEMAS_SQL, params)).rows)

        privileges: dict[tuple[str, str], PrivilegeSet] = {}
        for schema, table, can_select, can_insert, can_update, can_delete in (
            await conn.execute(TABLES_SQL, params)
        ).rows:
            # Tables without SELECT are not part of the role's view at all.
            if not can_select:
                continue
            privileges[(schema, table)] = PrivilegeSet(
                select=True,
                insert=bool(can_insert),
                update=bool(can_update),
                delete=bool(can_delete),
            )

        columns: dict[tuple[str, str], list[ColumnInfo]] = {}
        for schema, table, column, data_type, is_nullable in (await conn.execute(COLUMNS_SQL)).rows:
            if (schema, table) in privileges:
                columns.setdefault((schema, table), []).append(
                    ColumnInfo(name=column, data_type=data_type, nullable=(is_nullable == "YES"))
                )

        primary_keys: dict[tuple[str, str], list[str]] = {}
        for schema, table, column in (await conn.execute(PRIMARY_KEYS_SQL)).rows:
            if (schema, table) in privileges:
                primary_keys.setdefault((schema, table), []).append(column)

        fk_parts: dict[tuple[str, str, str], dict] = {}
        for name, schema, table, column, ref_schema, ref_table, ref_column in (
            await conn.execute(FOREIGN_KEYS_SQL)
        ).rows:
            if (schema, table) not in privileges:
                continue
            part = fk_parts.setdefault(
                (schema, table, name),
                {"ref": (ref_schema, ref_table), "columns": [], "referenced_columns": []},
            )
            part["columns"].append(column)
            part["referenced_columns"].append(ref_column)

        foreign_keys: dict[tuple[str, str], list[ForeignKey]] = {}
        for (schema, table, name), part in fk_parts.items():
            ref_schema, ref_table = part["ref"]
            foreign_keys.setdefault((schema, table), []).append(
                ForeignKey(
                    name=name,
                    columns=tuple(part["columns"]),
                    referenced=TableRef(database, ref_schema, ref_table),
                    referenced_columns=tuple(part["referenced_columns"]),
                    opaque=(ref_schema, ref_table) not in privileges,
                )
            )

        tables = tuple(
            TableAccess(
                ref=TableRef(database, schema, table),
                columns=tuple(columns.get((schema, table), ())),
                primary_key=tuple(primary_keys.get((schema, table), ())),
                foreign_keys=tuple(foreign_keys.get((schema, table), ())),
                privileges=privs,
            )
            for (schema, table), privs in sorted(privileges.items())
        )
        return DatabaseCatalog(database=database, schemas=schemas, tables=tables)

    async def probe_role(self, conn: Connection, role: str, connect: ConnectTo) -> RoleAccess:
        """Probe every database the role may connect to.

        ``conn`` is already open on one database; ``connect`` opens the
        others. A database the role is granted CONNECT on but cannot
        actually open is left out and logged.
        """
        databases = await self.list_databases(conn, role)
        catalogs: list[DatabaseCatalog] = []
        for database in databases:
            if database == conn.database:
                catalogs.append(await self.probe(conn, role))
                continue
            try:
                async with connect(database) as other:
                    catalogs.append(await self.probe(other, role))
            except ConsoleError as exc:
                logger.warning(
                    "Skipping database during probe",
                    data={"role": role, "database": database, "kind": exc.kind, "reason": exc.reason},
                )
        access = RoleAccess.from_catalogs(role, catalogs, probed_at=self.clock.wall())
        logger.info(
            "Probed role access",
            data={"role": role, "databases": len(access.databases), "tables": len(access.tables)},
        )
        return access
