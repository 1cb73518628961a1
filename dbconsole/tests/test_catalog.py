"""Tests for building a RoleAccess from catalog query results."""

from contextlib import asynccontextmanager

import pytest

from dbconsole.access.models import TableRef
from dbconsole.core.clock import ManualClock
from dbconsole.core.exceptions import BackendUnavailableError
from dbconsole.db.backend import QueryRows
from dbconsole.db.catalog import (
    COLUMNS_SQL,
    DATABASES_SQL,
    FOREIGN_KEYS_SQL,
    PRIMARY_KEYS_SQL,
    SCHEMAS_SQL,
    TABLES_SQL,
    CatalogProbe,
)
from dbconsole.tests.fakes import FakeConnection


def shop_responses(databases=("shop",)):
    return {
        DATABASES_SQL: QueryRows(("datname",), [(d,) for d in databases]),
        SCHEMAS_SQL: QueryRows(("nspname",), [("public",)]),
        TABLES_SQL: QueryRows(
            ("schema_name", "table_name", "can_select", "can_insert", "can_update", "can_delete"),
            [
                ("public", "customers", False, False, False, False),
                ("public", "order_lines", True, True, True, True),
                ("public", "orders", True, False, True, False),
            ],
        ),
        COLUMNS_SQL: QueryRows(
            ("table_schema", "table_name", "column_name", "data_type", "is_nullable"),
            [
                ("public", "customers", "id", "integer", "NO"),
                ("public", "order_lines", "order_id", "integer", "NO"),
                ("public", "order_lines", "line_no", "integer", "NO"),
                ("public", "order_lines", "sku", "text", "YES"),
                ("public", "orders", "id", "integer", "NO"),
                ("public", "orders", "customer_id", "integer", "YES"),
            ],
        ),
        PRIMARY_KEYS_SQL: QueryRows(
            ("schema_name", "table_name", "column_name"),
            [
                ("public", "customers", "id"),
                ("public", "order_lines", "order_id"),
                ("public", "order_lines", "line_no"),
                ("public", "orders", "id"),
            ],
        ),
        FOREIGN_KEYS_SQL: QueryRows(
            (
                "constraint_name",
                "schema_name",
                "table_name",
                "column_name",
                "referenced_schema",
                "referenced_table",
                "referenced_column",
            ),
            [
                ("lines_order_fk", "public", "order_lines", "order_id", "public", "orders", "id"),
                ("orders_customer_fk", "public", "orders", "customer_id", "public", "customers", "id"),
            ],
        ),
    }


@pytest.fixture
def probe():
    return CatalogProbe(clock=ManualClock())


class TestProbe:
    @pytest.mark.asyncio
    async def test_tables_without_select_are_dropped(self, probe):
        conn = FakeConnection(shop_responses(), database="shop")
        catalog = await probe.probe(conn, "alice")
        assert [t.ref.table for t in catalog.tables] == ["order_lines", "orders"]

    @pytest.mark.asyncio
    async def test_privileges_columns_and_keys(self, probe):
        conn = FakeConnection(shop_responses(), database="shop")
        catalog = await probe.probe(conn, "alice")
        lines, orders = catalog.tables
        assert lines.primary_key == ("order_id", "line_no")
        assert lines.column_names == ("order_id", "line_no", "sku")
        assert [c.nullable for c in lines.columns] == [False, False, True]
        assert orders.privileges.update and not orders.privileges.delete

    @pytest.mark.asyncio
    async def test_foreign_key_to_invisible_table_is_opaque(self, probe):
        conn = FakeConnection(shop_responses(), database="shop")
        catalog = await probe.probe(conn, "alice")
        lines, orders = catalog.tables
        assert lines.foreign_key("lines_order_fk").opaque is False
        customer_fk = orders.foreign_key("orders_customer_fk")
        assert customer_fk.opaque is True
        assert customer_fk.referenced == TableRef("shop", "public", "customers")

    @pytest.mark.asyncio
    async def test_role_bound_as_parameter(self, probe):
        conn = FakeConnection(shop_responses(), database="shop")
        await probe.probe(conn, "o'hara")
        assert (TABLES_SQL, {"role": "o'hara"}) in conn.executed


class TestProbeRole:
    @pytest.mark.asyncio
    async def test_other_databases_opened_through_connect(self, probe):
        conn = FakeConnection(shop_responses(("shop", "archive")), database="shop")
        opened = []

        @asynccontextmanager
        async def connect(database):
            opened.append(database)
            yield FakeConnection(shop_responses(), database=database)

        access = await probe.probe_role(conn, "alice", connect)
        assert opened == ["archive"]
        assert access.databases == ("shop", "archive")
        assert access.table(TableRef("archive", "public", "orders")) is not None
        assert access.probed_at == probe.clock.wall()

    @pytest.mark.asyncio
    async def test_unreachable_database_skipped(self, probe):
        conn = FakeConnection(shop_responses(("shop", "broken")), database="shop")

        @asynccontextmanager
        async def connect(database):
            raise BackendUnavailableError(reason="unavailable")
            yield

        access = await probe.probe_role(conn, "alice", connect)
        assert access.databases == ("shop",)
        assert not access.is_empty
