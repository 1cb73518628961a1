"""Tests for collapsing staged operations into commit statements."""

import itertools

from dbconsole.access.models import TableRef
from dbconsole.transactions.collapse import (
    DeleteStatement,
    InsertStatement,
    UpdateStatement,
    collapse,
    describe,
    render,
    statement_row,
)
from dbconsole.transactions.models import NewRow, OpKind, RowKey, StagedOp

USERS = TableRef("testdb", "public", "users")

_ids = itertools.count(1)


def key(value):
    return RowKey((("id", value),))


def update(row, column, old, new):
    return StagedOp(
        id=f"op{next(_ids)}",
        kind=OpKind.UPDATE_CELL,
        target=USERS,
        row=row,
        created_at=0.0,
        column=column,
        old_value=old,
        new_value=new,
    )


def delete(row):
    return StagedOp(id=f"op{next(_ids)}", kind=OpKind.DELETE_ROW, target=USERS, row=row, created_at=0.0)


def insert(token, **values):
    return StagedOp(
        id=f"op{next(_ids)}",
        kind=OpKind.INSERT_ROW,
        target=USERS,
        row=NewRow(token),
        created_at=0.0,
        values=values,
    )


class TestCollapseRules:
    def test_repeated_cell_edits_keep_last_new_and_first_old(self):
        statements = collapse([
            update(key(7), "name", "a", "b"),
            update(key(7), "name", "b", "c"),
        ])
        assert statements == [
            UpdateStatement(USERS, key(7), (("name", "c"),), (("name", "a"),)),
        ]

    def test_edits_of_one_row_share_an_update(self):
        statements = collapse([
            update(key(7), "name", "a", "b"),
            update(key(7), "email", "x@", "y@"),
        ])
        assert len(statements) == 1
        assert statements[0].assignments == (("name", "b"), ("email", "y@"))

    def test_delete_supersedes_earlier_edits(self):
        statements = collapse([update(key(9), "name", "a", "b"), delete(key(9))])
        assert statements == [DeleteStatement(USERS, key(9))]

    def test_insert_then_edits_becomes_one_insert(self):
        new = NewRow("n1")
        statements = collapse([
            insert("n1", name="draft"),
            update(new, "name", None, "final"),
            update(new, "email", None, "f@example.com"),
        ])
        assert statements == [
            InsertStatement(USERS, (("name", "final"), ("email", "f@example.com")), new),
        ]

    def test_insert_then_delete_vanishes(self):
        new = NewRow("n1")
        assert collapse([insert("n1", name="x"), update(new, "name", None, "y"), delete(new)]) == []

    def test_writes_run_where_they_were_last_staged(self):
        statements = collapse([
            update(key(7), "name", "a", "b"),
            delete(key(9)),
            insert("n1", name="z"),
            update(key(7), "email", "p", "q"),
        ])
        assert statements == [
            UpdateStatement(USERS, key(7), (("name", "b"),), (("name", "a"),)),
            DeleteStatement(USERS, key(9)),
            InsertStatement(USERS, (("name", "z"),), NewRow("n1")),
            UpdateStatement(USERS, key(7), (("email", "q"),), (("email", "p"),)),
        ]

    def test_reused_unique_value_is_written_after_the_delete_freeing_it(self):
        """Row 8 must be gone before row 7 takes its email."""
        statements = collapse([
            update(key(7), "name", "user7", "Seven"),
            delete(key(8)),
            update(key(7), "email", "user7@example.com", "user8@example.com"),
        ])
        assert statements == [
            UpdateStatement(USERS, key(7), (("name", "Seven"),), (("name", "user7"),)),
            DeleteStatement(USERS, key(8)),
            UpdateStatement(
                USERS, key(7), (("email", "user8@example.com"),), (("email", "user7@example.com"),)
            ),
        ]

    def test_re_edited_cell_moves_to_its_last_edit(self):
        statements = collapse([
            update(key(7), "email", "a@", "tmp@"),
            delete(key(8)),
            update(key(7), "email", "tmp@", "b@"),
        ])
        assert statements == [
            DeleteStatement(USERS, key(8)),
            UpdateStatement(USERS, key(7), (("email", "b@"),), (("email", "a@"),)),
        ]

    def test_later_update_follows_an_edited_primary_key(self):
        statements = collapse([
            update(key(7), "id", 7, 70),
            delete(key(8)),
            update(key(7), "name", "user7", "Seventy"),
        ])
        assert statements[2] == UpdateStatement(
            USERS, key(70), (("name", "Seventy"),), (("name", "user7"),)
        )
        assert statement_row(statements[2]) == key(7)

    def test_edited_insert_runs_at_its_last_edit(self):
        new = NewRow("n1")
        statements = collapse([
            insert("n1", name="draft"),
            delete(key(8)),
            update(new, "email", None, "user8@example.com"),
        ])
        assert statements == [
            DeleteStatement(USERS, key(8)),
            InsertStatement(USERS, (("name", "draft"), ("email", "user8@example.com")), new),
        ]

    def test_scenario_update_and_delete(self):
        """Update row 7's name, delete row 9: one UPDATE then one DELETE."""
        statements = collapse([update(key(7), "name", "user7", "Zed"), delete(key(9))])
        assert describe(statements[0]) == {"action": "update", "row_key": {"id": 7}}
        assert describe(statements[1]) == {"action": "delete", "row_key": {"id": 9}}


class TestRender:
    def test_update_uses_named_parameters(self):
        sql, params = render(UpdateStatement(USERS, key(7), (("name", "Zed"),)))
        assert sql == 'UPDATE "public"."users" SET "name" = :v0 WHERE "id" = :k0'
        assert params == {"v0": "Zed", "k0": 7}

    def test_delete_with_null_key_column(self):
        composite = RowKey((("org", 1), ("slug", None)))
        sql, params = render(DeleteStatement(USERS, composite))
        assert sql == 'DELETE FROM "public"."users" WHERE "org" = :k0 AND "slug" IS NULL'
        assert params == {"k0": 1}

    def test_insert_lists_columns(self):
        sql, params = render(InsertStatement(USERS, (("id", 11), ("name", "new"))))
        assert sql == 'INSERT INTO "public"."users" ("id", "name") VALUES (:v0, :v1)'
        assert params == {"v0": 11, "v1": "new"}

    def test_insert_without_values_uses_defaults(self):
        sql, params = render(InsertStatement(USERS, ()))
        assert sql == 'INSERT INTO "public"."users" DEFAULT VALUES'
        assert params == {}

    def test_values_never_interpolated(self):
        sql, params = render(UpdateStatement(USERS, key(1), (("name", "x'; DROP TABLE users; --"),)))
        assert "DROP" not in sql
        assert params["v0"] == "x'; DROP TABLE users; --"

    def test_statement_row(self):
        new = NewRow("n1")
        assert statement_row(InsertStatement(USERS, (), new)) == new
        assert statement_row(DeleteStatement(USERS, key(3))) == key(3)
