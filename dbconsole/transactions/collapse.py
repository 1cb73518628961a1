"""Collapse staged operations into the statements a commit will run.

Rules:

* several edits of one cell keep the last new value and the first old value
* a delete supersedes any earlier edits of that row
* an insert followed by edits becomes one INSERT with the final values
* an insert followed by a delete disappears

Every collapsed write runs at the position of the last staged operation
that contributed to it, so writes to different rows keep their staged
relative order. Cell edits of one row that end up next to each other are
merged into a single UPDATE.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Optional, Sequence, Union

from dbconsole.access.models import TableRef
from dbconsole.services.sqltext import qualified_table, quote_ident
from dbconsole.transactions.models import NewRow, OpKind, RowKey, RowRef, StagedOp


@dataclass(frozen=True)
class UpdateStatement:
    target: TableRef
    key: RowKey
    assignments: tuple[tuple[str, Any], ...]
    old_values: tuple[tuple[str, Any], ...] = ()
    # The staged row; differs from ``key`` once an earlier UPDATE moved its primary key
    row: Optional[RowKey] = field(default=None, compare=False)


@dataclass(frozen=True)
class DeleteStatement:
    target: TableRef
    key: RowKey


@dataclass(frozen=True)
class InsertStatement:
    target: TableRef
    values: tuple[tuple[str, Any], ...]
    row: Optional[NewRow] = None


Statement = Union[UpdateStatement, DeleteStatement, InsertStatement]


@dataclass
class _Effect:
    """The net result of the ops touching one cell or one whole row."""

    position: int
    action: str  # insert, cell or delete
    target: TableRef
    row: RowRef
    column: Optional[str] = None
    new_value: Any = None
    old_value: Any = None
    values: dict[str, Any] = field(default_factory=dict)


def _fold(ops: Sequence[StagedOp]) -> list[_Effect]:
    effects: dict[tuple, _Effect] = {}

    for position, op in enumerate(ops):
        row_slot = ("row", op.target, op.row)
        whole_row = effects.get(row_slot)
        if op.kind is OpKind.INSERT_ROW:
            effects[row_slot] = _Effect(position, "insert", op.target, op.row, values=dict(op.values))
        elif op.kind is OpKind.UPDATE_CELL:
            if whole_row is not None:
                # Edits of a pending insert fold into it; a deleted row takes none.
                if whole_row.action == "insert":
                    whole_row.values[op.column] = op.new_value
                    whole_row.position = position
                continue
            cell = effects.get(("cell", op.target, op.row, op.column))
            if cell is None:
                effects[("cell", op.target, op.row, op.column)] = _Effect(
                    position,
                    "cell",
                    op.target,
                    op.row,
                    column=op.column,
                    new_value=op.new_value,
                    old_value=op.old_value,
                )
            else:
                cell.new_value = op.new_value
                cell.position = position
        elif op.kind is OpKind.DELETE_ROW:
            if whole_row is not None:
                if whole_row.action == "insert":
                    del effects[row_slot]
                continue
            for slot in [s for s in effects if s[0] == "cell" and s[1:3] == (op.target, op.row)]:
                del effects[slot]
            effects[row_slot] = _Effect(position, "delete", op.target, op.row)

    return sorted(effects.values(), key=lambda effect: effect.position)


def _moved_key(key: RowKey, assignments: tuple[tuple[str, Any], ...]) -> RowKey:
    assigned = dict(assignments)
    return RowKey(tuple((column, assigned.get(column, value)) for column, value in key.items))


def collapse(ops: Sequence[StagedOp]) -> list[Statement]:
    statements: list[Statement] = []
    for effect in _fold(ops):
        if effect.action == "insert":
            statements.append(InsertStatement(effect.target, tuple(effect.values.items()), effect.row))
            continue
        if effect.action == "delete":
            statements.append(DeleteStatement(effect.target, effect.row))
            continue
        assignment = ((effect.column, effect.new_value),)
        old_value = ((effect.column, effect.old_value),)
        previous = statements[-1] if statements else None
        if (
            isinstance(previous, UpdateStatement)
            and previous.target == effect.target
            and previous.row == effect.row
        ):
            statements[-1] = replace(
                previous,
                assignments=previous.assignments + assignment,
                old_values=previous.old_values + old_value,
            )
        else:
            statements.append(
                UpdateStatement(effect.target, effect.row, assignment, old_value, row=effect.row)
            )

    # Later UPDATEs of a row find it by the key earlier ones left behind
    keys: dict[tuple[TableRef, RowKey], RowKey] = {}
    for index, statement in enumerate(statements):
        if isinstance(statement, UpdateStatement):
            slot = (statement.target, statement.row)
            current = keys.get(slot, statement.key)
            statements[index] = replace(statement, key=current)
            keys[slot] = _moved_key(current, statement.assignments)
    return statements


def _key_predicate(key: RowKey, params: dict[str, Any]) -> str:
    clauses = []
    for index, (column, value) in enumerate(key.items):
        if value is None:
            clauses.append(f"{quote_ident(column)} IS NULL")
        else:
            name = f"k{index}"
            params[name] = value
            clauses.append(f"{quote_ident(column)} = :{name}")
    return " AND ".join(clauses)


def render(statement: Statement) -> tuple[str, dict[str, Any]]:
    """Render a statement as SQL with named parameters."""
    table = qualified_table(statement.target.schema, statement.target.table)
    params: dict[str, Any] = {}

    if isinstance(statement, InsertStatement):
        if not statement.values:
            return f"INSERT INTO {table} DEFAULT VALUES", params
        columns = []
        placeholders = []
        for index, (column, value) in enumerate(statement.values):
            name = f"v{index}"
            params[name] = value
            columns.append(quote_ident(column))
            placeholders.append(f":{name}")
        return f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({', '.join(placeholders)})", params

    if isinstance(statement, UpdateStatement):
        assignments = []
        for index, (column, value) in enumerate(statement.assignments):
            name = f"v{index}"
            params[name] = value
            assignments.append(f"{quote_ident(column)} = :{name}")
        predicate = _key_predicate(statement.key, params)
        return f"UPDATE {table} SET {', '.join(assignments)} WHERE {predicate}", params

    predicate = _key_predicate(statement.key, params)
    return f"DELETE FROM {table} WHERE {predicate}", params


def describe(statement: Statement) -> dict[str, Any]:
    if isinstance(statement, InsertStatement):
        return {"action": "insert", "values": dict(statement.values)}
    action = "update" if isinstance(statement, UpdateStatement) else "delete"
    return {"action": action, "row_key": statement.key.as_dict()}


def statement_row(statement: Statement) -> Optional[RowRef]:
    """The staged row a statement writes."""
    if isinstance(statement, InsertStatement):
        return statement.row
    if isinstance(statement, UpdateStatement) and statement.row is not None:
        return statement.row
    return statement.key
