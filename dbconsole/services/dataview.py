"""Table reads and ad-hoc query execution with bounded result sets."""

from __future__ import annotations

import base64
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError

from dbconsole.access.models import TableAccess
from dbconsole.core.exceptions import (
    BackendUnavailableError,
    ConsoleError,
    InputValidationError,
)
from dbconsole.core.logging import get_logger
from dbconsole.db.backend import Connection, RowWindow
from dbconsole.db.errors import translate_db_error
from dbconsole.services.sqltext import (
    bind_parameters,
    classify_statement,
    qualified_table,
    quote_ident,
    returns_row_set,
    split_statements,
    validate_where_fragment,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class Page:
    offset: int = 0
    limit: Optional[int] = None


@dataclass(frozen=True)
class Sort:
    column: str
    descending: bool = False


def _cell(value: Any) -> Any:
    if isinstance(value, memoryview):
        value = value.tobytes()
    if isinstance(value, (bytes, bytearray)):
        return base64.b64encode(bytes(value)).decode("ascii")
    return value


@dataclass
class PagedResult:
    """One page of rows plus the counts the UI needs to page further."""

    columns: list[str]
    rows: list[list[Any]]
    offset: int
    limit: int
    total_count: int
    total_is_estimate: bool = False
    hard_cap: int = 1000

    @property
    def loaded_count(self) -> int:
        return len(self.rows)

    @property
    def has_more(self) -> bool:
        return self.offset + self.loaded_count < self.total_count

    def to_dict(self) -> dict[str, Any]:
        return {
            "columns": self.columns,
            "rows": [[_cell(value) for value in row] for row in self.rows],
            "offset": self.offset,
            "limit": self.limit,
            "loaded_count": self.loaded_count,
            "total_count": self.total_count,
            "total_is_estimate": self.total_is_estimate,
            "hard_cap": self.hard_cap,
            "has_more": self.has_more,
        }


class Pager:
    """Turns a requested page into a bounded (offset, limit)."""

    def __init__(self, hard_cap: int, count_cap: int):
        self.hard_cap = hard_cap
        self.count_cap = count_cap

    def resolve(self, page: Optional[Page]) -> tuple[int, int]:
        page = page or Page()
        if page.offset < 0:
            raise InputValidationError("offset must not be negative")
        if page.limit is None:
            return page.offset, self.hard_cap
        if page.limit < 1:
            raise InputValidationError("limit must be at least 1")
        return page.offset, min(page.limit, self.hard_cap)

    def total(self, counted: int, offset: int, loaded: int) -> tuple[int, bool]:
        """Final total and whether it is an estimate.

        ``counted`` comes from a count capped at ``count_cap + 1``. The
        total never drops below what has actually been loaded, and stays
        past it while rows beyond the page were seen.
        """
        estimate = counted > self.count_cap
        total = self.count_cap if estimate else counted
        floor = offset + loaded
        if estimate and counted > floor:
            floor += 1
        return max(total, floor), estimate

    def result(
        self,
        columns: Sequence[str],
        rows: Sequence[Sequence[Any]],
        offset: int,
        limit: int,
        counted: int,
    ) -> PagedResult:
        rows = [list(row) for row in rows[:limit]]
        total, estimate = self.total(counted, offset, len(rows))
        return PagedResult(
            columns=list(columns),
            rows=rows,
            offset=offset,
            limit=limit,
            total_count=total,
            total_is_estimate=estimate,
            hard_cap=self.hard_cap,
        )


def _escape_colons(fragment: str) -> str:
    # text() would read ":name" inside a user literal as a bind parameter.
    return fragment.replace(":", "\\:")


class TableReader:
    def __init__(self, pager: Pager):
        self.pager = pager

    def _filters(
        self,
        table: TableAccess,
        where: Optional[str],
        equals: Optional[Mapping[str, Any]],
    ) -> tuple[str, dict[str, Any]]:
        clauses: list[str] = []
        params: dict[str, Any] = {}
        if where:
            clauses.append(f"({_escape_colons(validate_where_fragment(where))})")
        for index, (column, value) in enumerate((equals or {}).items()):
            if not table.has_column(column):
                raise InputValidationError("Unknown column", details={"column": column})
            if value is None:
                clauses.append(f"{quote_ident(column)} IS NULL")
            else:
                params[f"f{index}"] = value
                clauses.append(f"{quote_ident(column)} = :f{index}")
        return (" WHERE " + " AND ".join(clauses)) if clauses else "", params

    def _order(self, table: TableAccess, sort: Optional[Sort]) -> str:
        if sort is not None:
            if not table.has_column(sort.column):
                raise InputValidationError("Unknown sort column", details={"column": sort.column})
            return f" ORDER BY {quote_ident(sort.column)} {'DESC' if sort.descending else 'ASC'}"
        if table.primary_key:
            return " ORDER BY " + ", ".join(quote_ident(column) for column in table.primary_key)
        return ""

    async def read(
        self,
        conn: Connection,
        table: TableAccess,
        *,
        where: Optional[str] = None,
        equals: Optional[Mapping[str, Any]] = None,
        sort: Optional[Sort] = None,
        page: Optional[Page] = None,
    ) -> PagedResult:
        offset, limit = self.pager.resolve(page)
        source = qualified_table(table.ref.schema, table.ref.table)
        where_sql, params = self._filters(table, where, equals)
        order_sql = self._order(table, sort)

        counted = await conn.execute(
            f"SELECT COUNT(*) FROM (SELECT 1 FROM {source}{where_sql} LIMIT :count_limit) AS counted",
            {**params, "count_limit": self.pager.count_cap + 1},
        )
        data = await conn.execute(
            f"SELECT * FROM {source}{where_sql}{order_sql} LIMIT :page_limit OFFSET :page_offset",
            {**params, "page_limit": limit, "page_offset": offset},
        )
        return self.pager.result(data.columns, data.rows, offset, limit, int(counted.rows[0][0]))


@dataclass
class StatementResult:
    """Outcome of one statement in an ad-hoc script."""

    index: int
    sql: str
    kind: str
    status: str = "ok"
    result: Optional[PagedResult] = None
    affected_rows: Optional[int] = None
    error: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "index": self.index,
            "sql": self.sql,
            "kind": self.kind,
            "status": self.status,
        }
        if self.result is not None:
            data["result"] = self.result.to_dict()
        if self.affected_rows is not None:
            data["affected_rows"] = self.affected_rows
        if self.error:
            data["error"] = self.error
        return data


class QueryRunner:
    """Runs a user's SQL script one statement at a time.

    Each statement is sent once and commits on its own. Row-returning
    statements are read from a server-side cursor only as far as the page
    and the count cap need. The first failure is recorded in its slot and
    the remaining statements are reported as skipped.
    """

    def __init__(self, pager: Pager):
        self.pager = pager

    async def _run_one(
        self,
        conn: Connection,
        index: int,
        sql: str,
        parameters: Optional[Sequence[Any]],
        offset: int,
        limit: int,
    ) -> StatementResult:
        kind = classify_statement(sql)
        bound_sql, params = bind_parameters(sql, parameters)
        window = RowWindow(offset, limit, count_limit=self.pager.count_cap + 1)
        if returns_row_set(sql):
            data = await conn.stream(bound_sql, params, window=window)
        else:
            data = await conn.execute(bound_sql, params, window=window)

        affected = data.rowcount if kind != "select" and data.rowcount >= 0 else None
        if not data.returns_rows:
            return StatementResult(index, sql, kind, affected_rows=affected)
        result = self.pager.result(data.columns, data.rows, offset, limit, data.counted or 0)
        return StatementResult(index, sql, kind, result=result, affected_rows=affected)

    async def run(
        self,
        conn: Connection,
        script: str,
        *,
        parameters: Optional[Sequence[Any]] = None,
        page: Optional[Page] = None,
    ) -> list[StatementResult]:
        statements = split_statements(script)
        if not statements:
            raise InputValidationError("No SQL to run")
        if parameters and len(statements) > 1:
            raise InputValidationError("Parameters are only accepted for a single statement")
        offset, limit = self.pager.resolve(page)

        results: list[StatementResult] = []
        failed = False
        for index, sql in enumerate(statements):
            if failed:
                results.append(StatementResult(index, sql, classify_statement(sql), status="skipped"))
                continue
            try:
                results.append(await self._run_one(conn, index, sql, parameters, offset, limit))
            except (SQLAlchemyError, OSError) as exc:
                error = translate_db_error(exc)
                if isinstance(error, BackendUnavailableError):
                    raise error from exc
                await conn.rollback_tx()
                failed = True
                results.append(self._failed(index, sql, error))
        logger.info(
            "Ad-hoc script executed",
            data={
                "statements": len(statements),
                "failed": failed,
                "kinds": [result.kind for result in results],
            },
        )
        return results

    @staticmethod
    def _failed(index: int, sql: str, error: ConsoleError) -> StatementResult:
        return StatementResult(
            index,
            sql,
            classify_statement(sql),
            status="error",
            error={
                "code": error.code,
                "kind": error.kind,
                "reason": error.reason,
                "message": error.message,
            },
        )
